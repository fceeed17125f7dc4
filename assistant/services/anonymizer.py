"""
Personal data masking for prompts sent to a cloud model.

Detected values are replaced by placeholders such as [EMAIL_1]. Within one
EntityMap the same value always maps to the same placeholder, so a model
answer that quotes a placeholder can be restored with deanonymize().
Covers common Austrian, German and English formats.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

_PLACEHOLDER_RE = re.compile(r"\[([A-Z_]+)_(\d+)\]")


@dataclass(frozen=True)
class AnonymizedEntity:
    value: str
    entity_type: str
    confidence: float


@dataclass(frozen=True)
class EntityPattern:
    entity_type: str
    pattern: Pattern[str]
    confidence: float
    validator: Optional[Callable[[str], bool]] = None


class EntityMap:
    """Placeholder <-> value mapping shared by every text of one request."""

    def __init__(self):
        self.entities: Dict[str, AnonymizedEntity] = {}
        self._by_value: Dict[str, str] = {}
        self._counters: Dict[str, int] = {}

    def placeholder(self, value: str, entity_type: str, confidence: float) -> str:
        existing = self._by_value.get(value)
        if existing is not None:
            return existing
        index = self._counters.get(entity_type, 0) + 1
        self._counters[entity_type] = index
        placeholder = f"[{entity_type}_{index}]"
        self.entities[placeholder] = AnonymizedEntity(value, entity_type, confidence)
        self._by_value[value] = placeholder
        return placeholder

    def counts(self) -> Dict[str, int]:
        """Number of distinct masked values per entity type."""
        out: Dict[str, int] = {}
        for entity in self.entities.values():
            out[entity.entity_type] = out.get(entity.entity_type, 0) + 1
        return out

    def deanonymize(self, text: str) -> str:
        if not text or not self.entities:
            return text

        def _restore(m):
            entity = self.entities.get(m.group(0))
            return entity.value if entity else m.group(0)

        return _PLACEHOLDER_RE.sub(_restore, text)

    def __len__(self) -> int:
        return len(self.entities)


# ---- Validators ----

def luhn_valid(number: str) -> bool:
    digits = re.sub(r"[\s-]", "", number)
    if not digits.isdigit() or len(digits) < 13:
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


def iban_valid(iban: str) -> bool:
    normalized = re.sub(r"\s", "", iban).upper()
    if not 15 <= len(normalized) <= 34:
        return False
    rearranged = normalized[4:] + normalized[:4]
    numeric = "".join(str(ord(c) - ord("A") + 10) if c.isalpha() else c for c in rearranged)
    return numeric.isdigit() and int(numeric) % 97 == 1


# ---- Patterns ----

DEFAULT_PATTERNS: Tuple[EntityPattern, ...] = (
    EntityPattern("EMAIL", re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), 0.95),
    EntityPattern("URL", re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+"), 0.90),
    EntityPattern(
        "IBAN",
        re.compile(r"\b[A-Z]{2}\d{2}\s?(?:[A-Z0-9]{4}\s?){2,7}[A-Z0-9]{1,4}\b"),
        0.95,
        iban_valid,
    ),
    EntityPattern("CC", re.compile(r"\b(?:\d[ -]?){12,18}\d\b"), 0.95, luhn_valid),
    EntityPattern("AT_UID", re.compile(r"\bATU\s?\d{8}\b", re.IGNORECASE), 0.90),
    EntityPattern("US_SSN", re.compile(r"\b\d{3}[\s-]\d{2}[\s-]\d{4}\b"), 0.80),
    EntityPattern(
        "PHONE",
        re.compile(r"(?:\+|\b00)[1-9]\d{0,2}[\s./-]?(?:\(\d{1,4}\)[\s./-]?)?(?:\d[\s./-]?){5,13}\d\b"),
        0.85,
    ),
    EntityPattern("PHONE", re.compile(r"\b0[1-9](?:[\s./-]?\d){6,12}\b"), 0.70),
    EntityPattern(
        "IP",
        re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\b"),
        0.90,
    ),
    EntityPattern("MAC", re.compile(r"\b(?:[0-9a-f]{2}[:-]){5}[0-9a-f]{2}\b", re.IGNORECASE), 0.90),
    EntityPattern(
        "UUID",
        re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE),
        0.90,
    ),
    EntityPattern(
        "DATE",
        re.compile(r"\b(?:0?[1-9]|[12]\d|3[01])[./-](?:0?[1-9]|1[0-2])[./-](?:19|20)?\d{2}\b"),
        0.80,
    ),
    EntityPattern("DATE", re.compile(r"\b(?:19|20)\d{2}-(?:0[1-9]|1[0-2])-(?:0[1-9]|[12]\d|3[01])\b"), 0.80),
    EntityPattern(
        "STREET",
        re.compile(
            r"\b[A-ZÄÖÜ][a-zäöüß]+(?:straße|strasse|gasse|weg|platz|allee|ring)\s+\d{1,4}[a-zA-Z]?(?:/\d{1,4})?"
        ),
        0.75,
    ),
    EntityPattern(
        "STREET",
        re.compile(
            r"\b\d{1,5}\s+(?:[A-Z][a-z]+\s+){1,3}(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr)\b\.?"
        ),
        0.75,
    ),
)


class Anonymizer:
    def __init__(self, patterns: Optional[Iterable[EntityPattern]] = None):
        self.patterns: List[EntityPattern] = list(DEFAULT_PATTERNS if patterns is None else patterns)

    def anonymize(self, text: str, entities: Optional[EntityMap] = None) -> Tuple[str, EntityMap]:
        """
        Mask every detected value in text. Pass the EntityMap of earlier texts
        of the same request to keep placeholders consistent across them.
        """
        if entities is None:
            entities = EntityMap()
        if not text:
            return text, entities

        matches = []
        for p in self.patterns:
            for m in p.pattern.finditer(text):
                value = m.group(0)
                if p.validator is None or p.validator(value):
                    matches.append((m.start(), m.end(), p))

        # Overlaps: higher confidence wins, then the longer match.
        matches.sort(key=lambda t: (-t[2].confidence, -(t[1] - t[0]), t[0]))
        kept: List[Tuple[int, int, EntityPattern]] = []
        for start, end, p in matches:
            if all(end <= s or start >= e for s, e, _ in kept):
                kept.append((start, end, p))
        kept.sort(key=lambda t: t[0])

        out = []
        pos = 0
        for start, end, p in kept:
            out.append(text[pos:start])
            out.append(entities.placeholder(text[start:end], p.entity_type, p.confidence))
            pos = end
        out.append(text[pos:])
        return "".join(out), entities
