"""Core value types shared by the cache, provider and session store."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


Fingerprint = str


@dataclass(frozen=True)
class Completion:
    """A provider answer. Immutable once produced."""
    text: str
    model: str = ''
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Turn:
    """One prompt/completion pair recorded in a conversation."""
    prompt: str
    completion: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    trace_id: Optional[str] = None


@dataclass(frozen=True)
class SessionContext:
    """Recent-turn window of a session, oldest first."""
    session_id: str
    turns: Tuple[Turn, ...] = ()
