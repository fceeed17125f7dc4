"""Chat orchestration: session context -> fingerprint -> cache/provider -> turn log."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from assistant.errors import InvalidRequest, SessionNotFound, StorageFailure
from assistant.services import metrics as m
from assistant.services.anonymizer import Anonymizer, EntityMap
from assistant.services.dedup_cache import HIT, JOINED, DedupCache
from assistant.services.fingerprint import canonical_params, fingerprint, normalize_prompt
from assistant.services.metrics import Metrics
from assistant.services.provider import LLMProvider, Message
from assistant.services.session_store import SessionStore
from assistant.types import Completion, SessionContext, Turn

logger = logging.getLogger("assistant.orchestrator")

ANONYMIZE_MODES = ("off", "cloud", "always")

# Extra wait past the provider deadline, so an answer landing right at the
# deadline still reaches the callers instead of only the cache.
WAIT_GRACE_S = 0.5


@dataclass
class ChatResult:
    """
    Outcome of one exchange.

    shared=True means the answer came from a provider call started by a
    concurrent identical request. persisted=False means the completion was
    produced but the turn could not be written; warning then says why.
    That is a degraded success, not a failure.
    anonymized_entities counts the masked values per type, e.g. {"EMAIL": 1}.
    """
    completion: Completion
    session_id: str
    trace_id: str
    cache_hit: bool
    shared: bool = False
    persisted: bool = True
    warning: Optional[str] = None
    duration_ms: float = 0.0
    route: str = "local"
    anonymized_entities: Dict[str, int] = field(default_factory=dict)


class Orchestrator:
    def __init__(
        self,
        store: SessionStore,
        cache: DedupCache,
        provider: LLMProvider,
        *,
        system_prompt: Optional[str] = None,
        context_window_size: int = 5,
        provider_timeout_s: float = 30.0,
        max_prompt_chars: int = 5000,
        anonymizer: Optional[Anonymizer] = None,
        anonymize: str = "cloud",
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if anonymize not in ANONYMIZE_MODES:
            raise ValueError(f"anonymize must be one of {ANONYMIZE_MODES}, got {anonymize!r}")
        self.store = store
        self.cache = cache
        self.provider = provider
        self.system_prompt = system_prompt
        self.context_window_size = context_window_size
        self.provider_timeout_s = provider_timeout_s
        self.max_prompt_chars = max_prompt_chars
        self.anonymizer = anonymizer
        self.anonymize = anonymize
        self._metrics = metrics
        self._clock = clock

    def start_session(self, session_id: Optional[str] = None) -> str:
        return self.store.create_session(session_id)

    def get_session(self, session_id: str) -> List[Turn]:
        return self.store.all_turns(session_id)

    def handle(
        self,
        session_id: str,
        prompt: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> ChatResult:
        """
        Answer prompt within session_id.

        Raises InvalidRequest, SessionNotFound, ProviderFailure or Timeout.
        The provider budget starts now; timeout bounds how long this caller
        waits and defaults to that budget plus a small grace.
        """
        start = self._clock()
        deadline = start + self.provider_timeout_s
        trace_id = uuid.uuid4().hex
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("prompt is empty")
        if len(prompt) > self.max_prompt_chars:
            raise InvalidRequest(
                f"prompt exceeds {self.max_prompt_chars} characters",
                {"length": len(prompt)},
            )
        if not session_id or not session_id.strip():
            raise InvalidRequest("session id is required")
        canonical_params(params)  # fail fast before touching storage
        route = self.provider.location_for(params)

        turns = self.store.load_recent_turns(session_id, self.context_window_size)
        context = SessionContext(session_id=session_id, turns=tuple(turns))
        outbound = prompt
        entities: Optional[EntityMap] = None
        masked = self._mask(route, prompt, context)
        if masked is not None:
            outbound, context, entities = masked

        key = fingerprint(context, outbound, params)
        wait_s = timeout if timeout is not None else max(0.0, deadline - self._clock()) + WAIT_GRACE_S

        def _produce() -> Completion:
            return self.provider.generate(self.build_messages(context, outbound), params, deadline)

        completion, outcome = self.cache.resolve_outcome(key, _produce, timeout=wait_s)
        if entities is not None and len(entities):
            completion = replace(completion, text=entities.deanonymize(completion.text))
        logger.info(
            "[%s] session=%s key=%s %s via %s (%d context turns, %d masked)",
            trace_id, session_id, key[:12], outcome, route, len(turns),
            len(entities) if entities is not None else 0,
        )

        result = ChatResult(
            completion=completion,
            session_id=session_id,
            trace_id=trace_id,
            cache_hit=outcome == HIT,
            shared=outcome == JOINED,
            route=route,
            anonymized_entities=entities.counts() if entities is not None else {},
        )
        try:
            self.store.append_turn(session_id, Turn(prompt=prompt, completion=completion.text, trace_id=trace_id))
        except (StorageFailure, SessionNotFound) as e:
            logger.warning("[%s] Completion returned but turn not saved for session %s: %s", trace_id, session_id, e)
            if self._metrics is not None:
                self._metrics.incr(m.SESSION_APPEND_FAILURE)
            result.persisted = False
            result.warning = "Response was generated but could not be saved to the conversation history."
        result.duration_ms = round((self._clock() - start) * 1000.0, 3)
        return result

    def _mask(
        self, route: str, prompt: str, context: SessionContext
    ) -> Optional[Tuple[str, SessionContext, EntityMap]]:
        """
        Anonymize prompt and context turns when the route requires it.
        Returns (prompt, context, entities) or None. The prompt is masked first
        so its placeholders do not depend on the context.
        """
        if self.anonymizer is None or self.anonymize == "off":
            return None
        if self.anonymize == "cloud" and route != "cloud":
            return None
        masked_prompt, entities = self.anonymizer.anonymize(prompt)
        masked_turns = []
        for turn in context.turns:
            p, _ = self.anonymizer.anonymize(turn.prompt, entities)
            c, _ = self.anonymizer.anonymize(turn.completion, entities)
            masked_turns.append(replace(turn, prompt=p, completion=c))
        return masked_prompt, SessionContext(session_id=context.session_id, turns=tuple(masked_turns)), entities

    def build_messages(self, context: SessionContext, prompt: str) -> List[Message]:
        """System prompt, then the context turns oldest first, then the new prompt."""
        messages: List[Message] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        for turn in context.turns:
            messages.append({"role": "user", "content": turn.prompt})
            messages.append({"role": "assistant", "content": turn.completion})
        messages.append({"role": "user", "content": normalize_prompt(prompt)})
        return messages
