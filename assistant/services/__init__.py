"""Core services: fingerprinting, dedup cache, provider client, masking, session store, orchestration."""

from assistant.services.anonymizer import Anonymizer, EntityMap
from assistant.services.dedup_cache import CacheStats, DedupCache
from assistant.services.fingerprint import fingerprint
from assistant.services.orchestrator import ChatResult, Orchestrator
from assistant.services.provider import (
    FakeProvider,
    LLMProvider,
    OllamaProvider,
    OpenAIProvider,
    RoutingProvider,
    get_provider,
)
from assistant.services.session_store import InMemorySessionStore, SessionStore, SqlSessionStore

__all__ = [
    "Anonymizer",
    "CacheStats",
    "ChatResult",
    "DedupCache",
    "EntityMap",
    "FakeProvider",
    "InMemorySessionStore",
    "LLMProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "Orchestrator",
    "RoutingProvider",
    "SessionStore",
    "SqlSessionStore",
    "fingerprint",
    "get_provider",
]
