"""Error taxonomy for the assistant core. Never expose raw tracebacks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(eq=False)
class AssistantError(Exception):
    """Structured error. `kind` is a short machine-readable tag."""
    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class InvalidRequest(AssistantError):
    """Malformed input. Fails fast, no provider call."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(kind="invalid_request", message=message, details=details)


class SessionNotFound(AssistantError):
    def __init__(self, session_id: str):
        super().__init__(
            kind="session_not_found",
            message=f"Unknown session {session_id!r}",
            details={"session_id": session_id},
        )


class ProviderFailure(AssistantError):
    """Upstream LLM error after allowed retries.

    kind: unavailable | provider_error | bad_request | invalid_response
    """


class Timeout(AssistantError):
    """Deadline exceeded at the provider or while waiting on a shared call."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(kind="timeout", message=message, details=details)


class StorageFailure(AssistantError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(kind="storage_failure", message=message, details=details)
