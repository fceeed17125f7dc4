"""FastAPI dependency factories."""

import threading
from functools import lru_cache

from fastapi import Depends

from assistant.config import Settings
from assistant.runtime import Runtime
from assistant.services.orchestrator import Orchestrator

# Process-wide Runtime (keyed by settings identity for override support)
_runtime: Runtime | None = None
_runtime_settings_id: object | None = None
_runtime_lock = threading.Lock()


@lru_cache()
def get_settings() -> Settings:
    """Singleton Settings -- override via app.dependency_overrides in tests."""
    return Settings()


def get_runtime(settings: Settings = Depends(get_settings)) -> Runtime:
    """Process-wide Runtime owning the cache, provider and session store."""
    global _runtime, _runtime_settings_id
    with _runtime_lock:
        # Recreate if settings were overridden (e.g. in tests)
        if _runtime is None or _runtime_settings_id is not settings:
            if _runtime is not None:
                _runtime.close()
            _runtime = Runtime(settings)
            _runtime.start()
            _runtime_settings_id = settings
        return _runtime


def get_orchestrator(runtime: Runtime = Depends(get_runtime)) -> Orchestrator:
    return runtime.get_orchestrator()


def shutdown_runtime() -> None:
    """Close the process-wide Runtime, if one was built."""
    global _runtime, _runtime_settings_id
    with _runtime_lock:
        if _runtime is not None:
            _runtime.close()
        _runtime = None
        _runtime_settings_id = None
