"""Configuration for the assistant API server."""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful personal assistant. Answer concisely and use the "
    "conversation so far as context."
)


@dataclass
class Settings:
    """
    Everything the server needs to wire the cache, provider and store.

    Every field is overridable at construction for testing.
    Environment overrides are applied in __post_init__.
    """
    database_url: Optional[str] = None

    # LLM provider
    llm_provider: str = "openai"  # openai | ollama | routing | fake
    llm_base_url: Optional[str] = None
    llm_model: Optional[str] = None
    llm_api_key: Optional[str] = None
    system_prompt: Optional[str] = None
    provider_timeout_s: float = 30.0
    provider_max_retries: int = 1
    provider_retry_backoff_s: float = 0.25

    # Local / cloud endpoints (used directly by llm_provider=routing)
    ollama_base_url: Optional[str] = None
    ollama_model: Optional[str] = None
    openai_base_url: Optional[str] = None
    openai_model: Optional[str] = None
    routing_default: str = "local"  # local | cloud

    # Personal data masking before a prompt leaves the process
    anonymize: str = "cloud"  # off | cloud | always

    # Response cache
    cache_max_weight: int = 1000
    cache_weigher: str = "count"  # count | chars
    cache_ttl_s: float = 600.0
    cache_sweep_interval_s: float = 60.0  # 0 disables the background sweeper

    # Conversation context
    context_window_size: int = 5
    max_prompt_chars: int = 5000

    def __post_init__(self):
        if self.database_url is None:
            self.database_url = os.environ.get("DATABASE_URL", "sqlite:///./assistant.db")

        if os.environ.get("LLM_PROVIDER"):
            self.llm_provider = os.environ["LLM_PROVIDER"].lower()
        if self.ollama_base_url is None:
            self.ollama_base_url = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
        if self.ollama_model is None:
            self.ollama_model = os.environ.get("OLLAMA_MODEL", "qwen2.5:7b-instruct")
        if self.openai_base_url is None:
            self.openai_base_url = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
        if self.openai_model is None:
            self.openai_model = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
        if os.environ.get("ROUTING_DEFAULT"):
            self.routing_default = os.environ["ROUTING_DEFAULT"].lower()
        if os.environ.get("ANONYMIZE"):
            self.anonymize = os.environ["ANONYMIZE"].lower()

        local = self.llm_provider == "ollama"
        if self.llm_base_url is None:
            self.llm_base_url = os.environ.get("LLM_BASE_URL", self.ollama_base_url if local else self.openai_base_url)
        if self.llm_model is None:
            self.llm_model = os.environ.get("LLM_MODEL", self.ollama_model if local else self.openai_model)
        if self.llm_api_key is None:
            self.llm_api_key = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if self.system_prompt is None:
            self.system_prompt = os.environ.get("LLM_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)

        self.provider_timeout_s = _env_number("PROVIDER_TIMEOUT_S", float, self.provider_timeout_s)
        self.provider_max_retries = _env_number("PROVIDER_MAX_RETRIES", int, self.provider_max_retries)
        self.provider_retry_backoff_s = _env_number("PROVIDER_RETRY_BACKOFF_S", float, self.provider_retry_backoff_s)

        self.cache_max_weight = _env_number("CACHE_MAX_WEIGHT", int, self.cache_max_weight)
        if os.environ.get("CACHE_WEIGHER"):
            self.cache_weigher = os.environ["CACHE_WEIGHER"].lower()
        self.cache_ttl_s = _env_number("CACHE_TTL_S", float, self.cache_ttl_s)
        self.cache_sweep_interval_s = _env_number("CACHE_SWEEP_INTERVAL_S", float, self.cache_sweep_interval_s)

        self.context_window_size = _env_number("CONTEXT_WINDOW_SIZE", int, self.context_window_size)
        self.max_prompt_chars = _env_number("MAX_PROMPT_CHARS", int, self.max_prompt_chars)


def _env_number(name, cast, current):
    """Read a numeric env override; malformed values keep the current value."""
    raw = os.environ.get(name)
    if raw is None:
        return current
    try:
        return cast(raw)
    except ValueError:
        return current
