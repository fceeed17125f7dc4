"""Tests for Settings defaults and environment overrides."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from assistant.config import DEFAULT_SYSTEM_PROMPT, Settings

ENV_VARS = (
    "DATABASE_URL", "LLM_PROVIDER", "LLM_BASE_URL", "LLM_MODEL", "LLM_API_KEY", "OPENAI_API_KEY",
    "LLM_SYSTEM_PROMPT", "PROVIDER_TIMEOUT_S", "CACHE_MAX_WEIGHT", "CACHE_TTL_S", "CACHE_WEIGHER",
    "OLLAMA_BASE_URL", "OLLAMA_MODEL", "OPENAI_BASE_URL", "OPENAI_MODEL", "ROUTING_DEFAULT", "ANONYMIZE",
)


def _clean(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clean(monkeypatch)
    s = Settings()
    assert s.llm_provider == "openai"
    assert s.llm_base_url == "https://api.openai.com/v1"
    assert s.llm_model == "gpt-4o-mini"
    assert s.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert s.database_url.startswith("sqlite")
    assert s.cache_max_weight == 1000
    assert s.context_window_size == 5
    assert s.routing_default == "local"
    assert s.anonymize == "cloud"


def test_ollama_defaults(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "Ollama")
    s = Settings()
    assert s.llm_provider == "ollama"
    assert s.llm_base_url == "http://localhost:11434"
    assert s.llm_model == "qwen2.5:7b-instruct"


def test_env_overrides(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("CACHE_MAX_WEIGHT", "50")
    monkeypatch.setenv("CACHE_TTL_S", "2.5")
    monkeypatch.setenv("CACHE_WEIGHER", "CHARS")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    s = Settings()
    assert s.cache_max_weight == 50
    assert s.cache_ttl_s == 2.5
    assert s.cache_weigher == "chars"
    assert s.llm_api_key == "sk-env"


def test_malformed_number_keeps_default(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("PROVIDER_TIMEOUT_S", "soon")
    assert Settings().provider_timeout_s == 30.0


def test_explicit_values_not_replaced_by_env(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("LLM_MODEL", "from-env")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
    s = Settings(llm_model="explicit", database_url="sqlite://")
    assert s.llm_model == "explicit"
    assert s.database_url == "sqlite://"


def test_routing_and_masking_from_env(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "routing")
    monkeypatch.setenv("ROUTING_DEFAULT", "Cloud")
    monkeypatch.setenv("ANONYMIZE", "ALWAYS")
    monkeypatch.setenv("OLLAMA_MODEL", "llama3.1:8b")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://gateway.test/v1")
    s = Settings()
    assert s.llm_provider == "routing"
    assert s.routing_default == "cloud"
    assert s.anonymize == "always"
    assert s.ollama_model == "llama3.1:8b"
    assert s.ollama_base_url == "http://localhost:11434"
    assert s.openai_base_url == "https://gateway.test/v1"
    assert s.llm_base_url == "https://gateway.test/v1"


def test_ollama_model_env_feeds_llm_model(monkeypatch):
    _clean(monkeypatch)
    monkeypatch.setenv("LLM_PROVIDER", "ollama")
    monkeypatch.setenv("OLLAMA_MODEL", "mistral:7b")
    assert Settings().llm_model == "mistral:7b"
