"""Tests for LLM providers: response parsing, retry policy, deadlines."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import httpx
import pytest

from assistant.config import Settings
from assistant.errors import InvalidRequest, ProviderFailure, Timeout
from assistant.services.metrics import Metrics
from assistant.services.provider import (
    FakeProvider,
    OllamaProvider,
    OpenAIProvider,
    RoutingProvider,
    get_provider,
)

MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "2+2?"}]


def _openai_ok(text="4"):
    return httpx.Response(200, json={
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": text}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 1},
    })


def _openai(handler, **kwargs):
    kwargs.setdefault("retry_backoff_s", 0)
    kwargs.setdefault("sleep", lambda s: None)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAIProvider("https://llm.test/v1", "gpt-4o-mini", api_key="sk-test", client=client, **kwargs)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_openai_parses_completion_and_usage():
    seen = []

    def handler(request):
        seen.append(request)
        return _openai_ok(" 4 ")

    provider = _openai(handler)
    completion = provider.generate(MESSAGES, {"temperature": 0.2})
    assert completion.text == "4"
    assert completion.model == "gpt-4o-mini"
    assert completion.prompt_tokens == 12
    assert completion.completion_tokens == 1
    assert completion.latency_ms >= 0

    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.2
    assert body["messages"] == MESSAGES


def test_transient_5xx_retried_once_then_succeeds():
    responses = [httpx.Response(503, text="overloaded"), _openai_ok()]
    calls = []

    def handler(request):
        calls.append(request)
        return responses.pop(0)

    metrics = Metrics()
    provider = _openai(handler, max_retries=1, metrics=metrics)
    assert provider.generate(MESSAGES).text == "4"
    assert len(calls) == 2
    assert metrics.counter("provider.retry") == 1
    assert metrics.counter("provider.failure") == 0


def test_retries_exhausted_raises_last_failure():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="boom")

    metrics = Metrics()
    provider = _openai(handler, max_retries=2, metrics=metrics)
    with pytest.raises(ProviderFailure) as exc:
        provider.generate(MESSAGES)
    assert exc.value.kind == "provider_error"
    assert exc.value.details["status"] == 500
    assert len(calls) == 3
    assert metrics.counter("provider.failure") == 1


def test_client_error_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text="bad model")

    provider = _openai(handler, max_retries=3)
    with pytest.raises(ProviderFailure) as exc:
        provider.generate(MESSAGES)
    assert exc.value.kind == "bad_request"
    assert len(calls) == 1


def test_connection_error_is_transient():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return _openai_ok()

    provider = _openai(handler, max_retries=1)
    assert provider.generate(MESSAGES).text == "4"
    assert len(attempts) == 2


def test_connection_error_exhausted_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    provider = _openai(handler, max_retries=0)
    with pytest.raises(ProviderFailure) as exc:
        provider.generate(MESSAGES)
    assert exc.value.kind == "unavailable"


def test_read_timeout_maps_to_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = _openai(handler, max_retries=2)
    with pytest.raises(Timeout):
        provider.generate(MESSAGES)


def test_deadline_already_passed_makes_no_call():
    calls = []

    def handler(request):
        calls.append(request)
        return _openai_ok()

    clock = FakeClock(100.0)
    provider = _openai(handler, clock=clock)
    with pytest.raises(Timeout):
        provider.generate(MESSAGES, deadline=99.0)
    assert calls == []


def test_retry_stops_at_deadline():
    clock = FakeClock(0.0)
    calls = []

    def handler(request):
        calls.append(request)
        clock.now += 10.0
        return httpx.Response(503, text="busy")

    provider = _openai(handler, max_retries=5, clock=clock)
    with pytest.raises(Timeout):
        provider.generate(MESSAGES, deadline=5.0)
    assert len(calls) == 1


def test_malformed_body_is_invalid_response():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    provider = _openai(handler)
    with pytest.raises(ProviderFailure) as exc:
        provider.generate(MESSAGES)
    assert exc.value.kind == "invalid_response"


def test_non_json_body_is_invalid_response():
    def handler(request):
        return httpx.Response(200, text="<html>not json</html>")

    provider = _openai(handler)
    with pytest.raises(ProviderFailure) as exc:
        provider.generate(MESSAGES)
    assert exc.value.kind == "invalid_response"


def test_ollama_payload_and_parse():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "model": "qwen2.5:7b-instruct",
            "message": {"role": "assistant", "content": "4\n"},
            "prompt_eval_count": 20,
            "eval_count": 2,
        })

    client = httpx.Client(transport=httpx.MockTransport(handler))
    provider = OllamaProvider("http://ollama.test", "qwen2.5:7b-instruct", client=client)
    completion = provider.generate(MESSAGES, {"temperature": 0.1})
    assert completion.text == "4"
    assert completion.prompt_tokens == 20
    assert completion.completion_tokens == 2
    payload = seen[0]
    assert payload["stream"] is False
    assert payload["model"] == "qwen2.5:7b-instruct"
    assert payload["options"] == {"temperature": 0.1}


def test_test_connection():
    def handler(request):
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": []})
        return httpx.Response(404)

    ok, message = _openai(handler).test_connection()
    assert ok is True
    assert message

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(down))
    ok, message = OllamaProvider("http://ollama.test", "m", client=client).test_connection()
    assert ok is False
    assert "ollama serve" in message


def test_fake_provider_scripted_errors():
    provider = FakeProvider(
        canned="fine",
        errors=[ProviderFailure(kind="unavailable", message="down")],
        max_retries=1,
        retry_backoff_s=0,
    )
    assert provider.generate(MESSAGES).text == "fine"
    assert len(provider.calls) == 2


def test_get_provider_by_name(monkeypatch):
    for name in ("LLM_PROVIDER", "LLM_BASE_URL", "LLM_MODEL"):
        monkeypatch.delenv(name, raising=False)
    assert isinstance(get_provider(Settings(llm_provider="ollama")), OllamaProvider)
    assert isinstance(get_provider(Settings(llm_provider="fake")), FakeProvider)
    openai = get_provider(Settings(llm_provider="openai", llm_api_key="k"))
    assert isinstance(openai, OpenAIProvider)
    assert openai.base_url == "https://api.openai.com/v1"


def _router(cloud_handler, default="local", **kwargs):
    local = FakeProvider(canned="from local", model="small")
    cloud = _openai(cloud_handler)
    kwargs.setdefault("retry_backoff_s", 0)
    kwargs.setdefault("sleep", lambda s: None)
    return local, RoutingProvider(local, cloud, default=default, **kwargs)


def test_routing_uses_default_route():
    local, router = _router(lambda request: _openai_ok("from cloud"))
    completion = router.generate(MESSAGES)
    assert completion.text == "from local"
    assert completion.model == "small"
    assert len(local.calls) == 1
    assert router.location_for({}) == "local"


def test_routing_route_param_selects_cloud_and_is_not_forwarded():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return _openai_ok("from cloud")

    local, router = _router(handler)
    completion = router.generate(MESSAGES, {"route": "cloud", "temperature": 0})
    assert completion.text == "from cloud"
    assert local.calls == []
    assert "route" not in seen[0]
    assert seen[0]["temperature"] == 0
    assert router.location_for({"route": "cloud"}) == "cloud"


def test_routing_retries_transient_target_failure():
    responses = [httpx.Response(503), _openai_ok("second try")]
    _, router = _router(lambda request: responses.pop(0), default="cloud", max_retries=1)
    assert router.generate(MESSAGES).text == "second try"


def test_routing_unknown_route_rejected():
    local, router = _router(lambda request: _openai_ok())
    with pytest.raises(InvalidRequest) as exc:
        router.location_for({"route": "moon"})
    assert exc.value.details["allowed"] == ["cloud", "local"]
    with pytest.raises(InvalidRequest):
        router.generate(MESSAGES, {"route": "moon"})
    assert local.calls == []


def test_routing_bad_default_rejected():
    with pytest.raises(ValueError):
        RoutingProvider(FakeProvider(), FakeProvider(), default="edge")


def test_routing_connection_reports_both_targets():
    def handler(request):
        return httpx.Response(500)

    _, router = _router(handler)
    ok, message = router.test_connection()
    assert ok is False
    assert message.startswith("local: Fake OK; cloud: ")


def test_get_provider_routing(monkeypatch):
    for name in ("LLM_PROVIDER", "ROUTING_DEFAULT", "OLLAMA_MODEL", "OPENAI_MODEL"):
        monkeypatch.delenv(name, raising=False)
    router = get_provider(Settings(llm_provider="routing", routing_default="cloud", llm_api_key="k"))
    assert isinstance(router, RoutingProvider)
    assert router.default == "cloud"
    assert isinstance(router.target("local"), OllamaProvider)
    assert isinstance(router.target("cloud"), OpenAIProvider)
    assert router.model == "gpt-4o-mini"
    assert router.location_for() == "cloud"
    router.close()
