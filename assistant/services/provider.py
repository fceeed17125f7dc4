"""LLM provider interface. OpenAI-compatible primary; Ollama optional."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from assistant.errors import InvalidRequest, ProviderFailure, Timeout
from assistant.services import metrics as m
from assistant.services.metrics import Metrics
from assistant.types import Completion

logger = logging.getLogger("assistant.provider")

Message = Dict[str, str]  # {"role": "system" | "user" | "assistant", "content": ...}


class _Transient(Exception):
    """Attempt failed in a way worth one more try."""

    def __init__(self, failure: ProviderFailure):
        super().__init__(failure.message)
        self.failure = failure


class LLMProvider(ABC):
    """
    Abstract chat provider.

    generate() performs at most max_retries retries on transient failures
    (connection errors, 5xx) with a fixed backoff, and never runs past the
    caller's deadline (a time.monotonic() value).
    """

    name: str = "base"
    location: str = "cloud"  # where prompts go: "local" (this machine) or "cloud"

    def __init__(
        self,
        model: str,
        *,
        timeout_s: float = 30.0,
        max_retries: int = 1,
        retry_backoff_s: float = 0.25,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.model = model
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.retry_backoff_s = retry_backoff_s
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep

    def generate(
        self,
        messages: Sequence[Message],
        params: Optional[Mapping[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> Completion:
        """Returns a Completion or raises ProviderFailure / Timeout."""
        if deadline is None:
            deadline = self._clock() + self.timeout_s
        params = dict(params or {})
        attempt = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._count(m.PROVIDER_FAILURE)
                raise Timeout("Model request timed out", {"attempts": attempt, "provider": self.name})
            attempt += 1
            start = self._clock()
            try:
                completion = self._attempt(messages, params, min(remaining, self.timeout_s))
            except _Transient as t:
                if attempt > self.max_retries:
                    self._count(m.PROVIDER_FAILURE)
                    raise t.failure from None
                logger.warning("%s attempt %d failed (%s), retrying", self.name, attempt, t.failure.message)
                self._count(m.PROVIDER_RETRY)
                backoff = min(self.retry_backoff_s, max(0.0, deadline - self._clock()))
                if backoff > 0:
                    self._sleep(backoff)
                continue
            except (ProviderFailure, Timeout):
                self._count(m.PROVIDER_FAILURE)
                raise
            latency_ms = (self._clock() - start) * 1000.0
            if self._metrics is not None:
                self._metrics.observe(m.PROVIDER_LATENCY_MS, latency_ms)
            return Completion(
                text=completion.text,
                model=completion.model or self.model,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                latency_ms=round(latency_ms, 3),
            )

    def location_for(self, params: Optional[Mapping[str, Any]] = None) -> str:
        """Where a request with these params would be sent: "local" or "cloud"."""
        return self.location

    def _count(self, name: str) -> None:
        if self._metrics is not None:
            self._metrics.incr(name)

    @abstractmethod
    def _attempt(self, messages: Sequence[Message], params: Dict[str, Any], timeout_s: float) -> Completion:
        """One provider call. Raises _Transient, ProviderFailure or Timeout."""
        ...

    @abstractmethod
    def test_connection(self) -> tuple[bool, str]:
        """Test if provider is available. Returns (ok, message)."""
        ...


class HttpProvider(LLMProvider):
    """Shared httpx plumbing: error mapping and JSON decoding."""

    def __init__(self, base_url: str, model: str, *, client: Optional[httpx.Client] = None, **kwargs):
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client()

    def _headers(self) -> Dict[str, str]:
        return {}

    def _post(self, path: str, payload: Dict[str, Any], timeout_s: float) -> Dict[str, Any]:
        try:
            resp = self._client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(),
                timeout=timeout_s,
            )
        except httpx.TimeoutException as e:
            raise Timeout("Model request timed out", {"error": str(e), "provider": self.name})
        except httpx.TransportError as e:
            raise _Transient(ProviderFailure(
                kind="unavailable",
                message=f"Cannot reach {self.name}",
                details={"error": str(e)},
            ))
        if resp.status_code >= 500:
            raise _Transient(ProviderFailure(
                kind="provider_error",
                message=f"{self.name} returned {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:200]},
            ))
        if resp.status_code != 200:
            raise ProviderFailure(
                kind="bad_request",
                message=f"{self.name} returned {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:200]},
            )
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise ProviderFailure(kind="invalid_response", message="Invalid response from model", details={"error": str(e)})

    def close(self) -> None:
        self._client.close()


class OpenAIProvider(HttpProvider):
    """OpenAI-compatible /chat/completions endpoint."""

    name = "openai"

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None, **kwargs):
        super().__init__(base_url, model, **kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _attempt(self, messages, params, timeout_s):
        payload = {**params, "model": params.get("model", self.model), "messages": list(messages)}
        data = self._post("/chat/completions", payload, timeout_s)
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderFailure(kind="invalid_response", message="Response has no message content")
        if not text:
            raise ProviderFailure(kind="invalid_response", message="Empty response from model")
        usage = data.get("usage") or {}
        return Completion(
            text=text.strip(),
            model=data.get("model", ""),
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
        )

    def test_connection(self) -> tuple[bool, str]:
        try:
            resp = self._client.get(f"{self.base_url}/models", headers=self._headers(), timeout=5)
            if resp.status_code == 200:
                return True, "Provider available"
            return False, f"Provider returned {resp.status_code}"
        except httpx.HTTPError as e:
            return False, str(e)


class OllamaProvider(HttpProvider):
    """Ollama /api/chat endpoint."""

    name = "ollama"
    location = "local"

    def _attempt(self, messages, params, timeout_s):
        model = params.get("model", self.model)
        options = {k: v for k, v in params.items() if k != "model"}
        payload = {"model": model, "messages": list(messages), "stream": False}
        if options:
            payload["options"] = options
        data = self._post("/api/chat", payload, timeout_s)
        text = (data.get("message") or {}).get("content", "")
        if not text:
            raise ProviderFailure(kind="invalid_response", message="Empty response from model")
        return Completion(
            text=text.strip(),
            model=data.get("model", model),
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )

    def test_connection(self) -> tuple[bool, str]:
        try:
            resp = self._client.get(f"{self.base_url}/api/tags", timeout=5)
            if resp.status_code == 200:
                return True, "Ollama available"
            return False, f"Ollama returned {resp.status_code}"
        except httpx.ConnectError:
            return False, "Ollama not detected. Install and run: ollama serve"
        except httpx.HTTPError as e:
            return False, str(e)


class RoutingProvider(LLMProvider):
    """
    Sends each request to a local or a cloud provider.

    The route comes from the "route" request param when present, otherwise
    from the configured default. Retries and the deadline are handled here
    once; the targets only perform single attempts.
    """

    name = "routing"
    ROUTE_PARAM = "route"

    def __init__(self, local: LLMProvider, cloud: LLMProvider, *, default: str = "local", **kwargs):
        self._targets: Dict[str, LLMProvider] = {"local": local, "cloud": cloud}
        if default not in self._targets:
            raise ValueError(f"default route must be local or cloud, got {default!r}")
        self.default = default
        super().__init__(self._targets[default].model, **kwargs)

    def location_for(self, params: Optional[Mapping[str, Any]] = None) -> str:
        route = (params or {}).get(self.ROUTE_PARAM) or self.default
        if route not in self._targets:
            raise InvalidRequest(f"Unknown route {route!r}", {"allowed": sorted(self._targets)})
        return route

    def target(self, route: str) -> LLMProvider:
        return self._targets[route]

    def _attempt(self, messages, params, timeout_s):
        route = self.location_for(params)
        target = self._targets[route]
        rest = {k: v for k, v in params.items() if k != self.ROUTE_PARAM}
        logger.debug("Routing request to %s (%s)", route, target.name)
        completion = target._attempt(messages, rest, timeout_s)
        if not completion.model:
            completion = replace(completion, model=target.model)
        return completion

    def test_connection(self) -> tuple[bool, str]:
        results = {route: p.test_connection() for route, p in self._targets.items()}
        ok = all(r[0] for r in results.values())
        return ok, "; ".join(f"{route}: {msg}" for route, (_, msg) in results.items())

    def close(self) -> None:
        for p in self._targets.values():
            if hasattr(p, "close"):
                p.close()


class FakeProvider(LLMProvider):
    """Test double: returns canned text, raises scripted errors, can block."""

    name = "fake"

    def __init__(
        self,
        canned: str = "ok",
        *,
        errors: Optional[List[Exception]] = None,
        delay_s: float = 0.0,
        gate=None,
        responder: Optional[Callable[[Sequence[Message]], str]] = None,
        location: str = "local",
        **kwargs,
    ):
        kwargs.setdefault("max_retries", 0)
        model = kwargs.pop("model", "fake-model")
        super().__init__(model, **kwargs)
        self.location = location
        self.canned = canned
        self.errors = list(errors or [])
        self.delay_s = delay_s
        self.gate = gate  # threading.Event the call waits on, if set
        self.responder = responder
        self.calls: List[List[Message]] = []

    def _attempt(self, messages, params, timeout_s):
        self.calls.append(list(messages))
        if self.gate is not None:
            self.gate.wait(timeout_s)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.errors:
            err = self.errors.pop(0)
            if isinstance(err, ProviderFailure) and err.kind in ("unavailable", "provider_error"):
                raise _Transient(err)
            raise err
        text = self.responder(messages) if self.responder else self.canned
        return Completion(text=text, model=self.model, prompt_tokens=0, completion_tokens=0)

    def test_connection(self) -> tuple[bool, str]:
        return True, "Fake OK"


def get_provider(settings, metrics: Optional[Metrics] = None) -> LLMProvider:
    """Build the provider named by settings.llm_provider."""
    common = dict(
        timeout_s=settings.provider_timeout_s,
        max_retries=settings.provider_max_retries,
        retry_backoff_s=settings.provider_retry_backoff_s,
        metrics=metrics,
    )
    name = settings.llm_provider
    if name == "ollama":
        return OllamaProvider(settings.llm_base_url, settings.llm_model, **common)
    if name == "routing":
        default = settings.routing_default
        if default not in ("local", "cloud"):
            logger.warning("Unknown routing default %r, using local", default)
            default = "local"
        # Targets only make single attempts; the router owns retries and metrics.
        local = OllamaProvider(settings.ollama_base_url, settings.ollama_model, timeout_s=settings.provider_timeout_s)
        cloud = OpenAIProvider(
            settings.openai_base_url, settings.openai_model,
            api_key=settings.llm_api_key, timeout_s=settings.provider_timeout_s,
        )
        return RoutingProvider(local, cloud, default=default, **common)
    if name == "fake":
        return FakeProvider(model=settings.llm_model, **common)
    if name != "openai":
        logger.warning("Unknown provider %r, using openai", name)
    return OpenAIProvider(settings.llm_base_url, settings.llm_model, api_key=settings.llm_api_key, **common)
