from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from liminalflow.logging import get_logger, sanitize_error_message
from liminalflow.service.errors import ErrorKind

logger = get_logger(__name__)

# USD per 1K tokens as (input, output); matched by longest model id prefix
DEFAULT_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4-turbo": (0.01, 0.03),
    "gpt-4": (0.03, 0.06),
    "gpt-3.5-turbo": (0.0005, 0.0015),
    "o1-mini": (0.003, 0.012),
    "o1": (0.015, 0.06),
    "o3-mini": (0.0011, 0.0044),
}


def compute_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    pricing: Optional[Dict[str, Tuple[float, float]]] = None,
) -> float:
    table = DEFAULT_PRICING if pricing is None else pricing
    best: Optional[str] = None
    for prefix in table:
        if model.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    if best is None:
        return 0.0
    input_rate, output_rate = table[best]
    return round(input_tokens / 1000 * input_rate + output_tokens / 1000 * output_rate, 8)


@dataclass
class ProviderRequest:
    prompt: str
    model: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    system_message: Optional[str] = None
    timeout_seconds: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None

    def messages(self) -> List[dict]:
        messages: List[dict] = []
        if self.system_message:
            messages.append({"role": "system", "content": self.system_message})
        messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass
class ProviderResponse:
    success: bool
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    latency_ms: float = 0.0
    provider: Optional[str] = None
    model: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def failure(
        cls, kind: ErrorKind, message: str, *, provider: Optional[str] = None
    ) -> "ProviderResponse":
        return cls(
            success=False,
            error_kind=kind,
            error_message=sanitize_error_message(message),
            provider=provider,
        )


class ModelProvider(Protocol):
    """Interface for pluggable completion providers."""

    name: str

    async def complete(self, request: ProviderRequest) -> ProviderResponse: ...

    def list_models(self) -> List[str]: ...


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status from a provider API onto an error kind."""
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.INVALID_REQUEST


def native_model_id(model: str, provider_name: str) -> str:
    """Strip a ``provider/`` qualifier from a model id."""
    prefix = f"{provider_name}/"
    if model.startswith(prefix):
        return model[len(prefix) :]
    return model


class EchoProvider:
    """Deterministic local provider that answers with the prompt itself.

    Token counts are word counts, cost is zero. Used for dry runs, local
    development and tests.
    """

    name = "echo"

    def __init__(self, models: Sequence[str] = ("echo",)) -> None:
        self._models = list(models)

    def list_models(self) -> List[str]:
        return list(self._models)

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        start = time.monotonic()
        content = request.prompt
        return ProviderResponse(
            success=True,
            content=content,
            input_tokens=len(request.prompt.split())
            + len((request.system_message or "").split()),
            output_tokens=len(content.split()),
            cost=0.0,
            latency_ms=(time.monotonic() - start) * 1000,
            provider=self.name,
            model=request.model,
        )


class _HttpChatProvider:
    """Shared httpx plumbing for chat-style HTTP providers."""

    name = "http"
    DEFAULT_TIMEOUT_SECONDS = 60.0

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        models: Sequence[str] = (),
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.connect_timeout = connect_timeout
        self._models = list(models)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def list_models(self) -> List[str]:
        return list(self._models)

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client for API calls."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.DEFAULT_TIMEOUT_SECONDS, connect=self.connect_timeout),
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _payload(self, model: str, request: ProviderRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse(self, model: str, data: Dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        model = native_model_id(request.model, self.name)
        timeout_seconds = request.timeout_seconds or self.DEFAULT_TIMEOUT_SECONDS
        start = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.post(
                self._endpoint(),
                json=self._payload(model, request),
                timeout=httpx.Timeout(timeout_seconds, connect=self.connect_timeout),
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            kind = classify_status(e.response.status_code)
            logger.warning(
                "provider_api_error",
                provider=self.name,
                model=model,
                status_code=e.response.status_code,
                error_kind=kind.value,
            )
            return ProviderResponse.failure(
                kind,
                f"{self.name} returned {e.response.status_code}: {e.response.text[:200]}",
                provider=self.name,
            )
        except httpx.TimeoutException as e:
            logger.warning("provider_timeout", provider=self.name, model=model, error=str(e))
            return ProviderResponse.failure(
                ErrorKind.TIMEOUT, f"{self.name} request timed out", provider=self.name
            )
        except httpx.TransportError as e:
            logger.warning(
                "provider_transport_error", provider=self.name, model=model, error=str(e)
            )
            return ProviderResponse.failure(
                ErrorKind.TRANSIENT, f"{self.name} transport error: {e}", provider=self.name
            )
        except ValueError as e:
            # undecodable body
            return ProviderResponse.failure(
                ErrorKind.TRANSIENT, f"{self.name} returned invalid JSON: {e}", provider=self.name
            )

        parsed = self._parse(model, data)
        parsed.latency_ms = (time.monotonic() - start) * 1000
        parsed.provider = self.name
        parsed.model = model
        return parsed


class OpenAICompatibleProvider(_HttpChatProvider):
    """OpenAI-style ``/chat/completions`` client with token based pricing."""

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        *,
        api_key: Optional[str] = None,
        name: Optional[str] = None,
        pricing: Optional[Dict[str, Tuple[float, float]]] = None,
        models: Sequence[str] = (),
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            api_key=api_key,
            models=models,
            connect_timeout=connect_timeout,
            transport=transport,
        )
        if name:
            self.name = name
        self.pricing = pricing

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _payload(self, model: str, request: ProviderRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": request.messages()}
        for key in ("temperature", "max_tokens", "top_p", "stop", "presence_penalty", "frequency_penalty"):
            if key in request.parameters:
                payload[key] = request.parameters[key]
        return payload

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        if not self.is_configured:
            return ProviderResponse.failure(
                ErrorKind.AUTH, f"{self.name} api key is not configured", provider=self.name
            )
        return await super().complete(request)

    def _parse(self, model: str, data: Dict[str, Any]) -> ProviderResponse:
        choices = data.get("choices") or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("provider_no_choices", provider=self.name, model=model)
            content = ""
        else:
            content = (first_choice.get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        input_tokens = int(usage.get("prompt_tokens", 0) or 0)
        output_tokens = int(usage.get("completion_tokens", 0) or 0)
        return ProviderResponse(
            success=True,
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=compute_cost(model, input_tokens, output_tokens, self.pricing),
        )


class OllamaProvider(_HttpChatProvider):
    """Local Ollama server via ``/api/chat``; local inference has no cost."""

    name = "ollama"

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def _payload(self, model: str, request: ProviderRequest) -> Dict[str, Any]:
        # model ids are routed as "ollama-<name>"
        if model.startswith("ollama-"):
            model = model[len("ollama-") :]
        options = {
            key: value
            for key, value in request.parameters.items()
            if key in {"temperature", "top_p", "seed", "num_predict"}
        }
        if "max_tokens" in request.parameters:
            options["num_predict"] = request.parameters["max_tokens"]
        return {
            "model": model,
            "messages": request.messages(),
            "stream": False,
            "options": options,
        }

    def _parse(self, model: str, data: Dict[str, Any]) -> ProviderResponse:
        message = data.get("message") or {}
        return ProviderResponse(
            success=True,
            content=message.get("content") or "",
            input_tokens=int(data.get("prompt_eval_count", 0) or 0),
            output_tokens=int(data.get("eval_count", 0) or 0),
            cost=0.0,
        )
