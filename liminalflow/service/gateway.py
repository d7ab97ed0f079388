from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Sequence

from liminalflow.logging import get_logger
from liminalflow.service.errors import ErrorKind, UnknownProviderError
from liminalflow.service.model_backend import (
    ModelProvider,
    ProviderRequest,
    ProviderResponse,
)

logger = get_logger(__name__)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30.0


class ModelGateway:
    """Routes completion requests to the provider that serves the model.

    Resolution order for a model id:

    1. explicit routing table entry (exact model id)
    2. ``provider/model`` qualified id naming a registered provider
    3. longest registered prefix
    4. a provider advertising the model in ``list_models()``

    Anything else raises :class:`UnknownProviderError`; there is no silent
    fallback to an arbitrary provider.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self.providers: Dict[str, ModelProvider] = {}
        self._prefixes: Dict[str, str] = {}
        self._routing_table: Dict[str, str] = {}

    def register(self, provider: ModelProvider, *, prefixes: Sequence[str] = ()) -> None:
        self.providers[provider.name] = provider
        for prefix in prefixes:
            self._prefixes[prefix] = provider.name
        logger.info(
            "provider_registered", provider=provider.name, prefixes=list(prefixes)
        )

    def route(self, model_id: str, provider_name: str) -> None:
        """Pin ``model_id`` to a registered provider."""
        if provider_name not in self.providers:
            raise UnknownProviderError(
                f"provider {provider_name} is not registered",
                detail={"provider": provider_name},
            )
        self._routing_table[model_id] = provider_name

    def resolve(self, model_id: str) -> ModelProvider:
        if not model_id:
            raise UnknownProviderError("model id is required")
        pinned = self._routing_table.get(model_id)
        if pinned:
            return self.providers[pinned]
        if "/" in model_id:
            qualifier = model_id.split("/", 1)[0]
            if qualifier in self.providers:
                return self.providers[qualifier]
        best: Optional[str] = None
        for prefix in self._prefixes:
            if model_id.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is not None:
            return self.providers[self._prefixes[best]]
        for provider in self.providers.values():
            if model_id in provider.list_models():
                return provider
        raise UnknownProviderError(
            f"no provider registered for model {model_id}", detail={"model": model_id}
        )

    def list_models(self) -> Dict[str, List[str]]:
        return {name: provider.list_models() for name, provider in self.providers.items()}

    async def complete(self, request: ProviderRequest) -> ProviderResponse:
        """Call the resolved provider, enforcing timeout and cancellation.

        Provider failures come back as unsuccessful responses carrying an
        :class:`ErrorKind`; only routing failures raise.
        """
        provider = self.resolve(request.model)
        cancel_event = request.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            return ProviderResponse.failure(
                ErrorKind.CANCELLED, "execution cancelled", provider=provider.name
            )

        timeout = request.timeout_seconds or self.default_timeout_seconds
        start = time.monotonic()
        call = asyncio.ensure_future(provider.complete(request))
        waiters = {call}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if call not in done:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            if cancel_event is not None and cancel_event.is_set():
                logger.info("provider_call_cancelled", provider=provider.name, model=request.model)
                return ProviderResponse.failure(
                    ErrorKind.CANCELLED, "execution cancelled", provider=provider.name
                )
            logger.warning(
                "provider_call_timeout",
                provider=provider.name,
                model=request.model,
                timeout_seconds=timeout,
            )
            return ProviderResponse.failure(
                ErrorKind.TIMEOUT,
                f"{provider.name} did not answer within {timeout:g}s",
                provider=provider.name,
            )

        exc = call.exception()
        if exc is not None:
            logger.error(
                "provider_call_error",
                provider=provider.name,
                model=request.model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ProviderResponse.failure(
                ErrorKind.TRANSIENT, f"{provider.name} failed: {exc}", provider=provider.name
            )

        response = call.result()
        response.provider = response.provider or provider.name
        response.model = response.model or request.model
        if not response.latency_ms:
            response.latency_ms = (time.monotonic() - start) * 1000
        logger.debug(
            "provider_call_finished",
            provider=response.provider,
            model=response.model,
            success=response.success,
            latency_ms=round(response.latency_ms, 2),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        return response
