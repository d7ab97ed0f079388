import asyncio

import pytest

from liminalflow.service.errors import ErrorKind, UnknownProviderError
from liminalflow.service.gateway import ModelGateway
from liminalflow.service.model_backend import EchoProvider, ProviderRequest
from tests.flow_helpers import ScriptedProvider


class ExplodingProvider(ScriptedProvider):
    async def complete(self, request):
        raise RuntimeError("socket closed unexpectedly")


def _gateway():
    gateway = ModelGateway(default_timeout_seconds=1.0)
    gateway.register(ScriptedProvider(name="alpha"), prefixes=["gpt-", "gpt-4"])
    gateway.register(ScriptedProvider(name="beta"), prefixes=["gpt-4o"])
    gateway.register(EchoProvider(models=("echo", "local-mini")))
    return gateway


class TestRouting:
    def test_longest_prefix_wins(self):
        gateway = _gateway()

        assert gateway.resolve("gpt-3.5").name == "alpha"
        assert gateway.resolve("gpt-4-turbo").name == "alpha"
        assert gateway.resolve("gpt-4o-mini").name == "beta"

    def test_routing_table_overrides_prefix(self):
        gateway = _gateway()
        gateway.route("gpt-4o-mini", "alpha")

        assert gateway.resolve("gpt-4o-mini").name == "alpha"

    def test_provider_qualified_ids_and_advertised_models(self):
        gateway = _gateway()

        assert gateway.resolve("beta/anything").name == "beta"
        assert gateway.resolve("local-mini").name == "echo"

    def test_unknown_model_raises(self):
        gateway = _gateway()

        with pytest.raises(UnknownProviderError):
            gateway.resolve("claude-like-model")
        with pytest.raises(UnknownProviderError):
            gateway.route("x", "missing-provider")

    def test_list_models(self):
        assert _gateway().list_models()["echo"] == ["echo", "local-mini"]


class TestComplete:
    @pytest.mark.asyncio
    async def test_fills_provider_and_latency(self):
        response = await _gateway().complete(ProviderRequest(prompt="hi", model="gpt-4o"))

        assert response.success
        assert response.provider == "beta"
        assert response.model == "gpt-4o"
        assert response.latency_ms >= 0

    @pytest.mark.asyncio
    async def test_timeout_becomes_timeout_kind(self):
        gateway = ModelGateway()
        gateway.register(ScriptedProvider(delay=1.0), prefixes=["slow-"])

        response = await gateway.complete(
            ProviderRequest(prompt="hi", model="slow-1", timeout_seconds=0.05)
        )

        assert response.error_kind is ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_signal_interrupts_call(self):
        gateway = ModelGateway()
        provider = ScriptedProvider(delay=5.0)
        gateway.register(provider, prefixes=["slow-"])
        cancel_event = asyncio.Event()

        call = asyncio.ensure_future(
            gateway.complete(ProviderRequest(prompt="hi", model="slow-1", cancel_event=cancel_event))
        )
        await asyncio.sleep(0.05)
        cancel_event.set()
        response = await asyncio.wait_for(call, timeout=1.0)

        assert response.error_kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_already_cancelled_skips_provider(self):
        gateway = ModelGateway()
        provider = ScriptedProvider()
        gateway.register(provider, prefixes=["m-"])
        cancel_event = asyncio.Event()
        cancel_event.set()

        response = await gateway.complete(ProviderRequest(prompt="hi", model="m-1", cancel_event=cancel_event))

        assert response.error_kind is ErrorKind.CANCELLED
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_exception_is_transient(self):
        gateway = ModelGateway()
        gateway.register(ExplodingProvider(name="boom"), prefixes=["boom-"])

        response = await gateway.complete(ProviderRequest(prompt="hi", model="boom-1"))

        assert response.error_kind is ErrorKind.TRANSIENT
        assert "socket closed" in response.error_message
