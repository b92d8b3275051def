"""Dispatch table from provider kind to (adapter, transport)."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from chat_relay.config import ModelProvider, TransportSettings
from chat_relay.exceptions import ConfigError
from chat_relay.llm.adapters import GenericAdapter, LocalOpenAIAdapter, OllamaAdapter
from chat_relay.llm.adapters.base import ProviderAdapter
from chat_relay.llm.pool import WorkerPool
from chat_relay.llm.transport import StreamingTransport

_logger = logging.getLogger(__name__)

LOCAL_OPENAI_PROVIDERS = (ModelProvider.VLLM, ModelProvider.LMSTUDIO)


@dataclass(frozen=True)
class Route:
    adapter: ProviderAdapter
    transport: StreamingTransport


class AdapterRegistry:
    """Maps each ``ModelProvider`` to the adapter and transport serving it.

    Providers without an explicit registration fall back to the default
    route (the generic OpenAI-compatible adapter in ``from_settings``).
    """

    def __init__(self, default: Route | None = None) -> None:
        self._routes: dict[ModelProvider, Route] = {}
        self._default = default

    def register(
        self,
        providers: ModelProvider | tuple[ModelProvider, ...],
        adapter: ProviderAdapter,
        transport: StreamingTransport,
    ) -> Route:
        if isinstance(providers, ModelProvider):
            providers = (providers,)
        route = Route(adapter, transport)
        for provider in providers:
            self._routes[provider] = route
            _logger.debug("Registered %s -> %s/%s",
                          provider.value, adapter.name, transport.name)
        return route

    def set_default(self, adapter: ProviderAdapter, transport: StreamingTransport) -> Route:
        self._default = Route(adapter, transport)
        return self._default

    def route_for(self, provider: ModelProvider) -> Route:
        route = self._routes.get(provider, self._default)
        if route is None:
            raise ConfigError(f"No adapter registered for provider: {provider.value}")
        return route

    def routes(self) -> list[Route]:
        """Distinct routes, default included."""
        seen: list[Route] = []
        for route in [*self._routes.values(), self._default]:
            if route is not None and all(route is not r for r in seen):
                seen.append(route)
        return seen

    def reset(self) -> None:
        """Clear conversation state held by any adapter."""
        for route in self.routes():
            route.adapter.reset()

    def close(self) -> None:
        for route in self.routes():
            route.transport.close()

    @classmethod
    def from_settings(
        cls,
        settings: TransportSettings | None = None,
        client: httpx.Client | None = None,
    ) -> AdapterRegistry:
        """Standard layout: one pool per transport family.

        * generic: every hosted provider and custom endpoints
        * ollama:  Ollama's native API
        * local:   vLLM and LM Studio
        """
        s = settings or TransportSettings()

        def transport(name: str) -> StreamingTransport:
            pool = WorkerPool(
                name,
                core_workers=s.core_workers,
                max_workers=s.max_workers,
                keep_alive=s.keep_alive,
                queue_capacity=s.queue_capacity,
                submit_timeout=s.submit_timeout,
            )
            return StreamingTransport(
                pool,
                connect_timeout=s.connect_timeout,
                read_timeout=s.read_timeout,
                client=client,
            )

        registry = cls()
        registry.set_default(GenericAdapter(), transport("generic"))
        registry.register(
            ModelProvider.OLLAMA, OllamaAdapter(), transport("ollama"))
        registry.register(
            LOCAL_OPENAI_PROVIDERS,
            LocalOpenAIAdapter(read_timeout=s.local_read_timeout),
            transport("local"),
        )
        return registry
