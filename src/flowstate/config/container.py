"""
Dependency injection container wiring the engine together.

The registry snapshot, instance store, orchestrator and session manager are
built lazily from settings. Nothing here is global: tests and the API server
each build their own container.
"""

import inspect
from contextlib import asynccontextmanager
from typing import Any, Callable

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)

Factory = Callable[["Container"], Any]


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Factory] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Factory) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a ready-made instance, taking precedence over any factory."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def cleanup(self) -> None:
        """Close every service built by this container that knows how to close."""
        for name, service in reversed(list(self._services.items())):
            close = getattr(service, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # Keep closing the rest
                logger.error(f"Error cleaning up {name}: {e}")

        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _registry_factory(c: Container):
        from ..core.registry import CapabilityRegistry, load_capability_modules

        registry = CapabilityRegistry()
        load_capability_modules(registry, c.settings.engine.capability_modules)
        return registry.freeze()

    def _store_factory(c: Container):
        from ..storage import create_instance_store

        return create_instance_store(c.settings.store)

    def _metrics_factory(c: Container):
        from ..observability.metrics import get_metrics_collector

        return get_metrics_collector()

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import FlowOrchestrator

        return FlowOrchestrator(
            registry=c.get("registry"),
            store=c.get("store"),
            engine_config=c.settings.engine,
            session_config=c.settings.session,
            metrics=c.get("metrics"),
        )

    def _session_manager_factory(c: Container):
        from ..core.session import SessionManager

        return SessionManager(
            c.get("orchestrator"), config=c.settings.session, metrics=c.get("metrics")
        )

    container.register_factory("registry", _registry_factory)
    container.register_factory("store", _store_factory)
    container.register_factory("metrics", _metrics_factory)
    container.register_factory("orchestrator", _orchestrator_factory)
    container.register_factory("session_manager", _session_manager_factory)

    return container
