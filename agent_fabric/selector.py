"""
Runtime Selector - Picks the active backend.

"auto" walks the fallback chain (container first by default) and takes the
first available backend. An explicit preference that is unavailable or
unknown falls back to "auto" with a warning instead of failing.
"""

from __future__ import annotations

import logging

from agent_fabric.base import RuntimeBackend
from agent_fabric.errors import BackendUnavailableError, SelectionError
from agent_fabric.events import EventBus, EventType
from agent_fabric.registry import RuntimeRegistry

logger = logging.getLogger("fabric.selector")

AUTO = "auto"


class RuntimeSelector:
    """Chooses, initializes and switches the active backend."""

    def __init__(
        self,
        registry: RuntimeRegistry,
        fallback_chain: list[str] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.fallback_chain = list(fallback_chain or ["container", "tmux"])
        self.events = events
        self._active: RuntimeBackend | None = None

    @property
    def active(self) -> RuntimeBackend | None:
        return self._active

    def resolve(self, preference: str = AUTO) -> RuntimeBackend:
        """
        Decide which backend a preference maps to, without initializing it.

        Raises:
            BackendUnavailableError: Nothing in the chain is available
        """
        if preference and preference != AUTO:
            backend = self.registry.get(preference)
            if backend is not None:
                return backend
            logger.warning(f"Preferred runtime {preference} not available, falling back to auto")

        for name in self.fallback_chain:
            backend = self.registry.get(name)
            if backend is not None:
                return backend

        raise BackendUnavailableError(
            f"No runtime in fallback chain {self.fallback_chain} is available"
        )

    async def select(self, preference: str = AUTO) -> RuntimeBackend:
        """
        Select and initialize a backend.

        Raises:
            BackendUnavailableError: Nothing suitable is available
            SelectionError: The chosen backend failed to initialize
        """
        backend = self.resolve(preference)
        try:
            await backend.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize runtime {backend.name}: {e}")
            raise SelectionError(backend.name, str(e), cause=e) from e

        self._active = backend
        logger.info(f"Selected runtime: {backend.name}")
        if self.events is not None:
            await self.events.emit(
                EventType.RUNTIME_SELECTED,
                {
                    "runtime": backend.name,
                    "preference": preference,
                    "capabilities": backend.get_capabilities().to_dict(),
                },
                source_id="selector",
            )
        return backend

    async def switch(self, name: str) -> RuntimeBackend:
        """
        Switch the active backend.

        The current backend is shut down first, which destroys its agents
        and teams.

        Raises:
            BackendUnavailableError: The target is unknown or unavailable
            SelectionError: The target failed to initialize
        """
        if self._active is not None and self._active.name == name:
            return self._active

        target = self.registry.get(name)
        if target is None:
            raise BackendUnavailableError(f"Runtime {name} is not available", runtime=name)

        previous = self._active
        if previous is not None:
            logger.info(f"Switching runtime: {previous.name} -> {name}")
            await previous.shutdown()
            self._active = None

        try:
            await target.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize runtime {name}: {e}")
            raise SelectionError(name, str(e), cause=e) from e
        self._active = target

        if self.events is not None:
            await self.events.emit(
                EventType.RUNTIME_SWITCHED,
                {
                    "from_runtime": previous.name if previous else None,
                    "to_runtime": name,
                    "from_capabilities": previous.get_capabilities().to_dict() if previous else None,
                    "to_capabilities": target.get_capabilities().to_dict(),
                },
                source_id="selector",
            )
        return target

    def clear(self) -> None:
        self._active = None
