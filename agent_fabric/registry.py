"""
Runtime Registry - Known backends and which of them work on this host.

Backends are registered explicitly; there is no import-time discovery.
"""

from __future__ import annotations

import asyncio
import logging

from agent_fabric.base import RuntimeBackend
from agent_fabric.config import FabricConfig
from agent_fabric.errors import BackendUnavailableError
from agent_fabric.events import EventBus
from agent_fabric.process import CommandRunner

logger = logging.getLogger("fabric.registry")


def default_backends(
    config: FabricConfig,
    events: EventBus | None = None,
    runner: CommandRunner | None = None,
) -> list[RuntimeBackend]:
    """The built-in backends, in registration order."""
    from agent_fabric.container import ContainerBackend
    from agent_fabric.tmux import TmuxBackend

    return [
        ContainerBackend(config, events, runner),
        TmuxBackend(config, events, runner),
    ]


class RuntimeRegistry:
    """
    Registry of backends by name.

    ``all_backends()`` keeps every registered backend so shutdown can clean
    up all of them; ``available()`` is the subset that passed detection.
    """

    def __init__(self) -> None:
        self._backends: dict[str, RuntimeBackend] = {}
        self._available: dict[str, RuntimeBackend] = {}

    def register(self, backend: RuntimeBackend) -> None:
        if backend.name in self._backends:
            raise ValueError(f"Runtime already registered: {backend.name}")
        self._backends[backend.name] = backend
        logger.debug(f"Registered runtime: {backend.name}")

    def get(self, name: str) -> RuntimeBackend | None:
        """Get an available backend by name."""
        return self._available.get(name)

    def is_available(self, name: str) -> bool:
        return name in self._available

    def available(self) -> dict[str, RuntimeBackend]:
        return dict(self._available)

    def all_backends(self) -> list[RuntimeBackend]:
        return list(self._backends.values())

    async def detect_available_runtimes(self) -> dict[str, RuntimeBackend]:
        """
        Probe every registered backend once, concurrently.

        Returns:
            Backends that reported themselves available

        Raises:
            BackendUnavailableError: No backend is available
        """
        logger.info("Detecting available runtimes...")
        backends = list(self._backends.values())
        results = await asyncio.gather(
            *(backend.check_availability() for backend in backends),
            return_exceptions=True,
        )

        self._available = {}
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                logger.warning(f"Runtime {backend.name} availability check failed: {result}")
                backend.is_available = False
            elif result:
                logger.info(f"Runtime {backend.name} is available")
                backend.is_available = True
                self._available[backend.name] = backend
            else:
                logger.info(f"Runtime {backend.name} is not available")
                backend.is_available = False

        if not self._available:
            raise BackendUnavailableError(
                "No runtime backend is available on this host. "
                "Install docker or tmux."
            )
        return self.available()
