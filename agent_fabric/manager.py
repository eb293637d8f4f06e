"""
Runtime Manager - Single entry point for the orchestration layer.

Registers the backends, detects which ones work on this host, selects the
active one and routes every lifecycle call to it.

Usage:
    manager = RuntimeManager(FabricConfig(preference="auto"))
    await manager.initialize()
    session = await manager.create_agent("fe-1", {"agentType": "frontend-engineer"})
    result = await manager.execute_command("fe-1", "npm test", CommandOptions(timeout=300))
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from agent_fabric.base import RuntimeBackend
from agent_fabric.config import FabricConfig, get_fabric_config
from agent_fabric.errors import DuplicateAgentError, NotInitializedError
from agent_fabric.events import EventBus, EventType
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    AgentStatus,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    TeamWorkspace,
    TransferReport,
)
from agent_fabric.process import CommandRunner
from agent_fabric.registry import RuntimeRegistry, default_backends
from agent_fabric.resources import host_info
from agent_fabric.selector import AUTO, RuntimeSelector

logger = logging.getLogger("fabric.manager")

# What each built-in backend needs from the host
RUNTIME_REQUIREMENTS: dict[str, list[str]] = {
    "container": ["docker CLI on PATH", "reachable docker daemon (docker info)"],
    "tmux": ["tmux on PATH (3.0+ for per-session environment)"],
}


class RuntimeManager:
    """
    Facade over the registry, selector and active backend.

    There is no global instance; construct one and pass it around.
    """

    def __init__(
        self,
        config: FabricConfig | None = None,
        events: EventBus | None = None,
        backends: list[RuntimeBackend] | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.config = config or get_fabric_config()
        self.events = events or EventBus()
        self.registry = RuntimeRegistry()
        self.selector = RuntimeSelector(self.registry, self.config.fallback_chain, self.events)
        self.preference = self.config.preference

        for backend in backends if backends is not None else default_backends(
            self.config, self.events, runner
        ):
            self.registry.register(backend)

        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, preference: str | None = None) -> RuntimeBackend:
        """
        Detect available backends and select the active one.

        Raises:
            BackendUnavailableError: No backend works on this host
            SelectionError: The selected backend failed to initialize
        """
        if self._initialized and self.selector.active is not None:
            return self.selector.active

        if preference is not None:
            self.preference = preference

        logger.info("Initializing runtime manager...")
        available = await self.registry.detect_available_runtimes()
        backend = await self.selector.select(self.preference)
        self._initialized = True

        await self.events.emit(
            EventType.RUNTIME_INITIALIZED,
            {
                "active_runtime": backend.name,
                "available_runtimes": sorted(available),
                "preference": self.preference,
            },
            source_id="manager",
        )
        logger.info(f"Runtime manager initialized with {backend.name} runtime")
        return backend

    def _active(self, operation: str) -> RuntimeBackend:
        backend = self.selector.active
        if not self._initialized or backend is None:
            raise NotInitializedError(operation)
        return backend

    # ========================================================================
    # Lifecycle proxies
    # ========================================================================

    async def create_agent(
        self,
        agent_id: str,
        config: AgentConfig | dict[str, Any],
    ) -> AgentSession:
        backend = self._active("create_agent")
        for other in self.registry.all_backends():
            if other.has_agent(agent_id):
                raise DuplicateAgentError(agent_id, other.name)
        return await backend.create_agent(agent_id, config)

    async def execute_command(
        self,
        agent_id: str,
        command: str,
        options: CommandOptions | None = None,
    ) -> CommandResult:
        return await self._active("execute_command").execute_command(agent_id, command, options)

    async def transfer_files(
        self,
        from_agent_id: str,
        to_agent_id: str,
        file_names: list[str],
    ) -> TransferReport:
        return await self._active("transfer_files").transfer_files(
            from_agent_id, to_agent_id, file_names
        )

    async def get_agent_status(self, agent_id: str) -> AgentStatus:
        return await self._active("get_agent_status").get_agent_status(agent_id)

    async def destroy_agent(self, agent_id: str) -> None:
        await self._active("destroy_agent").destroy_agent(agent_id)

    async def reset_agent(self, agent_id: str) -> AgentSession:
        return await self._active("reset_agent").reset_agent(agent_id)

    async def create_team_workspace(
        self,
        team_id: str,
        config: dict[str, Any] | None = None,
    ) -> TeamWorkspace:
        return await self._active("create_team_workspace").create_team_workspace(team_id, config)

    async def destroy_team_workspace(self, team_id: str) -> None:
        await self._active("destroy_team_workspace").destroy_team_workspace(team_id)

    def list_agents(self) -> list[AgentSession]:
        return self._active("list_agents").list_agents()

    def get_capabilities(self) -> CapabilitySet:
        return self._active("get_capabilities").get_capabilities()

    # ========================================================================
    # Runtime selection
    # ========================================================================

    async def switch_runtime(self, name: str) -> RuntimeBackend:
        """Switch the active backend. Agents of the old backend are destroyed."""
        self._active("switch_runtime")
        return await self.selector.switch(name)

    async def set_preference(self, preference: str, apply: bool = False) -> str:
        """
        Change the runtime preference.

        Args:
            preference: "auto" or a backend name
            apply: Switch now if the preference resolves to another backend

        Returns:
            Name of the backend the preference resolves to, or the stored
            preference itself before initialize() has detected backends
        """
        previous = self.preference
        self.preference = preference or AUTO
        resolved = self.selector.resolve(self.preference) if self._initialized else None

        await self.events.emit(
            EventType.PREFERENCE_CHANGED,
            {
                "from": previous,
                "to": self.preference,
                "resolves_to": resolved.name if resolved else None,
            },
            source_id="manager",
        )
        if resolved is None:
            logger.info(f"Runtime preference set to {self.preference}; applied on initialize")
            return self.preference
        if apply:
            await self.selector.switch(resolved.name)
        return resolved.name

    def get_active_runtime(self) -> str | None:
        backend = self.selector.active
        return backend.name if backend else None

    def get_available_runtimes(self) -> list[str]:
        return sorted(self.registry.available())

    def get_runtime_info(self) -> dict[str, Any]:
        """Capabilities and availability of every registered backend."""
        active = self.get_active_runtime()
        return {
            backend.name: {
                "available": backend.is_available,
                "active": backend.name == active,
                "initialized": backend.initialized,
                "capabilities": backend.get_capabilities().to_dict(),
            }
            for backend in self.registry.all_backends()
        }

    async def check_runtime_requirements(self, name: str) -> dict[str, Any]:
        """Probe one backend and report what it needs from the host."""
        backend = next((b for b in self.registry.all_backends() if b.name == name), None)
        if backend is None:
            return {"runtime": name, "known": False, "available": False, "requirements": []}
        try:
            available = await backend.check_availability()
        except Exception as e:
            logger.warning(f"Requirement check for {name} failed: {e}")
            available = False
        return {
            "runtime": name,
            "known": True,
            "available": available,
            "requirements": RUNTIME_REQUIREMENTS.get(name, []),
            "capabilities": backend.get_capabilities().to_dict(),
        }

    async def get_system_status(self) -> dict[str, Any]:
        """Host information plus stats for every available backend."""
        runtimes = {}
        for name, backend in self.registry.available().items():
            runtimes[name] = await backend.get_stats()
        return {
            "initialized": self._initialized,
            "active_runtime": self.get_active_runtime(),
            "preference": self.preference,
            "available_runtimes": self.get_available_runtimes(),
            "host": host_info(),
            "runtimes": runtimes,
        }

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def shutdown(self) -> None:
        """Clean up every registered backend, then shut down the active one."""
        logger.info("Shutting down runtime manager...")
        backends = self.registry.all_backends()
        results = await asyncio.gather(
            *(
                asyncio.wait_for(backend.cleanup(), timeout=self.config.shutdown_timeout)
                for backend in backends
            ),
            return_exceptions=True,
        )
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                logger.error(f"Cleanup of {backend.name} runtime failed: {result!r}")

        active = self.selector.active
        if active is not None:
            try:
                await active.shutdown()
            except Exception as e:
                logger.error(f"Shutdown of {active.name} runtime failed: {e}")

        self.selector.clear()
        self._initialized = False
        await self.events.emit(
            EventType.RUNTIME_SHUTDOWN,
            {"runtime": active.name if active else None},
            source_id="manager",
        )
        logger.info("Runtime manager shutdown complete")
