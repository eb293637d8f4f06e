"""Fixtures for runtime layer tests."""

from __future__ import annotations

import asyncio
import inspect
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from agent_fabric.base import RuntimeBackend  # noqa: E402
from agent_fabric.config import FabricConfig  # noqa: E402
from agent_fabric.events import EventBus  # noqa: E402
from agent_fabric.models import (  # noqa: E402
    AgentConfig,
    AgentSession,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    IsolationLevel,
    ResourceSnapshot,
)
from agent_fabric.process import ProcessError, ProcessResult  # noqa: E402

Handler = Callable[[list[str]], "ProcessResult | Awaitable[ProcessResult]"]


class FakeRunner:
    """
    Scripted stand-in for CommandRunner.

    Responses are chosen by argument prefix; the most recently added rule
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self._rules: list[tuple[tuple[str, ...], Any]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        raises: BaseException | None = None,
        handler: Handler | None = None,
    ) -> None:
        if handler is None:
            result = ProcessResult(returncode, stdout, stderr)

            def handler(args: list[str]) -> ProcessResult:
                if raises is not None:
                    raise raises
                return result

        self._rules.insert(0, (prefix, handler))

    def called(self, *prefix: str) -> list[list[str]]:
        """Calls whose arguments start with prefix."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    async def run(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = False,
    ) -> ProcessResult:
        self.calls.append(list(args))
        result = ProcessResult(0)
        for prefix, handler in self._rules:
            if tuple(args[: len(prefix)]) == prefix:
                outcome = handler(list(args))
                if inspect.isawaitable(outcome):
                    if timeout is not None:
                        outcome = await asyncio.wait_for(outcome, timeout)
                    else:
                        outcome = await outcome
                result = outcome
                break
        if check and not result.ok:
            raise ProcessError(list(args), result)
        return result


class FakeBackend(RuntimeBackend):
    """In-memory backend: no subprocesses, configurable availability."""

    def __init__(
        self,
        name: str,
        config: FabricConfig,
        events: EventBus | None = None,
        *,
        available: bool = True,
        probe_delay: float = 0.0,
        probe_error: Exception | None = None,
        isolation: IsolationLevel = IsolationLevel.PROCESS,
    ) -> None:
        self.name = name
        super().__init__(config, events)
        self.available = available
        self.probe_delay = probe_delay
        self.probe_error = probe_error
        self.isolation = isolation

        self.probe_calls = 0
        self.setup_calls = 0
        self.shutdown_calls = 0
        self.fail_provision = False
        self.provision_delay = 0.0
        self.provisioned: list[str] = []
        self.env_alive = True
        self.steps: list[tuple[str, Callable[[], Awaitable[Any]]]] = []
        self.executed: list[str] = []
        self.torn_down: list[str] = []

    async def check_availability(self) -> bool:
        self.probe_calls += 1
        await asyncio.sleep(self.probe_delay)
        if self.probe_error is not None:
            raise self.probe_error
        return self.available

    def get_capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            isolation_level=self.isolation,
            has_hard_resource_limits=self.isolation == IsolationLevel.KERNEL,
            supports_network_isolation=self.isolation == IsolationLevel.KERNEL,
            supports_persistence=True,
            max_concurrent_agents=10,
        )

    async def _setup(self) -> None:
        self.setup_calls += 1

    async def _provision(
        self,
        session: AgentSession,
        config: AgentConfig,
        *,
        fresh: bool = False,
    ) -> None:
        await asyncio.sleep(self.provision_delay)
        if self.fail_provision:
            raise RuntimeError("no capacity")
        self.provisioned.append(session.agent_id)
        self._prepare_workspace(Path(session.workspace_path), config.seed_path)
        session.metadata["fresh"] = fresh

    async def _configure(self, session: AgentSession, config: AgentConfig):
        return await self._apply_steps(session, self.steps)

    async def _run(
        self,
        session: AgentSession,
        command: str,
        options: CommandOptions,
    ) -> CommandResult:
        if command.startswith("sleep "):
            await asyncio.sleep(float(command.split()[1]))
        if command == "explode":
            raise RuntimeError("control plane down")
        self.executed.append(command)
        return CommandResult(stdout=f"ran {command}\n", exit_code=0)

    async def _teardown(self, session: AgentSession) -> None:
        self.torn_down.append(session.agent_id)

    async def _probe(self, session: AgentSession) -> tuple[bool, ResourceSnapshot, list[str]]:
        return self.env_alive, ResourceSnapshot(cpu_percent=1.0, memory_mb=10.0), []

    async def shutdown(self) -> None:
        self.shutdown_calls += 1
        await super().shutdown()


@pytest.fixture
def fabric_config(tmp_path: Path) -> FabricConfig:
    """Config rooted in a temporary directory with the pool disabled."""
    return FabricConfig(
        base_dir=str(tmp_path / "fabric"),
        preference="auto",
        fallback_chain=["container", "tmux"],
        default_team="default",
        session_prefix="agent-",
        container_prefix="agent-",
        volume_prefix="fabric-team-",
        default_image="python:3.11-slim",
        docker_binary="docker",
        tmux_binary="tmux",
        pool_enabled=False,
        pool_archetypes=[],
        exec_poll_interval=0.01,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def mock_event_bus():
    """Create a mock event bus."""
    bus = MagicMock()
    bus.emit = AsyncMock()
    bus.subscribe = MagicMock()
    return bus


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_backend(fabric_config: FabricConfig, event_bus: EventBus):
    """Factory for in-memory backends sharing the test config and bus."""

    def factory(name: str, **kwargs: Any) -> FakeBackend:
        return FakeBackend(name, fabric_config, event_bus, **kwargs)

    return factory
