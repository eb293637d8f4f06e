"""
Base Runtime Backend - Contract for agent isolation strategies.

Defines the contract every backend implements:
- Multiplexed sessions (tmux)
- Containers (docker)

The lifecycle flow (id bookkeeping, state machine, command ordering,
cancellation, transfers, teams) lives here; subclasses supply the hooks
that actually allocate, drive and release an isolated environment.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import uuid4

from agent_fabric.config import FabricConfig, get_fabric_config
from agent_fabric.errors import (
    AgentError,
    CommandCancelledError,
    CommandTimeoutError,
    ConfigurationWarning,
    DuplicateAgentError,
    ErrorContext,
    FabricError,
    InvalidStateError,
    ProvisionError,
    UnknownAgentError,
)
from agent_fabric.events import EventBus, EventType
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    AgentState,
    AgentStatus,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    ResourceSnapshot,
    TeamWorkspace,
    TransferReport,
)
from agent_fabric.process import CommandRunner
from agent_fabric.resources import list_files

logger = logging.getLogger("fabric.runtime")

# Standard directories inside every agent workspace
WORKSPACE_LAYOUT = ("output", "handoffs", "state")
IDENTITY_FILE = "agent-info.txt"

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")

ConfigStep = tuple[str, Callable[[], Awaitable[Any]]]


def safe_name(*parts: str) -> str:
    """Join parts into a name usable for tmux sessions and docker objects."""
    return "-".join(_NAME_UNSAFE.sub("-", part).strip("-") for part in parts if part)


class RuntimeBackend(ABC):
    """
    Abstract base class for agent isolation backends.

    A backend is responsible for:
    - Allocating one isolated environment per agent
    - Running commands inside it
    - Reporting status and resource usage
    - Releasing everything it allocated
    """

    name: str

    # Workspace subdirectories used for bookkeeping, hidden from status listings
    SCRATCH_DIRS: tuple[str, ...] = ()

    def __init__(
        self,
        config: FabricConfig | None = None,
        events: EventBus | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.config = config or get_fabric_config()
        self.events = events
        self.runner = runner or CommandRunner()
        self.root = Path(self.config.base_dir) / self.name
        self.is_available = False

        self._initialized = False
        self._sessions: dict[str, AgentSession] = {}
        self._teams: dict[str, TeamWorkspace] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, set[asyncio.Task[CommandResult]]] = {}
        self._logs: dict[str, list[str]] = {}
        self._current_task: dict[str, str | None] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ========================================================================
    # Hooks for subclasses
    # ========================================================================

    @abstractmethod
    async def check_availability(self) -> bool:
        """
        Probe whether the isolation mechanism is usable on this host.

        Must not raise for "not available"; returns False instead.
        """

    @abstractmethod
    def get_capabilities(self) -> CapabilitySet:
        """Static description of this backend."""

    @abstractmethod
    async def _setup(self) -> None:
        """One-time setup, run by initialize()."""

    @abstractmethod
    async def _provision(
        self,
        session: AgentSession,
        config: AgentConfig,
        *,
        fresh: bool = False,
    ) -> None:
        """
        Allocate the isolated environment for a session.

        Args:
            session: Session to populate (session_id/metadata may be updated)
            config: The originating request
            fresh: Never reuse pre-warmed resources (used by reset)

        Raises:
            Exception: Any failure; the caller tears down partial resources.
        """

    @abstractmethod
    async def _configure(
        self,
        session: AgentSession,
        config: AgentConfig,
    ) -> list[ConfigurationWarning]:
        """Best-effort post-provision configuration. Never raises."""

    @abstractmethod
    async def _run(
        self,
        session: AgentSession,
        command: str,
        options: CommandOptions,
    ) -> CommandResult:
        """Run one command inside the environment."""

    @abstractmethod
    async def _teardown(self, session: AgentSession) -> None:
        """Release the environment. Must tolerate already-missing resources."""

    @abstractmethod
    async def _probe(self, session: AgentSession) -> tuple[bool, ResourceSnapshot, list[str]]:
        """Return (alive, resources, recent log lines) for a session."""

    async def _interrupt(self, session: AgentSession) -> None:
        """Bring the environment back to a usable state after a timeout."""

    async def _create_team_storage(self, team: TeamWorkspace) -> None:
        """Allocate backend-specific shared storage for a team."""

    async def _destroy_team_storage(self, team: TeamWorkspace) -> None:
        """Release backend-specific shared storage for a team."""

    async def _release(self) -> None:
        """Release backend-wide resources during cleanup()."""

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def initialize(self) -> None:
        """Initialize the backend. Idempotent."""
        if self._initialized:
            return
        logger.info(f"Initializing {self.name} runtime...")
        await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        await self._setup()
        self._initialized = True
        logger.info(f"{self.name} runtime initialized at {self.root}")

    async def create_agent(
        self,
        agent_id: str,
        config: AgentConfig | dict[str, Any],
    ) -> AgentSession:
        """
        Create an agent in a new isolated environment.

        Args:
            agent_id: Unique agent identifier
            config: AgentConfig (or a mapping of its fields)

        Returns:
            AgentSession with status running

        Raises:
            DuplicateAgentError: The id is already alive
            ProvisionError: The environment could not be created
        """
        if not isinstance(config, AgentConfig):
            config = AgentConfig.model_validate(config)
        if agent_id in self._sessions:
            raise DuplicateAgentError(agent_id, self.name)

        team_id = config.team_id or self.config.default_team
        session = AgentSession(
            agent_id=agent_id,
            agent_type=config.agent_type,
            team_id=team_id,
            runtime_type=self.name,
            session_id=self._session_name(agent_id, config.agent_type, team_id),
            workspace_path=str(self.root / team_id / "agents" / agent_id),
            metadata={
                "tools": config.sorted_tools(),
                "workflow": config.workflow,
                "dependencies": list(config.dependencies),
                "limits": {"cpu": config.cpu_limit, "memory": config.memory_limit},
            },
            config=config,
        )
        # Reserve the id before the first await
        self._sessions[agent_id] = session
        self._locks[agent_id] = asyncio.Lock()
        self._inflight[agent_id] = set()

        logger.info(f"Creating agent {agent_id} ({config.agent_type}) in team {team_id}")
        try:
            team = self._teams.get(team_id) or await self.create_team_workspace(team_id)
            await self._provision(session, config)
        except asyncio.CancelledError:
            await self._abandon(session)
            raise
        except Exception as e:
            logger.error(f"Failed to create agent {agent_id}: {e}")
            await self._abandon(session)
            if isinstance(e, ProvisionError):
                raise
            raise ProvisionError(agent_id, str(e), cause=e) from e

        if session.alive:
            session.warnings.extend(await self._configure(session, config))
        if not session.alive:
            await self._release_destroyed(session)
            raise ProvisionError(agent_id, "agent was destroyed during creation")

        for warning in session.warnings:
            logger.warning(f"Agent {agent_id} configuration degraded: {warning}")

        session.transition(AgentState.RUNNING)
        team.agents.add(agent_id)
        self._logs.setdefault(agent_id, [])
        self._current_task[agent_id] = None
        self._log(agent_id, f"Agent created in session {session.session_id}")

        await self._emit(
            EventType.AGENT_CREATED,
            {
                "agent_id": agent_id,
                "agent_type": session.agent_type,
                "team_id": team_id,
                "session_id": session.session_id,
                "warnings": [w.to_dict() for w in session.warnings],
                "from_pool": session.metadata.get("from_pool", False),
            },
            source_id=agent_id,
        )
        logger.info(f"Agent created: {agent_id} ({session.session_id})")
        return session

    async def _abandon(self, session: AgentSession) -> None:
        """Best-effort removal of a half-created agent."""
        if self._sessions.get(session.agent_id) is session:
            self._sessions.pop(session.agent_id)
            self._locks.pop(session.agent_id, None)
            self._inflight.pop(session.agent_id, None)
        try:
            await self._teardown(session)
        except Exception as e:
            logger.warning(f"Cleanup after failed creation of {session.agent_id} failed: {e}")
        await asyncio.to_thread(shutil.rmtree, session.workspace_path, True)

    async def _release_destroyed(self, session: AgentSession) -> None:
        """Release an environment provisioned after its agent was destroyed."""
        logger.warning(f"Agent {session.agent_id} was destroyed while provisioning; releasing it")
        try:
            await self._teardown(session)
        except Exception as e:
            logger.error(f"Failed to release environment of {session.agent_id}: {e}")
        await asyncio.to_thread(shutil.rmtree, session.workspace_path, True)

    async def execute_command(
        self,
        agent_id: str,
        command: str,
        options: CommandOptions | None = None,
    ) -> CommandResult:
        """
        Execute a command inside an agent's environment.

        Commands against the same agent run one at a time in the order
        they were issued.

        Raises:
            UnknownAgentError: No such agent
            InvalidStateError: The agent is still being created, or in error/completed state
            CommandTimeoutError: options.timeout elapsed
            CommandCancelledError: The agent was destroyed mid-command
        """
        options = options or CommandOptions()
        self._require(agent_id)
        lock = self._locks[agent_id]

        async with lock:
            session = self._require(agent_id)
            if session.status in (AgentState.INITIALIZING, AgentState.ERROR, AgentState.COMPLETED):
                raise InvalidStateError(agent_id, session.status.value, AgentState.WORKING.value)

            session.transition(AgentState.WORKING)
            self._current_task[agent_id] = command
            self._log(agent_id, f"$ {command}")
            started = time.monotonic()

            task = asyncio.create_task(
                self._run(session, command, options),
                name=f"exec-{agent_id}",
            )
            inflight = self._inflight.setdefault(agent_id, set())
            inflight.add(task)
            try:
                result = await asyncio.wait_for(task, timeout=options.timeout)
            except asyncio.TimeoutError:
                self._log(agent_id, f"Timed out after {options.timeout:g}s")
                if session.alive:
                    await self._interrupt(session)
                    session.transition(AgentState.IDLE)
                raise CommandTimeoutError(agent_id, command, options.timeout or 0.0) from None
            except asyncio.CancelledError:
                if not session.alive:
                    raise CommandCancelledError(agent_id, command) from None
                session.transition(AgentState.IDLE)
                raise
            except FabricError:
                if session.alive:
                    session.transition(AgentState.ERROR)
                raise
            except Exception as e:
                logger.error(f"Command failed in agent {agent_id}: {e}")
                if session.alive:
                    session.transition(AgentState.ERROR)
                    await self._emit(
                        EventType.AGENT_ERROR,
                        {"agent_id": agent_id, "command": command, "error": str(e)},
                        source_id=agent_id,
                    )
                raise AgentError(
                    f"Command failed in agent {agent_id}: {e}",
                    agent_id=agent_id,
                    cause=e,
                ) from e
            finally:
                inflight.discard(task)
                if session.alive:
                    self._current_task[agent_id] = None

            if not session.alive:
                raise CommandCancelledError(agent_id, command)

            result.duration = time.monotonic() - started
            session.touch()
            session.transition(AgentState.IDLE)
            self._log(agent_id, f"exit {result.exit_code} in {result.duration:.2f}s")
            for line in result.stdout.splitlines()[-self.config.status_log_lines:]:
                self._log(agent_id, line)

        await self._emit(
            EventType.AGENT_COMMAND_EXECUTED,
            {
                "agent_id": agent_id,
                "command": command,
                "exit_code": result.exit_code,
                "duration": result.duration,
            },
            source_id=agent_id,
        )
        return result

    async def transfer_files(
        self,
        from_agent_id: str,
        to_agent_id: str,
        file_names: list[str],
    ) -> TransferReport:
        """
        Copy files from one agent's output/ into another's handoffs/.

        Each file is copied atomically; a failure does not undo files
        already copied.

        Returns:
            TransferReport listing transferred and failed files
        """
        source = self._require(from_agent_id)
        target = self._require(to_agent_id)
        report = TransferReport(from_agent=from_agent_id, to_agent=to_agent_id)

        logger.info(f"Transferring {len(file_names)} files: {from_agent_id} -> {to_agent_id}")
        for name in file_names:
            try:
                await asyncio.to_thread(self._copy_file, source, target, name)
                report.transferred.append(name)
            except (OSError, ValueError) as e:
                logger.warning(f"Transfer of {name} failed: {e}")
                report.failed[name] = str(e)

        source.touch()
        target.touch()
        await self._emit(EventType.FILES_TRANSFERRED, report.to_dict(), source_id=from_agent_id)
        return report

    @staticmethod
    def _copy_file(source: AgentSession, target: AgentSession, name: str) -> None:
        src_root = Path(source.workspace_path) / "output"
        dst_root = Path(target.workspace_path) / "handoffs"
        src = (src_root / name).resolve()
        dst = (dst_root / name).resolve()
        if not src.is_relative_to(src_root.resolve()) or not dst.is_relative_to(dst_root.resolve()):
            raise ValueError(f"File name escapes the workspace: {name}")
        if not src.is_file():
            raise FileNotFoundError(f"No such file in {source.agent_id} output: {name}")

        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_name(f".{dst.name}.{uuid4().hex[:8]}.tmp")
        try:
            shutil.copy2(src, tmp)
            os.replace(tmp, dst)
        finally:
            if tmp.exists():
                tmp.unlink()

    async def get_agent_status(self, agent_id: str) -> AgentStatus:
        """Current status, resources, recent logs and workspace files."""
        session = self._require(agent_id)

        try:
            alive, resources, logs = await self._probe(session)
        except Exception as e:
            logger.error(f"Error getting status for agent {agent_id}: {e}")
            return AgentStatus(agent_id=agent_id, status=AgentState.ERROR)

        if not alive and session.status not in (AgentState.COMPLETED, AgentState.ERROR):
            logger.warning(f"Agent {agent_id} environment is gone")
            session.transition(AgentState.ERROR)
            await self._emit(
                EventType.AGENT_ERROR,
                {"agent_id": agent_id, "error": "environment not running"},
                source_id=agent_id,
            )

        session.resources = resources
        tail = self.config.status_log_lines
        files = await asyncio.to_thread(list_files, session.workspace_path, self.SCRATCH_DIRS)
        return AgentStatus(
            agent_id=agent_id,
            status=session.status,
            current_task=self._current_task.get(agent_id),
            resources=resources,
            logs=(logs or self._logs.get(agent_id, []))[-tail:],
            files=files,
        )

    async def destroy_agent(self, agent_id: str) -> None:
        """
        Destroy an agent and release its environment.

        Unknown or already-destroyed ids log a warning and return.
        In-flight commands fail with CommandCancelledError.
        """
        session = self._sessions.pop(agent_id, None)
        if session is None:
            logger.warning(f"Agent {agent_id} not found for destruction")
            return

        logger.info(f"Destroying agent: {agent_id}")
        session.transition(AgentState.DESTROYED)

        inflight = list(self._inflight.pop(agent_id, set()))
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        team = self._teams.get(session.team_id)
        if team:
            team.agents.discard(agent_id)
        self._locks.pop(agent_id, None)
        self._current_task.pop(agent_id, None)
        self._logs.pop(agent_id, None)

        try:
            await self._teardown(session)
        except Exception as e:
            logger.error(f"Failed to destroy agent {agent_id}: {e}")
            raise FabricError(
                f"Failed to destroy agent {agent_id}: {e}",
                code="DESTROY_FAILED",
                context=ErrorContext(agent_id=agent_id, runtime=self.name, operation="destroy"),
                cause=e,
            ) from e
        finally:
            await asyncio.to_thread(shutil.rmtree, session.workspace_path, True)

        await self._emit(
            EventType.AGENT_DESTROYED,
            {"agent_id": agent_id, "team_id": session.team_id},
            source_id=agent_id,
        )
        logger.info(f"Agent destroyed: {agent_id}")

    async def reset_agent(self, agent_id: str) -> AgentSession:
        """
        Re-provision an agent's environment, keeping its id and workspace files.

        This is the only way out of the error state.
        """
        session = self._require(agent_id)
        config = session.config or AgentConfig(agent_type=session.agent_type, team_id=session.team_id)

        async with self._locks[agent_id]:
            logger.info(f"Resetting agent: {agent_id}")
            session.transition(AgentState.INITIALIZING)
            try:
                await self._teardown(session)
                await self._provision(session, config, fresh=True)
            except Exception as e:
                if session.alive:
                    session.transition(AgentState.ERROR)
                raise ProvisionError(agent_id, f"reset failed: {e}", cause=e) from e

            if session.alive:
                session.warnings = await self._configure(session, config)
            if not session.alive:
                await self._release_destroyed(session)
                raise ProvisionError(agent_id, "agent was destroyed during reset")
            session.start_time = datetime.now()
            session.touch()
            session.transition(AgentState.RUNNING)
            self._log(agent_id, "Agent reset")

        await self._emit(
            EventType.AGENT_RESET,
            {"agent_id": agent_id, "session_id": session.session_id},
            source_id=agent_id,
        )
        return session

    # ========================================================================
    # Teams
    # ========================================================================

    async def create_team_workspace(
        self,
        team_id: str,
        config: dict[str, Any] | None = None,
    ) -> TeamWorkspace:
        """Create a team workspace, or return the existing one."""
        existing = self._teams.get(team_id)
        if existing:
            return existing

        logger.info(f"Creating team workspace: {team_id}")
        workspace = self.root / team_id
        shared = workspace / "shared"

        def make_dirs() -> None:
            for path in (
                shared / "handoffs",
                shared / "requirements",
                workspace / "agents",
            ):
                path.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(make_dirs)
        team = TeamWorkspace(
            team_id=team_id,
            workspace_path=str(workspace),
            shared_path=str(shared),
            metadata={"runtime": self.name, "config": config or {}},
        )
        await self._create_team_storage(team)
        self._teams[team_id] = team

        await self._emit(
            EventType.TEAM_CREATED,
            {"team_id": team_id, "workspace_path": team.workspace_path},
            source_id=team_id,
        )
        return team

    async def destroy_team_workspace(self, team_id: str) -> None:
        """Destroy every member agent, then the team's shared storage."""
        team = self._teams.get(team_id)
        members = [s.agent_id for s in self._sessions.values() if s.team_id == team_id]
        if team is None and not members:
            logger.warning(f"Team {team_id} not found for destruction")
            return

        logger.info(f"Destroying team workspace: {team_id} ({len(members)} agents)")
        for agent_id in members:
            await self.destroy_agent(agent_id)

        if team:
            await self._destroy_team_storage(team)
            await asyncio.to_thread(shutil.rmtree, team.workspace_path, True)
            self._teams.pop(team_id, None)

        await self._emit(EventType.TEAM_DESTROYED, {"team_id": team_id}, source_id=team_id)

    def list_agents(self) -> list[AgentSession]:
        return list(self._sessions.values())

    def list_team_agents(self, team_id: str) -> list[AgentSession]:
        return [s for s in self._sessions.values() if s.team_id == team_id]

    def list_teams(self) -> list[TeamWorkspace]:
        return list(self._teams.values())

    def get_session(self, agent_id: str) -> AgentSession | None:
        return self._sessions.get(agent_id)

    def has_agent(self, agent_id: str) -> bool:
        return agent_id in self._sessions

    # ========================================================================
    # Observability and teardown
    # ========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Runtime statistics."""
        return {
            "runtime_type": self.name,
            "initialized": self._initialized,
            "total_agents": len(self._sessions),
            "total_teams": len(self._teams),
            "base_directory": str(self.root),
            "capabilities": self.get_capabilities().to_dict(),
            "agents": {
                agent_id: {
                    "agent_type": s.agent_type,
                    "team_id": s.team_id,
                    "status": s.status.value,
                    "session_id": s.session_id,
                    "start_time": s.start_time.isoformat(),
                    "last_activity": s.last_activity.isoformat(),
                }
                for agent_id, s in self._sessions.items()
            },
            "teams": {
                team_id: {
                    "agent_count": len(self.list_team_agents(team_id)),
                    "created_at": team.created_at.isoformat(),
                    "workspace_path": team.workspace_path,
                }
                for team_id, team in self._teams.items()
            },
        }

    async def health_check(self) -> dict[str, Any]:
        return {
            "type": self.name,
            "available": self.is_available,
            "initialized": self._initialized,
            "active_agents": len([s for s in self._sessions.values() if s.alive]),
        }

    async def cleanup(self) -> None:
        """Destroy every team and agent, then backend-wide resources."""
        logger.info(f"Cleaning up {self.name} runtime...")
        for team_id in list(self._teams):
            await self.destroy_team_workspace(team_id)
        for agent_id in list(self._sessions):
            await self.destroy_agent(agent_id)
        await self._release()
        logger.info(f"{self.name} runtime cleanup complete")

    async def shutdown(self) -> None:
        """Shut down the backend, releasing everything it owns."""
        logger.info(f"Shutting down {self.name} runtime...")
        await self.cleanup()
        self._initialized = False
        logger.info(f"{self.name} runtime shutdown complete")

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require(self, agent_id: str) -> AgentSession:
        session = self._sessions.get(agent_id)
        if session is None:
            raise UnknownAgentError(agent_id)
        return session

    def _session_name(self, agent_id: str, agent_type: str, team_id: str) -> str:
        return self.config.session_prefix + safe_name(team_id, agent_type, agent_id)

    def _log(self, agent_id: str, message: str) -> None:
        """Add a log entry for an agent."""
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        entries = self._logs.setdefault(agent_id, [])
        entries.append(f"[{timestamp}] {message}")
        limit = self.config.status_log_lines * 10
        if len(entries) > limit:
            del entries[: len(entries) - limit]
        logger.debug(f"[{agent_id}] {message}")

    async def _emit(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        source_id: str | None = None,
    ) -> None:
        if self.events is not None:
            payload = {"runtime": self.name, **payload}
            await self.events.emit(event_type, payload, source_id=source_id)

    async def _apply_steps(
        self,
        session: AgentSession,
        steps: list[ConfigStep],
    ) -> list[ConfigurationWarning]:
        """Run configuration steps in order, collecting failures as warnings."""
        warnings: list[ConfigurationWarning] = []
        for step, action in steps:
            try:
                await action()
            except Exception as e:
                logger.warning(f"Configuration step '{step}' failed for {session.agent_id}: {e}")
                warnings.append(
                    ConfigurationWarning(agent_id=session.agent_id, step=step, message=str(e))
                )
        return warnings

    def _agent_environment(self, session: AgentSession, config: AgentConfig) -> dict[str, str]:
        """Baseline identity variables plus the caller's environment."""
        return {
            "AGENT_ID": session.agent_id,
            "AGENT_TYPE": session.agent_type,
            "TEAM_ID": session.team_id,
            "AGENT_TOOLS": ",".join(config.sorted_tools()),
            **config.environment,
        }

    @staticmethod
    def _prepare_workspace(workspace: Path, seed_path: str | None = None) -> None:
        """Create the host workspace layout, optionally seeded from a project."""
        workspace.mkdir(parents=True, exist_ok=True)
        if seed_path:
            seed = Path(seed_path).expanduser()
            if not seed.is_dir():
                raise FileNotFoundError(f"Seed directory does not exist: {seed}")
            shutil.copytree(seed, workspace, dirs_exist_ok=True)
        for sub in WORKSPACE_LAYOUT:
            (workspace / sub).mkdir(exist_ok=True)

    @staticmethod
    def _identity_text(session: AgentSession) -> str:
        return (
            f"Agent ID: {session.agent_id}\n"
            f"Agent Type: {session.agent_type}\n"
            f"Team: {session.team_id}\n"
            f"Runtime: {session.runtime_type}\n"
            f"Created: {datetime.now().isoformat()}\n"
        )
