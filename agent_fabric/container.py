"""
Container Runtime - Kernel-level agent isolation with docker.

Each agent is a long-lived container (``sleep infinity``) with its host
workspace bind-mounted at /workspace. Best for:
- Isolation and security
- Hard resource limits
- Custom images per archetype
- Shared team volumes

A pool of pre-warmed containers per archetype keeps spawn latency low.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import posixpath
import shlex
import shutil
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_fabric.base import IDENTITY_FILE, WORKSPACE_LAYOUT, RuntimeBackend, safe_name
from agent_fabric.config import FabricConfig
from agent_fabric.errors import ConfigurationWarning
from agent_fabric.events import EventBus, EventType
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    IsolationLevel,
    ResourceSnapshot,
    TeamWorkspace,
)
from agent_fabric.pool import ContainerPool, PoolEntry
from agent_fabric.process import CommandRunner, ProcessError, ProcessResult
from agent_fabric.resources import directory_size_mb, parse_docker_stats

logger = logging.getLogger("fabric.runtime.container")


class ContainerBackend(RuntimeBackend):
    """
    Docker backend executing agents in containers.

    Features:
    - Process, filesystem and network isolation
    - Enforced CPU and memory limits
    - Pre-warmed container pool
    - Per-team shared volumes
    """

    name = "container"

    MANAGED_LABEL = "agent-fabric.managed"
    ROLE_LABEL = "agent-fabric.role"
    WORKSPACE_DIR = "/workspace"
    SHARED_DIR = "/shared"

    def __init__(
        self,
        config: FabricConfig | None = None,
        events: EventBus | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(config, events, runner)
        self._docker = self.config.docker_binary
        self._envs: dict[str, dict[str, str]] = {}
        self.pool = ContainerPool(
            provision=self._provision_pool_instance,
            discard=self._discard_pool_instance,
            events=events,
        )

    async def check_availability(self) -> bool:
        """Check that the docker CLI exists and the daemon answers."""
        try:
            version = await self.runner.run([self._docker, "--version"], timeout=10.0)
            if not version.ok:
                return False
            info = await self.runner.run([self._docker, "info"], timeout=30.0)
            if not info.ok:
                logger.info(f"Docker daemon not reachable: {info.stderr.strip()}")
            return info.ok
        except FileNotFoundError:
            logger.info("Docker CLI not installed")
            return False
        except asyncio.TimeoutError:
            logger.info("Docker availability check timed out")
            return False

    def get_capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            isolation_level=IsolationLevel.KERNEL,
            has_hard_resource_limits=True,
            supports_network_isolation=True,
            supports_persistence=True,
            max_concurrent_agents=self.config.max_agents.get(self.name, 100),
            supports_custom_images=True,
            sharing="volume",
            portability="universal",
        )

    async def _setup(self) -> None:
        await asyncio.to_thread((self.root / ".pool").mkdir, parents=True, exist_ok=True)
        self.pool.reopen()
        if self.config.pool_enabled and self.config.pool_archetypes:
            await self.pool.warm(self.config.pool_archetypes)

    # ========================================================================
    # Provisioning
    # ========================================================================

    async def _docker_run(
        self,
        name: str,
        image: str,
        workspace: Path,
        *,
        role: str,
        cpu_limit: float | None = None,
        memory_limit: str | None = None,
        volume: str | None = None,
    ) -> None:
        """Start a detached container that idles until commands arrive."""
        args = [
            self._docker, "run",
            "-d",
            "--name", name,
            "--label", f"{self.MANAGED_LABEL}=true",
            "--label", f"{self.ROLE_LABEL}={role}",
            "-v", f"{workspace}:{self.WORKSPACE_DIR}",
            "-w", self.WORKSPACE_DIR,
        ]
        if cpu_limit:
            args.extend(["--cpus", str(cpu_limit)])
        if memory_limit:
            args.extend(["--memory", memory_limit])
        if volume:
            args.extend(["-v", f"{volume}:{self.SHARED_DIR}"])
        args.extend([image, "sleep", "infinity"])

        logger.debug(f"Starting container {name} from {image}")
        await self.runner.run(args, check=True)

    async def _provision_pool_instance(self, archetype: str) -> PoolEntry:
        """Create one unconfigured container for the pool."""
        name = safe_name(f"{self.config.container_prefix}pool", archetype, uuid4().hex[:8])
        staging = self.root / ".pool" / name
        image = self.config.image_for(archetype)

        await asyncio.to_thread(staging.mkdir, parents=True, exist_ok=True)
        try:
            await self._docker_run(name, image, staging, role="pool")
        except BaseException:
            await self._remove_container(name, quiet=True)
            await asyncio.to_thread(shutil.rmtree, staging, True)
            raise
        return PoolEntry(archetype=archetype, name=name, image=image, staging_path=str(staging))

    async def _discard_pool_instance(self, entry: PoolEntry) -> None:
        await self._remove_container(entry.name)
        await asyncio.to_thread(shutil.rmtree, entry.staging_path, True)

    async def _provision(
        self,
        session: AgentSession,
        config: AgentConfig,
        *,
        fresh: bool = False,
    ) -> None:
        """Claim a pooled container or start a new one."""
        image = config.base_image or self.config.image_for(config.agent_type)
        team = self._teams.get(session.team_id)
        volume = team.metadata.get("shared_volume") if team else None
        workspace = Path(session.workspace_path)

        entry = None
        if not fresh and self.config.pool_enabled:
            entry = self.pool.claim(config.agent_type, image)

        if entry is not None:
            await self._activate_pooled(session, entry, config)
            session.metadata.update({"from_pool": True, "pool_instance": entry.name})
            await self._emit(
                EventType.POOL_CLAIMED,
                {"agent_id": session.agent_id, "archetype": entry.archetype, "instance": entry.name},
                source_id=session.agent_id,
            )
            logger.info(f"Using pre-warmed container for {config.agent_type}")
        else:
            await asyncio.to_thread(self._prepare_workspace, workspace, config.seed_path)
            await self._docker_run(
                session.session_id,
                image,
                workspace,
                role="agent",
                cpu_limit=config.cpu_limit,
                memory_limit=config.memory_limit,
                volume=volume,
            )
            session.metadata.update({"from_pool": False, "shared_volume": volume})
            logger.info(f"New container created: {session.session_id}")

        session.metadata["base_image"] = image
        session.metadata["container"] = session.session_id

    async def _activate_pooled(
        self,
        session: AgentSession,
        entry: PoolEntry,
        config: AgentConfig,
    ) -> None:
        """Rename a pooled container into the agent's identity."""
        try:
            await self.runner.run(
                [self._docker, "rename", entry.name, session.session_id],
                check=True,
            )
        except BaseException:
            await self._discard_pool_instance(entry)
            raise

        workspace = Path(session.workspace_path)

        def adopt() -> None:
            workspace.parent.mkdir(parents=True, exist_ok=True)
            if workspace.exists():
                shutil.rmtree(workspace)
            shutil.move(entry.staging_path, workspace)
            self._prepare_workspace(workspace, config.seed_path)

        await asyncio.to_thread(adopt)

        if config.cpu_limit or config.memory_limit:
            args = [self._docker, "update"]
            if config.cpu_limit:
                args.extend(["--cpus", str(config.cpu_limit)])
            if config.memory_limit:
                args.extend(["--memory", config.memory_limit, "--memory-swap", "-1"])
            args.append(session.session_id)
            await self.runner.run(args, check=True)

    async def _configure(
        self,
        session: AgentSession,
        config: AgentConfig,
    ) -> list[ConfigurationWarning]:
        """Apply the same post-provision configuration to pooled and new containers."""
        env = self._agent_environment(session, config)
        self._envs[session.agent_id] = env
        env_text = "".join(f"export {key}={shlex.quote(value)}\n" for key, value in env.items())
        state_dir = posixpath.join(self.WORKSPACE_DIR, "state")
        layout = " ".join(posixpath.join(self.WORKSPACE_DIR, d) for d in WORKSPACE_LAYOUT)

        steps = [
            (
                "inject-environment",
                lambda: self._write_file(session, posixpath.join(state_dir, "agent.env"), env_text),
            ),
            (
                "create-layout",
                lambda: self._exec_checked(session, f"mkdir -p {layout}"),
            ),
        ]
        if "git" in config.tools:
            steps.append((
                "git-identity",
                lambda: self._exec_checked(
                    session,
                    f"git config --global user.name {shlex.quote('Agent ' + session.agent_type)} && "
                    f"git config --global user.email {shlex.quote(session.agent_type + '@agents.local')}",
                ),
            ))
        steps.append((
            "stamp-identity",
            lambda: self._write_file(
                session,
                posixpath.join(self.WORKSPACE_DIR, IDENTITY_FILE),
                self._identity_text(session),
            ),
        ))

        warnings = await self._apply_steps(session, steps)

        team = self._teams.get(session.team_id)
        volume = team.metadata.get("shared_volume") if team else None
        if session.metadata.get("from_pool") and volume:
            warnings.append(
                ConfigurationWarning(
                    agent_id=session.agent_id,
                    step="mount-shared-volume",
                    message=f"pooled container has no {volume} mount at {self.SHARED_DIR}",
                )
            )
        return warnings

    async def _exec_checked(self, session: AgentSession, script: str, *script_args: str) -> ProcessResult:
        args = [self._docker, "exec", session.session_id, "sh", "-c", script]
        if script_args:
            args.append("sh")
            args.extend(script_args)
        return await self.runner.run(args, timeout=30.0, check=True)

    async def _write_file(self, session: AgentSession, path: str, content: str) -> None:
        parent = posixpath.dirname(path)
        await self._exec_checked(
            session,
            f'mkdir -p {shlex.quote(parent)} && printf "%s" "$1" > {shlex.quote(path)}',
            content,
        )

    # ========================================================================
    # Commands
    # ========================================================================

    def _workdir(self, cwd: str | None) -> str:
        if not cwd:
            return self.WORKSPACE_DIR
        joined = posixpath.normpath(posixpath.join(self.WORKSPACE_DIR, cwd))
        if joined != self.WORKSPACE_DIR and not joined.startswith(self.WORKSPACE_DIR + "/"):
            raise ValueError(f"cwd escapes the workspace: {cwd}")
        return joined

    async def _run(
        self,
        session: AgentSession,
        command: str,
        options: CommandOptions,
    ) -> CommandResult:
        """Run a command with docker exec."""
        env = {**self._envs.get(session.agent_id, {}), **options.env}
        args = [self._docker, "exec"]
        if options.detach:
            args.append("-d")
        args.extend(["-w", self._workdir(options.cwd)])
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(session.session_id)
        if options.timeout and not options.detach:
            # Reaps the process inside the container if the client is killed
            args.extend(["timeout", "-s", "KILL", str(math.ceil(options.timeout) + 1)])
        args.extend(["sh", "-c", command])

        result = await self.runner.run(args)
        return CommandResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )

    # ========================================================================
    # Status and teardown
    # ========================================================================

    async def _probe(self, session: AgentSession) -> tuple[bool, ResourceSnapshot, list[str]]:
        inspect = await self.runner.run(
            [self._docker, "inspect", "-f", "{{.State.Running}}", session.session_id],
            timeout=30.0,
        )
        alive = inspect.ok and inspect.stdout.strip().lower() == "true"

        resources = ResourceSnapshot(
            disk_mb=await asyncio.to_thread(directory_size_mb, session.workspace_path),
        )
        if alive:
            stats = await self.runner.run(
                [self._docker, "stats", "--no-stream", "--format", "{{json .}}", session.session_id],
                timeout=30.0,
            )
            lines = stats.stdout.strip().splitlines()
            if stats.ok and lines:
                try:
                    resources.cpu_percent, resources.memory_mb = parse_docker_stats(json.loads(lines[0]))
                except json.JSONDecodeError:
                    logger.debug(f"Unparseable docker stats for {session.session_id}: {lines[0]}")
        return alive, resources, []

    async def _teardown(self, session: AgentSession) -> None:
        self._envs.pop(session.agent_id, None)
        await self._remove_container(session.session_id)

    async def _remove_container(self, name: str, quiet: bool = False) -> None:
        result = await self.runner.run([self._docker, "rm", "-f", name], timeout=60.0)
        if not result.ok and "no such container" not in result.stderr.lower():
            if quiet:
                logger.debug(f"Could not remove container {name}: {result.stderr.strip()}")
                return
            raise ProcessError([self._docker, "rm", "-f", name], result)

    async def _create_team_storage(self, team: TeamWorkspace) -> None:
        volume = self.config.volume_prefix + safe_name(team.team_id)
        result = await self.runner.run(
            [self._docker, "volume", "create", "--label", f"{self.MANAGED_LABEL}=true", volume],
            timeout=60.0,
        )
        if result.ok:
            team.metadata["shared_volume"] = volume
            logger.info(f"Created shared volume: {volume}")
        else:
            logger.warning(f"Volume {volume} could not be created: {result.stderr.strip()}")

    async def _destroy_team_storage(self, team: TeamWorkspace) -> None:
        volume = team.metadata.get("shared_volume")
        if not volume:
            return
        result = await self.runner.run([self._docker, "volume", "rm", volume], timeout=60.0)
        if result.ok:
            logger.info(f"Removed shared volume: {volume}")
        else:
            logger.warning(f"Failed to remove volume {volume}: {result.stderr.strip()}")

    async def _release(self) -> None:
        await self.pool.shutdown()

    async def sweep_orphans(self) -> list[str]:
        """Remove labelled containers not owned by this process."""
        result = await self.runner.run(
            [
                self._docker, "ps", "-a",
                "--filter", f"label={self.MANAGED_LABEL}=true",
                "--format", "{{.Names}}",
            ],
            timeout=60.0,
        )
        if not result.ok:
            return []
        owned = {s.session_id for s in self._sessions.values()}
        owned.update(entry["name"] for entry in self.pool.stats()["entries"].values())
        removed = []
        for name in result.stdout.split():
            if name in owned:
                continue
            await self._remove_container(name, quiet=True)
            removed.append(name)
            logger.info(f"Removed orphaned container: {name}")
        return removed

    async def get_stats(self) -> dict[str, Any]:
        stats = await super().get_stats()
        stats["pool"] = self.pool.stats()
        stats["teams"] = {
            team_id: {**info, "shared_volume": self._teams[team_id].metadata.get("shared_volume")}
            for team_id, info in stats["teams"].items()
        }
        return stats

    async def health_check(self) -> dict[str, Any]:
        base = await super().health_check()
        base.update({"pool_size": len(self.pool), "docker": self._docker})
        return base
