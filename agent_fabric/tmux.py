"""
Tmux Runtime - Process-level agent isolation with multiplexed sessions.

Each agent gets a detached tmux session rooted at its host workspace.
Best for:
- Development and debugging (attach to watch an agent work)
- Hosts without docker
- Fast startup

Resource limits are advisory only; capabilities say so.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from pathlib import Path
from uuid import uuid4

from agent_fabric.base import IDENTITY_FILE, RuntimeBackend
from agent_fabric.config import FabricConfig
from agent_fabric.errors import AgentError, ConfigurationWarning
from agent_fabric.events import EventBus
from agent_fabric.models import (
    AgentConfig,
    AgentSession,
    CapabilitySet,
    CommandOptions,
    CommandResult,
    IsolationLevel,
    ResourceSnapshot,
)
from agent_fabric.process import CommandRunner, ProcessError
from agent_fabric.resources import directory_size_mb, snapshot_for_tree

logger = logging.getLogger("fabric.runtime.tmux")

EXEC_DIR = Path("state") / ".exec"

_GONE_MARKERS = ("can't find session", "session not found", "no server running", "no current")


class TmuxBackend(RuntimeBackend):
    """
    Tmux backend running each agent in its own session.

    Commands are typed into the session so a human attached to it sees
    exactly what the agent runs. Output and exit status are captured
    through files under the workspace's state/.exec directory.
    """

    name = "tmux"
    SCRATCH_DIRS = (EXEC_DIR.as_posix(),)

    # Seconds between session liveness checks while waiting on a command
    liveness_interval = 1.0

    def __init__(
        self,
        config: FabricConfig | None = None,
        events: EventBus | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        super().__init__(config, events, runner)
        self._tmux = self.config.tmux_binary
        self._envs: dict[str, dict[str, str]] = {}

    async def check_availability(self) -> bool:
        """Check that tmux is installed."""
        if shutil.which(self._tmux) is None:
            logger.info("tmux not installed")
            return False
        try:
            result = await self.runner.run([self._tmux, "-V"], timeout=10.0)
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.info(f"tmux check failed: {e}")
            return False
        return result.ok

    def get_capabilities(self) -> CapabilitySet:
        return CapabilitySet(
            isolation_level=IsolationLevel.PROCESS,
            has_hard_resource_limits=False,
            supports_network_isolation=False,
            supports_persistence=True,
            max_concurrent_agents=self.config.max_agents.get(self.name, 50),
            supports_custom_images=False,
            sharing="directory",
            portability="local",
        )

    async def _setup(self) -> None:
        removed = await self.sweep_orphans()
        if removed:
            logger.info(f"Cleaned up {len(removed)} orphaned tmux sessions")

    async def sweep_orphans(self) -> list[str]:
        """Kill prefixed sessions left behind by a previous process."""
        result = await self.runner.run(
            [self._tmux, "list-sessions", "-F", "#{session_name}"],
            timeout=30.0,
        )
        if not result.ok:
            # No server running means no sessions
            return []

        owned = {s.session_id for s in self._sessions.values()}
        removed = []
        for name in result.stdout.split():
            if not name.startswith(self.config.session_prefix) or name in owned:
                continue
            killed = await self.runner.run([self._tmux, "kill-session", "-t", name], timeout=30.0)
            if killed.ok:
                removed.append(name)
                logger.info(f"Killed orphaned session: {name}")
        return removed

    # ========================================================================
    # Provisioning
    # ========================================================================

    async def _provision(
        self,
        session: AgentSession,
        config: AgentConfig,
        *,
        fresh: bool = False,
    ) -> None:
        """Create the workspace and a detached session rooted in it."""
        workspace = Path(session.workspace_path)
        await asyncio.to_thread(self._prepare_workspace, workspace, config.seed_path)

        env = self._agent_environment(session, config)
        team = self._teams.get(session.team_id)
        if team:
            env["TEAM_SHARED_DIR"] = team.shared_path
        env["AGENT_WORKSPACE"] = str(workspace)

        args = [
            self._tmux, "new-session",
            "-d",
            "-s", session.session_id,
            "-c", str(workspace),
        ]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        await self.runner.run(args, timeout=30.0, check=True)

        self._envs[session.agent_id] = env
        # tmux cannot enforce limits; keep them for reporting
        session.metadata["advisory_limits"] = True
        logger.info(f"Created tmux session: {session.session_id}")

    async def _configure(
        self,
        session: AgentSession,
        config: AgentConfig,
    ) -> list[ConfigurationWarning]:
        env = self._envs.get(session.agent_id, {})
        workspace = Path(session.workspace_path)

        async def export_environment() -> None:
            for key, value in env.items():
                await self.runner.run(
                    [self._tmux, "set-environment", "-t", session.session_id, key, value],
                    timeout=10.0,
                    check=True,
                )
            exports = "; ".join(f"export {k}={shlex.quote(v)}" for k, v in env.items())
            await self._send(session, exports)

        async def git_identity() -> None:
            identity = {
                "GIT_AUTHOR_NAME": f"Agent {session.agent_type}",
                "GIT_AUTHOR_EMAIL": f"{session.agent_type}@agents.local",
                "GIT_COMMITTER_NAME": f"Agent {session.agent_type}",
                "GIT_COMMITTER_EMAIL": f"{session.agent_type}@agents.local",
            }
            for key, value in identity.items():
                await self.runner.run(
                    [self._tmux, "set-environment", "-t", session.session_id, key, value],
                    timeout=10.0,
                    check=True,
                )
            env.update(identity)

        def write_files() -> None:
            (workspace / IDENTITY_FILE).write_text(self._identity_text(session))
            readme = workspace / "README.md"
            if not readme.exists():
                readme.write_text(
                    f"# {session.agent_type} workspace\n\n"
                    f"Agent `{session.agent_id}` of team `{session.team_id}`.\n\n"
                    "- `output/` results to hand off\n"
                    "- `handoffs/` files received from other agents\n"
                    "- `state/` agent state\n"
                )

        steps = [
            ("export-environment", export_environment),
            (
                "aliases",
                lambda: self._send(
                    session,
                    f"alias ll='ls -la'; alias ws={shlex.quote('cd ' + str(workspace))}",
                ),
            ),
        ]
        if "git" in config.tools:
            steps.append(("git-identity", git_identity))
        steps.extend([
            ("write-identity", lambda: asyncio.to_thread(write_files)),
            (
                "prompt",
                lambda: self._send(
                    session,
                    f"export PS1={shlex.quote(f'[{session.agent_type}@{session.team_id}] $ ')}; clear",
                ),
            ),
        ])
        return await self._apply_steps(session, steps)

    async def _send(self, session: AgentSession, text: str) -> None:
        """Type a line into the session and press Enter."""
        await self.runner.run(
            [self._tmux, "send-keys", "-t", session.session_id, "-l", text],
            timeout=10.0,
            check=True,
        )
        await self.runner.run(
            [self._tmux, "send-keys", "-t", session.session_id, "Enter"],
            timeout=10.0,
            check=True,
        )

    # ========================================================================
    # Commands
    # ========================================================================

    def _wrap(
        self,
        session: AgentSession,
        command: str,
        options: CommandOptions,
        exec_id: str,
    ) -> str:
        """Build the line typed into the pane for one command."""
        workspace = Path(session.workspace_path)
        exec_dir = workspace / EXEC_DIR
        cwd = (workspace / options.cwd).resolve() if options.cwd else workspace
        if not cwd.is_relative_to(workspace.resolve()) and cwd != workspace:
            raise ValueError(f"cwd escapes the workspace: {options.cwd}")

        out = exec_dir / f"{exec_id}.out"
        err = exec_dir / f"{exec_id}.err"
        rc = exec_dir / f"{exec_id}.rc"
        rc_tmp = exec_dir / f"{exec_id}.rc.tmp"

        env = {**self._envs.get(session.agent_id, {}), **options.env}
        exports = "".join(f"export {k}={shlex.quote(v)}; " for k, v in env.items())
        script = (
            f"{exports}cd {shlex.quote(str(cwd))} && "
            f"sh -c {shlex.quote(command)} > {shlex.quote(str(out))} 2> {shlex.quote(str(err))}; "
            f"echo $? > {shlex.quote(str(rc_tmp))}; mv {shlex.quote(str(rc_tmp))} {shlex.quote(str(rc))}"
        )
        return f"sh -c {shlex.quote(script)}"

    async def _run(
        self,
        session: AgentSession,
        command: str,
        options: CommandOptions,
    ) -> CommandResult:
        """Type the wrapped command into the session and wait for its exit code."""
        exec_id = uuid4().hex[:12]
        exec_dir = Path(session.workspace_path) / EXEC_DIR
        await asyncio.to_thread(exec_dir.mkdir, parents=True, exist_ok=True)

        await self._send(session, self._wrap(session, command, options, exec_id))
        if options.detach:
            return CommandResult(stdout="", stderr="", exit_code=0)

        rc_file = exec_dir / f"{exec_id}.rc"
        loop = asyncio.get_running_loop()
        next_check = loop.time() + self.liveness_interval
        try:
            while not rc_file.exists():
                await asyncio.sleep(self.config.exec_poll_interval)
                if loop.time() >= next_check:
                    await self._ensure_session(session)
                    next_check = loop.time() + self.liveness_interval
        except BaseException:
            await asyncio.to_thread(self._discard_capture, exec_dir, exec_id)
            raise

        return await asyncio.to_thread(self._collect, exec_dir, exec_id)

    async def _ensure_session(self, session: AgentSession) -> None:
        """Raise if the session died while a command was waiting on it."""
        result = await self.runner.run(
            [self._tmux, "has-session", "-t", session.session_id],
            timeout=10.0,
        )
        if not result.ok:
            raise AgentError(
                f"tmux session {session.session_id} exited during command: "
                f"{result.stderr.strip()}",
                agent_id=session.agent_id,
                code="SESSION_LOST",
            )

    @staticmethod
    def _discard_capture(exec_dir: Path, exec_id: str) -> None:
        for ext in ("out", "err", "rc", "rc.tmp"):
            (exec_dir / f"{exec_id}.{ext}").unlink(missing_ok=True)

    @staticmethod
    def _collect(exec_dir: Path, exec_id: str) -> CommandResult:
        paths = {ext: exec_dir / f"{exec_id}.{ext}" for ext in ("out", "err", "rc")}
        stdout = paths["out"].read_text(errors="replace") if paths["out"].exists() else ""
        stderr = paths["err"].read_text(errors="replace") if paths["err"].exists() else ""
        try:
            exit_code = int(paths["rc"].read_text().strip())
        except ValueError:
            exit_code = -1
        for path in paths.values():
            path.unlink(missing_ok=True)
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def _interrupt(self, session: AgentSession) -> None:
        """Send Ctrl-C so the pane is ready for the next command."""
        result = await self.runner.run(
            [self._tmux, "send-keys", "-t", session.session_id, "C-c"],
            timeout=10.0,
        )
        if not result.ok:
            logger.warning(f"Could not interrupt {session.session_id}: {result.stderr.strip()}")

    # ========================================================================
    # Status and teardown
    # ========================================================================

    async def _probe(self, session: AgentSession) -> tuple[bool, ResourceSnapshot, list[str]]:
        has = await self.runner.run(
            [self._tmux, "has-session", "-t", session.session_id],
            timeout=10.0,
        )
        if not has.ok:
            disk = await asyncio.to_thread(directory_size_mb, session.workspace_path)
            return False, ResourceSnapshot(disk_mb=disk), []

        pane = await self.runner.run(
            [
                self._tmux, "capture-pane", "-p",
                "-t", session.session_id,
                "-S", f"-{self.config.status_log_lines}",
            ],
            timeout=10.0,
        )
        logs = pane.stdout.rstrip("\n").splitlines() if pane.ok else []

        panes = await self.runner.run(
            [self._tmux, "list-panes", "-t", session.session_id, "-F", "#{pane_pid}"],
            timeout=10.0,
        )
        pids = [int(p) for p in panes.stdout.split() if p.isdigit()] if panes.ok else []
        resources = await asyncio.to_thread(snapshot_for_tree, pids, session.workspace_path)
        return True, resources, logs

    async def _teardown(self, session: AgentSession) -> None:
        self._envs.pop(session.agent_id, None)
        args = [self._tmux, "kill-session", "-t", session.session_id]
        result = await self.runner.run(args, timeout=30.0)
        if not result.ok and not any(m in result.stderr.lower() for m in _GONE_MARKERS):
            raise ProcessError(args, result)
        logger.debug(f"Killed tmux session: {session.session_id}")
