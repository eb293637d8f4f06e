"""
Subprocess control for the backends.

Every call into ``docker`` or ``tmux`` goes through a CommandRunner, built on
asyncio subprocesses with argument lists (no shell interpolation). The runner
kills the child when the caller times out or is cancelled, so a wedged control
call never outlives the operation that started it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger("fabric.process")


@dataclass
class ProcessResult:
    """Result of one control-plane subprocess."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessError(Exception):
    """A control-plane subprocess exited non-zero."""

    def __init__(self, args: list[str], result: ProcessResult) -> None:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"{' '.join(args[:3])} failed: {detail}")
        self.args_list = args
        self.result = result


class CommandRunner:
    """Runs host commands and collects their output."""

    async def run(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = False,
    ) -> ProcessResult:
        """
        Run a command to completion.

        Args:
            args: Command and arguments
            timeout: Seconds before the process is killed (None = unbounded)
            check: Raise ProcessError on non-zero exit

        Returns:
            ProcessResult with decoded output

        Raises:
            FileNotFoundError: The binary does not exist
            asyncio.TimeoutError: The timeout expired (process already killed)
        """
        logger.debug(f"exec: {' '.join(args)}")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            await self._kill(proc)
            raise

        result = ProcessResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and not result.ok:
            raise ProcessError(args, result)
        return result

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"Process {proc.pid} did not exit after kill")
