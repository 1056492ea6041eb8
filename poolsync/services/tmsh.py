"""Async runner for the load-balancer configuration CLI.

Every pool operation is a single ``tmsh -a ...`` invocation executed without
a shell. The runner only knows how to run a command; building the pool
commands is the applier's job.
"""
from __future__ import annotations

import asyncio
from typing import Protocol

from poolsync.core.config import settings
from poolsync.core.logging import get_logger
from poolsync.services.errors import CommandError

log = get_logger("Applier")


class CommandRunner(Protocol):
    """Anything that can execute a CLI command and return its stdout."""

    async def run(self, *args: str) -> str:
        ...


class TmshRunner:
    """Executes ``tmsh -a <args>`` as a subprocess."""

    def __init__(self, tmsh_path: str | None = None, timeout_s: float | None = None):
        self._tmsh = tmsh_path or settings.tmsh_path
        self._timeout = timeout_s if timeout_s is not None else settings.command_timeout_s

    async def run(self, *args: str) -> str:
        argv = [self._tmsh, "-a", *args]
        log.debug("exec %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandError(argv, None, f"{self._tmsh} not found") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise CommandError(argv, None, f"timed out after {self._timeout}s") from e

        if proc.returncode != 0:
            raise CommandError(argv, proc.returncode, stderr.decode("utf-8", errors="replace"))
        return stdout.decode("utf-8", errors="replace")
