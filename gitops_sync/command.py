"""Asyncio wrapper for the kustomize and helm subprocesses of the renderer.

At most `_CONCURRENCY` subprocesses run at once per event loop, and each one is
killed once its `timeout` expires.
"""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_TIMEOUT = 60.0

__all__ = ["Command", "run"]

_SEMAPHORES: dict[asyncio.AbstractEventLoop, asyncio.Semaphore] = {}


def _slot() -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    if loop not in _SEMAPHORES:
        for closed in [other for other in _SEMAPHORES if other.is_closed()]:
            del _SEMAPHORES[closed]
        _SEMAPHORES[loop] = asyncio.Semaphore(_CONCURRENCY)
    return _SEMAPHORES[loop]


@dataclass
class Command:
    """A subprocess to run, with the exception type reported on failure."""

    cmd: list[str]
    cwd: Path | None = None
    exc: type[CommandException] = CommandException
    env: dict[str, str] | None = None
    """Variables added to the environment of the current process."""
    timeout: float = _TIMEOUT

    @property
    def string(self) -> str:
        """The command line as it would be typed in a shell."""
        return shlex.join(self.cmd)

    def __str__(self) -> str:
        if self.cwd is None:
            return self.string
        return f"({self.cwd}) {self.string}"

    def _failure(self, returncode: int, stdout: bytes, stderr: bytes) -> str:
        lines = [f"Command '{self}' failed with return code {returncode}"]
        lines.extend(
            output.decode("utf-8", errors="replace")
            for output in (stdout, stderr)
            if output
        )
        return "\n".join(lines)

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command and return its stdout."""
        _LOGGER.debug("Running command: %s", self)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=os.environ | (self.env or {}),
            )
        except FileNotFoundError as err:
            raise self.exc(f"Command '{self.cmd[0]}' not found") from err
        try:
            async with asyncio.timeout(self.timeout):
                stdout, stderr = await proc.communicate(stdin)
        except TimeoutError as err:
            proc.kill()
            await proc.wait()
            raise self.exc(f"Command '{self}' timed out") from err
        if proc.returncode:
            message = self._failure(proc.returncode, stdout, stderr)
            _LOGGER.debug(message)
            raise self.exc(message)
        return stdout


async def run(cmd: Command, stdin: bytes | None = None) -> str:
    """Run cmd once a subprocess slot is free and return its decoded stdout."""
    async with _slot():
        stdout = await cmd.run(stdin)
    try:
        return stdout.decode("utf-8")
    except UnicodeDecodeError as err:
        raise cmd.exc(f"Command '{cmd}' produced invalid UTF-8: {err}") from err
