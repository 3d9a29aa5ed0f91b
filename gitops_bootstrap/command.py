"""Library for running external tools using asyncio and returning the output."""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 4
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 60.0


__all__ = [
    "Command",
    "run",
]


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = None
    """Extra environment variables for the subprocess."""

    timeout: float = _TIMEOUT
    """Seconds to wait for the command to complete."""

    def __str__(self) -> str:
        """Render as a debug string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    async def _communicate(self, stdin: bytes | None) -> tuple[int, bytes, bytes]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, **(self.env or {})},
            )
        except OSError as err:
            raise self.exc(f"Unable to run command '{self}': {err}") from err
        try:
            out, err = await asyncio.wait_for(proc.communicate(stdin), self.timeout)
        except asyncio.TimeoutError as err:
            proc.kill()
            await proc.wait()
            raise self.exc(f"Command '{self}' timed out") from err
        return proc.returncode or 0, out, err

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        returncode, out, err = await self._communicate(stdin)
        if returncode:
            errors = [f"Command '{self}' failed with return code {returncode}"]
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out


async def run(cmd: Command, stdin: bytes | None = None) -> bytes:
    """Run the specified command and return stdout."""
    async with _SEM:
        return await cmd.run(stdin)
