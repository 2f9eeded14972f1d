"""
Bounded execution of external commands.

Every call into git, kubectl or the Docker daemon goes through here so that no
step of the pipeline can hang without a time limit.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar, Union

from push_deployer.exceptions import CommandTimeout, InputError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Stderr if present, else stdout; used in error messages."""
        return (self.stderr or self.stdout).strip()


async def run_command(
    *args: str,
    timeout: float,
    cwd: Optional[Union[str, Path]] = None,
) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        *args: Command and arguments
        timeout: Seconds before the process is killed
        cwd: Working directory

    Returns:
        CommandResult with exit code and decoded output

    Raises:
        CommandTimeout: If the command did not finish in time
        InputError: If the executable is not installed
    """
    command = list(args)
    logger.debug(f"Running: {' '.join(command)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise InputError(f"{command[0]} not found in PATH") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandTimeout(" ".join(command[:3]), timeout)

    result = CommandResult(
        args=command,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )
    if not result.ok:
        logger.debug(f"{command[0]} exited {result.returncode}: {result.output}")
    return result


async def run_blocking(func: Callable[..., T], *args: Any, timeout: float, name: str) -> T:
    """
    Run a blocking call (e.g. a Docker SDK request) in the default executor.

    Raises:
        CommandTimeout: If the call did not return in time. The worker thread
            is abandoned, not interrupted.
    """
    loop = asyncio.get_event_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, func, *args), timeout=timeout)
    except asyncio.TimeoutError:
        raise CommandTimeout(name, timeout)

