"""
Local process execution shared by the hypervisor and remote channels
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .errors import CommandTimeout, PreconditionMissing

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Exit status and captured output of a finished process"""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def require_tools(tools: Iterable[str]):
    """Raise PreconditionMissing for the first tool not found on PATH"""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise PreconditionMissing(f"Required tools not found on PATH: {', '.join(missing)}")


async def run_command(cmd: List[str], timeout: Optional[float] = 300,
                      input: Optional[str] = None, description: str = "") -> CommandResult:
    """Run a command without a shell, with timeout and logging

    The process is killed when ``timeout`` expires and CommandTimeout is
    raised. A non-zero exit status is returned, not raised; callers decide
    whether it is fatal.
    """
    logger.info(f"Running: {description or ' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise PreconditionMissing(f"Executable not found: {cmd[0]}") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input.encode() if input is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"Command timed out after {timeout}s: {description or cmd[0]}")
        raise CommandTimeout(f"{description or cmd[0]} timed out after {timeout}s")

    result = CommandResult(
        process.returncode,
        stdout.decode('utf-8', errors='replace'),
        stderr.decode('utf-8', errors='replace'),
    )
    if result.ok:
        if result.stdout:
            logger.debug(f"STDOUT: {result.stdout}")
    else:
        logger.debug(f"Command exited {result.returncode}: {result.stderr.strip()}")
    return result
