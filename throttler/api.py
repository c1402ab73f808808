"""Run commands on the local host.

Every interaction with the kernel (``tc``, ``ip``, ``iptables``) goes through
:py:func:`run_command`. Components receive it as a ``runner`` argument so
that another capability (e.g. a fake one in tests) can be used instead.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from throttler.config import get_config
from throttler.errors import CommandFailure

logger = logging.getLogger(__name__)

# keep only the tail of very verbose outputs
MAX_OUTPUT_SIZE = 512 * 1024


@dataclass
class CommandResult:
    command: str
    stdout: str
    stderr: str
    rc: int = 0

    def ok(self):
        return self.rc == 0


Runner = Callable[..., Awaitable[CommandResult]]


def _tail(data: bytes) -> str:
    return data[-MAX_OUTPUT_SIZE:].decode(errors="replace")


async def run_command(command: str, verbose: bool = False) -> CommandResult:
    """Run a shell command and wait for its completion.

    Args:
        command: the command to run, interpreted by ``/bin/sh``
        verbose: True iff the command and its outputs must be logged

    Returns:
        The :py:class:`CommandResult` of the command.

    Raises:
        CommandFailure: the command exited with a non-zero code
    """
    verbose = verbose or get_config()["verbose"]
    if verbose:
        logger.debug("run_command cmd: %s", command)
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    result = CommandResult(command, _tail(stdout), _tail(stderr), proc.returncode)
    if not result.ok():
        raise CommandFailure(command, result.rc, result.stderr)
    if verbose:
        logger.debug(
            "run_command cmd: %s done stdout=%s stderr=%s",
            command,
            result.stdout,
            result.stderr,
        )
    return result


async def start_process(args: Sequence[str]) -> asyncio.subprocess.Process:
    """Start a long running process in its own session.

    stdin and stdout are discarded, stderr is piped so that it can be
    reported when the process dies.
    """
    logger.debug("start_process: %s", " ".join(args))
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
