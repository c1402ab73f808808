"""Capture the traffic of a class.

The packets of the connections marked by a class are logged to the
``nflog:<mark>`` group, where ``dumpcap`` reads them and writes a pcap file.
Captures are best effort: failures are logged and never interrupt the
shaping.
"""
import asyncio
import logging
import signal
from typing import Awaitable, Callable, Optional, Sequence

from throttler.api import Runner, run_command, start_process
from throttler.errors import CommandFailure
from throttler.iptables import Chain, nflog_rule_args
from throttler.objects import mark_for

logger = logging.getLogger(__name__)

Spawner = Callable[[Sequence[str]], Awaitable[asyncio.subprocess.Process]]


def nflog_pattern(mark: int) -> str:
    return f"nflog-group {mark}"


def dumpcap_args(mark: int, path: str) -> list:
    return ["dumpcap", "-q", "-i", f"nflog:{mark}", "-w", path]


class CaptureHandle:
    """A running capture."""

    def __init__(
        self,
        index: int,
        path: str,
        chains: Sequence[Chain],
        rule_args: Sequence[str],
        process: Optional[asyncio.subprocess.Process] = None,
    ):
        self.index = index
        self.path = path
        self.chains = chains
        self.rule_args = rule_args
        self.process = process
        self.watcher: Optional[asyncio.Task] = None
        if process is not None:
            self.watcher = asyncio.get_running_loop().create_task(self._watch())

    async def _watch(self):
        if self.process is None:
            return
        _, stderr = await self.process.communicate()
        if self.process.returncode:
            logger.error(
                "capture %s exited with code %s: %s",
                self.path,
                self.process.returncode,
                stderr.decode(errors="replace") if stderr else "",
            )
        else:
            logger.info("capture %s exited", self.path)

    async def stop(self):
        logger.info("Stopping capture %s", self.path)
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
        if self.watcher is not None:
            await self.watcher
        for chain in self.chains:
            await chain.delete(self.rule_args)


class CaptureController:
    """Start the captures of the classes.

    Args:
        runner: the command capability
        spawner: the long running process capability
    """

    def __init__(self, runner: Runner = run_command, spawner: Spawner = start_process):
        self.runner = runner
        self.spawner = spawner
        self.chains = [
            Chain("INPUT", runner=runner),
            Chain("OUTPUT", runner=runner),
        ]

    async def start(
        self, index: int, path: str, protocol: Optional[str] = None
    ) -> CaptureHandle:
        """Capture the packets of the class ``index`` into ``path``."""
        mark = mark_for(index)
        rule_args = nflog_rule_args(mark, protocol=protocol)
        logger.info("Starting capture %s", path)
        handle = CaptureHandle(index, path, self.chains, rule_args)
        try:
            for chain in self.chains:
                await chain.ensure(nflog_pattern(mark), rule_args)
            process = await self.spawner(dumpcap_args(mark, path))
        except (CommandFailure, OSError) as e:
            logger.error("Unable to capture class %s in %s: %s", index, path, e)
            return handle
        return CaptureHandle(index, path, self.chains, rule_args, process=process)
