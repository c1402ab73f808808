"""The throttling engine.

.. code-block:: python

    import asyncio

    from throttler import Throttler

    async def main():
        throttler = Throttler()
        await throttler.start(
            "[{sessions: '0-1', protocol: udp, up: {rate: 1000, delay: 50}}]"
        )
        index = throttler.resolve_session_class(0)
        launcher = await throttler.build_launcher("iperf3 -c server -u", index)
        ...
        await throttler.stop()

    asyncio.run(main())
"""
import asyncio
import logging
import sys
from enum import Enum
from typing import Dict, List, Optional

from throttler.api import Runner, run_command, start_process
from throttler.capture import CaptureController, CaptureHandle, Spawner
from throttler.configuration import ConfigurationLike, load_configuration
from throttler.emul.htb import ClassRouter, DeviceBootstrap
from throttler.emul.netem import RuleScheduler
from throttler.errors import InvalidStateError, ThrottlerError, UnsupportedPlatform
from throttler.exit import ExitHandlers, get_exit_handlers
from throttler.launcher import GroupMarkLauncher
from throttler.network_utils import resolve_device
from throttler.objects import Direction, TrafficClassConfig
from throttler.sessions import resolve_session_index

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def _check_platform():
    if not sys.platform.startswith("linux"):
        raise UnsupportedPlatform(sys.platform)


class Throttler:
    """Shape the traffic of groups of processes.

    All the state of a run (configuration, timers, applied values, captures)
    belongs to the instance.

    Args:
        runner: the command capability, see :py:func:`throttler.api.run_command`
        spawner: starts the capture processes,
            see :py:func:`throttler.api.start_process`
        launcher_dir: where the launchers are written
        user: the user allowed to run shaped processes (default to the
            current one)
        exit_handlers: where the stop is registered while running
    """

    def __init__(
        self,
        runner: Runner = run_command,
        spawner: Spawner = start_process,
        launcher_dir: Optional[str] = None,
        user: Optional[str] = None,
        exit_handlers: Optional[ExitHandlers] = None,
    ):
        self.runner = runner
        self.state = State.IDLE
        self.configs: List[TrafficClassConfig] = []
        self.device: Optional[str] = None
        self.bootstrap = DeviceBootstrap(runner=runner)
        self.router = ClassRouter(runner=runner)
        self.scheduler = RuleScheduler(self.router, runner=runner)
        self.capture = CaptureController(runner=runner, spawner=spawner)
        self.launcher = GroupMarkLauncher(
            runner=runner, launcher_dir=launcher_dir, user=user
        )
        self.captures: Dict[int, CaptureHandle] = {}
        self.exit_handlers = exit_handlers or get_exit_handlers()
        self._stopping: Optional[asyncio.Task] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.stop()

    def _check_starting(self):
        if self.state != State.STARTING:
            raise ThrottlerError(f"start interrupted (state={self.state.name})")

    async def _on_exit(self, signame: Optional[str] = None):
        await self.stop()

    async def start(self, config: ConfigurationLike):
        """Start shaping.

        Any state left by a previous run is removed first. On failure
        everything is torn down and the error is raised again.

        Args:
            config: the traffic classes, see
                :py:func:`~throttler.configuration.load_configuration`

        Raises:
            UnsupportedPlatform: when not running on Linux
            InvalidStateError: if the throttler isn't idle
            ConfigParseError: if the configuration isn't a list of classes
            CommandFailure: if the kernel state can't be set up
        """
        _check_platform()
        if self.state != State.IDLE:
            raise InvalidStateError(self.state)
        self.state = State.STARTING
        configs: List[TrafficClassConfig] = []
        device: Optional[str] = None
        try:
            configs = self.configs = load_configuration(config)
            logger.debug("Starting throttle with config: %s", self.configs)
            if not self.configs:
                # leftovers of a previous run on the default device
                await self._cleanup()
                self._check_starting()
                self.state = State.RUNNING
                return
            self.exit_handlers.register(self._on_exit)
            device = self.device = await resolve_device(
                self.configs, runner=self.runner
            )
            self._check_starting()
            await self._cleanup()
            self._check_starting()
            await self.bootstrap.setup(self.device)
            for index, c in enumerate(self.configs):
                self._check_starting()
                await self.scheduler.schedule(
                    index, Direction.UP, self.device, c.up, c.protocol, c.match
                )
                await self.scheduler.schedule(
                    index,
                    Direction.DOWN,
                    self.bootstrap.ifb,
                    c.down,
                    c.protocol,
                    c.match,
                )
                if c.capture:
                    self.captures[index] = await self.capture.start(
                        index, c.capture, protocol=c.protocol
                    )
            self._check_starting()
        except Exception as e:
            logger.error("start throttle error: %s", e)
            if self._stopping is not None and not self._stopping.done():
                await asyncio.shield(self._stopping)
            # a stop may have run while a command was in flight: what the
            # command created is removed by a fresh stop
            self.configs, self.device = configs, device
            await self.stop()
            raise
        self.state = State.RUNNING
        logger.info("Throttling %s classes on %s", len(self.configs), self.device)

    async def stop(self):
        """Stop shaping and remove every kernel state set by the throttler.

        Safe to call at any time, even when idle. A stop in progress is
        awaited instead of being started again. Errors are logged.

        Raises:
            UnsupportedPlatform: when not running on Linux
        """
        _check_platform()
        if self._stopping is None or self._stopping.done():
            self._stopping = asyncio.get_running_loop().create_task(self._stop())
            self._stopping.add_done_callback(self._stopped)
        await asyncio.shield(self._stopping)

    def _stopped(self, task: asyncio.Task):
        if self._stopping is task:
            self._stopping = None

    async def _stop(self):
        logger.debug("Stopping throttle")
        self.state = State.STOPPING
        try:
            await self._cleanup()
        except Exception as e:
            logger.error("Stop throttle error: %s", e)
        finally:
            self.exit_handlers.unregister(self._on_exit)
            self.configs = []
            self.device = None
            self.state = State.IDLE
        logger.debug("Stopping throttle done")

    async def _cleanup(self):
        # timers and applied values go away together
        self.scheduler.cancel()
        await self.scheduler.wait()
        self.scheduler.reset()

        captures = list(self.captures.values())
        self.captures.clear()
        for result in await asyncio.gather(
            *[c.stop() for c in captures], return_exceptions=True
        ):
            if isinstance(result, Exception):
                logger.error("Unable to stop a capture: %s", result)

        device = self.device or await resolve_device(self.configs, runner=self.runner)
        await self.bootstrap.teardown(device)
        self.router.reset()
        if self.configs:
            await self.launcher.remove_mark_rules(len(self.configs))

    def resolve_session_class(self, session_id: int) -> Optional[int]:
        """The index of the class shaping ``session_id`` (None if unshaped)."""
        return resolve_session_index(session_id, self.configs)

    def get_applied_values(self, index: Optional[int], direction: Direction) -> Dict:
        """What is currently applied on a class ({} if nothing)."""
        if index is None or index < 0:
            return {}
        return self.scheduler.get_applied(index, direction).to_dict()

    async def build_launcher(self, executable: str, index: Optional[int]) -> str:
        """Get the command running ``executable`` within the class ``index``.

        See :py:meth:`throttler.launcher.GroupMarkLauncher.build`.
        """
        return await self.launcher.build(executable, index, self.configs)
