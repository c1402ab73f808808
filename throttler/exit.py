"""Run cleanup code whatever the way the process terminates.

The handlers run once, in their registration order, either explicitly with
:py:meth:`ExitHandlers.run_now` or when one of the handled signals is
received (see :py:meth:`ExitHandlers.install_signal_handlers`). Concurrent
calls share the same run.
"""
import asyncio
import logging
import signal
from typing import Awaitable, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

ExitHandler = Callable[[Optional[str]], Awaitable[None]]

SIGNALS = [signal.SIGHUP, signal.SIGINT, signal.SIGQUIT, signal.SIGTERM]


class ExitHandlers:
    def __init__(self):
        # dict keeps the registration order
        self.handlers: Dict[ExitHandler, None] = {}
        self._run: Optional[asyncio.Task] = None

    def register(self, handler: ExitHandler):
        self.handlers[handler] = None

    def unregister(self, handler: ExitHandler):
        self.handlers.pop(handler, None)

    async def _run_handlers(self, signame: Optional[str]):
        handlers = list(self.handlers)
        for i, handler in enumerate(handlers, start=1):
            id_ = f"{i}/{len(handlers)}"
            logger.debug("running exitHandler %s", id_)
            try:
                await handler(signame)
                logger.debug("  exitHandler %s done", id_)
            except Exception as e:
                logger.error("exitHandler %s error: %s", id_, e)
        self.handlers.clear()

    async def run_now(self, signame: Optional[str] = None):
        """Run the registered handlers (only once)."""
        if self._run is None:
            self._run = asyncio.get_running_loop().create_task(
                self._run_handlers(signame)
            )
        await asyncio.shield(self._run)

    def install_signal_handlers(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        signals: Iterable[signal.Signals] = SIGNALS,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        """Run the handlers when a signal is received.

        Args:
            loop: the event loop (defaults to the running one)
            signals: the signals to handle
            on_exit: called once the handlers are done (e.g. ``loop.stop``)
        """
        loop = loop or asyncio.get_running_loop()

        def _on_signal(sig: signal.Signals):
            logger.debug("Exit on signal: %s", sig.name)
            task = loop.create_task(self.run_now(sig.name))
            if on_exit is not None:
                task.add_done_callback(lambda _: on_exit())

        for sig in signals:
            loop.add_signal_handler(sig, _on_signal, sig)


_exit_handlers = ExitHandlers()


def get_exit_handlers() -> ExitHandlers:
    return _exit_handlers


def register_exit_handler(handler: ExitHandler):
    _exit_handlers.register(handler)


def unregister_exit_handler(handler: ExitHandler):
    _exit_handlers.unregister(handler)


async def run_exit_handlers_now(signame: Optional[str] = None):
    await _exit_handlers.run_now(signame)
