"""Interrupt handling for a run."""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class RunState(Enum):
    """State of a run with respect to interrupts."""

    RUNNING = "running"
    CANCELLED = "cancelled"


class Cancellation:
    """Moves from RUNNING to CANCELLED on the first interrupt.

    CANCELLED is terminal; later signals are ignored.
    """

    def __init__(self) -> None:
        self.state = RunState.RUNNING
        self.signum: int | None = None
        self._event = asyncio.Event()
        self._installed: list[int] = []
        self._previous: dict[int, object] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self.state is RunState.CANCELLED

    @staticmethod
    def describe(signum: int | None) -> str:
        if signum is None:
            return "unknown signal"
        try:
            return signal.Signals(signum).name
        except ValueError:
            return f"signal {signum}"

    def cancel(self, signum: int = signal.SIGINT) -> None:
        if self.cancelled:
            return
        logger.debug("Cancelled by signal %d", signum)
        self.state = RunState.CANCELLED
        self.signum = int(signum)
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def install(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        signals: tuple[int, ...] = DEFAULT_SIGNALS,
    ) -> None:
        """Route ``signals`` to ``cancel`` on the running event loop."""
        self._loop = loop or asyncio.get_running_loop()
        for signum in signals:
            try:
                self._loop.add_signal_handler(signum, self.cancel, signum)
            except NotImplementedError:
                # Event loops without add_signal_handler (Windows).
                self._previous[signum] = signal.signal(signum, self._on_signal)
            self._installed.append(signum)

    def _on_signal(self, signum, frame) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.cancel, signum)

    def uninstall(self) -> None:
        for signum in self._installed:
            if signum in self._previous:
                signal.signal(signum, self._previous.pop(signum))
            elif self._loop is not None:
                self._loop.remove_signal_handler(signum)
        self._installed.clear()
