"""Fan-in of shutdown requests from independent tasks into one teardown."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Awaitable, Iterable, Optional

CLOSED_SOURCE = "closed"


@dataclass(frozen=True)
class ShutdownSignal:
    source: str
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class ShutdownSender:
    """Producer side handed to each task that may end the run."""

    def __init__(self, coordinator: "ShutdownCoordinator", source: str) -> None:
        self._coordinator = coordinator
        self.source = source

    def send(self, error: BaseException | None = None) -> None:
        self._coordinator._deliver(ShutdownSignal(self.source, error))


class ShutdownCoordinator:
    """Many producers, one consumer: the first token wins.

    Sends never block and never raise. ``wait()`` returns after exactly one
    token; later tokens stay queued and are ignored. Closing the coordinator
    wakes the consumer the same way a token would.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[ShutdownSignal] = asyncio.Queue()
        self._closed = False
        self._log = logger or logging.getLogger("shutdown")
        self._signals: list[int] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def sender(self, source: str) -> ShutdownSender:
        return ShutdownSender(self, source)

    def _deliver(self, token: ShutdownSignal) -> None:
        if self._closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(token)
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, token)
        except RuntimeError:
            # loop already closed; nobody is left to tear down
            self._log.debug("dropping shutdown token from %s: loop closed", token.source)

    def spawn(self, source: str, coro: Awaitable[object]) -> asyncio.Task:
        """Run ``coro`` as a task that signals shutdown when it ends."""

        sender = self.sender(source)

        async def _guarded() -> None:
            error: BaseException | None = None
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = exc
                self._log.error("%s: %s", source, exc)
            finally:
                sender.send(error)

        return self._loop.create_task(_guarded(), name=f"dashrelay-{source}")

    def install_signal_handlers(
        self,
        signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        sender = self.sender("interrupt")

        def _on_signal(signum: int) -> None:
            self._log.info("stopping...")
            sender.send()

        for signum in signals:
            try:
                self._loop.add_signal_handler(signum, _on_signal, signum)
            except (NotImplementedError, RuntimeError):
                # no loop signal support (Windows); fall back to the plain handler
                signal.signal(signum, lambda num, _frame: _on_signal(num))
            self._signals.append(signum)

    def remove_signal_handlers(self) -> None:
        for signum in self._signals:
            try:
                self._loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                default = signal.default_int_handler if signum == signal.SIGINT else signal.SIG_DFL
                signal.signal(signum, default)
        self._signals.clear()

    async def wait(self) -> ShutdownSignal:
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._deliver(ShutdownSignal(CLOSED_SOURCE))
        self._closed = True
