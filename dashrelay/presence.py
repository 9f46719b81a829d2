#!/usr/bin/env python3
"""
Client presence and transfer accounting for the DASH web server.

Why this file exists:
- DASH players never announce themselves; they just keep polling the
  manifest and fetching segments.
- Every served request refreshes the client's last-seen time, so a client is
  "present" while it keeps requesting and "left" once it goes quiet for
  ``expiry_factor`` sweep intervals.
- TransferMeter sums served bytes and reports the rate once per interval.

Both objects are shared between aiohttp handlers and their sweep tasks. Each
lock is held for a single map/counter operation and never across an await.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

DEFAULT_SWEEP_INTERVAL = 1.0
DEFAULT_EXPIRY_FACTOR = 6


class PresenceTracker:
    def __init__(
        self,
        *,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        expiry_factor: float = DEFAULT_EXPIRY_FACTOR,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")
        if expiry_factor <= 0:
            raise ValueError("expiry_factor must be positive")
        self.sweep_interval = float(sweep_interval)
        self.expiry = self.sweep_interval * float(expiry_factor)
        self._clock = clock
        self._log = logger or logging.getLogger("presence")
        self._lock = threading.Lock()
        self._clients: dict[str, float] = {}

    @property
    def population(self) -> int:
        with self._lock:
            return len(self._clients)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return dict(self._clients)

    def note_seen(self, identity: str, now: Optional[float] = None) -> bool:
        """Insert or refresh ``identity``; return True on first sight."""

        if now is None:
            now = self._clock()
        with self._lock:
            previous = self._clients.get(identity)
            if previous is None:
                self._clients[identity] = now
                count = len(self._clients)
            else:
                self._clients[identity] = max(previous, now)
                return False
        self._log.info("client %s connected (%d clients)", identity, count)
        return True

    def sweep(self, now: Optional[float] = None) -> list[tuple[str, int]]:
        """Drop clients silent for longer than the expiry window.

        Returns one ``(identity, remaining clients)`` pair per removal.
        """

        if now is None:
            now = self._clock()
        left: list[tuple[str, int]] = []
        with self._lock:
            expired = [ip for ip, seen in self._clients.items() if now - seen > self.expiry]
            for ip in expired:
                del self._clients[ip]
                left.append((ip, len(self._clients)))
        for ip, count in left:
            self._log.info("client %s left (%d clients)", ip, count)
        return left

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()


class TransferMeter:
    """Running byte counter drained and reported once per interval."""

    def __init__(
        self,
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        log_rate: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self.log_rate = log_rate
        self.max_bytes_per_interval = 0
        self._log = logger or logging.getLogger("presence")
        self._lock = threading.Lock()
        self._bytes = 0

    def add(self, byte_count: int) -> None:
        if byte_count <= 0:
            return
        with self._lock:
            self._bytes += int(byte_count)

    def drain(self) -> int:
        with self._lock:
            byte_count, self._bytes = self._bytes, 0
        return byte_count

    def report(self, byte_count: int) -> bool:
        """Log the rate for one interval; return True on a new maximum."""

        kbps = byte_count / 1000 / self.interval
        if self.log_rate:
            self._log.info("%.1f kbps", kbps)
        if byte_count > self.max_bytes_per_interval:
            self.max_bytes_per_interval = byte_count
            self._log.info("new max: %.1f kbps", kbps)
            return True
        return False

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.report(self.drain())
