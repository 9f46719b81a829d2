#!/usr/bin/env python3
"""
FfmpegSupervisor: owns the single ffmpeg child process of a run.

- Builds the command line from a TranscodeConfig (see ffmpeg_io)
- Spawns ffmpeg inside the working directory when hosting DASH locally
- Polls the child every ``poll_interval`` seconds without blocking the loop
- close() always kills and reaps a still-owned child, even on error paths

A crashed ffmpeg is never restarted here; the caller decides what happens next.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence

from .ffmpeg_io import build_ffmpeg_args
from .transcode_config import SegmentedDirectory, TranscodeConfig

DEFAULT_POLL_INTERVAL = 0.5
# Windows keeps the working directory locked for a moment after the child dies.
DEFAULT_SETTLE_DELAY = 1.0


class FfmpegError(Exception):
    """Raised when the supervised ffmpeg process cannot be managed."""


class FfmpegSpawnError(FfmpegError):
    """Raised when ffmpeg cannot be launched at all."""


class FfmpegExitError(FfmpegError):
    """Raised when ffmpeg exits with a non-zero status."""

    def __init__(self, returncode: int) -> None:
        super().__init__(f"ffmpeg exited with status {returncode}")
        self.returncode = returncode


class SupervisorState(enum.Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED_OK = "exited_ok"
    EXITED_ERR = "exited_err"
    KILLED = "killed"


class FfmpegSupervisor:
    def __init__(
        self,
        config: TranscodeConfig,
        *,
        executable: str = "ffmpeg",
        cwd: Path | str | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.config = config
        self.executable = executable
        self.poll_interval = float(poll_interval)
        self.settle_delay = max(0.0, float(settle_delay))
        self._log = logger or logging.getLogger("ffmpeg_supervisor")
        self._proc: Optional[subprocess.Popen] = None
        self.state = SupervisorState.IDLE
        self.returncode: Optional[int] = None

        if cwd is not None:
            self.cwd: Optional[Path] = Path(cwd)
        elif isinstance(config.output, SegmentedDirectory):
            self.cwd = config.output.path
        else:
            self.cwd = None

    def __enter__(self) -> "FfmpegSupervisor":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()

    @property
    def running(self) -> bool:
        return self._proc is not None

    def build_command(self) -> list[str]:
        return [self.executable, *build_ffmpeg_args(self.config)]

    def _spawn(self, command: Sequence[str]) -> subprocess.Popen:
        self.state = SupervisorState.SPAWNING
        self._log.debug("Launching ffmpeg: %s", " ".join(command))
        try:
            proc = subprocess.Popen(
                list(command),
                cwd=str(self.cwd) if self.cwd is not None else None,
                stdin=subprocess.DEVNULL,
            )
        except OSError as exc:
            self.state = SupervisorState.EXITED_ERR
            raise FfmpegSpawnError(f"unable to launch {command[0]!r}: {exc}") from exc
        self.state = SupervisorState.RUNNING
        return proc

    async def run(self, command: Sequence[str] | None = None) -> int:
        """Spawn ffmpeg and wait for it to finish.

        Returns the exit status (0) on a clean exit and raises
        ``FfmpegExitError`` for any other status.
        """

        if self._proc is not None:
            raise FfmpegError("ffmpeg is already running under this supervisor")

        cmd = list(command) if command is not None else self.build_command()
        self._proc = self._spawn(cmd)

        while True:
            await asyncio.sleep(self.poll_interval)
            proc = self._proc
            if proc is None:
                # close() took the handle while we were sleeping
                raise FfmpegError("ffmpeg was terminated by the supervisor")
            try:
                rc = proc.poll()
            except OSError as exc:
                raise FfmpegError(f"ffmpeg error attempting to wait: {exc}") from exc
            if rc is None:
                continue

            self._proc = None
            self.returncode = rc
            if rc == 0:
                self.state = SupervisorState.EXITED_OK
                self._log.info("ffmpeg exited with status %s", rc)
                return rc
            self.state = SupervisorState.EXITED_ERR
            self._log.warning("ffmpeg exited with status %s", rc)
            raise FfmpegExitError(rc)

    def close(self) -> None:
        """Kill and reap the child if we still own one. Never raises."""

        proc = self._proc
        self._proc = None
        if proc is None:
            return

        try:
            proc.kill()
        except OSError as exc:
            # already gone is fine, wait() below still reaps it
            self._log.debug("ffmpeg kill() failed: %r", exc)
        try:
            self.returncode = proc.wait()
            self._log.debug("ffmpeg killed; rc=%s", self.returncode)
        except Exception as exc:
            self._log.error("ffmpeg wait() failed: %r", exc)
        self.state = SupervisorState.KILLED

        if self.settle_delay:
            time.sleep(self.settle_delay)
