"""Typed description of one supervised ffmpeg run."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

CPU_USED_RANGE = (0, 15)
CRF_RANGE = (0, 63)


@dataclass(frozen=True)
class LiveIngest:
    """Listen for an RTMP publisher on ``host:port``."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not (1 <= int(self.port) <= 65535):
            raise ValueError(f"ingest port {self.port!r} must be between 1 and 65535")


@dataclass(frozen=True)
class FileSource:
    """Play back a local media file, optionally starting ``seek`` seconds in."""

    path: Path
    seek: Optional[float] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))
        if self.seek is not None and self.seek < 0:
            raise ValueError("seek offset must not be negative")


@dataclass(frozen=True)
class SegmentedDirectory:
    """Write a DASH manifest and its segments into ``path``."""

    path: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path))


@dataclass(frozen=True)
class RemotePush:
    """Push the stream to a remote RTMP server instead of hosting it."""

    address: str

    def __post_init__(self) -> None:
        if not str(self.address).strip():
            raise ValueError("remote address must not be empty")


TranscodeInput = Union[LiveIngest, FileSource]
TranscodeOutput = Union[SegmentedDirectory, RemotePush]


@dataclass(frozen=True)
class TranscodeConfig:
    input: TranscodeInput
    output: TranscodeOutput
    cpu_used: int = 5
    framerate: int = 30
    crf: int = 30
    video_bitrate: str = "4000k"
    video_resolution: str = "1280x720"
    audio_bitrate: str = "128k"
    audio_sample_rate: str = "44100"
    subtitles_path: Optional[Path] = None
    verbose: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.input, (LiveIngest, FileSource)):
            raise ValueError(f"unsupported input {self.input!r}")
        if not isinstance(self.output, (SegmentedDirectory, RemotePush)):
            raise ValueError(f"unsupported output {self.output!r}")
        low, high = CPU_USED_RANGE
        if not (low <= self.cpu_used <= high):
            raise ValueError(f"cpu-used must be between {low} and {high}, got {self.cpu_used}")
        low, high = CRF_RANGE
        if not (low <= self.crf <= high):
            raise ValueError(f"crf must be between {low} and {high}, got {self.crf}")
        if self.framerate <= 0:
            raise ValueError(f"framerate must be positive, got {self.framerate}")
        if self.subtitles_path is not None:
            object.__setattr__(self, "subtitles_path", Path(self.subtitles_path))

    @property
    def seek(self) -> Optional[float]:
        if isinstance(self.input, FileSource):
            return self.input.seek
        return None

    @property
    def keyframe_interval(self) -> int:
        # one keyframe every two seconds lines up with every segment boundary
        return 2 * self.framerate
