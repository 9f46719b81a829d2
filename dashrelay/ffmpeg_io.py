"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import os
from pathlib import Path

from .durations import format_seconds
from .transcode_config import (
    FileSource,
    LiveIngest,
    RemotePush,
    SegmentedDirectory,
    TranscodeConfig,
)

RTMP_STREAM_PATH = "stream"
RTMP_STREAM_KEY = ""
MANIFEST_NAME = "stream.mpd"
SEGMENT_SECONDS = 2
WINDOW_SIZE = 5
EXTRA_WINDOW_SIZE = 2


def absolute_path(path: Path | str, cwd: Path | str | None = None) -> Path:
    """Anchor ``path`` to ``cwd`` (default: the current directory) if relative.

    ffmpeg runs inside the working directory, so relative inputs must be
    resolved against where the user launched us instead.
    """

    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    base = Path(cwd) if cwd is not None else Path.cwd()
    return base / candidate


def escape_filter_path(path: Path | str) -> str:
    """Escape a path for use as a filtergraph option value."""
    return str(path).replace("\\", "\\\\").replace(":", "\\:")


def rtmp_listen_url(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"rtmp://{host}:{port}/{RTMP_STREAM_PATH}/{RTMP_STREAM_KEY}"


def remote_push_url(address: str) -> str:
    address = address.strip()
    if "://" in address:
        return address
    return f"rtmp://{address}"


def input_args(config: TranscodeConfig, *, cwd: Path | str | None = None) -> list[str]:
    """Return the arguments selecting the input.

    Options placed before ``-i`` apply to that input, so ``-ss`` must come
    first for a fast input-side seek.
    """

    source = config.input
    if isinstance(source, LiveIngest):
        return ["-listen", "1", "-i", rtmp_listen_url(source.host, source.port)]

    if not isinstance(source, FileSource):
        raise TypeError(f"unsupported input {source!r}")
    args = ["-re"]
    if source.seek is not None:
        args.extend(["-ss", format_seconds(source.seek)])
    args.extend(["-i", str(absolute_path(source.path, cwd))])
    return args


def subtitle_filter_args(config: TranscodeConfig, *, cwd: Path | str | None = None) -> list[str]:
    if config.subtitles_path is None:
        return []

    escaped = escape_filter_path(absolute_path(config.subtitles_path, cwd))
    seek = config.seek
    if seek:
        # shift timestamps so the burned-in subtitles line up with the seeked start
        offset = format_seconds(seek)
        graph = f"setpts=PTS+{offset}/TB,subtitles={escaped},setpts=PTS-STARTPTS"
    else:
        graph = f"subtitles={escaped}"
    return ["-vf", graph]


def dash_output_args(config: TranscodeConfig, *, cpu_count: int | None = None) -> list[str]:
    threads = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    keyint = str(config.keyframe_interval)
    return [
        # video, see https://developers.google.com/media/vp9/live-encoding
        "-c:v", "libvpx-vp9",
        "-quality", "realtime",
        "-cpu-used", str(config.cpu_used),
        "-tile-columns", "4",
        "-frame-parallel", "1",
        "-threads", str(threads),
        "-static-thresh", "0",
        "-max-intra-rate", "300",
        "-lag-in-frames", "0",
        "-qmin", "4",
        "-qmax", "48",
        "-row-mt", "1",
        "-error-resilient", "1",
        "-r", str(config.framerate),
        "-crf", str(config.crf),
        "-b:v", config.video_bitrate,
        "-s", config.video_resolution,
        "-keyint_min", keyint,
        "-g", keyint,
        # audio
        "-c:a", "libvorbis",
        "-b:a", config.audio_bitrate,
        "-ar", config.audio_sample_rate,
        "-ac", "2",
        # output
        "-f", "dash",
        "-remove_at_exit", "1",
        "-dash_segment_type", "webm",
        "-seg_duration", str(SEGMENT_SECONDS),
        "-window_size", str(WINDOW_SIZE),
        "-extra_window_size", str(EXTRA_WINDOW_SIZE),
        # list segments explicitly so players never ask for unwritten ones
        "-use_template", "0",
        "-use_timeline", "0",
        "-index_correction", "1",
        "-ignore_io_errors", "1",
        MANIFEST_NAME,
    ]


def remote_output_args(config: TranscodeConfig) -> list[str]:
    if not isinstance(config.output, RemotePush):
        raise TypeError(f"remote output args need a RemotePush, got {config.output!r}")
    url = remote_push_url(config.output.address)
    if config.subtitles_path is None:
        return ["-c", "copy", "-f", "flv", url]
    # burning subtitles in requires a re-encode
    return [
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-r", str(config.framerate),
        "-b:v", config.video_bitrate,
        "-s", config.video_resolution,
        "-g", str(config.keyframe_interval),
        "-c:a", "aac",
        "-b:a", config.audio_bitrate,
        "-ar", config.audio_sample_rate,
        "-f", "flv",
        url,
    ]


def build_ffmpeg_args(
    config: TranscodeConfig,
    *,
    cwd: Path | str | None = None,
    cpu_count: int | None = None,
) -> list[str]:
    """Return the ffmpeg argument list (without the executable) for ``config``."""

    args = [
        "-hide_banner",
        "-loglevel", "info" if config.verbose else "warning",
        "-stats",
    ]
    args.extend(input_args(config, cwd=cwd))
    args.extend(subtitle_filter_args(config, cwd=cwd))
    if isinstance(config.output, SegmentedDirectory):
        args.extend(dash_output_args(config, cpu_count=cpu_count))
    else:
        args.extend(remote_output_args(config))
    return args
