"""Supervise ffmpeg re-encoding RTMP or file input to DASH, and host the result."""

__version__ = "0.4.0"
