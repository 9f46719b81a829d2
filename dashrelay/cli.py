#!/usr/bin/env python3
"""
Command line entry point for dashrelay.

- Without a file argument, listens for an RTMP publisher and re-encodes it
- With a file argument, plays the file back in real time (optionally seeked)
- Hosts the resulting DASH stream over HTTP(S), or pushes to a remote RTMP
  server with --remote
- Ctrl-C, an ffmpeg exit, or a web server failure all end the run; ffmpeg is
  killed and the working directory removed on the way out
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import ipaddress
import logging
import os
import shutil
import ssl
import tempfile
from pathlib import Path
from typing import Any, Iterator, Sequence

from . import __version__, web_streamer
from .config import ConfigError, coerce_float, coerce_int, get_cfg, reload_cfg, section
from .durations import parse_duration
from .ffmpeg_io import remote_push_url
from .ffmpeg_supervisor import FfmpegSupervisor
from .presence import PresenceTracker, TransferMeter
from .shutdown import ShutdownCoordinator
from .tls_cert import TlsError, build_ssl_context
from .transcode_config import (
    CPU_USED_RANGE,
    CRF_RANGE,
    FileSource,
    LiveIngest,
    RemotePush,
    SegmentedDirectory,
    TranscodeConfig,
)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dashrelay",
        description="Re-encode an RTMP stream or a file to DASH and host it over HTTP.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Show debug messages, use multiple times for higher verbosity",
    )
    parser.add_argument("--config", type=Path, help="Path to a config.yaml to load first.")
    parser.add_argument("file", nargs="?", help="Play a file instead of starting an rtmp server")
    parser.add_argument("--seek", "--time", dest="seek", metavar="time", help="Seek input file to time")
    parser.add_argument(
        "--subtitles",
        metavar="file",
        help="Use a subtitles file to hardsub subtitles into the video track",
    )
    parser.add_argument(
        "--remote",
        metavar="address",
        help="Instead of hosting a dash server, stream to a remote rtmp server",
    )
    parser.add_argument("--rtmp-ip", metavar="address", help="Sets the listen ip address for rtmp")
    parser.add_argument("-r", "--rtmp-port", metavar="port", help="Sets the listen rtmp port")
    parser.add_argument("-i", "--http-ip", metavar="address", help="Sets the listen ip address for http")
    parser.add_argument("-p", "--http-port", metavar="port", help="Sets the listen http port")
    parser.add_argument(
        "--cpu-used",
        "--speed",
        dest="cpu_used",
        metavar="number",
        help=(
            "Sets amount of cpu to use for encoding (0-15), higher values mean less cpu. "
            "5 to 8 suits live encoding."
        ),
    )
    parser.add_argument("--resolution", metavar="WIDTHxHEIGHT", help="Sets resolution of the output video")
    parser.add_argument(
        "--video-bitrate",
        metavar="bitrate",
        help="Sets bitrate of the output video (1200-4000k for 720p, 4000-8000k for 1080p)",
    )
    parser.add_argument(
        "--crf",
        metavar="value",
        help="Sets the CRF value (0-63) of the output video, lower means better quality",
    )
    parser.add_argument(
        "--framerate",
        "--frame-rate",
        dest="framerate",
        metavar="fps",
        help="Sets the framerate of the output video",
    )
    parser.add_argument("--audio-sample-rate", metavar="sample-rate", help="Sets the sample rate of the output audio")
    parser.add_argument(
        "--audio-bitrate",
        metavar="bitrate",
        help="Sets the bitrate of the output audio (128k for 720p, 192k for 1080p)",
    )
    parser.add_argument("-s", "--tls", "--ssl", "--https", dest="tls", action="store_true", help="Use secured https")
    parser.add_argument("--tls-cert", metavar="path", help="PEM certificate to use instead of a self-signed one")
    parser.add_argument("--tls-key", metavar="path", help="PEM private key matching --tls-cert")
    parser.add_argument(
        "--no-external-ip",
        dest="lookup_external_ip",
        action="store_false",
        default=None,
        help="Don't look up the public ip address to print an external link",
    )
    return parser


def _configure_logging(verbosity: int, default_level: str) -> None:
    if verbosity > 0:
        level = logging.DEBUG
    else:
        level = getattr(logging, str(default_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if verbosity < 2:
        web_streamer._quiet_noisy_dependencies()


def _pick(cli_value: Any, section_cfg: dict[str, Any], key: str) -> Any:
    return cli_value if cli_value is not None else section_cfg.get(key)


def _parse_ip(value: Any, *, name: str) -> str:
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError as exc:
        raise ConfigError(f"{name} must be an ip address, got {value!r}") from exc


def build_transcode_config(
    args: argparse.Namespace,
    cfg: dict[str, Any],
    work_dir: Path,
) -> TranscodeConfig:
    """Combine CLI flags and config values into a TranscodeConfig."""

    ingest_cfg = section(cfg, "ingest")
    encoder_cfg = section(cfg, "encoder")

    if args.file:
        seek = parse_duration(args.seek) if args.seek is not None else None
        source: LiveIngest | FileSource = FileSource(Path(args.file), seek=seek)
    else:
        host = _parse_ip(_pick(args.rtmp_ip, ingest_cfg, "host"), name="rtmp-ip")
        port = coerce_int(_pick(args.rtmp_port, ingest_cfg, "port"), name="rtmp-port", minimum=1, maximum=65535)
        source = LiveIngest(host, port)

    if args.remote:
        output: SegmentedDirectory | RemotePush = RemotePush(args.remote)
    else:
        output = SegmentedDirectory(work_dir)

    try:
        return TranscodeConfig(
            input=source,
            output=output,
            cpu_used=coerce_int(
                _pick(args.cpu_used, encoder_cfg, "cpu_used"),
                name="cpu-used",
                minimum=CPU_USED_RANGE[0],
                maximum=CPU_USED_RANGE[1],
            ),
            framerate=coerce_int(_pick(args.framerate, encoder_cfg, "framerate"), name="framerate", minimum=1),
            crf=coerce_int(
                _pick(args.crf, encoder_cfg, "crf"),
                name="crf",
                minimum=CRF_RANGE[0],
                maximum=CRF_RANGE[1],
            ),
            video_bitrate=str(_pick(args.video_bitrate, encoder_cfg, "video_bitrate")),
            video_resolution=str(_pick(args.resolution, encoder_cfg, "resolution")),
            audio_bitrate=str(_pick(args.audio_bitrate, encoder_cfg, "audio_bitrate")),
            audio_sample_rate=str(_pick(args.audio_sample_rate, encoder_cfg, "audio_sample_rate")),
            subtitles_path=Path(args.subtitles) if args.subtitles else None,
            verbose=args.verbose > 0,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def resolve_ssl_context(args: argparse.Namespace, cfg: dict[str, Any]) -> ssl.SSLContext | None:
    web_cfg = section(cfg, "web_server")
    cert_path = args.tls_cert or web_cfg.get("certificate_path") or ""
    key_path = args.tls_key or web_cfg.get("private_key_path") or ""
    if args.tls_cert or args.tls_key:
        mode = "manual"
    elif args.tls:
        mode = "manual" if cert_path and key_path else "self-signed"
    else:
        mode = str(web_cfg.get("tls") or "off")
    return build_ssl_context(mode, certificate_path=cert_path, private_key_path=key_path)


@contextlib.contextmanager
def working_directory(log: logging.Logger) -> Iterator[Path]:
    """Own a fresh temp directory for ffmpeg's output; remove it on exit."""

    path = Path(tempfile.mkdtemp(prefix=".dashrelay"))
    log.debug("created temp dir %s", path)
    try:
        yield path
    finally:
        try:
            shutil.rmtree(path)
        except OSError as exc:
            log.error("temp_dir: %s", exc)


async def _supervise(supervisor: FfmpegSupervisor, linger: float, log: logging.Logger) -> None:
    await supervisor.run()
    if linger > 0:
        # keep hosting so players can fetch the last segments
        log.info("ffmpeg exited cleanly, sleeping for a bit so that the video finishes downloading")
        await asyncio.sleep(linger)


async def run(
    transcode_cfg: TranscodeConfig,
    cfg: dict[str, Any],
    *,
    http_host: str,
    http_port: int,
    ssl_context: ssl.SSLContext | None = None,
    log_requests: bool = False,
    lookup_external_ip: bool = True,
) -> int:
    """Run ffmpeg (and the web server) until the first shutdown signal."""

    log = logging.getLogger("dashrelay")
    supervisor_cfg = section(cfg, "supervisor")
    presence_cfg = section(cfg, "presence")

    coordinator = ShutdownCoordinator()
    coordinator.install_signal_handlers()
    tasks: list[asyncio.Task] = []
    try:
        with FfmpegSupervisor(
            transcode_cfg,
            executable=str(supervisor_cfg.get("ffmpeg_path") or "ffmpeg"),
            poll_interval=coerce_float(
                supervisor_cfg.get("poll_interval_sec", 0.5), name="poll_interval_sec", minimum=0.01
            ),
            settle_delay=coerce_float(
                supervisor_cfg.get("settle_delay_sec", 1.0), name="settle_delay_sec", minimum=0.0
            ),
        ) as supervisor:
            linger = 0.0
            output = transcode_cfg.output
            if isinstance(output, SegmentedDirectory):
                # only start the web server if we're going to use it
                sweep_interval = coerce_float(
                    presence_cfg.get("sweep_interval_sec", 1.0), name="sweep_interval_sec", minimum=0.01
                )
                presence = PresenceTracker(
                    sweep_interval=sweep_interval,
                    expiry_factor=coerce_float(
                        presence_cfg.get("expiry_factor", 6), name="expiry_factor", minimum=1
                    ),
                )
                meter = TransferMeter(interval=sweep_interval, log_rate=log_requests)
                web_task = coordinator.spawn(
                    "web",
                    web_streamer.serve(
                        output.path,
                        host=http_host,
                        port=http_port,
                        ssl_context=ssl_context,
                        presence=presence,
                        meter=meter,
                        log_requests=log_requests,
                        lookup_external_ip=lookup_external_ip,
                    ),
                )
                tasks.append(web_task)
                linger = coerce_float(supervisor_cfg.get("linger_sec", 6.0), name="linger_sec", minimum=0.0)
            else:
                log.info("sending to remote rtmp at %s", remote_push_url(output.address))

            tasks.append(coordinator.spawn("ffmpeg", _supervise(supervisor, linger, log)))

            # wait until something either fails, or user presses ctrl-c
            signal_ = await coordinator.wait()
            log.debug("exiting (%s)", signal_.source)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        coordinator.remove_signal_handlers()
        coordinator.close()

    return EXIT_FAILURE if signal_.failed else EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.seek is not None and not args.file:
        parser.error("--seek requires a file to play")

    try:
        if args.config is not None:
            # an explicit path must exist, unlike the searched defaults
            if not args.config.expanduser().is_file():
                raise ConfigError(f"Config file {args.config} does not exist")
            os.environ["DASHRELAY_CONFIG"] = str(args.config)
        cfg = reload_cfg() if args.config is not None else get_cfg()
        log_level = section(cfg, "logging").get("level", "INFO")
    except ConfigError as exc:
        _configure_logging(args.verbose, "INFO")
        logging.getLogger("dashrelay").error("%s", exc)
        return EXIT_CONFIG

    _configure_logging(args.verbose, log_level)
    log = logging.getLogger("dashrelay")

    http_cfg = section(cfg, "http")
    web_cfg = section(cfg, "web_server")
    try:
        http_host = _parse_ip(_pick(args.http_ip, http_cfg, "host"), name="http-ip")
        http_port = coerce_int(_pick(args.http_port, http_cfg, "port"), name="http-port", minimum=1, maximum=65535)
        ssl_context = resolve_ssl_context(args, cfg) if not args.remote else None
    except (ConfigError, TlsError) as exc:
        log.error("%s", exc)
        return EXIT_CONFIG

    lookup_external_ip = args.lookup_external_ip
    if lookup_external_ip is None:
        lookup_external_ip = bool(web_cfg.get("lookup_external_ip", True))

    with working_directory(log) as work_dir:
        try:
            transcode_cfg = build_transcode_config(args, cfg, work_dir)
        except (ConfigError, ValueError) as exc:
            log.error("%s", exc)
            return EXIT_CONFIG

        try:
            return asyncio.run(
                run(
                    transcode_cfg,
                    cfg,
                    http_host=http_host,
                    http_port=http_port,
                    ssl_context=ssl_context,
                    log_requests=args.verbose > 0,
                    lookup_external_ip=lookup_external_ip,
                )
            )
        except ConfigError as exc:
            log.error("%s", exc)
            return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
