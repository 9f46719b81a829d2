#!/usr/bin/env python3
"""
aiohttp web server hosting the DASH output of ffmpeg.

Behavior:
- Every file served from the working directory refreshes the requesting
  client's presence (X-Forwarded-For wins over the peer address) and adds the
  body bytes it sends (Range-aware, zero for HEAD) to the transfer meter.
- Presence sweep and transfer reporting run as background tasks for the
  lifetime of the app.
- All responses, including 404 and 500, carry permissive CORS headers.

Endpoints:
  GET /            -> Landing page with a DASH player
  GET /<path>      -> Manifest and segments from the working directory
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import ssl
from pathlib import Path
from typing import Any

import aiohttp
from aiohttp import web
from aiohttp.web import AppKey

from . import webui
from .ffmpeg_io import MANIFEST_NAME
from .presence import PresenceTracker, TransferMeter

EXTERNAL_IP_URL = "https://api.ipify.org/"
EXTERNAL_IP_TIMEOUT_SECONDS = 10.0
ACCESS_LOG_FORMAT = '%a "%r" %s "%{Referer}i" %Tf'

CONTENT_TYPES = {
    ".mpd": "application/dash+xml",
    ".webm": "video/webm",
    ".m4s": "video/iso.segment",
}

SERVE_DIR_KEY: AppKey[Path] = web.AppKey("serve_dir", Path)
PRESENCE_KEY: AppKey[PresenceTracker] = web.AppKey("presence", PresenceTracker)
TRANSFER_METER_KEY: AppKey[TransferMeter] = web.AppKey("transfer_meter", TransferMeter)
BACKGROUND_TASKS_KEY: AppKey[list] = web.AppKey("background_tasks", list)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in ("aiohttp.access", "aiohttp.server"):
        logging.getLogger(name).setLevel(level)


def resolve_client_identity(request: web.Request) -> str | None:
    """Return the client address, preferring the first X-Forwarded-For hop."""

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        try:
            return str(ipaddress.ip_address(candidate))
        except ValueError:
            pass
    return request.remote


def _is_safe_relative_path(value: str) -> bool:
    if not value:
        return False
    if value.startswith(("/", "\\")):
        return False
    try:
        parts = Path(value).parts
    except Exception:
        return False
    return ".." not in parts


def _resolve_served_file(serve_dir: Path, relative: str) -> Path | None:
    if not _is_safe_relative_path(relative):
        return None
    root = serve_dir.resolve()
    candidate = (root / relative).resolve()
    if root not in candidate.parents:
        return None
    if not candidate.is_file():
        return None
    return candidate


@web.middleware
async def _cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=204)
    else:
        response = await handler(request)

    response.headers.setdefault("Access-Control-Allow-Origin", "*")
    response.headers.setdefault("Access-Control-Allow-Methods", "GET,HEAD,OPTIONS")
    response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type,Range")
    response.headers.setdefault("Access-Control-Max-Age", "86400")
    return response


@web.middleware
async def _error_middleware(request: web.Request, handler):
    # Raised HTTP errors skip the CORS middleware's header pass, so turn them
    # into plain responses here.
    try:
        return await handler(request)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        return web.Response(status=exc.status, headers=_carry_headers(exc))
    except Exception as exc:
        logging.getLogger("web_streamer").warning(
            "unhandled error for %s %s: %r", request.method, request.path, exc
        )
        return web.Response(status=500)


def _served_length(request: web.Request, size: int) -> int:
    """Bytes of body FileResponse will send for ``request`` on a ``size`` byte file."""

    if request.method == "HEAD":
        return 0
    try:
        requested = request.http_range
    except ValueError:
        # malformed Range, answered with 416 and no body
        return 0
    start, stop, _ = requested.indices(size)
    return max(0, stop - start)


def _carry_headers(exc: web.HTTPException) -> dict[str, str]:
    allow = exc.headers.get("Allow")
    return {"Allow": allow} if allow else {}


def build_app(
    serve_dir: Path | str,
    *,
    presence: PresenceTracker | None = None,
    meter: TransferMeter | None = None,
) -> web.Application:
    log = logging.getLogger("web_streamer")
    serve_root = Path(serve_dir)
    presence = presence or PresenceTracker()
    meter = meter or TransferMeter()

    app = web.Application(middlewares=[_cors_middleware, _error_middleware])
    app[SERVE_DIR_KEY] = serve_root
    app[PRESENCE_KEY] = presence
    app[TRANSFER_METER_KEY] = meter
    app[BACKGROUND_TASKS_KEY] = []

    landing_page = webui.render_landing_page(MANIFEST_NAME)

    async def index(_: web.Request) -> web.Response:
        return web.Response(text=landing_page, content_type="text/html")

    async def stream_file(request: web.Request) -> web.StreamResponse:
        target = _resolve_served_file(serve_root, request.match_info.get("path", ""))
        if target is None:
            raise web.HTTPNotFound()

        identity = resolve_client_identity(request)
        if identity:
            presence.note_seen(identity)

        headers: dict[str, str] = {}
        content_type = CONTENT_TYPES.get(target.suffix.lower())
        if content_type:
            headers["Content-Type"] = content_type
        if target.name == MANIFEST_NAME:
            headers["Cache-Control"] = "no-cache"

        try:
            size = target.stat().st_size
        except FileNotFoundError:
            # ffmpeg rotated the segment out between resolve and stat
            raise web.HTTPNotFound()
        meter.add(_served_length(request, size))
        return web.FileResponse(target, headers=headers)

    async def _start_background(_: web.Application) -> None:
        app[BACKGROUND_TASKS_KEY].extend(
            [
                asyncio.create_task(presence.run()),
                asyncio.create_task(meter.run()),
            ]
        )
        log.debug("presence sweep every %.1fs, expiry %.1fs", presence.sweep_interval, presence.expiry)

    async def _stop_background(_: web.Application) -> None:
        tasks = list(app[BACKGROUND_TASKS_KEY])
        app[BACKGROUND_TASKS_KEY].clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app.on_startup.append(_start_background)
    app.on_cleanup.append(_stop_background)

    app.router.add_get("/", index)
    app.router.add_get("/{path:.+}", stream_file)
    return app


async def lookup_external_ip(
    url: str = EXTERNAL_IP_URL,
    *,
    timeout: float = EXTERNAL_IP_TIMEOUT_SECONDS,
) -> ipaddress.IPv4Address:
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            text = await response.text()
    return ipaddress.IPv4Address(text.strip())


async def _announce_external_link(protocol: str, port: int, log: logging.Logger) -> None:
    try:
        ip = await lookup_external_ip()
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        log.warning("error looking up external ip: %s", exc)
        return
    log.info("external link %s://%s:%s/%s", protocol, ip, port, MANIFEST_NAME)


async def serve(
    serve_dir: Path | str,
    *,
    host: str = "0.0.0.0",
    port: int = 3000,
    ssl_context: ssl.SSLContext | None = None,
    presence: PresenceTracker | None = None,
    meter: TransferMeter | None = None,
    log_requests: bool = False,
    lookup_external_ip: bool = True,
) -> None:
    """Host ``serve_dir`` until cancelled.

    Bind failures propagate to the caller as ``OSError``.
    """

    log = logging.getLogger("web_streamer")
    app = build_app(serve_dir, presence=presence, meter=meter)

    runner_kwargs: dict[str, Any] = {"access_log": None}
    if log_requests:
        runner_kwargs = {
            "access_log": logging.getLogger("web_streamer.access"),
            "access_log_format": ACCESS_LOG_FORMAT,
        }
    runner = web.AppRunner(app, **runner_kwargs)
    await runner.setup()

    announce: asyncio.Task | None = None
    try:
        site = web.TCPSite(runner, host, port, ssl_context=ssl_context)
        await site.start()

        protocol = "https" if ssl_context is not None else "http"
        log.info("starting %s server at %s://%s:%s/", protocol, protocol, host, port)
        log.info("hosting dash manifest at %s://%s:%s/%s", protocol, host, port, MANIFEST_NAME)

        if lookup_external_ip:
            announce = asyncio.create_task(_announce_external_link(protocol, port, log))

        # serve until the owning task is cancelled
        await asyncio.Event().wait()
    finally:
        if announce is not None:
            announce.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await announce
        await runner.cleanup()
        log.debug("web server stopped")
