from __future__ import annotations

import asyncio
import ipaddress
import logging
from pathlib import Path

import pytest
from aiohttp import web

import dashrelay.web_streamer as web_streamer
from dashrelay.presence import PresenceTracker, TransferMeter

pytest_plugins = ("aiohttp.pytest_plugin",)


MANIFEST = """<?xml version="1.0" encoding="utf-8"?>
<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="dynamic"></MPD>
"""


def _app(tmp_path: Path):
    presence = PresenceTracker(sweep_interval=60.0)
    meter = TransferMeter(interval=60.0)
    app = web_streamer.build_app(tmp_path, presence=presence, meter=meter)
    return app, presence, meter


async def test_landing_page_points_at_manifest(aiohttp_client, tmp_path):
    app, presence, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.get("/")
    assert resp.status == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    body = await resp.text()
    assert "dash.all.min.js" in body
    assert '"/stream.mpd"' in body
    # the landing page is not part of the stream
    assert presence.population == 0


async def test_manifest_is_served_with_dash_content_type(aiohttp_client, tmp_path):
    (tmp_path / "stream.mpd").write_text(MANIFEST, encoding="utf-8")
    app, _, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.get("/stream.mpd")
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("application/dash+xml")
    assert resp.headers["Cache-Control"] == "no-cache"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert await resp.text() == MANIFEST


async def test_segment_fetch_registers_client_and_counts_bytes(aiohttp_client, tmp_path, caplog):
    payload = b"\x1aE\xdf\xa3" + b"\x00" * 4092
    (tmp_path / "chunk-stream0-00001.webm").write_bytes(payload)
    app, presence, meter = _app(tmp_path)
    client = await aiohttp_client(app)

    with caplog.at_level(logging.INFO, logger="presence"):
        resp = await client.get("/chunk-stream0-00001.webm")
        assert resp.status == 200
        assert await resp.read() == payload
        resp = await client.get("/chunk-stream0-00001.webm")
        await resp.read()

    assert resp.headers["Content-Type"] == "video/webm"
    assert presence.population == 1
    assert meter.drain() == 2 * len(payload)
    assert caplog.text.count("connected (1 clients)") == 1


async def test_forwarded_for_header_identifies_client(aiohttp_client, tmp_path):
    (tmp_path / "stream.mpd").write_text(MANIFEST, encoding="utf-8")
    app, presence, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.get("/stream.mpd", headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
    assert resp.status == 200
    resp = await client.get("/stream.mpd", headers={"X-Forwarded-For": "not-an-ip"})
    assert resp.status == 200

    clients = presence.snapshot()
    assert "198.51.100.4" in clients
    assert "127.0.0.1" in clients
    assert presence.population == 2


async def test_missing_file_is_404_with_cors(aiohttp_client, tmp_path):
    app, presence, meter = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.get("/chunk-stream0-99999.webm")
    assert resp.status == 404
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert presence.population == 0
    assert meter.drain() == 0


async def test_rejected_method_keeps_cors_headers(aiohttp_client, tmp_path):
    app, _, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.post("/stream.mpd")
    assert resp.status == 405
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "GET" in resp.headers.get("Allow", "")


async def test_preflight_is_answered_without_body(aiohttp_client, tmp_path):
    app, _, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.options("/stream.mpd")
    assert resp.status == 204
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "GET" in resp.headers["Access-Control-Allow-Methods"]


async def test_background_tasks_follow_app_lifetime(aiohttp_client, tmp_path):
    app, _, _ = _app(tmp_path)
    client = await aiohttp_client(app)

    tasks = list(app[web_streamer.BACKGROUND_TASKS_KEY])
    assert len(tasks) == 2
    assert not any(task.done() for task in tasks)

    await client.close()
    assert app[web_streamer.BACKGROUND_TASKS_KEY] == []
    assert all(task.cancelled() for task in tasks)


@pytest.mark.parametrize(
    "relative",
    ["../secret.txt", "/etc/passwd", "nested/../../secret.txt", "", "missing.webm"],
)
def test_resolve_served_file_stays_inside_directory(tmp_path, relative):
    serve_dir = tmp_path / "serve"
    serve_dir.mkdir()
    (tmp_path / "secret.txt").write_text("nope")

    assert web_streamer._resolve_served_file(serve_dir, relative) is None


def test_resolve_served_file_rejects_directories(tmp_path):
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "seg.webm").write_bytes(b"x")

    assert web_streamer._resolve_served_file(tmp_path, "nested") is None
    assert web_streamer._resolve_served_file(tmp_path, "nested/seg.webm") == (tmp_path / "nested" / "seg.webm").resolve()


async def test_lookup_external_ip(aiohttp_server):
    async def handler(_):
        return web.Response(text="203.0.113.9\n")

    app = web.Application()
    app.router.add_get("/", handler)
    server = await aiohttp_server(app)

    ip = await web_streamer.lookup_external_ip(str(server.make_url("/")))
    assert ip == ipaddress.IPv4Address("203.0.113.9")


async def test_lookup_external_ip_rejects_garbage(aiohttp_server):
    async def handler(_):
        return web.Response(text="<html>rate limited</html>")

    app = web.Application()
    app.router.add_get("/", handler)
    server = await aiohttp_server(app)

    with pytest.raises(ValueError):
        await web_streamer.lookup_external_ip(str(server.make_url("/")))


async def test_meter_counts_only_body_bytes_sent(aiohttp_client, tmp_path):
    (tmp_path / "seg.webm").write_bytes(bytes(range(250)) * 20)
    app, _, meter = _app(tmp_path)
    client = await aiohttp_client(app)

    resp = await client.head("/seg.webm")
    assert resp.status == 200
    assert meter.drain() == 0

    resp = await client.get("/seg.webm", headers={"Range": "bytes=0-9"})
    assert resp.status == 206
    assert len(await resp.read()) == 10
    assert meter.drain() == 10

    resp = await client.get("/seg.webm", headers={"Range": "bytes=-100"})
    assert resp.status == 206
    assert len(await resp.read()) == 100
    assert meter.drain() == 100


async def test_handler_errors_become_500_with_cors(aiohttp_client, tmp_path):
    class _BrokenPresence(PresenceTracker):
        def note_seen(self, identity, now=None):
            raise RuntimeError("presence map unavailable")

    (tmp_path / "stream.mpd").write_text(MANIFEST, encoding="utf-8")
    app = web_streamer.build_app(tmp_path, presence=_BrokenPresence(sweep_interval=60.0))
    client = await aiohttp_client(app)

    resp = await client.get("/stream.mpd")
    assert resp.status == 500
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


async def test_serve_runs_until_cancelled(tmp_path):
    task = asyncio.ensure_future(
        web_streamer.serve(tmp_path, host="127.0.0.1", port=0, lookup_external_ip=False)
    )
    await asyncio.sleep(0.1)
    assert not task.done()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
