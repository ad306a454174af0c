import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from src.bridge.events import EventBus
from src.bridge.http_transport import HttpCommandTransport, WebSocketEventSource
from src.core import event_contracts as ev


def _backend_app(received: list) -> web.Application:
    async def invoke(request: web.Request):
        command = request.match_info["command"]
        body = await request.json()
        received.append((command, body))
        if command == "get_word_count":
            return web.json_response({"status": "ok", "data": 42})
        if command == "stop_recording":
            return web.json_response({"status": "error", "error": "no audio captured"})
        if command == "broken":
            return web.Response(text="<html>oops</html>", status=500)
        if command == "slow":
            await asyncio.sleep(0.5)
        return web.json_response({"status": "ok", "data": None})

    async def events(request: web.Request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_json({"event": ev.RECORDING_STATE_CHANGED, "payload": {"is_recording": True}})
        await ws.send_str("not json")
        await ws.send_json({"event": ev.AUDIO_LEVEL_UPDATE, "payload": {"level": 0.25}})
        async for _msg in ws:
            pass
        return ws

    app = web.Application()
    app.router.add_post("/invoke/{command}", invoke)
    app.router.add_get("/events", events)
    return app


@pytest.mark.asyncio
async def test_invoke_round_trip_and_error_envelope():
    received: list = []
    async with TestServer(_backend_app(received)) as server:
        transport = HttpCommandTransport(f"http://{server.host}:{server.port}")
        try:
            ok = await transport.invoke("get_word_count")
            err = await transport.invoke("stop_recording")
            await transport.invoke("set_hotkey", {"hotkey": "fn"})
        finally:
            await transport.close()

    assert ok.is_ok and ok.data == 42
    assert not err.is_ok and err.error == "no audio captured"
    assert received[-1] == ("set_hotkey", {"hotkey": "fn"})


@pytest.mark.asyncio
async def test_non_json_response_becomes_error_result():
    async with TestServer(_backend_app([])) as server:
        transport = HttpCommandTransport(f"http://{server.host}:{server.port}")
        try:
            result = await transport.invoke("broken")
        finally:
            await transport.close()

    assert result.is_ok is False
    assert "non-JSON" in result.error


@pytest.mark.asyncio
async def test_transport_timeout_becomes_error_result():
    async with TestServer(_backend_app([])) as server:
        transport = HttpCommandTransport(f"http://{server.host}:{server.port}", timeout_secs=0.05)
        try:
            result = await transport.invoke("slow")
        finally:
            await transport.close()

    assert result.is_ok is False


@pytest.mark.asyncio
async def test_unreachable_backend_becomes_error_result():
    transport = HttpCommandTransport("http://127.0.0.1:9", timeout_secs=1)
    try:
        result = await transport.invoke("get_hotkey")
    finally:
        await transport.close()
    assert result.is_ok is False


@pytest.mark.asyncio
async def test_event_source_dispatches_valid_messages():
    bus = EventBus()
    seen = []
    done = asyncio.Event()

    def _level(event):
        seen.append(("level", event.level))
        done.set()

    bus.subscribe(ev.RECORDING_STATE_CHANGED, lambda e: seen.append(("recording", e.is_recording)))
    bus.subscribe(ev.AUDIO_LEVEL_UPDATE, _level)

    async with TestServer(_backend_app([])) as server:
        source = WebSocketEventSource(bus, f"ws://{server.host}:{server.port}/events", reconnect_secs=0.05)
        source.start()
        try:
            await asyncio.wait_for(done.wait(), timeout=2)
        finally:
            await source.close()

    assert seen == [("recording", True), ("level", 0.25)]


@pytest.mark.asyncio
async def test_closed_transport_refuses_commands():
    received: list = []
    async with TestServer(_backend_app(received)) as server:
        transport = HttpCommandTransport(f"http://{server.host}:{server.port}")
        assert (await transport.invoke("get_word_count")).is_ok
        await transport.close()

        result = await transport.invoke("get_word_count")

    assert result.is_ok is False
    assert "closed" in result.error
    assert len(received) == 1
