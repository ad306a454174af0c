import asyncio
import json
import os
import signal
from typing import Any, Optional
from urllib.parse import urlparse

from aiohttp import WSMsgType, web
from loguru import logger

from src.app import CompanionApp
from src.config import Config
from src.controllers.recording import StopOutcome
from src.core.display import HOTKEY_OPTIONS
from src.core.error_taxonomy import (
    BackendRequestFailed,
    CompanionError,
    ErrorCategory,
    TranscriptionTimeout,
)
from src.core.logging_setup import setup_logging
from src.state import Signal

_ALLOWED_ORIGINS_ENV = "TALKTYPE_ALLOWED_ORIGINS"

_STATUS_BY_CATEGORY = {
    ErrorCategory.PRECONDITION_NOT_MET: 409,
    ErrorCategory.BACKEND_REQUEST_FAILED: 502,
    ErrorCategory.TRANSCRIPTION_TIMEOUT: 504,
}


def _parse_allowed_origins() -> list[str]:
    raw = os.getenv(_ALLOWED_ORIGINS_ENV, "")
    if not raw:
        return []
    cleaned: list[str] = []
    for entry in raw.split(","):
        val = entry.strip().rstrip("/")
        if val:
            cleaned.append(val)
    return cleaned


def _origin_allowed(origin: str) -> bool:
    origin = (origin or "").strip()
    if not origin:
        return False
    allowed = _parse_allowed_origins()
    if "*" in allowed:
        return True
    if allowed:
        return origin in allowed
    parsed = urlparse(origin)
    if parsed.scheme not in {"http", "https"}:
        return False
    host = parsed.hostname
    if not host:
        return False
    return host in {"localhost", "127.0.0.1", "::1"}


def _error_response(exc: CompanionError) -> web.Response:
    return web.json_response(
        {
            "message": exc.user_message,
            "category": exc.category.value,
            "detail": str(exc),
        },
        status=_STATUS_BY_CATEGORY.get(exc.category, 500),
    )


class CompanionWebController:
    """Bridges the companion state surface to browser clients over HTTP and WebSocket."""

    def __init__(self, companion: CompanionApp):
        self.companion = companion
        self._clients: set[web.WebSocketResponse] = set()
        self._clients_lock = asyncio.Lock()
        self._unsubscribe: list[Any] = []

    def attach(self) -> None:
        store = self.companion.store
        self._unsubscribe.append(store.subscribe(self._on_section_changed))
        self._unsubscribe.append(store.subscribe_signals(self._on_signal))

    def detach(self) -> None:
        while self._unsubscribe:
            self._unsubscribe.pop()()

    def get_state(self) -> dict[str, Any]:
        state = self.companion.store.snapshot()
        state["groups"] = [group.to_public() for group in self.companion.timeline.groups()]
        return state

    def _on_section_changed(self, section: str, value: Any) -> None:
        payload: dict[str, Any] = {"type": "section", "section": section, "value": value.to_public()}
        if section == "timeline":
            payload["groups"] = [group.to_public() for group in self.companion.timeline.groups()]
        self.companion.scope.spawn(self.broadcast(payload), name="broadcast_section")

    def _on_signal(self, sig: Signal) -> None:
        self.companion.scope.spawn(self.broadcast({"type": "signal", **sig.to_public()}), name="broadcast_signal")

    async def add_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.add(ws)

    async def remove_client(self, ws: web.WebSocketResponse) -> None:
        async with self._clients_lock:
            self._clients.discard(ws)

    async def broadcast(self, payload: dict[str, Any]) -> None:
        msg = json.dumps(payload, ensure_ascii=False)
        async with self._clients_lock:
            clients = list(self._clients)
        if not clients:
            return

        async def send_safe(ws: web.WebSocketResponse):
            """Send message to client, return ws if failed or closed."""
            if ws.closed:
                return ws
            try:
                await ws.send_str(msg)
                return None
            except (ConnectionResetError, RuntimeError):
                return ws

        results = await asyncio.gather(*[send_safe(ws) for ws in clients], return_exceptions=True)
        dead = [r for r in results if r is not None and isinstance(r, web.WebSocketResponse)]
        if dead:
            async with self._clients_lock:
                for ws in dead:
                    self._clients.discard(ws)

    async def stop_recording(self) -> dict[str, Any]:
        outcome = await self.companion.recording.stop_manual_recording()
        if outcome is StopOutcome.TIMEOUT:
            raise TranscriptionTimeout()
        if outcome is StopOutcome.FAILED:
            raise BackendRequestFailed(command="stop_recording")
        return {"outcome": outcome.value, **self.get_state()}


@web.middleware
async def cors_middleware(request: web.Request, handler):
    origin = request.headers.get("Origin")
    if origin and not _origin_allowed(origin):
        return web.json_response({"message": "Origin not allowed"}, status=403)

    if request.method == "OPTIONS":
        resp = web.Response(status=204)
    else:
        try:
            resp = await handler(request)
        except web.HTTPException as exc:
            resp = exc

    if origin:
        resp.headers["Access-Control-Allow-Origin"] = origin
        resp.headers["Vary"] = "Origin"
        resp.headers["Access-Control-Allow-Credentials"] = "true"
    else:
        resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except CompanionError as exc:
        logger.info(f"{request.method} {request.path} -> {exc.category.value}: {exc}")
        return _error_response(exc)


async def _json_body(request: web.Request) -> Optional[dict[str, Any]]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def create_app(controller: CompanionWebController) -> web.Application:
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app["controller"] = controller

    async def health(_request: web.Request):
        return web.json_response({"ok": True})

    async def ws_handler(request: web.Request):
        origin = request.headers.get("Origin")
        if origin and not _origin_allowed(origin):
            return web.json_response({"message": "Origin not allowed"}, status=403)

        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)
        ctl: CompanionWebController = request.app["controller"]
        await ctl.add_client(ws)
        await ws.send_str(json.dumps({"type": "state", **ctl.get_state()}, ensure_ascii=False))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    # Server -> client only; answer pings so the client can probe liveness.
                    if msg.data == "ping":
                        await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    break
        finally:
            await ctl.remove_client(ws)
        return ws

    async def get_state(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        return web.json_response(ctl.get_state())

    async def start_recording(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        await ctl.companion.recording.start_manual_recording()
        return web.json_response(ctl.get_state())

    async def stop_recording(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        return web.json_response(await ctl.stop_recording())

    async def select_model(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        payload = await _json_body(request)
        model_id = (payload or {}).get("modelId")
        if not isinstance(model_id, str) or not model_id:
            return web.json_response({"message": "Missing modelId"}, status=400)
        await ctl.companion.models.select_model(model_id)
        return web.json_response(ctl.get_state())

    async def download_model(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        await ctl.companion.models.download_selected_model()
        return web.json_response(ctl.get_state(), status=202)

    async def request_permission(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        kind = request.match_info.get("kind", "")
        if kind == "microphone":
            await ctl.companion.permissions.request_microphone()
        elif kind == "accessibility":
            await ctl.companion.permissions.request_accessibility()
        else:
            return web.json_response({"message": f"Unknown permission: {kind}"}, status=404)
        return web.json_response(ctl.get_state())

    async def window_focus(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        await ctl.companion.on_window_focus()
        return web.json_response(ctl.get_state())

    async def delete_transcript(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        transcript_id = request.match_info.get("id", "")
        if not transcript_id:
            return web.json_response({"message": "Missing transcript ID"}, status=400)
        if not await ctl.companion.timeline.delete_transcript(transcript_id):
            return web.json_response({"message": "Failed to delete transcript"}, status=502)
        return web.json_response({"success": True, "id": transcript_id})

    async def copy_transcript(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        transcript_id = request.match_info.get("id", "")
        if not ctl.companion.timeline.copy_transcript(transcript_id):
            return web.json_response({"message": "Nothing to copy"}, status=404)
        return web.json_response({"success": True, "id": transcript_id})

    async def hotkey_options(_request: web.Request):
        return web.json_response([{"value": key, "label": label} for key, label in HOTKEY_OPTIONS.items()])

    async def set_hotkey(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        payload = await _json_body(request)
        hotkey = (payload or {}).get("hotkey")
        if not isinstance(hotkey, str) or not hotkey:
            return web.json_response({"message": "Missing hotkey"}, status=400)
        await ctl.companion.preferences.change_hotkey(hotkey)
        return web.json_response(ctl.get_state())

    async def set_microphone(request: web.Request):
        ctl: CompanionWebController = request.app["controller"]
        payload = await _json_body(request)
        device_id = (payload or {}).get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            return web.json_response({"message": "Missing deviceId"}, status=400)
        await ctl.companion.preferences.select_device(device_id)
        return web.json_response(ctl.get_state())

    app.router.add_get("/api/health", health)
    app.router.add_get("/ws", ws_handler)

    app.router.add_get("/api/state", get_state)
    app.router.add_post("/api/recording/start", start_recording)
    app.router.add_post("/api/recording/stop", stop_recording)

    app.router.add_post("/api/models/select", select_model)
    app.router.add_post("/api/models/download", download_model)

    app.router.add_post("/api/permissions/{kind}/request", request_permission)
    app.router.add_post("/api/window/focus", window_focus)

    app.router.add_delete("/api/transcripts/{id}", delete_transcript)
    app.router.add_post("/api/transcripts/{id}/copy", copy_transcript)

    app.router.add_get("/api/hotkey/options", hotkey_options)
    app.router.add_put("/api/hotkey", set_hotkey)
    app.router.add_put("/api/microphone", set_microphone)

    return app


async def run_server(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    companion = CompanionApp()
    controller = CompanionWebController(companion)
    controller.attach()
    await companion.start()

    app = create_app(controller)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logger.info(f"TalkType companion listening on http://{host}:{port} (ws://{host}:{port}/ws)")

    stop_event = asyncio.Event()

    def _request_stop(*_args: Any) -> None:
        loop.call_soon_threadsafe(stop_event.set)

    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", signal.SIGINT)):
        try:
            signal.signal(sig, _request_stop)
        except (ValueError, OSError):  # pragma: no cover - platform dependent
            pass

    await stop_event.wait()
    controller.detach()
    await companion.shutdown()
    await runner.cleanup()


def main() -> None:
    setup_logging(component="companion")
    asyncio.run(run_server(Config.WEB_HOST, Config.WEB_PORT))


if __name__ == "__main__":
    main()
