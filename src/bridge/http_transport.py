from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout, WSMsgType
from loguru import logger

from src.bridge.commands import BackendResult
from src.bridge.events import EventBus
from src.config import Config
from src.core.event_contracts import EventContractError, validate_envelope


class HttpCommandTransport:
    """Invokes backend commands as `POST {base}/invoke/{command}` with a JSON body."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        session: Optional[ClientSession] = None,
        timeout_secs: Optional[float] = None,
    ):
        self._base_url = (base_url or Config.BACKEND_URL).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout_secs if timeout_secs is not None else Config.COMMAND_TIMEOUT_SEC)
        self._closed = False

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def invoke(self, command: str, args: Optional[dict[str, Any]] = None) -> BackendResult:
        if self._closed:
            logger.debug(f"Refusing backend command {command}: transport closed")
            return BackendResult.fail(f"{command}: transport closed")
        url = f"{self._base_url}/invoke/{command}"
        try:
            async with self._get_session().post(url, json=args or {}) as resp:
                try:
                    envelope = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    return BackendResult.fail(f"{command}: HTTP {resp.status} with non-JSON body")
        except asyncio.TimeoutError:
            logger.warning(f"Backend command {command} timed out at the transport level")
            return BackendResult.fail(f"{command}: transport timeout")
        except ClientError as exc:
            logger.warning(f"Backend command {command} failed: {exc}")
            return BackendResult.fail(f"{command}: {exc}")
        result = BackendResult.from_envelope(envelope)
        if not result.is_ok:
            logger.debug(f"Backend command {command} returned error: {result.error}")
        return result

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class WebSocketEventSource:
    """Pumps `{"event": ..., "payload": ...}` messages from the backend socket into an EventBus."""

    def __init__(
        self,
        bus: EventBus,
        url: Optional[str] = None,
        *,
        reconnect_secs: Optional[float] = None,
        session: Optional[ClientSession] = None,
    ):
        self._bus = bus
        self._url = url or Config.events_url()
        self._reconnect = reconnect_secs if reconnect_secs is not None else Config.EVENT_RECONNECT_SEC
        self._session = session
        self._owns_session = session is None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self.connected = asyncio.Event()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name="backend_event_source")
        return self._task

    async def _run(self) -> None:
        if self._session is None:
            self._session = ClientSession()
        while not self._closing:
            try:
                async with self._session.ws_connect(self._url, heartbeat=30) as ws:
                    logger.info(f"Connected to backend event stream at {self._url}")
                    self.connected.set()
                    async for msg in ws:
                        if msg.type == WSMsgType.TEXT:
                            self._handle_text(msg.data)
                        elif msg.type in (WSMsgType.ERROR, WSMsgType.CLOSED):
                            break
            except asyncio.CancelledError:
                raise
            except (ClientError, asyncio.TimeoutError, OSError) as exc:
                logger.warning(f"Backend event stream unavailable: {exc}")
            self.connected.clear()
            if self._closing:
                break
            await asyncio.sleep(self._reconnect)

    def _handle_text(self, data: str) -> None:
        try:
            channel, payload = validate_envelope(json.loads(data))
        except (json.JSONDecodeError, EventContractError) as exc:
            logger.warning(f"Ignoring malformed backend event: {exc}")
            return
        self._bus.dispatch(channel, payload)

    async def close(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
