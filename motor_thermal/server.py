"""WebSocket endpoint that attaches observers to the telemetry relay."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Optional, Set

from aiohttp import WSCloseCode, WSMsgType, web

from .relay import ObserverSession, TelemetryRelay

LOGGER = logging.getLogger(__name__)


class RelayServer:
    """HTTP server exposing ``/ws`` for observer sessions.

    Frames sent to observers are ``{"event": "mqtt", "topic", "message"}``
    and ``{"event": "error", "kind", "error"}``. Observers send
    ``{"event": <control|settings|temperature|state>, "data": {...}}``.
    """

    def __init__(
        self,
        relay: TelemetryRelay,
        host: str,
        port: int,
        *,
        heartbeat_seconds: Optional[float] = 30.0,
    ) -> None:
        self._relay = relay
        self._host = host
        self._port = port
        self._heartbeat = heartbeat_seconds
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._sockets: Set[web.WebSocketResponse] = set()

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_ws)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Relay listening on ws://%s:%s/ws", self._host, self._port)

    async def stop(self) -> None:
        for ws in list(self._sockets):
            with contextlib.suppress(Exception):
                await ws.close(code=WSCloseCode.GOING_AWAY, message=b"shutdown")
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=self._heartbeat)
        await ws.prepare(request)

        session = self._relay.open_session()
        self._sockets.add(ws)
        sender = asyncio.create_task(self._pump(session, ws))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handle_frame(session, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    LOGGER.warning(
                        "Observer %s socket error: %s", session.session_id, ws.exception()
                    )
        finally:
            self._relay.close_session(session.session_id)
            self._sockets.discard(ws)
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender

        return ws

    async def _pump(self, session: ObserverSession, ws: web.WebSocketResponse) -> None:
        async for event in session.events():
            if ws.closed:
                break
            try:
                await ws.send_json(event.as_dict())
            except (ConnectionResetError, RuntimeError) as exc:
                LOGGER.debug("Observer %s went away: %s", session.session_id, exc)
                break

    def _handle_frame(self, session: ObserverSession, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            self._relay.report_error(session.session_id, "frame", "frame is not valid JSON")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            self._relay.report_error(
                session.session_id, "frame", "frame must be an object with an event name"
            )
            return
        self._relay.on_observer_command(
            session.session_id, frame["event"], frame.get("data") or {}
        )
