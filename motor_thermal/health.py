"""Liveness reporting over ``/healthz``."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from aiohttp import web

from .core.models import ProcessState

LOGGER = logging.getLogger(__name__)

SnapshotProvider = Callable[[], ProcessState]


def _stamp(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": _stamp(self.updated_at),
        }


class HealthReporter:
    """Aggregates component health, the agent state and the motor snapshot.

    Overall status is ``ok`` only while every component and the agent state
    report healthy.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._agent: Optional[ComponentStatus] = None
        self._lock = asyncio.Lock()
        self._process: Optional[SnapshotProvider] = None

    def attach_process(self, provider: Optional[SnapshotProvider]) -> None:
        self._process = provider

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        status = ComponentStatus(name=name, healthy=healthy, detail=detail)
        async with self._lock:
            self._components[name] = status

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        status = ComponentStatus(name=state, healthy=healthy, detail=detail)
        async with self._lock:
            self._agent = status

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components: List[Dict[str, object]] = [
                status.as_dict() for status in self._components.values()
            ]
            agent = self._agent

        healthy = all(item["healthy"] for item in components) and (
            agent is None or agent.healthy
        )
        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if agent is not None:
            payload["agentState"] = {
                "state": agent.name,
                "detail": agent.detail,
                "healthy": agent.healthy,
                "updatedAt": _stamp(agent.updated_at),
            }
        if self._process is not None:
            motor = self._process()
            payload["process"] = {
                **motor.as_status(),
                "reason": motor.reason,
                "updatedAt": _stamp(motor.last_update),
            }
        return payload


class HealthServer:
    """Serves the reporter snapshot; 200 when ok, 503 when degraded."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info("Health endpoint on http://%s:%s/healthz", self._host, self._port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        return web.json_response(
            snapshot, status=200 if snapshot["status"] == "ok" else 503
        )
