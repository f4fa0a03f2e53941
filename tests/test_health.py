import aiohttp
import pytest

from motor_thermal.core import OperatingMode, ProcessState
from motor_thermal.health import HealthReporter, HealthServer


@pytest.mark.asyncio
async def test_health_reporter_snapshot():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.update("relay", False, "port in use")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    components = {item["name"]: item for item in snapshot["components"]}
    assert components["mqtt"]["healthy"] is True
    assert components["relay"]["detail"] == "port in use"


@pytest.mark.asyncio
async def test_health_reporter_agent_state_affects_status():
    reporter = HealthReporter()

    await reporter.update("mqtt", True)
    await reporter.set_agent_state("awaiting_mqtt", healthy=False, detail="broker down")

    snapshot = await reporter.snapshot()

    assert snapshot["status"] == "degraded"
    assert snapshot["agentState"]["state"] == "awaiting_mqtt"
    assert snapshot["agentState"]["healthy"] is False
    assert snapshot["agentState"]["detail"] == "broker down"


@pytest.mark.asyncio
async def test_health_reporter_includes_process_snapshot():
    reporter = HealthReporter()
    state = ProcessState(
        temperature=66.0, running=True, fan_on=True, mode=OperatingMode.COOLING
    )
    reporter.attach_process(lambda: state)

    snapshot = await reporter.snapshot()

    process = snapshot["process"]
    assert process["mode"] == "cooling"
    assert process["motor"] is True
    assert process["temp"] == 66.0
    assert "updatedAt" in process


@pytest.mark.asyncio
async def test_health_server_serves_snapshot(unused_tcp_port):
    reporter = HealthReporter()
    await reporter.update("mqtt", True)

    host = "127.0.0.1"
    server = HealthServer(reporter, host, unused_tcp_port)
    await server.start()

    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://{host}:{unused_tcp_port}/healthz") as response:
                payload = await response.json()
                assert response.status == 200
                assert payload["status"] == "ok"

            await reporter.update("mqtt", False, "disconnected")
            async with session.get(f"http://{host}:{unused_tcp_port}/healthz") as response:
                assert response.status == 503
    finally:
        await server.stop()
