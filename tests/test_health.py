from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dockmux.config import HealthCheckSpec
from dockmux.connections import ConnectionManager, ConnectionState
from dockmux.errors import RpcTimeoutError
from dockmux.health import HealthMonitor, ProbeStatus
from dockmux.signals import probe_failed, state_changed


@pytest.mark.asyncio
async def test_silent_ping_times_out_and_degrades_endpoint(
    runtime, backend_class, make_endpoint, settings, wait_until
) -> None:
    runtime.backend_factory = lambda: backend_class(silent={"ping"})
    endpoint = make_endpoint()
    await endpoint.start()
    monitor = HealthMonitor(ConnectionManager([endpoint]), settings)
    transitions: list[ConnectionState] = []
    failures: list[str] = []

    def _on_state(sender: str, *, previous, current, event) -> None:
        transitions.append(current)

    def _on_probe_failed(sender: str, *, error: str) -> None:
        failures.append(sender)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(RpcTimeoutError):
        await endpoint.probe(0.05)
    assert loop.time() - started >= 0.05

    state_changed.connect(_on_state)
    probe_failed.connect(_on_probe_failed)
    try:
        reports = await monitor.probe_all()
        await wait_until(lambda: endpoint.is_ready)
    finally:
        state_changed.disconnect(_on_state)
        probe_failed.disconnect(_on_probe_failed)

    assert [report.status for report in reports] == [ProbeStatus.UNHEALTHY]
    assert reports[0].error == "Timeout for ping in alpha"
    assert transitions[:2] == [ConnectionState.DEGRADED, ConnectionState.RECONNECTING]
    assert monitor.failures["alpha"] == 1
    assert failures == ["alpha"]
    assert runtime.processes[0].returncode is not None
    await endpoint.close()


@pytest.mark.asyncio
async def test_healthy_probe_records_check_time(make_endpoint, settings) -> None:
    endpoint = make_endpoint()
    await endpoint.start()
    monitor = HealthMonitor(ConnectionManager([endpoint]), settings)

    reports = await monitor.probe_all()

    assert reports[0].status is ProbeStatus.HEALTHY
    assert reports[0].latency_ms is not None
    assert endpoint.connection is not None
    assert endpoint.connection.last_health_check is not None
    assert monitor.failures["alpha"] == 0
    await endpoint.close()


@pytest.mark.asyncio
async def test_check_reports_unknown_and_not_ready_endpoints(make_endpoint, settings) -> None:
    endpoint = make_endpoint()
    monitor = HealthMonitor(ConnectionManager([endpoint]), settings)

    unknown = await monitor.check("missing")
    idle = await monitor.check("alpha")

    assert unknown[0].to_dict() == {
        "name": "missing",
        "status": "unavailable",
        "error": "endpoint not available",
        "latency_ms": None,
    }
    assert idle[0].status is ProbeStatus.UNAVAILABLE
    assert idle[0].error == "endpoint disconnected"
    assert await monitor.probe_endpoint("alpha") is None


@pytest.mark.asyncio
async def test_scheduler_gets_one_job_per_endpoint(make_endpoint, settings) -> None:
    manager = ConnectionManager([make_endpoint("alpha"), make_endpoint("beta", health_check=HealthCheckSpec(interval=5))])
    scheduler = AsyncIOScheduler()
    monitor = HealthMonitor(manager, settings, scheduler=scheduler)

    monitor.start()
    try:
        alpha = scheduler.get_job("dockmux.health.alpha")
        beta = scheduler.get_job("dockmux.health.beta")
        assert alpha is not None and beta is not None
        assert alpha.trigger.interval == timedelta(seconds=settings.health_interval)
        assert beta.trigger.interval == timedelta(seconds=5)
        assert alpha.args == ("alpha",)
    finally:
        monitor.stop()
    monitor.stop()
    await asyncio.sleep(0)

    assert not monitor.active
    assert not scheduler.running
    assert scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_silent_endpoint_does_not_delay_other_probes(runtime, backend_class, make_endpoint, settings) -> None:
    runtime.backend_for["slow-container"] = lambda: backend_class(silent={"ping"})
    slow = make_endpoint("slow", health_check=HealthCheckSpec(timeout=0.5))
    fast = make_endpoint("fast")
    manager = ConnectionManager([slow, fast])
    await manager.start_all()
    monitor = HealthMonitor(manager, settings)

    reports = {report.name: report for report in await monitor.check()}

    assert reports["fast"].status is ProbeStatus.HEALTHY
    assert reports["fast"].latency_ms is not None and reports["fast"].latency_ms < 100
    assert reports["slow"].status is ProbeStatus.UNHEALTHY
    assert reports["slow"].latency_ms is not None and reports["slow"].latency_ms >= 450
    assert fast.is_ready
    assert slow.state is not ConnectionState.READY
    assert dict(monitor.failures) == {"slow": 1}
    await manager.close_all()


@pytest.mark.asyncio
async def test_monitor_can_restart_after_stop(make_endpoint, settings) -> None:
    monitor = HealthMonitor(ConnectionManager([make_endpoint()]), settings)

    monitor.start()
    monitor.stop()
    monitor.start()
    try:
        assert monitor.active
        assert monitor.scheduler.get_job("dockmux.health.alpha") is not None
        await asyncio.sleep(0)
        assert monitor.scheduler.running
    finally:
        monitor.stop()
        await asyncio.sleep(0)
