"""Periodic health probing of ready endpoints."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from enum import StrEnum

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_STOPPED
from loguru import logger

from dockmux.config import Settings
from dockmux.connections import ConnectionManager, Endpoint
from dockmux.errors import DockmuxError, EndpointUnavailableError
from dockmux.signals import probe_failed

JOB_PREFIX = "dockmux.health."


class ProbeStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ProbeReport:
    name: str
    status: ProbeStatus
    error: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "status": str(self.status), "error": self.error, "latency_ms": self.latency_ms}


class HealthMonitor:
    """Ping every ready endpoint on its own interval."""

    def __init__(
        self,
        manager: ConnectionManager,
        settings: Settings,
        *,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.manager = manager
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler()
        self.failures: Counter[str] = Counter()
        self._owns_scheduler = scheduler is None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        if self._active:
            return
        if self._owns_scheduler and self.scheduler.state != STATE_STOPPED:
            # A previous shutdown may still be pending on the loop.
            self.scheduler = AsyncIOScheduler()
        for endpoint in self.manager.list_endpoints():
            self.scheduler.add_job(
                self.probe_endpoint,
                "interval",
                args=[endpoint.name],
                seconds=endpoint.config.probe_interval(self.settings),
                id=f"{JOB_PREFIX}{endpoint.name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        if not self.scheduler.running:
            self.scheduler.start()
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        for job in self.scheduler.get_jobs():
            if job.id.startswith(JOB_PREFIX):
                job.remove()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def probe_endpoint(self, name: str) -> ProbeReport | None:
        """Scheduled probe: only endpoints that are currently ready are pinged."""
        endpoint = self.manager.get(name)
        if endpoint is None or not endpoint.is_ready:
            return None
        return await self.probe(endpoint)

    async def probe_all(self) -> list[ProbeReport]:
        endpoints = self.manager.ready()
        return list(await asyncio.gather(*(self.probe(endpoint) for endpoint in endpoints)))

    async def check(self, name: str | None = None) -> list[ProbeReport]:
        """On-demand probe of one or all endpoints, ready or not."""
        if name is not None:
            endpoint = self.manager.get(name)
            if endpoint is None:
                return [ProbeReport(name, ProbeStatus.UNAVAILABLE, "endpoint not available")]
            return [await self.probe(endpoint)]
        return list(await asyncio.gather(*(self.probe(endpoint) for endpoint in self.manager.list_endpoints())))

    async def probe(self, endpoint: Endpoint) -> ProbeReport:
        if not endpoint.is_ready:
            return ProbeReport(endpoint.name, ProbeStatus.UNAVAILABLE, f"endpoint {endpoint.state}")
        started = time.perf_counter()
        try:
            await endpoint.probe(endpoint.config.probe_timeout(self.settings))
        except EndpointUnavailableError as exc:
            return ProbeReport(endpoint.name, ProbeStatus.UNAVAILABLE, str(exc))
        except DockmuxError as exc:
            self._record_failure(endpoint, exc)
            return ProbeReport(endpoint.name, ProbeStatus.UNHEALTHY, str(exc), _elapsed_ms(started))
        logger.bind(endpoint=endpoint.name).debug("health.ok name={}", endpoint.name)
        return ProbeReport(endpoint.name, ProbeStatus.HEALTHY, latency_ms=_elapsed_ms(started))

    def _record_failure(self, endpoint: Endpoint, error: DockmuxError) -> None:
        self.failures[endpoint.name] += 1
        logger.bind(endpoint=endpoint.name).warning(
            "health.failed name={} error={} count={}", endpoint.name, error, self.failures[endpoint.name]
        )
        probe_failed.send(endpoint.name, error=str(error))
        endpoint.mark_unhealthy(error)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
