"""Orchestrator facade: the surface exposed to upstream callers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Sequence
from typing import Any

from loguru import logger

from dockmux.config import EndpointConfig, Settings, get_settings, load_endpoints
from dockmux.connections import ClientIdentity, ConnectionManager, Endpoint, ReconnectPolicy
from dockmux.errors import DockmuxError, EndpointUnavailableError
from dockmux.executor import ExecutionMode, ExecutionStep, FanOutExecutor
from dockmux.health import HealthMonitor, ProbeReport
from dockmux.transport import ContainerRuntime, DockerRuntime, ProcessSupervisor


class Orchestrator:
    """Wire endpoints, health monitoring and fan-out execution together.

    Usable as an async context manager::

        async with Orchestrator.from_settings(settings) as orchestrator:
            report = await orchestrator.execute(steps)
    """

    def __init__(
        self,
        endpoints: Sequence[EndpointConfig],
        *,
        settings: Settings | None = None,
        runtime: ContainerRuntime | None = None,
        policy: ReconnectPolicy | None = None,
        monitor: HealthMonitor | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        supervisor = ProcessSupervisor(runtime or DockerRuntime(self.settings.docker_bin))
        identity = ClientIdentity(protocol_version=self.settings.protocol_version)
        self.manager = ConnectionManager(
            Endpoint(config, supervisor, settings=self.settings, policy=policy, identity=identity)
            for config in endpoints
        )
        self.monitor = monitor or HealthMonitor(self.manager, self.settings)
        self.executor = FanOutExecutor(self.manager)
        self.startup_errors: dict[str, Exception | None] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> Orchestrator:
        return cls(load_endpoints(settings.config_path), settings=settings, **kwargs)

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self, *, monitor: bool = True) -> None:
        logger.info("orchestrator.starting endpoints={}", len(self.manager.names()))
        self.startup_errors = await self.manager.start_all()
        if monitor:
            self.monitor.start()
        ready = [endpoint.name for endpoint in self.manager.ready()]
        logger.info("orchestrator.started ready={}/{}", len(ready), len(self.manager.names()))

    async def stop(self) -> None:
        self.monitor.stop()
        await self.manager.close_all()
        logger.info("orchestrator.stopped")

    async def execute(self, steps: Iterable[ExecutionStep], *, parallel: bool = True) -> dict[str, Any]:
        """Run a batch of steps and summarize the outcome."""
        batch = list(steps)
        mode = ExecutionMode.PARALLEL if parallel else ExecutionMode.SEQUENTIAL
        started = time.perf_counter()
        results = await self.executor.execute(batch, mode)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        successful = sum(1 for result in results if result.ok)
        logger.info(
            "batch.completed steps={} successful={} mode={} elapsed_ms={}", len(results), successful, mode, elapsed_ms
        )
        return {
            "status": "completed",
            "execution_time_ms": elapsed_ms,
            "results": [result.to_dict() for result in results],
            "summary": {
                "total_steps": len(results),
                "successful_steps": successful,
                "failed_steps": len(results) - successful,
                "execution_mode": str(mode),
            },
        }

    async def list_connections(self, *, include_tools: bool = False) -> list[dict[str, Any]]:
        tools = await self.list_tools() if include_tools else {}
        entries = []
        for endpoint in self.manager.list_endpoints():
            entry = _describe(endpoint)
            if include_tools:
                entry["tools"] = tools.get(endpoint.name, [])
            entries.append(entry)
        return entries

    async def list_tools(self, names: Iterable[str] | None = None) -> dict[str, list[dict[str, Any]]]:
        """Return the ``tools/list`` result of each endpoint; unavailable ones map to an empty list."""
        targets = list(names) if names is not None else self.manager.names()
        listed = await asyncio.gather(*(self._tools_of(name) for name in targets))
        return dict(zip(targets, listed, strict=True))

    async def check_health(self, name: str | None = None) -> list[ProbeReport]:
        return await self.monitor.check(name)

    async def call(self, endpoint: str, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send one raw request to a ready endpoint."""
        target = self.manager.get(endpoint)
        if target is None:
            raise EndpointUnavailableError(endpoint)
        return await target.call(method, params)

    async def _tools_of(self, name: str) -> list[dict[str, Any]]:
        endpoint = self.manager.get(name)
        if endpoint is None or not endpoint.is_ready:
            return []
        try:
            response = await endpoint.call("tools/list", {})
        except DockmuxError as exc:
            logger.bind(endpoint=name).warning("tools.list_failed name={} error={}", name, exc)
            return []
        tools = response.get("tools") if isinstance(response, dict) else None
        return list(tools) if isinstance(tools, list) else []


def _describe(endpoint: Endpoint) -> dict[str, Any]:
    connection = endpoint.connection
    return {
        "name": endpoint.name,
        "status": "ready" if endpoint.is_ready else "down",
        "state": str(endpoint.state),
        "capabilities": sorted(endpoint.config.capabilities),
        "container": endpoint.config.container.name,
        "reconnect_attempts": endpoint.attempts,
        "last_health_check": connection.last_health_check if connection is not None else None,
        "last_error": str(endpoint.last_error) if endpoint.last_error is not None else None,
        "exhausted_at": endpoint.exhausted_at,
    }
