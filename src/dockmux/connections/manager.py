"""Endpoint registry."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from loguru import logger

from dockmux.connections.lifecycle import Endpoint
from dockmux.errors import DockmuxError


class ConnectionManager:
    """Own every endpoint by name and coordinate startup and shutdown."""

    def __init__(self, endpoints: Iterable[Endpoint] = ()) -> None:
        self._endpoints: dict[str, Endpoint] = {}
        for endpoint in endpoints:
            self.upsert(endpoint)

    def upsert(self, endpoint: Endpoint) -> Endpoint | None:
        """Register ``endpoint``, returning the one it replaced."""
        previous = self._endpoints.get(endpoint.name)
        self._endpoints[endpoint.name] = endpoint
        return previous

    def get(self, name: str) -> Endpoint | None:
        return self._endpoints.get(name)

    def list_endpoints(self) -> list[Endpoint]:
        return list(self._endpoints.values())

    def names(self) -> list[str]:
        return list(self._endpoints)

    def ready(self) -> list[Endpoint]:
        return [endpoint for endpoint in self._endpoints.values() if endpoint.is_ready]

    async def start_all(self) -> dict[str, Exception | None]:
        """Connect every endpoint concurrently.

        One endpoint failing to start never blocks the others; the failure is
        returned per name.
        """
        endpoints = self.list_endpoints()
        outcomes = await asyncio.gather(*(endpoint.start() for endpoint in endpoints), return_exceptions=True)
        report: dict[str, Exception | None] = {}
        for endpoint, outcome in zip(endpoints, outcomes, strict=True):
            log = logger.bind(endpoint=endpoint.name)
            if isinstance(outcome, DockmuxError):
                log.error("endpoint.start_failed name={} error={}", endpoint.name, outcome)
                report[endpoint.name] = outcome
            elif isinstance(outcome, Exception):
                log.opt(exception=outcome).error("endpoint.start_crashed name={} error={}", endpoint.name, outcome)
                report[endpoint.name] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report[endpoint.name] = None if outcome else endpoint.last_error
        return report

    async def close_all(self) -> None:
        await asyncio.gather(*(endpoint.close() for endpoint in self._endpoints.values()))
