"""Per-endpoint connection lifecycle: handshake, readiness and recovery."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from dockmux._version import __version__
from dockmux.config import EndpointConfig, Settings
from dockmux.connections.connection import Connection
from dockmux.errors import (
    ContainerUnavailableError,
    DockmuxError,
    EndpointUnavailableError,
    MaxReconnectExceededError,
    RemoteError,
    RpcError,
    SpawnFailedError,
    TransportClosedError,
)
from dockmux.signals import reconnect_exhausted, state_changed
from dockmux.transport import ProcessSupervisor


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class LifecycleEvent(StrEnum):
    CONNECT = "connect"
    ATTACH_OK = "attach_ok"
    ATTACH_FAILED = "attach_failed"
    HANDSHAKE_OK = "handshake_ok"
    HANDSHAKE_FAILED = "handshake_failed"
    PROBE_FAILED = "probe_failed"
    PROCESS_EXITED = "process_exited"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    RECONNECT_ELAPSED = "reconnect_elapsed"
    RECONNECT_EXHAUSTED = "reconnect_exhausted"
    SHUTDOWN = "shutdown"


S = ConnectionState
E = LifecycleEvent

TRANSITIONS: dict[tuple[ConnectionState, LifecycleEvent], ConnectionState] = {
    (S.DISCONNECTED, E.CONNECT): S.CONNECTING,
    (S.CONNECTING, E.ATTACH_OK): S.HANDSHAKING,
    (S.CONNECTING, E.ATTACH_FAILED): S.DISCONNECTED,
    (S.HANDSHAKING, E.HANDSHAKE_OK): S.READY,
    (S.HANDSHAKING, E.HANDSHAKE_FAILED): S.DISCONNECTED,
    (S.READY, E.PROBE_FAILED): S.DEGRADED,
    (S.READY, E.PROCESS_EXITED): S.DEGRADED,
    (S.DEGRADED, E.RECONNECT_SCHEDULED): S.RECONNECTING,
    (S.DISCONNECTED, E.RECONNECT_SCHEDULED): S.RECONNECTING,
    (S.RECONNECTING, E.RECONNECT_ELAPSED): S.CONNECTING,
    (S.DEGRADED, E.RECONNECT_EXHAUSTED): S.CLOSED,
    (S.DISCONNECTED, E.RECONNECT_EXHAUSTED): S.CLOSED,
}


def next_state(state: ConnectionState, event: LifecycleEvent) -> ConnectionState | None:
    """Return the target state, or None when ``event`` is ignored in ``state``."""
    if event is E.SHUTDOWN:
        return None if state is S.CLOSED else S.CLOSED
    return TRANSITIONS.get((state, event))


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff: ``min(base_delay * 2**attempt, cap_delay)``."""

    base_delay: float = 5.0
    cap_delay: float = 60.0
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> ReconnectPolicy:
        return cls(
            base_delay=settings.reconnect_base_delay,
            cap_delay=settings.reconnect_cap_delay,
            max_attempts=settings.reconnect_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * 2**attempt, self.cap_delay)


@dataclass(frozen=True)
class ClientIdentity:
    """What the client announces in the ``initialize`` request."""

    name: str = "dockmux"
    version: str = __version__
    protocol_version: str = "2024-11-05"
    capabilities: Mapping[str, Any] = field(default_factory=lambda: {"tools": {}})

    def initialize_params(self) -> dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": dict(self.capabilities),
            "clientInfo": {"name": self.name, "version": self.version},
        }


Sleeper = Callable[[float], Awaitable[Any]]


class Endpoint:
    """Drive one endpoint through its connection states.

    The endpoint owns exactly one ``Connection`` at a time and replaces it on
    every reconnect. At most one recovery task runs per endpoint.
    """

    def __init__(
        self,
        config: EndpointConfig,
        supervisor: ProcessSupervisor,
        *,
        settings: Settings,
        policy: ReconnectPolicy | None = None,
        identity: ClientIdentity | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.config = config
        self.supervisor = supervisor
        self.settings = settings
        self.policy = policy or ReconnectPolicy.from_settings(settings)
        self.identity = identity or ClientIdentity(protocol_version=settings.protocol_version)
        self.state = ConnectionState.DISCONNECTED
        self.connection: Connection | None = None
        self.attempts = 0
        self.last_error: DockmuxError | None = None
        self.exhausted_at: float | None = None
        self.server_info: dict[str, Any] | None = None
        self._sleep = sleep
        self._recovery: asyncio.Task[None] | None = None
        self._log = logger.bind(endpoint=config.name)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_ready(self) -> bool:
        connection = self.connection
        return self.state is S.READY and connection is not None and connection.ready and connection.alive

    @property
    def recovering(self) -> bool:
        return self._recovery is not None and not self._recovery.done()

    async def start(self) -> bool:
        """Run the first connection attempt.

        Attach failures are raised to the caller and leave the endpoint
        disconnected without retries. Handshake failures fall through to the
        regular reconnect path.
        """
        if not self._fire(E.CONNECT):
            return self.is_ready
        return await self._establish(initial=True)

    async def call(self, method: str, params: Mapping[str, Any] | None = None, timeout: float | None = None) -> Any:
        connection = self.connection
        if connection is None or not self.is_ready:
            raise EndpointUnavailableError(self.name)
        return await connection.call(method, params, timeout)

    async def probe(self, timeout: float) -> None:
        """Send one ``ping``. Raises on failure without changing state."""
        connection = self.connection
        if connection is None or not self.is_ready:
            raise EndpointUnavailableError(self.name)
        await connection.call("ping", {}, timeout)
        connection.record_health_check()

    def mark_unhealthy(self, error: DockmuxError) -> bool:
        """Feed a failed probe into the state machine."""
        if self.state is not S.READY:
            return False
        self.last_error = error
        self._fire(E.PROBE_FAILED)
        self._begin_recovery()
        return True

    async def close(self) -> None:
        if self._recovery is not None and not self._recovery.done():
            self._recovery.cancel()
            await asyncio.gather(self._recovery, return_exceptions=True)
        self._fire(E.SHUTDOWN)
        if self.connection is not None:
            await self.connection.close("shutdown")

    async def _establish(self, *, initial: bool = False) -> bool:
        try:
            process = await self.supervisor.attach(self.config)
        except (ContainerUnavailableError, SpawnFailedError) as exc:
            self.last_error = exc
            self._log.warning("endpoint.attach_failed name={} error={}", self.name, exc)
            self._fire(E.ATTACH_FAILED)
            if initial:
                raise
            return False

        connection = Connection(
            self.config,
            process,
            request_timeout=self.config.call_timeout(self.settings),
            on_terminated=self._on_terminated,
        )
        await self._retire_connection("replaced")
        self.connection = connection
        if self.state is not S.CONNECTING:
            await connection.close(f"endpoint {self.state}")
            return False
        connection.start()
        self._fire(E.ATTACH_OK)

        try:
            self.server_info = await self._handshake(connection)
            if not connection.alive:
                raise TransportClosedError(self.name, connection.termination_reason or "process exited")
        except RpcError as exc:
            self.last_error = exc
            self._log.warning("endpoint.handshake_failed name={} error={}", self.name, exc)
            self._fire(E.HANDSHAKE_FAILED)
            await connection.close("handshake failed")
            if initial:
                self._begin_recovery()
            return False

        connection.mark_ready()
        self.attempts = 0
        self.last_error = None
        self._fire(E.HANDSHAKE_OK)
        return True

    async def _handshake(self, connection: Connection) -> dict[str, Any]:
        result = await connection.call("initialize", self.identity.initialize_params())
        if not isinstance(result, Mapping):
            raise RemoteError(self.name, None, "initialize returned no result")
        await connection.notify("initialized", {})
        return dict(result)

    def _on_terminated(self, connection: Connection, reason: str) -> None:
        if connection is not self.connection or self.state is not S.READY:
            return
        self.last_error = TransportClosedError(self.name, reason)
        self._fire(E.PROCESS_EXITED)
        self._begin_recovery()

    def _begin_recovery(self) -> None:
        if self.recovering or self.state not in (S.DEGRADED, S.DISCONNECTED):
            return
        if self.attempts >= self.policy.max_attempts:
            self._exhaust()
            return
        self._fire(E.RECONNECT_SCHEDULED)
        self._recovery = asyncio.create_task(self._recover(), name=f"dockmux.recover.{self.name}")

    async def _recover(self) -> None:
        await self._retire_connection("recovering")
        while True:
            delay = self.policy.delay_for(self.attempts)
            self._log.info("endpoint.reconnect_scheduled name={} attempt={} delay={}", self.name, self.attempts, delay)
            await self._sleep(delay)
            if not self._fire(E.RECONNECT_ELAPSED):
                return
            if await self._establish():
                self._log.info("endpoint.reconnected name={}", self.name)
                return
            if self.state is S.CLOSED:
                return
            self.attempts += 1
            if self.attempts >= self.policy.max_attempts:
                self._exhaust()
                return
            if not self._fire(E.RECONNECT_SCHEDULED):
                return

    def _exhaust(self) -> None:
        self.last_error = MaxReconnectExceededError(self.name, self.attempts)
        self.exhausted_at = time.time()
        self._log.error("endpoint.abandoned name={} attempts={}", self.name, self.attempts)
        self._fire(E.RECONNECT_EXHAUSTED)
        reconnect_exhausted.send(self.name, attempts=self.attempts)

    async def _retire_connection(self, reason: str) -> None:
        previous = self.connection
        if previous is not None:
            await previous.close(reason)

    def _fire(self, event: LifecycleEvent) -> bool:
        previous = self.state
        target = next_state(previous, event)
        if target is None:
            self._log.debug("endpoint.event_ignored name={} state={} event={}", self.name, previous, event)
            return False
        self.state = target
        self._log.info("endpoint.state name={} from={} to={} event={}", self.name, previous, target, event)
        state_changed.send(self.name, previous=previous, current=target, event=event)
        return True
