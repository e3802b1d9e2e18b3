"""JSON-RPC request/response correlation for one connection."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from dockmux.errors import (
    InvalidRequestError,
    RemoteError,
    RpcTimeoutError,
    TransportClosedError,
    TransportWriteError,
)

JSONRPC_VERSION = "2.0"
DEFAULT_TIMEOUT_SECONDS = 30.0

Writer = Callable[[bytes], Awaitable[None]]


def encode_message(message: Mapping[str, Any]) -> bytes:
    """Serialize one message as a single newline-terminated line."""
    return (json.dumps(message, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


@dataclass
class PendingCall:
    """One in-flight request. Its future resolves exactly once."""

    request_id: int
    method: str
    timeout: float
    deadline: float
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.future.done()

    def resolve(self, value: Any) -> bool:
        if self.future.done():
            return False
        self.cancel_timer()
        self.future.set_result(value)
        return True

    def fail(self, error: BaseException) -> bool:
        if self.future.done():
            return False
        self.cancel_timer()
        self.future.set_exception(error)
        return True

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class RpcCorrelator:
    """Issue requests through ``writer`` and match responses fed to ``dispatch``."""

    def __init__(self, endpoint: str, writer: Writer, *, default_timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.endpoint = endpoint
        self.default_timeout = default_timeout
        self._write = writer
        self._last_id = 0
        self._pending: dict[int, PendingCall] = {}
        self._log = logger.bind(endpoint=endpoint)

    @property
    def last_id(self) -> int:
        return self._last_id

    @property
    def pending_ids(self) -> list[int]:
        return list(self._pending)

    async def call(self, method: str, params: Mapping[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Send one request and wait for its result."""
        timeout = self.default_timeout if timeout is None else timeout
        request_id = self._last_id + 1
        payload = self._encode(
            {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": dict(params or {})}
        )
        self._last_id = request_id

        loop = asyncio.get_running_loop()
        pending = PendingCall(
            request_id=request_id,
            method=method,
            timeout=timeout,
            deadline=loop.time() + timeout,
            future=loop.create_future(),
        )
        pending.timer = loop.call_at(pending.deadline, self._expire, request_id)
        # Registered before writing: the response may be dispatched while drain() is suspended.
        self._pending[request_id] = pending
        try:
            try:
                await self._write(payload)
            except (OSError, RuntimeError) as exc:
                raise TransportWriteError(self.endpoint, f"Write to {self.endpoint} failed: {exc}") from exc
            return await pending.future
        finally:
            self._discard(pending)

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        """Send a notification. No id is allocated and no response is awaited."""
        payload = self._encode({"jsonrpc": JSONRPC_VERSION, "method": method, "params": dict(params or {})})
        try:
            await self._write(payload)
        except (OSError, RuntimeError) as exc:
            raise TransportWriteError(self.endpoint, f"Write to {self.endpoint} failed: {exc}") from exc

    def dispatch(self, message: Any) -> bool:
        """Resolve the pending call ``message`` answers. Returns False when it was dropped."""
        if not isinstance(message, Mapping) or "method" in message:
            self._log.debug("rpc.unsolicited name={} message={}", self.endpoint, message)
            return False
        request_id = message.get("id")
        pending = self._pending.pop(request_id, None) if type(request_id) is int else None
        if pending is None:
            self._log.debug("rpc.unmatched name={} id={}", self.endpoint, request_id)
            return False

        error = message.get("error")
        if error is not None:
            pending.fail(self._remote_error(error))
        else:
            pending.resolve(message.get("result"))
        return True

    def fail_all(self, reason: str) -> int:
        """Fail every outstanding call with ``TransportClosedError``."""
        pending_calls = list(self._pending.values())
        self._pending.clear()
        for pending in pending_calls:
            pending.fail(TransportClosedError(self.endpoint, f"{self.endpoint} transport closed: {reason}"))
        return len(pending_calls)

    def _expire(self, request_id: int) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        loop = asyncio.get_running_loop()
        if loop.time() < pending.deadline:
            pending.timer = loop.call_at(pending.deadline, self._expire, request_id)
            return
        del self._pending[request_id]
        self._log.warning("rpc.timeout name={} id={} method={}", self.endpoint, request_id, pending.method)
        pending.timer = None
        pending.fail(RpcTimeoutError(self.endpoint, pending.method, pending.timeout))

    def _discard(self, pending: PendingCall) -> None:
        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]
        pending.cancel_timer()
        if not pending.future.done():
            pending.future.cancel()
        elif not pending.future.cancelled():
            pending.future.exception()

    def _encode(self, message: Mapping[str, Any]) -> bytes:
        try:
            return encode_message(message)
        except (TypeError, ValueError) as exc:
            raise InvalidRequestError(self.endpoint, f"Cannot encode {message.get('method')}: {exc}") from exc

    def _remote_error(self, error: Any) -> RemoteError:
        if isinstance(error, Mapping):
            code = error.get("code")
            return RemoteError(
                self.endpoint,
                code if isinstance(code, int) else None,
                str(error.get("message") or "remote error"),
                error.get("data"),
            )
        return RemoteError(self.endpoint, None, str(error))
