"""One process instance of an endpoint."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Any

from loguru import logger

from dockmux.config import EndpointConfig
from dockmux.errors import SpawnFailedError
from dockmux.rpc import RpcCorrelator
from dockmux.transport import AttachedProcess, FrameReader, forward_stderr

EXIT_DRAIN_SECONDS = 0.5

TerminationHandler = Callable[["Connection", str], None]


class Connection:
    """Own an attached process together with its framing and correlation state.

    A connection is never reused: each reconnect builds a fresh instance, so
    request ids, the frame buffer and readiness all start from scratch.
    """

    def __init__(
        self,
        config: EndpointConfig,
        process: AttachedProcess,
        *,
        request_timeout: float,
        on_terminated: TerminationHandler | None = None,
    ) -> None:
        self.config = config
        self.process = process
        self.frames = FrameReader(config.name)
        self.correlator = RpcCorrelator(config.name, self._send, default_timeout=request_timeout)
        self.ready = False
        self.last_health_check: float | None = None
        self.created_at = time.time()
        self.termination_reason: str | None = None
        self._on_terminated = on_terminated
        self._tasks: list[asyncio.Task[None]] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._log = logger.bind(endpoint=config.name)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def alive(self) -> bool:
        return self.termination_reason is None and self.process.returncode is None

    def start(self) -> None:
        """Start reading stdout, forwarding stderr and watching for exit."""
        stdout = self.process.stdout
        if stdout is None:
            raise SpawnFailedError(f"Process for {self.name} has no stdout pipe")
        self._reader_task = asyncio.create_task(self._read_loop(stdout), name=f"dockmux.read.{self.name}")
        self._tasks.append(self._reader_task)
        if self.process.stderr is not None:
            self._tasks.append(
                asyncio.create_task(forward_stderr(self.name, self.process.stderr), name=f"dockmux.stderr.{self.name}")
            )
        self._tasks.append(asyncio.create_task(self._watch_exit(), name=f"dockmux.exit.{self.name}"))

    async def call(self, method: str, params: Mapping[str, Any] | None = None, timeout: float | None = None) -> Any:
        return await self.correlator.call(method, params, timeout)

    async def notify(self, method: str, params: Mapping[str, Any] | None = None) -> None:
        await self.correlator.notify(method, params)

    def mark_ready(self) -> None:
        self.ready = True

    def record_health_check(self) -> None:
        self.last_health_check = time.time()

    async def close(self, reason: str = "connection closed") -> None:
        """Terminate the process and fail every pending call."""
        first = self.termination_reason is None
        if first:
            self.termination_reason = reason
        self.ready = False
        self.correlator.fail_all(self.termination_reason or reason)
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        if first:
            self._log.info("connection.closed name={} reason={}", self.name, reason)

    async def _send(self, payload: bytes) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing() or self.termination_reason is not None:
            raise ConnectionResetError(f"stdin of {self.name} is closed")
        stdin.write(payload)
        await stdin.drain()

    async def _read_loop(self, stdout: asyncio.StreamReader) -> None:
        reason = "stdout closed"
        try:
            async for message in self.frames.messages(stdout):
                self.correlator.dispatch(message)
        except (OSError, ValueError) as exc:
            reason = f"stdout error: {exc}"
        self._terminate(reason)

    async def _watch_exit(self) -> None:
        code = await self.process.wait()
        # Responses written just before exit are still dispatched.
        if self._reader_task is not None:
            await asyncio.wait({self._reader_task}, timeout=EXIT_DRAIN_SECONDS)
        self._terminate(f"process exited with code {code}")

    def _terminate(self, reason: str) -> None:
        if self.termination_reason is not None:
            return
        self.termination_reason = reason
        self.ready = False
        failed = self.correlator.fail_all(reason)
        self._log.warning("connection.terminated name={} reason={} failed_calls={}", self.name, reason, failed)
        if self._on_terminated is not None:
            self._on_terminated(self, reason)
