"""Fan-out execution of tool calls across endpoints."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal

from loguru import logger

from dockmux.connections import ConnectionManager
from dockmux.errors import DockmuxError

NOT_AVAILABLE = "endpoint not available"

StepStatus = Literal["success", "error"]


class ExecutionMode(StrEnum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class ExecutionStep:
    """Invoke ``tool`` with ``arguments`` on ``endpoint``."""

    endpoint: str
    tool: str
    arguments: Mapping[str, Any] = field(default_factory=dict)

    @property
    def step_id(self) -> str:
        return f"{self.endpoint}_{self.tool}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExecutionStep:
        return cls(
            endpoint=str(data.get("endpoint") or data["mcp"]),
            tool=str(data["tool"]),
            arguments=dict(data.get("arguments") or data.get("params") or {}),
        )


@dataclass(frozen=True)
class ExecutionResult:
    step_id: str
    endpoint: str
    tool: str
    status: StepStatus
    duration_ms: float
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class FanOutExecutor:
    """Run a batch of steps and return exactly one result per step, in input order."""

    def __init__(self, manager: ConnectionManager, *, timeout: float | None = None) -> None:
        self.manager = manager
        self.timeout = timeout

    async def execute(
        self, steps: Iterable[ExecutionStep], mode: ExecutionMode = ExecutionMode.PARALLEL
    ) -> list[ExecutionResult]:
        batch = list(steps)
        if mode is ExecutionMode.PARALLEL:
            return list(await asyncio.gather(*(self.run_step(step) for step in batch)))
        results: list[ExecutionResult] = []
        for step in batch:
            results.append(await self.run_step(step))
        return results

    async def run_step(self, step: ExecutionStep) -> ExecutionResult:
        started = time.perf_counter()
        endpoint = self.manager.get(step.endpoint)
        if endpoint is None or not endpoint.is_ready:
            return self._result(step, started, error=NOT_AVAILABLE)
        try:
            result = await endpoint.call(
                "tools/call", {"name": step.tool, "arguments": dict(step.arguments)}, self.timeout
            )
        except DockmuxError as exc:
            logger.bind(endpoint=step.endpoint).warning("step.failed step={} error={}", step.step_id, exc)
            return self._result(step, started, error=str(exc))
        return self._result(step, started, result=result)

    @staticmethod
    def _result(step: ExecutionStep, started: float, *, result: Any = None, error: str | None = None) -> ExecutionResult:
        return ExecutionResult(
            step_id=step.step_id,
            endpoint=step.endpoint,
            tool=step.tool,
            status="error" if error is not None else "success",
            duration_ms=round((time.perf_counter() - started) * 1000, 3),
            result=result,
            error=error,
        )
