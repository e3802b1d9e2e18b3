from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from dockmux.config import ContainerSpec, EndpointConfig, Settings
from dockmux.connections import Endpoint, ReconnectPolicy
from dockmux.transport import ProcessSupervisor

TOOLS = [
    {"name": "create_issue", "description": "Create an issue", "inputSchema": {"type": "object"}},
    {"name": "list_repos", "description": "List repositories", "inputSchema": {"type": "object"}},
]


class FakeBackend:
    """Scriptable backend answering like a small tool server."""

    def __init__(
        self,
        *,
        silent: set[str] | None = None,
        errors: dict[str, tuple[int, str]] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.silent = silent or set()
        self.errors = errors or {}
        self.delays = delays or {}

    def respond(self, message: dict[str, Any]) -> dict[str, Any] | None:
        if "id" not in message:
            return None
        keys = self._keys(message)
        if any(key in self.silent for key in keys):
            return None
        error = next((self.errors[key] for key in keys if key in self.errors), None)
        if error is not None:
            code, text = error
            return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": code, "message": text}}
        result = self.result_for(message["method"], message.get("params") or {})
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    def result_for(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return {"protocolVersion": "2024-11-05", "capabilities": {"tools": {}}, "serverInfo": {"name": "fake"}}
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            return {"content": [{"type": "text", "text": f"{params['name']}:{json.dumps(params['arguments'])}"}]}
        return {}

    def delay_for(self, message: dict[str, Any]) -> float:
        return next((self.delays[key] for key in self._keys(message) if key in self.delays), 0.0)

    @staticmethod
    def _keys(message: dict[str, Any]) -> list[str]:
        """Tool name first for ``tools/call``, then the method."""
        method = message["method"]
        if method == "tools/call":
            return [message["params"]["name"], method]
        return [method]


class FakeStdin:
    def __init__(self, on_message: Callable[[dict[str, Any]], None]) -> None:
        self._on_message = on_message
        self._buffer = b""
        self._closed = False
        self.fail_writes = False

    def write(self, data: bytes) -> None:
        if self._closed or self.fail_writes:
            raise BrokenPipeError("stdin closed")
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for line in lines:
            self._on_message(json.loads(line))

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class FakeProcess:
    """In-memory stand-in for an attached ``asyncio.subprocess.Process``."""

    def __init__(self, backend: FakeBackend) -> None:
        self.backend = backend
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeStdin(self._receive)
        self.returncode: int | None = None
        self.received: list[dict[str, Any]] = []
        self._exited = asyncio.Event()

    def _receive(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        reply = self.backend.respond(message)
        if reply is None:
            return
        loop = asyncio.get_running_loop()
        delay = self.backend.delay_for(message)
        if delay:
            loop.call_later(delay, self.emit, reply)
        else:
            loop.call_soon(self.emit, reply)

    def requests(self, method: str | None = None) -> list[dict[str, Any]]:
        return [m for m in self.received if "id" in m and (method is None or m["method"] == method)]

    def emit(self, message: dict[str, Any]) -> None:
        self.emit_raw((json.dumps(message) + "\n").encode("utf-8"))

    def emit_raw(self, data: bytes) -> None:
        if self.returncode is None:
            self.stdout.feed_data(data)

    def exit(self, code: int = 1) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.stdin.close()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def kill(self) -> None:
        self.exit(-9)


class FakeRuntime:
    def __init__(self) -> None:
        self.running = True
        self.stopped: set[str] = set()
        self.inspect_errors: dict[str, Exception] = {}
        self.spawn_error: OSError | None = None
        self.backend_factory: Callable[[], FakeBackend] = FakeBackend
        self.backend_for: dict[str, Callable[[], FakeBackend]] = {}
        self.processes: list[FakeProcess] = []
        self.spawn_calls: list[tuple[str, str | None, list[str]]] = []

    async def is_container_running(self, name: str) -> bool:
        if name in self.inspect_errors:
            raise self.inspect_errors[name]
        return self.running and name not in self.stopped

    async def spawn_attached(self, container: str, workdir: str | None, command: list[str]) -> FakeProcess:
        self.spawn_calls.append((container, workdir, command))
        if self.spawn_error is not None:
            raise self.spawn_error
        process = FakeProcess(self.backend_for.get(container, self.backend_factory)())
        self.processes.append(process)
        return process


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def backend_class() -> type[FakeBackend]:
    return FakeBackend


@pytest.fixture
def process_factory() -> Callable[..., FakeProcess]:
    def _factory(**backend_kwargs: Any) -> FakeProcess:
        return FakeProcess(FakeBackend(**backend_kwargs))

    return _factory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        request_timeout=1.0,
        health_interval=30.0,
        health_timeout=0.05,
        reconnect_base_delay=0.01,
        reconnect_cap_delay=0.02,
        reconnect_max_attempts=5,
    )


@pytest.fixture
def fast_policy() -> ReconnectPolicy:
    return ReconnectPolicy(base_delay=0.01, cap_delay=0.02, max_attempts=5)


@pytest.fixture
def make_config() -> Callable[..., EndpointConfig]:
    def _make(name: str = "alpha", **kwargs: Any) -> EndpointConfig:
        return EndpointConfig(
            name=name,
            capabilities=frozenset(kwargs.pop("capabilities", {"github"})),
            container=ContainerSpec(name=f"{name}-container"),
            **kwargs,
        )

    return _make


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.001)

    return _wait


@pytest.fixture
def make_endpoint(
    runtime: FakeRuntime,
    settings: Settings,
    fast_policy: ReconnectPolicy,
    make_config: Callable[..., EndpointConfig],
) -> Callable[..., Endpoint]:
    def _make(name: str = "alpha", *, policy: ReconnectPolicy | None = None, sleep: Any = None, **config: Any) -> Endpoint:
        extra = {"sleep": sleep} if sleep is not None else {}
        return Endpoint(
            make_config(name, **config),
            ProcessSupervisor(runtime),
            settings=settings,
            policy=policy or fast_policy,
            **extra,
        )

    return _make


@pytest.fixture
def tool_catalog() -> list[dict[str, Any]]:
    return TOOLS
