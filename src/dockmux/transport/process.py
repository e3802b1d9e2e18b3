"""Container process attachment."""

from __future__ import annotations

import asyncio
from typing import Protocol

from loguru import logger

from dockmux.config import EndpointConfig
from dockmux.errors import ContainerUnavailableError, SpawnFailedError

INSPECT_TIMEOUT_SECONDS = 10.0
STDERR_CHUNK_SIZE = 4096


class AttachedProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` a connection relies on."""

    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    @property
    def returncode(self) -> int | None: ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class ContainerRuntime(Protocol):
    """Boundary to the container engine."""

    async def is_container_running(self, name: str) -> bool: ...

    async def spawn_attached(self, container: str, workdir: str | None, command: list[str]) -> AttachedProcess: ...


class DockerRuntime:
    """Container runtime backed by the docker CLI."""

    def __init__(self, docker_bin: str = "docker") -> None:
        self.docker_bin = docker_bin

    async def is_container_running(self, name: str) -> bool:
        try:
            inspect = await asyncio.create_subprocess_exec(
                self.docker_bin,
                "inspect",
                "-f",
                "{{.State.Running}}",
                name,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.warning("docker.inspect_failed container={} error={}", name, exc)
            return False
        try:
            output, _ = await asyncio.wait_for(inspect.communicate(), timeout=INSPECT_TIMEOUT_SECONDS)
        except TimeoutError:
            inspect.kill()
            await inspect.wait()
            logger.warning("docker.inspect_timeout container={}", name)
            return False
        return inspect.returncode == 0 and output.decode("utf-8", errors="replace").strip() == "true"

    def exec_args(self, container: str, workdir: str | None, command: list[str]) -> list[str]:
        args = ["exec", "-i"]
        if workdir:
            args += ["-w", workdir]
        return [self.docker_bin, *args, container, *command]

    async def spawn_attached(self, container: str, workdir: str | None, command: list[str]) -> AttachedProcess:
        return await asyncio.create_subprocess_exec(
            *self.exec_args(container, workdir, command),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )


class ProcessSupervisor:
    """Verify containers and start one attached process per connection attempt."""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    async def ensure_running(self, container: str) -> None:
        try:
            running = await self.runtime.is_container_running(container)
        except (OSError, TimeoutError) as exc:
            raise ContainerUnavailableError(container, str(exc)) from exc
        if not running:
            raise ContainerUnavailableError(container)

    async def attach(self, config: EndpointConfig) -> AttachedProcess:
        spec = config.container
        await self.ensure_running(spec.name)
        try:
            process = await self.runtime.spawn_attached(spec.name, spec.workdir, list(spec.command))
        except OSError as exc:
            raise SpawnFailedError(f"Cannot start {config.name} in {spec.name}: {exc}") from exc
        if process.stdin is None or process.stdout is None:
            raise SpawnFailedError(f"Process for {config.name} has no stdio pipes")
        logger.bind(endpoint=config.name).info(
            "process.attached name={} container={} command={}", config.name, spec.name, " ".join(spec.command)
        )
        return process


async def forward_stderr(endpoint: str, stream: asyncio.StreamReader) -> None:
    """Log every stderr line of ``endpoint`` until EOF."""
    log = logger.bind(endpoint=endpoint)
    pending = b""
    while chunk := await stream.read(STDERR_CHUNK_SIZE):
        *lines, pending = (pending + chunk).split(b"\n")
        for line in lines:
            if text := line.decode("utf-8", errors="replace").strip():
                log.info("[{}] {}", endpoint, text)
    if text := pending.decode("utf-8", errors="replace").strip():
        log.info("[{}] {}", endpoint, text)
