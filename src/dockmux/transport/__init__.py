from dockmux.transport.framing import FrameReader
from dockmux.transport.process import (
    AttachedProcess,
    ContainerRuntime,
    DockerRuntime,
    ProcessSupervisor,
    forward_stderr,
)

__all__ = [
    "AttachedProcess",
    "ContainerRuntime",
    "DockerRuntime",
    "FrameReader",
    "ProcessSupervisor",
    "forward_stderr",
]
