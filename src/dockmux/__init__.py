"""dockmux - resilient JSON-RPC multiplexer for containerized backends."""

from ._version import __version__
from .config import EndpointConfig, Settings, get_settings, load_endpoints
from .connections import ConnectionManager, ConnectionState, Endpoint, ReconnectPolicy
from .executor import ExecutionMode, ExecutionResult, ExecutionStep, FanOutExecutor
from .health import HealthMonitor, ProbeReport
from .orchestrator import Orchestrator

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "Endpoint",
    "EndpointConfig",
    "ExecutionMode",
    "ExecutionResult",
    "ExecutionStep",
    "FanOutExecutor",
    "HealthMonitor",
    "Orchestrator",
    "ProbeReport",
    "ReconnectPolicy",
    "Settings",
    "__version__",
    "get_settings",
    "load_endpoints",
]
