"""Application-level exception types for dockmux."""

from __future__ import annotations

from typing import Any


class DockmuxError(Exception):
    """Base exception for dockmux."""


class ConfigurationError(DockmuxError):
    """Base exception for configuration and startup validation errors."""


class EndpointConfigError(ConfigurationError):
    """Raised when the endpoint file is missing, unreadable or invalid."""


class ContainerUnavailableError(DockmuxError):
    """Raised when the target container is not in a running state."""

    def __init__(self, container: str, reason: str | None = None) -> None:
        message = f"Container {container} not running"
        super().__init__(f"{message}: {reason}" if reason else message)
        self.container = container
        self.reason = reason


class SpawnFailedError(DockmuxError):
    """Raised when the attached process could not be started."""


class FrameParseError(DockmuxError):
    """A stdout line that is not valid JSON. Recovered locally, never raised to callers."""


class EndpointUnavailableError(DockmuxError):
    """Raised when a call targets an endpoint that is unknown or not ready."""

    def __init__(self, endpoint: str) -> None:
        super().__init__("endpoint not available")
        self.endpoint = endpoint


class MaxReconnectExceededError(DockmuxError):
    """Recorded when an endpoint is abandoned after exhausting its reconnect attempts."""

    def __init__(self, endpoint: str, attempts: int) -> None:
        super().__init__(f"{endpoint} abandoned after {attempts} failed reconnect attempts")
        self.endpoint = endpoint
        self.attempts = attempts


class RpcError(DockmuxError):
    """Base exception for failures of a single JSON-RPC call."""

    def __init__(self, endpoint: str, message: str) -> None:
        super().__init__(message)
        self.endpoint = endpoint


class InvalidRequestError(RpcError):
    """Raised when request parameters cannot be serialized."""


class TransportWriteError(RpcError):
    """Raised when writing a request to the process stdin fails."""


class TransportClosedError(RpcError):
    """Raised for calls still pending when the process exits or the system shuts down."""


class RpcTimeoutError(RpcError):
    """Raised when no response arrives before the call deadline."""

    def __init__(self, endpoint: str, method: str, timeout: float) -> None:
        super().__init__(endpoint, f"Timeout for {method} in {endpoint}")
        self.method = method
        self.timeout = timeout


class RemoteError(RpcError):
    """Raised when the backend answers with a JSON-RPC error object."""

    def __init__(self, endpoint: str, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(endpoint, message)
        self.code = code
        self.data = data
