from dockmux.connections.connection import Connection
from dockmux.connections.lifecycle import (
    TRANSITIONS,
    ClientIdentity,
    ConnectionState,
    Endpoint,
    LifecycleEvent,
    ReconnectPolicy,
    next_state,
)
from dockmux.connections.manager import ConnectionManager

__all__ = [
    "TRANSITIONS",
    "ClientIdentity",
    "Connection",
    "ConnectionManager",
    "ConnectionState",
    "Endpoint",
    "LifecycleEvent",
    "ReconnectPolicy",
    "next_state",
]
