"""Observability signals.

Receivers are called synchronously with the endpoint name as sender, e.g.::

    @probe_failed.connect
    def count(sender: str, *, error: str) -> None: ...
"""

from __future__ import annotations

from blinker import Namespace

_signals = Namespace()

state_changed = _signals.signal("dockmux.state-changed")
"""Sent on every lifecycle transition with ``previous``, ``current`` and ``event``."""

probe_failed = _signals.signal("dockmux.probe-failed")
"""Sent for every failed health probe with ``error``."""

reconnect_exhausted = _signals.signal("dockmux.reconnect-exhausted")
"""Sent once when an endpoint is abandoned, with ``attempts``."""

frame_dropped = _signals.signal("dockmux.frame-dropped")
"""Sent for every stdout line that is not valid JSON, with ``error``."""
