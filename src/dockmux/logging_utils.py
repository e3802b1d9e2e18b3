"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from typing import Any, Literal

import loguru
from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

LogProfile = Literal["default", "cli"]

DEFAULT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {extra[endpoint]} | {message}"
CLI_FORMAT = "{extra[endpoint]} | {message}"

_active_profile: LogProfile | None = None


def _tag_endpoint(record: loguru.Record) -> None:
    # Records logged outside an endpoint-bound logger still render the column.
    record["extra"].setdefault("endpoint", "-")


def _resolve_level(level: str | None) -> str:
    return (level or os.getenv("DOCKMUX_LOG_LEVEL") or "INFO").upper()


def _sink(profile: LogProfile) -> dict[str, Any]:
    if profile == "cli":
        handler = RichHandler(
            console=Console(stderr=True),
            show_time=False,
            show_path=False,
            markup=False,
            rich_tracebacks=False,
        )
        return {"sink": handler, "format": CLI_FORMAT}
    return {"sink": sys.stderr, "format": DEFAULT_FORMAT}


def configure_logging(*, profile: LogProfile = "default", level: str | None = None) -> None:
    """Route loguru output for ``profile``.

    Repeated calls with the active profile are no-ops. The level falls back to
    ``DOCKMUX_LOG_LEVEL`` and then ``INFO``.
    """
    global _active_profile
    if profile == _active_profile:
        return
    logger.configure(
        handlers=[{**_sink(profile), "level": _resolve_level(level), "backtrace": False, "diagnose": False}],
        patcher=_tag_endpoint,
    )
    _active_profile = profile
