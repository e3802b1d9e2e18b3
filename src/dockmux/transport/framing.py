"""Newline-delimited JSON framing."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from loguru import logger

from dockmux.errors import FrameParseError
from dockmux.signals import frame_dropped

READ_CHUNK_SIZE = 64 * 1024


class FrameReader:
    """Reassemble JSON messages from arbitrarily chunked bytes.

    Complete lines are parsed and returned; a trailing partial line stays in
    ``buffer`` until the next chunk completes it.
    """

    def __init__(self, endpoint: str) -> None:
        self.endpoint = endpoint
        self.buffer = b""

    def feed(self, chunk: bytes) -> list[Any]:
        self.buffer += chunk
        *lines, self.buffer = self.buffer.split(b"\n")
        messages: list[Any] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(self._parse(line))
            except FrameParseError as exc:
                logger.bind(endpoint=self.endpoint).warning("frame.dropped name={} error={}", self.endpoint, exc)
                frame_dropped.send(self.endpoint, error=str(exc))
        return messages

    @staticmethod
    def _parse(line: bytes) -> Any:
        try:
            return json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            preview = line[:80].decode("utf-8", errors="replace")
            raise FrameParseError(f"{exc} in line {preview!r}") from exc

    async def messages(self, stream: asyncio.StreamReader) -> AsyncIterator[Any]:
        """Yield parsed messages until ``stream`` reaches EOF."""
        while chunk := await stream.read(READ_CHUNK_SIZE):
            for message in self.feed(chunk):
                yield message
        if self.buffer.strip():
            logger.bind(endpoint=self.endpoint).debug(
                "frame.eof_discard name={} bytes={}", self.endpoint, len(self.buffer)
            )
        self.buffer = b""
