"""Server-Sent Events framing shared by the producer, the relay and the client."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DONE_FRAME = f"data: {DONE_SENTINEL}\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
_FIELD_PREFIXES = ("event:", "id:", "retry:")


def encode_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def error_frame(message: str, **extra: Any) -> str:
    return encode_frame({"type": "error", "error": message, **extra})


@dataclass
class SSEFrame:
    """One parsed line of an event stream.

    ``kind`` is ``"json"`` for a decoded ``data:`` object, ``"done"`` for the
    ``[DONE]`` sentinel, ``"malformed"`` for a ``data:`` payload that is not a
    JSON object, and ``"text"`` for a bare line outside the SSE framing.
    """

    kind: str
    raw: str
    data: Optional[dict[str, Any]] = None


def parse_line(line: str) -> Optional[SSEFrame]:
    line = line.rstrip("\r")
    if not line.strip() or line.startswith(":") or line.startswith(_FIELD_PREFIXES):
        return None
    if not line.startswith("data:"):
        return SSEFrame(kind="text", raw=line)
    value = line[len("data:") :]
    if value.startswith(" "):
        value = value[1:]
    if value.strip() == DONE_SENTINEL:
        return SSEFrame(kind="done", raw=value)
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError as exc:
        logger.debug("Skipping malformed SSE frame: %s", exc)
        return SSEFrame(kind="malformed", raw=value)
    if not isinstance(decoded, dict):
        return SSEFrame(kind="malformed", raw=value)
    return SSEFrame(kind="json", raw=value, data=decoded)


async def iter_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    """Parse an async iterator of text lines into frames, dropping blanks and comments."""
    async for line in lines:
        frame = parse_line(line)
        if frame is not None:
            yield frame


__all__ = [
    "DONE_FRAME",
    "DONE_SENTINEL",
    "SSE_HEADERS",
    "SSEFrame",
    "encode_frame",
    "error_frame",
    "iter_frames",
    "parse_line",
]
