"""Secondary bookkeeping that must never block the primary chat turn.

Attachment rows, realtime broadcasts, persona continuity updates and the
relay's re-finalization write all run through :func:`run_secondary`. A failure
is logged and appended to the dead-letter log instead of being raised, and the
caller gets a :class:`BookkeepingOutcome` it can inspect.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Optional

import aiofiles

from ..config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class BookkeepingOutcome:
    operation: str
    ok: bool
    error: Optional[str] = None


class DeadLetterLog:
    """Append-only JSON-lines record of failed bookkeeping operations."""

    def __init__(self, path: Optional[Path], max_recent: int = 200) -> None:
        self._path = path
        self._recent: deque[dict[str, Any]] = deque(maxlen=max_recent)

    @property
    def recent(self) -> list[dict[str, Any]]:
        return list(self._recent)

    async def record(self, operation: str, error: str, context: dict[str, Any]) -> None:
        entry = {
            "operation": operation,
            "error": error,
            "context": context,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        self._recent.append(entry)
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self._path, "a", encoding="utf-8") as handle:
                await handle.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            logger.error("Could not write dead letter for %s: %s", operation, exc)


async def run_secondary(
    operation: str,
    awaitable: Awaitable[Any],
    dead_letters: DeadLetterLog,
    **context: Any,
) -> BookkeepingOutcome:
    try:
        await awaitable
    except Exception as exc:  # noqa: BLE001
        logger.warning("Bookkeeping step %s failed: %s", operation, exc)
        await dead_letters.record(operation, str(exc) or type(exc).__name__, context)
        return BookkeepingOutcome(operation=operation, ok=False, error=str(exc))
    return BookkeepingOutcome(operation=operation, ok=True)


_dead_letters: DeadLetterLog | None = None


def get_dead_letter_log() -> DeadLetterLog:
    global _dead_letters
    if _dead_letters is None:
        _dead_letters = DeadLetterLog(get_settings().dead_letter_path)
    return _dead_letters


def reset_dead_letter_log() -> None:
    global _dead_letters
    _dead_letters = None
