"""Tracks in-flight assistant turns: one per conversation, each with a cancellation token."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from ..errors import TurnInProgress

logger = logging.getLogger(__name__)

STALE_TURN_SECONDS = 15 * 60


@dataclass
class ActiveTurn:
    conversation_id: str
    message_id: Optional[str] = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    replaced: Optional[ActiveTurn] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()


class TurnRegistry:
    """Serializes turns per conversation; a second concurrent turn is rejected.

    A turn held longer than ``stale_after`` seconds is assumed orphaned and is
    reclaimed by the next ``begin`` for its conversation.
    """

    def __init__(self, stale_after: float = STALE_TURN_SECONDS) -> None:
        self._by_conversation: dict[str, ActiveTurn] = {}
        self._stale_after = stale_after

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._by_conversation

    def holds(self, turn: ActiveTurn) -> bool:
        return self._by_conversation.get(turn.conversation_id) is turn

    def begin(self, conversation_id: str) -> ActiveTurn:
        current = self._by_conversation.get(conversation_id)
        if current is not None:
            if time.monotonic() - current.started_at < self._stale_after:
                raise TurnInProgress()
            logger.warning(
                "Reclaiming stale turn on conversation %s (message %s)", conversation_id, current.message_id
            )
            current.cancel.set()
        turn = ActiveTurn(conversation_id=conversation_id, replaced=current)
        self._by_conversation[conversation_id] = turn
        return turn

    def bind(self, turn: ActiveTurn, message_id: str) -> None:
        turn.message_id = message_id

    def release(self, turn: ActiveTurn) -> None:
        if self.holds(turn):
            del self._by_conversation[turn.conversation_id]

    def find(self, message_id: str) -> Optional[ActiveTurn]:
        for turn in self._by_conversation.values():
            if turn.message_id == message_id:
                return turn
        return None

    def cancel(self, message_id: str) -> bool:
        turn = self.find(message_id)
        if turn is None:
            return False
        logger.info("Cancellation requested for message %s", message_id)
        turn.cancel.set()
        return True


_registry: TurnRegistry | None = None


def get_turn_registry() -> TurnRegistry:
    global _registry
    if _registry is None:
        _registry = TurnRegistry()
    return _registry


def reset_turn_registry() -> None:
    global _registry
    _registry = None
