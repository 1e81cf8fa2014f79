"""WebSocket endpoint mirroring a conversation's realtime topic."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..services.auth import bearer_token, resolve_user
from ..services.conversations import get_owned_conversation
from ..services.realtime import conversation_topic, get_realtime_hub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["realtime"])


async def _forward(socket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        event = await queue.get()
        await socket.send_json(event)


async def _watch(socket: WebSocket) -> None:
    """Return once the client goes away; anything it sends is ignored."""
    while True:
        message = await socket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/conversations/{conversation_id}")
async def conversation_socket(socket: WebSocket, conversation_id: str, token: Optional[str] = None) -> None:
    """Forward ``message_chunk`` and ``message_complete`` events to a subscribed device."""

    user_id = await resolve_user(token or bearer_token(socket.headers.get("authorization")))
    if user_id is None or await get_owned_conversation(conversation_id, user_id) is None:
        await socket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await socket.accept()
    async with get_realtime_hub().subscribe(conversation_topic(conversation_id)) as queue:
        forward = asyncio.create_task(_forward(socket, queue))
        watch = asyncio.create_task(_watch(socket))
        try:
            done, _ = await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (forward, watch):
                task.cancel()
            await asyncio.gather(forward, watch, return_exceptions=True)

    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            logger.warning("Realtime socket for conversation %s closed: %s", conversation_id, error)
