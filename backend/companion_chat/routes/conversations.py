"""Conversation history endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..errors import NotFound, ValidationFailed
from ..schemas import RenameConversation
from ..services import conversations as convo_service
from .deps import get_current_user

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("")
async def list_conversations(user_id: str = Depends(get_current_user)) -> list[dict[str, object]]:
    """Return the caller's active conversations, most recent first."""

    return await convo_service.list_conversation_dtos(user_id)


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, user_id: str = Depends(get_current_user)) -> dict[str, object]:
    """Return a conversation transcript."""

    conversation = await convo_service.get_conversation_with_messages(conversation_id, user_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    return conversation


@router.patch("/{conversation_id}")
async def rename_conversation(
    conversation_id: str,
    payload: RenameConversation,
    user_id: str = Depends(get_current_user),
) -> dict[str, object]:
    title = (payload.title or "").strip()
    if not title:
        raise ValidationFailed("Title is required")
    updated = await convo_service.rename_conversation(conversation_id, user_id, title)
    if not updated:
        raise NotFound("Conversation not found")
    conversation = await convo_service.get_conversation_with_messages(conversation_id, user_id)
    assert conversation is not None
    return conversation


@router.delete("/{conversation_id}")
async def archive_conversation(conversation_id: str, user_id: str = Depends(get_current_user)) -> dict[str, str]:
    archived = await convo_service.archive_conversation(conversation_id, user_id)
    if not archived:
        raise NotFound("Conversation not found")
    return {"status": "archived"}
