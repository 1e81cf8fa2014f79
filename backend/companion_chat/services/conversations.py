"""Conversation and message persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from ..storage import Attachment, Conversation, Message, get_db_manager
from ..utils import attachment_file_name, classify_attachment, estimate_tokens

TITLE_LENGTH = 100


def serialize_conversation(conversation: Conversation) -> dict[str, object]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "agent_name": conversation.agent_name,
        "agent_config": conversation.agent_config or {},
        "is_active": conversation.is_active,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


def serialize_attachment(attachment: Attachment) -> dict[str, object]:
    return {
        "id": attachment.id,
        "type": attachment.attachment_type,
        "url": attachment.attachment_url,
        "file_name": attachment.file_name,
    }


def serialize_message(message: Message, attachments: Optional[list[Attachment]] = None) -> dict[str, object]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "role": message.role,
        "content": message.content,
        "is_streaming": message.is_streaming,
        "model": message.model,
        "token_count": message.token_count,
        "created_at": message.created_at.isoformat(),
        "attachments": [serialize_attachment(item) for item in attachments or []],
    }


async def list_conversation_dtos(user_id: str) -> list[dict[str, object]]:
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            select(Conversation)
            .where(Conversation.user_id == user_id, Conversation.is_active.is_(True))
            .order_by(Conversation.updated_at.desc())
        )
        conversations = result.scalars().all()
    return [serialize_conversation(convo) for convo in conversations]


async def get_owned_conversation(conversation_id: str, user_id: str) -> Optional[Conversation]:
    db = await get_db_manager()
    async with db.session() as session:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            return None
        return conversation


async def get_conversation_with_messages(conversation_id: str, user_id: str) -> Optional[dict[str, object]]:
    db = await get_db_manager()
    async with db.session() as session:
        conversation = await session.get(Conversation, conversation_id)
        if conversation is None or conversation.user_id != user_id:
            return None
        result = await session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .options(selectinload(Message.attachments))
            .order_by(Message.created_at, Message.id)
        )
        messages = [serialize_message(message, message.attachments) for message in result.scalars().all()]
        return {
            **serialize_conversation(conversation),
            "messages": messages,
        }


async def create_conversation(
    user_id: str,
    first_message: str,
    agent_name: str,
    agent_config: dict[str, Any],
) -> Conversation:
    db = await get_db_manager()
    async with db.session() as session:
        conversation = Conversation(
            user_id=user_id,
            title=first_message[:TITLE_LENGTH] or "New Conversation",
            agent_name=agent_name,
            agent_config={key: value for key, value in agent_config.items() if value is not None},
        )
        session.add(conversation)
        await session.flush()
        await session.refresh(conversation)
        return conversation


async def rename_conversation(conversation_id: str, user_id: str, title: str) -> bool:
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.user_id == user_id)
            .values(title=title, updated_at=datetime.utcnow())
        )
        return result.rowcount > 0


async def archive_conversation(conversation_id: str, user_id: str) -> bool:
    """Hide a conversation from listings. Rows are retained."""
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id, Conversation.user_id == user_id)
            .values(is_active=False, updated_at=datetime.utcnow())
        )
        return result.rowcount > 0


async def add_message(
    conversation_id: str,
    role: str,
    content: str,
    *,
    is_streaming: bool = False,
    model: Optional[str] = None,
    token_count: Optional[int] = None,
) -> Message:
    db = await get_db_manager()
    async with db.session() as session:
        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            is_streaming=is_streaming,
            model=model,
            token_count=token_count,
        )
        session.add(message)
        await session.execute(
            update(Conversation).where(Conversation.id == conversation_id).values(updated_at=datetime.utcnow())
        )
        await session.flush()
        await session.refresh(message)
        return message


async def create_streaming_placeholder(conversation_id: str, model: Optional[str]) -> Message:
    return await add_message(conversation_id, role="assistant", content="", is_streaming=True, model=model)


async def get_message(message_id: str) -> Optional[Message]:
    db = await get_db_manager()
    async with db.session() as session:
        return await session.get(Message, message_id)


async def finalize_message(message_id: str, content: str) -> bool:
    """Write the final content of an assistant message and clear its streaming flag."""
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            update(Message)
            .where(Message.id == message_id)
            .values(content=content, is_streaming=False, token_count=estimate_tokens(content))
        )
        return result.rowcount > 0


async def fail_message(message_id: str, error_text: str) -> bool:
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            update(Message).where(Message.id == message_id).values(content=error_text, is_streaming=False)
        )
        return result.rowcount > 0


async def clear_streaming(message_id: str) -> bool:
    """Clear the streaming flag of a message nothing will finish, keeping its content."""
    db = await get_db_manager()
    async with db.session() as session:
        result = await session.execute(
            update(Message)
            .where(Message.id == message_id, Message.is_streaming.is_(True))
            .values(is_streaming=False)
        )
        return result.rowcount > 0


async def add_attachments(message_id: str, file_urls: list[str]) -> list[Attachment]:
    db = await get_db_manager()
    async with db.session() as session:
        attachments = [
            Attachment(
                message_id=message_id,
                attachment_type=classify_attachment(url),
                attachment_url=url,
                file_name=attachment_file_name(url),
            )
            for url in file_urls
        ]
        session.add_all(attachments)
        await session.flush()
        return attachments
