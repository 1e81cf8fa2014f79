"""Request and response bodies."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: str = ""


class ChatRequest(BaseModel):
    """Body of ``POST /api/companions/chat``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: Optional[str] = None
    kinkster_id: Optional[str] = Field(default=None, alias="kinksterId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    history: list[HistoryMessage] = Field(default_factory=list)
    file_urls: list[str] = Field(default_factory=list, alias="fileUrls")
    realtime: bool = False


class RealtimeAck(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId")
    message_id: str = Field(alias="messageId")
    message: str = "Message sent. Response will arrive via Realtime."


class TurnPayload(BaseModel):
    """Body of the stream producer, ``POST /functions/v1/chat-stream``."""

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    messages: list[HistoryMessage] = Field(default_factory=list)
    agent_name: Optional[str] = None
    agent_instructions: Optional[str] = None
    tools: list[dict[str, Any]] = Field(default_factory=list)
    model: Optional[str] = None
    temperature: Optional[float] = None
    file_urls: list[str] = Field(default_factory=list)
    stream: bool = True
    stateful: bool = False
    previous_response_id: Optional[str] = None


class RenameConversation(BaseModel):
    title: Optional[str] = None
