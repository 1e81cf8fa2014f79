"""Storage layer exports."""

from .database import Base, DatabaseManager, get_db_manager, shutdown_database
from .models import Attachment, AuthSession, Conversation, Message, Persona

__all__ = [
    "Base",
    "DatabaseManager",
    "get_db_manager",
    "shutdown_database",
    "Attachment",
    "AuthSession",
    "Conversation",
    "Message",
    "Persona",
]
