"""Route modules for the backend."""

from . import chat, conversations, functions, media, websocket

__all__ = ["chat", "conversations", "functions", "media", "websocket"]
