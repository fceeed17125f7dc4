"""Database layer: SQLAlchemy models and session."""

from assistant.db.models import Base, Conversation, Message
from assistant.db.session import get_db, init_db

__all__ = [
    "Base",
    "Conversation",
    "Message",
    "get_db",
    "init_db",
]
