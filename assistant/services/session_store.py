"""Durable conversation turns, keyed by session id."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from assistant.config import Settings
from assistant.db.models import Conversation, Message
from assistant.db.session import get_db
from assistant.errors import SessionNotFound, StorageFailure
from assistant.types import Turn

logger = logging.getLogger("assistant.store")


class SessionStore(ABC):
    """
    Per-session turn log. Implementations provide their own per-session
    consistency; callers never coordinate across sessions.
    """

    @abstractmethod
    def create_session(self, session_id: Optional[str] = None) -> str:
        """Create a session (or return an existing one with that id)."""
        ...

    @abstractmethod
    def exists(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def load_recent_turns(self, session_id: str, limit: int) -> List[Turn]:
        """Last `limit` turns, oldest first. Raises SessionNotFound."""
        ...

    @abstractmethod
    def append_turn(self, session_id: str, turn: Turn) -> None:
        """Raises SessionNotFound or StorageFailure."""
        ...

    @abstractmethod
    def all_turns(self, session_id: str) -> List[Turn]:
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store for tests and throwaway dev runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, List[Turn]] = {}

    def create_session(self, session_id: Optional[str] = None) -> str:
        session_id = session_id or str(uuid4())
        with self._lock:
            self._sessions.setdefault(session_id, [])
        return session_id

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def load_recent_turns(self, session_id: str, limit: int) -> List[Turn]:
        with self._lock:
            turns = self._sessions.get(session_id)
            if turns is None:
                raise SessionNotFound(session_id)
            return list(turns[-limit:]) if limit > 0 else []

    def append_turn(self, session_id: str, turn: Turn) -> None:
        with self._lock:
            turns = self._sessions.get(session_id)
            if turns is None:
                raise SessionNotFound(session_id)
            turns.append(turn)

    def all_turns(self, session_id: str) -> List[Turn]:
        with self._lock:
            turns = self._sessions.get(session_id)
            if turns is None:
                raise SessionNotFound(session_id)
            return list(turns)


class SqlSessionStore(SessionStore):
    """SQLAlchemy-backed store: one conversations row, two messages rows per turn."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @contextmanager
    def _db(self, op: str):
        try:
            with get_db(self.settings) as db:
                yield db
        except SQLAlchemyError as e:
            logger.error("Session store %s failed: %s", op, e)
            raise StorageFailure(f"Session store {op} failed", {"error": str(e)}) from e

    def create_session(self, session_id: Optional[str] = None) -> str:
        with self._db("create") as db:
            if session_id and db.get(Conversation, session_id) is not None:
                return session_id
            conv = Conversation(id=session_id or str(uuid4()))
            db.add(conv)
            db.flush()
            logger.info("Created conversation %s", conv.id)
            return conv.id

    def exists(self, session_id: str) -> bool:
        with self._db("lookup") as db:
            return db.get(Conversation, session_id) is not None

    def load_recent_turns(self, session_id: str, limit: int) -> List[Turn]:
        with self._db("load") as db:
            if db.get(Conversation, session_id) is None:
                raise SessionNotFound(session_id)
            if limit <= 0:
                return []
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == session_id)
                .order_by(Message.id.desc())
                .limit(limit * 2)
                .all()
            )
        rows.reverse()
        return _pair(rows)[-limit:]

    def append_turn(self, session_id: str, turn: Turn) -> None:
        with self._db("append") as db:
            conv = db.get(Conversation, session_id)
            if conv is None:
                raise SessionNotFound(session_id)
            turn_id = str(uuid4())
            db.add(Message(
                conversation_id=session_id, role="user", content=turn.prompt,
                timestamp=turn.timestamp, turn_id=turn_id,
            ))
            db.add(Message(
                conversation_id=session_id, role="assistant", content=turn.completion,
                timestamp=turn.timestamp, turn_id=turn_id, trace_id=turn.trace_id,
            ))
            conv.updated_at = turn.timestamp

    def all_turns(self, session_id: str) -> List[Turn]:
        with self._db("load") as db:
            if db.get(Conversation, session_id) is None:
                raise SessionNotFound(session_id)
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == session_id)
                .order_by(Message.id)
                .all()
            )
        return _pair(rows)


def _pair(rows: Iterable[Message]) -> List[Turn]:
    """Rebuild turns from message rows in id order. Half-written turns are dropped."""
    users: Dict[str, Message] = {}
    turns: List[Turn] = []
    for row in rows:
        if row.role == "user":
            users[row.turn_id] = row
        elif row.role == "assistant" and row.turn_id in users:
            user = users.pop(row.turn_id)
            turns.append(Turn(
                prompt=user.content,
                completion=row.content,
                timestamp=row.timestamp,
                trace_id=row.trace_id,
            ))
    return turns
