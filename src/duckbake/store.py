"""Concrete implementations for conversation persistence."""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from .exceptions import PersistenceError
from .models import ChatMessage, Conversation, ConversationWithMessages

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"


class Store(ABC):
    """Interface for saving and loading conversations, scoped by project."""

    @abstractmethod
    async def list_conversations(self, project_id: str) -> List[Conversation]:
        """Lists a project's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def create_conversation(
        self, project_id: str, title: Optional[str] = None
    ) -> Conversation:
        """Creates an empty conversation."""
        pass

    @abstractmethod
    async def get_conversation(
        self, project_id: str, conversation_id: str
    ) -> ConversationWithMessages:
        """Loads a conversation with its messages in creation order."""
        pass

    @abstractmethod
    async def update_conversation(
        self, project_id: str, conversation_id: str, title: str
    ) -> Conversation:
        """Renames a conversation."""
        pass

    @abstractmethod
    async def delete_conversation(self, project_id: str, conversation_id: str) -> None:
        """Deletes a conversation and all of its messages."""
        pass

    @abstractmethod
    async def append_message(
        self, project_id: str, conversation_id: str, message: ChatMessage
    ) -> ChatMessage:
        """Appends ``message`` and bumps the conversation's ``updated_at``."""
        pass


class InMemory(Store):
    """Keeps conversations in process memory."""

    def __init__(self):
        self._conversations: Dict[str, "OrderedDict[str, Conversation]"] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}

    def _project(self, project_id: str) -> "OrderedDict[str, Conversation]":
        return self._conversations.setdefault(project_id, OrderedDict())

    def _require(self, project_id: str, conversation_id: str) -> Conversation:
        conversation = self._project(project_id).get(conversation_id)
        if conversation is None:
            raise PersistenceError(f"Conversation not found: {conversation_id}")
        return conversation

    def _touch(self, project_id: str, conversation: Conversation) -> Conversation:
        conversation = conversation.model_copy(
            update={"updated_at": datetime.now(timezone.utc)}
        )
        project = self._project(project_id)
        project[conversation.id] = conversation
        project.move_to_end(conversation.id)
        return conversation

    async def list_conversations(self, project_id):
        return list(reversed(self._project(project_id).values()))

    async def create_conversation(self, project_id, title=None):
        conversation = Conversation(project_id=project_id, title=title or DEFAULT_TITLE)
        self._project(project_id)[conversation.id] = conversation
        self._messages[conversation.id] = []
        return conversation

    async def get_conversation(self, project_id, conversation_id):
        conversation = self._require(project_id, conversation_id)
        return ConversationWithMessages(
            **conversation.model_dump(),
            messages=list(self._messages.get(conversation_id, [])),
        )

    async def update_conversation(self, project_id, conversation_id, title):
        conversation = self._require(project_id, conversation_id)
        return self._touch(project_id, conversation.model_copy(update={"title": title}))

    async def delete_conversation(self, project_id, conversation_id):
        self._require(project_id, conversation_id)
        del self._project(project_id)[conversation_id]
        self._messages.pop(conversation_id, None)

    async def append_message(self, project_id, conversation_id, message):
        conversation = self._require(project_id, conversation_id)
        self._messages.setdefault(conversation_id, []).append(message)
        self._touch(project_id, conversation)
        return message


class SQLite(Store):
    """Persists conversations in a SQLite database file.

    Blocking database work runs in a worker thread so the event loop keeps
    serving the stream.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    context_tables TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_conversations_project
                    ON conversations(project_id);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation
                    ON messages(conversation_id);
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(messages)")}
            if "context_tables" not in columns:
                conn.execute("ALTER TABLE messages ADD COLUMN context_tables TEXT")

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    @staticmethod
    def _conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch(self, conn, project_id, conversation_id) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM conversations WHERE id = ? AND project_id = ?",
            (conversation_id, project_id),
        ).fetchone()
        if row is None:
            raise PersistenceError(f"Conversation not found: {conversation_id}")
        return row

    @staticmethod
    def _bump(conn, conversation_id, now) -> None:
        conn.execute(
            """
            UPDATE conversations
            SET updated_at = ?,
                revision = (SELECT COALESCE(MAX(revision), 0) + 1 FROM conversations)
            WHERE id = ?
            """,
            (now, conversation_id),
        )

    # --- blocking implementations ---
    def _list(self, project_id):
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations WHERE project_id = ?
                ORDER BY revision DESC, updated_at DESC
                """,
                (project_id,),
            ).fetchall()
        return [self._conversation(row) for row in rows]

    def _create(self, project_id, title):
        conversation = Conversation(project_id=project_id, title=title or DEFAULT_TITLE)
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO conversations (id, project_id, title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    project_id,
                    conversation.title,
                    conversation.created_at.isoformat(),
                    conversation.updated_at.isoformat(),
                ),
            )
            self._bump(conn, conversation.id, conversation.updated_at.isoformat())
        return conversation

    def _get(self, project_id, conversation_id):
        with closing(self._connect()) as conn:
            row = self._fetch(conn, project_id, conversation_id)
            message_rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY rowid",
                (conversation_id,),
            ).fetchall()
        messages = [
            ChatMessage(
                id=m["id"],
                role=m["role"],
                content=m["content"],
                created_at=m["created_at"],
                context_tables=(
                    json.loads(m["context_tables"]) if m["context_tables"] else None
                ),
            )
            for m in message_rows
        ]
        return ConversationWithMessages(
            **self._conversation(row).model_dump(), messages=messages
        )

    def _update(self, project_id, conversation_id, title):
        now = datetime.now(timezone.utc).isoformat()
        with closing(self._connect()) as conn, conn:
            self._fetch(conn, project_id, conversation_id)
            conn.execute(
                "UPDATE conversations SET title = ? WHERE id = ?",
                (title, conversation_id),
            )
            self._bump(conn, conversation_id, now)
            row = self._fetch(conn, project_id, conversation_id)
        return self._conversation(row)

    def _delete(self, project_id, conversation_id):
        with closing(self._connect()) as conn, conn:
            self._fetch(conn, project_id, conversation_id)
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    def _append(self, project_id, conversation_id, message):
        with closing(self._connect()) as conn, conn:
            self._fetch(conn, project_id, conversation_id)
            conn.execute(
                """
                INSERT INTO messages
                    (id, conversation_id, role, content, created_at, context_tables)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    conversation_id,
                    message.role,
                    message.content,
                    message.created_at.isoformat(),
                    (
                        json.dumps(message.context_tables)
                        if message.context_tables is not None
                        else None
                    ),
                ),
            )
            self._bump(conn, conversation_id, datetime.now(timezone.utc).isoformat())
        return message

    # --- Store interface ---
    async def list_conversations(self, project_id):
        return await self._run(self._list, project_id)

    async def create_conversation(self, project_id, title=None):
        return await self._run(self._create, project_id, title)

    async def get_conversation(self, project_id, conversation_id):
        return await self._run(self._get, project_id, conversation_id)

    async def update_conversation(self, project_id, conversation_id, title):
        return await self._run(self._update, project_id, conversation_id, title)

    async def delete_conversation(self, project_id, conversation_id):
        await self._run(self._delete, project_id, conversation_id)

    async def append_message(self, project_id, conversation_id, message):
        return await self._run(self._append, project_id, conversation_id, message)
