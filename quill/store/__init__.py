"""Conversation and message storage with SQLite."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from quill.exceptions import PersistenceWriteError, StaleMessageError
from quill.logging import get_logger

log = get_logger(__name__)

_JSON_FIELDS = ("search_results", "landing_page_content", "document_content", "metadata")
_BOOL_FIELDS = ("has_web_search", "has_document")
_MESSAGE_PATCH_FIELDS = frozenset(
    _JSON_FIELDS + _BOOL_FIELDS + ("tokens", "model")
)
_CONVERSATION_PATCH_FIELDS = frozenset(
    {"title", "is_archived", "is_paused", "model", "system_prompt", "temperature", "last_activity_at"}
)
_MESSAGE_COLUMNS = (
    "id, conversation_id, role, content, is_streaming, search_results, has_web_search, "
    "landing_page_content, document_content, has_document, metadata, tokens, model, "
    "version, created_at, updated_at"
)
_CONVERSATION_COLUMNS = (
    "id, owner, title, is_archived, is_paused, model, system_prompt, temperature, "
    "created_at, last_activity_at"
)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Conversation:
    """A conversation owned by a user."""

    id: str
    owner: str
    title: str = ""
    is_archived: bool = False
    is_paused: bool = False
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    last_activity_at: str = field(default_factory=_utcnow_iso)


@dataclass
class ChatMessage:
    """A stored message; assistant messages are mutable while streaming."""

    id: str
    conversation_id: str
    role: str  # "user", "assistant", "system"
    content: str = ""
    is_streaming: bool = False
    search_results: list[dict[str, Any]] | None = None
    has_web_search: bool = False
    landing_page_content: dict[str, Any] | None = None
    document_content: dict[str, Any] | None = None
    has_document: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    tokens: int | None = None
    model: str | None = None
    version: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)


def _encode(name: str, value: Any) -> Any:
    if name in _JSON_FIELDS:
        return None if value is None else json.dumps(value)
    if name in _BOOL_FIELDS:
        return 1 if value else 0
    return value


def _conversation_from_row(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        owner=row["owner"],
        title=row["title"] or "",
        is_archived=bool(row["is_archived"]),
        is_paused=bool(row["is_paused"]),
        model=row["model"],
        system_prompt=row["system_prompt"],
        temperature=row["temperature"],
        created_at=row["created_at"],
        last_activity_at=row["last_activity_at"],
    )


def _message_from_row(row: aiosqlite.Row) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"] or "",
        is_streaming=bool(row["is_streaming"]),
        search_results=json.loads(row["search_results"]) if row["search_results"] else None,
        has_web_search=bool(row["has_web_search"]),
        landing_page_content=(
            json.loads(row["landing_page_content"]) if row["landing_page_content"] else None
        ),
        document_content=json.loads(row["document_content"]) if row["document_content"] else None,
        has_document=bool(row["has_document"]),
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        tokens=row["tokens"],
        model=row["model"],
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteStore:
    """Backing store for conversations and messages.

    Every operation touches a single row (plus the owning conversation's
    activity timestamp on finalize), so no multi-statement transactions
    are needed.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    is_paused INTEGER NOT NULL DEFAULT 0,
                    model TEXT,
                    system_prompt TEXT,
                    temperature REAL,
                    created_at TEXT NOT NULL,
                    last_activity_at TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    is_streaming INTEGER NOT NULL DEFAULT 0,
                    search_results TEXT,
                    has_web_search INTEGER NOT NULL DEFAULT 0,
                    landing_page_content TEXT,
                    document_content TEXT,
                    has_document INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    tokens INTEGER,
                    model TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_conversation "
                "ON messages(conversation_id, created_at)"
            )
            # One open assistant reply per conversation.
            await self._db.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_open_assistant "
                "ON messages(conversation_id) WHERE is_streaming = 1 AND role = 'assistant'"
            )
            await self._db.commit()
        return self._db

    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Run one write statement and return the affected row count."""
        db = await self._ensure_db()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
        except aiosqlite.IntegrityError as e:
            await db.rollback()
            raise PersistenceWriteError(f"Constraint violated: {e}") from e
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceWriteError(str(e)) from e
        return cursor.rowcount

    # Conversations

    async def create_conversation(
        self,
        owner: str = "local",
        title: str = "",
        model: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> Conversation:
        """Create and persist a new conversation."""
        conversation = Conversation(
            id=str(uuid.uuid4()),
            owner=owner,
            title=title,
            model=model,
            system_prompt=system_prompt,
            temperature=temperature,
        )
        await self._write(
            f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                conversation.id,
                conversation.owner,
                conversation.title,
                0,
                0,
                conversation.model,
                conversation.system_prompt,
                conversation.temperature,
                conversation.created_at,
                conversation.last_activity_at,
            ),
        )
        log.info("Created conversation", conversation_id=conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _conversation_from_row(row) if row else None

    async def patch_conversation(self, conversation_id: str, **fields: Any) -> bool:
        """Update selected conversation fields."""
        unknown = set(fields) - _CONVERSATION_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(
            int(value) if name in ("is_archived", "is_paused") else value
            for name, value in fields.items()
        )
        count = await self._write(
            f"UPDATE conversations SET {assignments} WHERE id = ?",
            values + (conversation_id,),
        )
        return count == 1

    async def set_paused(self, conversation_id: str, paused: bool) -> bool:
        return await self.patch_conversation(conversation_id, is_paused=paused)

    async def touch_conversation(self, conversation_id: str) -> bool:
        """Bump the conversation's last-activity timestamp."""
        return await self.patch_conversation(conversation_id, last_activity_at=_utcnow_iso())

    # Messages

    async def insert_message(
        self,
        conversation_id: str,
        role: str,
        content: str = "",
        is_streaming: bool = False,
        model: str | None = None,
    ) -> ChatMessage:
        """Insert a message.

        Raises:
            PersistenceWriteError if another assistant reply is still streaming
        """
        message = ChatMessage(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            is_streaming=is_streaming,
            model=model,
        )
        await self._write(
            "INSERT INTO messages (id, conversation_id, role, content, is_streaming, model, "
            "version, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
            (
                message.id,
                conversation_id,
                role,
                content,
                1 if is_streaming else 0,
                model,
                message.created_at,
                message.updated_at,
            ),
        )
        return message

    async def get_message(self, message_id: str) -> ChatMessage | None:
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _message_from_row(row) if row else None

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[ChatMessage]:
        """Messages of a conversation in creation order; ``limit`` keeps the newest."""
        db = await self._ensure_db()
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid"
        async with db.execute(sql, (conversation_id,)) as cursor:
            rows = await cursor.fetchall()
        messages = [_message_from_row(row) for row in rows]
        if limit is not None and limit >= 0:
            messages = messages[-limit:] if limit else []
        return messages

    async def update_streaming_content(
        self, message_id: str, content: str, expected_version: int
    ) -> int:
        """Compare-and-set a partial content write.

        Returns:
            The message's new version

        Raises:
            StaleMessageError if the message was finalized or rewritten by another run
        """
        count = await self._write(
            "UPDATE messages SET content = ?, version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND is_streaming = 1",
            (content, _utcnow_iso(), message_id, expected_version),
        )
        if count != 1:
            raise StaleMessageError(message_id, expected_version)
        return expected_version + 1

    async def finalize_message(
        self,
        message_id: str,
        content: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
        bump_activity: bool = True,
    ) -> bool:
        """Close a streaming message with its final content.

        Only a message that is still streaming is updated, so a second
        call is a no-op. Returns whether this call closed the message.
        """
        fields = dict(fields or {})
        unknown = set(fields) - _MESSAGE_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Unknown message fields: {sorted(unknown)}")

        assignments = ["content = ?", "is_streaming = 0", "version = version + 1", "updated_at = ?"]
        values: list[Any] = [content, _utcnow_iso()]
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            values.append(_encode(name, value))

        where = "id = ? AND is_streaming = 1"
        values.append(message_id)
        if expected_version is not None:
            where += " AND version = ?"
            values.append(expected_version)

        count = await self._write(
            f"UPDATE messages SET {', '.join(assignments)} WHERE {where}",
            tuple(values),
        )
        if count != 1:
            log.info("Finalize skipped, message already closed", message_id=message_id)
            return False

        if bump_activity:
            message = await self.get_message(message_id)
            if message is not None:
                try:
                    await self.touch_conversation(message.conversation_id)
                except PersistenceWriteError as e:
                    log.warning("Activity bump failed after finalize", message_id=message_id, error=str(e))
        return True

    async def reset_for_regeneration(self, message_id: str) -> ChatMessage:
        """Turn a finished assistant message back into an empty streaming placeholder."""
        count = await self._write(
            "UPDATE messages SET content = '', is_streaming = 1, search_results = NULL, "
            "has_web_search = 0, landing_page_content = NULL, document_content = NULL, "
            "has_document = 0, metadata = '{}', tokens = NULL, version = version + 1, "
            "updated_at = ? WHERE id = ? AND role = 'assistant' AND is_streaming = 0",
            (_utcnow_iso(), message_id),
        )
        if count != 1:
            raise PersistenceWriteError(f"Message {message_id} cannot be regenerated")
        message = await self.get_message(message_id)
        if message is None:
            raise PersistenceWriteError(f"Message {message_id} disappeared during reset")
        return message

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
