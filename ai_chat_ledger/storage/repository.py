"""
Repository pattern for data access.

Handles database operations for the usage ledger and chat history.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from ai_chat_ledger.config.loader import DEFAULT_DB_PATH
from .db import get_connection
from .models import ConversationRecord, MessageRecord, MessageRole, UsageEvent


def new_id(prefix: str) -> str:
    """Generate a unique, prefixed record identifier."""
    return f"{prefix}_{uuid.uuid4().hex}"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage, conversation and message tables if they don't exist.

    ai_usage and ai_messages are append-only: no UPDATE or DELETE is ever
    issued against ai_usage, and messages are only removed together with
    their conversation.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS ai_usage (
                id TEXT PRIMARY KEY NOT NULL,
                principal_id TEXT NOT NULL,
                model_id TEXT NOT NULL,
                tokens INTEGER NOT NULL CHECK (tokens >= 0),
                request_type TEXT NOT NULL,
                occurred_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_ai_usage_principal_time
                ON ai_usage (principal_id, occurred_at);

            CREATE TABLE IF NOT EXISTS ai_conversations (
                id TEXT PRIMARY KEY NOT NULL,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                model_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ai_messages (
                id TEXT PRIMARY KEY NOT NULL,
                conversation_id TEXT NOT NULL
                    REFERENCES ai_conversations (id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                tokens_used INTEGER NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_ai_messages_conversation_time
                ON ai_messages (conversation_id, created_at);
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> str:
    """Append a single usage event to the ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file

    Returns:
        The stored event's identifier
    """
    event_id = event.event_id or new_id("usage")
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO ai_usage
            (id, principal_id, model_id, tokens, request_type, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            event_id,
            event.principal_id,
            event.model_id,
            event.tokens,
            event.request_type,
            event.occurred_at.isoformat(),
        ))
        conn.commit()
    finally:
        conn.close()
    return event_id


def _row_to_usage_event(row) -> UsageEvent:
    return UsageEvent(
        event_id=row[0],
        principal_id=row[1],
        model_id=row[2],
        tokens=row[3],
        request_type=row[4],
        occurred_at=datetime.fromisoformat(row[5]),
    )


def _row_to_conversation(row) -> ConversationRecord:
    return ConversationRecord(
        id=row[0],
        owner_id=row[1],
        title=row[2],
        model_id=row[3],
        created_at=datetime.fromisoformat(row[4]),
        updated_at=datetime.fromisoformat(row[5]),
    )


def _row_to_message(row) -> MessageRecord:
    return MessageRecord(
        id=row[0],
        conversation_id=row[1],
        role=MessageRole(row[2]),
        content=row[3],
        tokens_used=row[4],
        created_at=datetime.fromisoformat(row[5]),
    )


class UsageRepository:
    """Repository for the append-only token usage ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert(self, event: UsageEvent) -> str:
        """Append a usage event and return its identifier."""
        return insert_usage_event(event, self.db_path)

    def sum_tokens_since(self, principal_id: str, since: datetime) -> int:
        """Sum tokens recorded for a principal at or after ``since``.

        Args:
            principal_id: Principal whose usage is aggregated
            since: Inclusive lower bound on occurred_at

        Returns:
            Total tokens, 0 when no events match
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT SUM(tokens) FROM ai_usage
                WHERE principal_id = ? AND occurred_at >= ?
            """, (principal_id, since.isoformat()))
            row = cursor.fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def get_recent_events(
        self,
        principal_id: str,
        limit: int = 10
    ) -> List[UsageEvent]:
        """Get a principal's most recent usage events (newest first)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, principal_id, model_id, tokens, request_type, occurred_at
                FROM ai_usage
                WHERE principal_id = ?
                ORDER BY occurred_at DESC, rowid DESC
                LIMIT ?
            """, (principal_id, limit))
            return [_row_to_usage_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()


class ConversationRepository:
    """Repository for conversations and their messages."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_conversation(
        self,
        owner_id: str,
        title: str,
        model_id: str,
        created_at: Optional[datetime] = None
    ) -> ConversationRecord:
        """Insert a new conversation and return it."""
        now = created_at or datetime.now()
        record = ConversationRecord(
            id=new_id("conv"),
            owner_id=owner_id,
            title=title,
            model_id=model_id,
            created_at=now,
            updated_at=now,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_conversations
                (id, owner_id, title, model_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.owner_id,
                record.title,
                record.model_id,
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return record

    def get_conversation(
        self,
        conversation_id: str,
        owner_id: Optional[str] = None
    ) -> Optional[ConversationRecord]:
        """Fetch a conversation, optionally scoped to its owner."""
        query = """
            SELECT id, owner_id, title, model_id, created_at, updated_at
            FROM ai_conversations WHERE id = ?
        """
        params = [conversation_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(query, params).fetchone()
            return _row_to_conversation(row) if row else None
        finally:
            conn.close()

    def list_conversations(self, owner_id: str, limit: int = 20) -> List[ConversationRecord]:
        """List an owner's conversations, most recently updated first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, owner_id, title, model_id, created_at, updated_at
                FROM ai_conversations
                WHERE owner_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
            """, (owner_id, limit))
            return [_row_to_conversation(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_conversation(
        self,
        conversation_id: str,
        updated_at: datetime,
        title: Optional[str] = None
    ) -> None:
        """Bump a conversation's updated_at, setting its title when given."""
        conn = get_connection(self.db_path)
        try:
            if title is None:
                conn.execute(
                    "UPDATE ai_conversations SET updated_at = ? WHERE id = ?",
                    (updated_at.isoformat(), conversation_id)
                )
            else:
                conn.execute(
                    "UPDATE ai_conversations SET title = ?, updated_at = ? WHERE id = ?",
                    (title, updated_at.isoformat(), conversation_id)
                )
            conn.commit()
        finally:
            conn.close()

    def delete_conversation(self, conversation_id: str, owner_id: str) -> bool:
        """Delete an owned conversation together with its messages.

        Returns:
            True if a conversation was deleted
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            cursor = conn.execute(
                "DELETE FROM ai_conversations WHERE id = ? AND owner_id = ?",
                (conversation_id, owner_id)
            )
            deleted = cursor.rowcount > 0
            if deleted:
                conn.execute(
                    "DELETE FROM ai_messages WHERE conversation_id = ?",
                    (conversation_id,)
                )
            conn.commit()
            return deleted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def insert_messages(self, messages: List[MessageRecord]) -> None:
        """Insert messages atomically, in the order given."""
        if not messages:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for message in messages:
                conn.execute("""
                    INSERT INTO ai_messages
                    (id, conversation_id, role, content, tokens_used, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    message.id,
                    message.conversation_id,
                    message.role.value,
                    message.content,
                    message.tokens_used,
                    message.created_at.isoformat(),
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def insert_message(self, message: MessageRecord) -> None:
        """Insert a single message."""
        self.insert_messages([message])

    def fetch_messages(
        self,
        conversation_id: str,
        last: Optional[int] = None
    ) -> List[MessageRecord]:
        """Fetch a conversation's messages in chronological order.

        Args:
            conversation_id: Conversation to read
            last: When given, only the most recent ``last`` messages are returned

        Returns:
            Messages ordered oldest first
        """
        conn = get_connection(self.db_path)
        try:
            if last is None:
                cursor = conn.execute("""
                    SELECT id, conversation_id, role, content, tokens_used, created_at
                    FROM ai_messages
                    WHERE conversation_id = ?
                    ORDER BY created_at ASC, rowid ASC
                """, (conversation_id,))
                return [_row_to_message(row) for row in cursor.fetchall()]

            cursor = conn.execute("""
                SELECT id, conversation_id, role, content, tokens_used, created_at
                FROM ai_messages
                WHERE conversation_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
            """, (conversation_id, last))
            newest_first = [_row_to_message(row) for row in cursor.fetchall()]
            return list(reversed(newest_first))
        finally:
            conn.close()

    def count_non_system_messages(self, conversation_id: str) -> int:
        """Count user and assistant messages in a conversation."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT COUNT(*) FROM ai_messages
                WHERE conversation_id = ? AND role != 'system'
            """, (conversation_id,)).fetchone()
            return int(row[0] or 0)
        finally:
            conn.close()

    def get_owner_stats(self, owner_id: str) -> Dict[str, int]:
        """Count an owner's conversations and messages."""
        conn = get_connection(self.db_path)
        try:
            conversations = conn.execute(
                "SELECT COUNT(*) FROM ai_conversations WHERE owner_id = ?",
                (owner_id,)
            ).fetchone()
            messages = conn.execute("""
                SELECT COUNT(*) FROM ai_messages m
                INNER JOIN ai_conversations c ON m.conversation_id = c.id
                WHERE c.owner_id = ?
            """, (owner_id,)).fetchone()
            return {
                "total_conversations": int(conversations[0] or 0),
                "total_messages": int(messages[0] or 0),
            }
        finally:
            conn.close()
