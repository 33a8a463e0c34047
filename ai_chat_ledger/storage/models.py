"""
Data models for storage layer.

Defines usage ledger entries, conversations and messages.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class MessageRole(Enum):
    """Author of a chat message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of tokens consumed by one completion call.
    
    Append-only events that form the per-principal usage ledger.
    Once written, these records must never be modified.
    """
    principal_id: str
    tokens: int
    occurred_at: datetime
    model_id: str
    request_type: str = "chat"
    event_id: Optional[str] = None

    def __post_init__(self):
        """Validate token count is non-negative."""
        if self.tokens < 0:
            raise ValueError("tokens cannot be negative")


@dataclass(frozen=True)
class ConversationRecord:
    """A chat conversation owned by a principal."""
    id: str
    owner_id: str
    title: str
    model_id: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageRecord:
    """A single message within a conversation. Append-only once created."""
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    tokens_used: int
    created_at: datetime

    def __post_init__(self):
        """Validate token count is non-negative."""
        if self.tokens_used < 0:
            raise ValueError("tokens_used cannot be negative")
