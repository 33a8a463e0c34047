"""
Error taxonomy for chat sends.

Only quota and upstream failures are meant to reach the end user; every
other failure degrades to a default value where it happens.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .ledger import QuotaStatus


class ChatLedgerError(Exception):
    """Base class for errors raised by the chat pipeline."""


class PrincipalMissing(ChatLedgerError):
    """Raised when an operation runs without an authenticated caller."""
    def __init__(self, message: str = "User not found"):
        super().__init__(message)


class QuotaExceeded(ChatLedgerError):
    """Raised when the pre-flight quota check rejects a request."""
    def __init__(self, message: str, status: "QuotaStatus"):
        super().__init__(message)
        self.status = status


class UpstreamFailure(ChatLedgerError):
    """Raised when the completion API call fails or returns non-2xx."""
    def __init__(self, message: str = "Failed to generate AI response"):
        super().__init__(message)


class ConversationNotFound(ChatLedgerError):
    """Raised when a conversation is missing or owned by another principal."""
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
