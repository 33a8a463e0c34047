"""
SDK for AI Chat Ledger.

Provides the completion client and the quota-aware chat service.
"""

from .chat_service import ChatReply, ChatService
from .completion_client import CompletionClient, CompletionResult

__all__ = ["ChatReply", "ChatService", "CompletionClient", "CompletionResult"]
