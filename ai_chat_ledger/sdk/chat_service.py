"""
Quota-aware chat service.

Runs one chat send end to end: quota gate, context assembly, completion
call, message persistence, usage recording and conversation titling.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

from ..config.loader import (
    API_KEY_ENV_VAR,
    DEFAULT_SYSTEM_PROMPT,
    PlanTier,
    Settings,
    get_plan_limits,
)
from ..core.context import FALLBACK_TITLE, ConversationContextBuilder
from ..core.errors import ConversationNotFound, PrincipalMissing, QuotaExceeded
from ..core.ledger import QuotaStatus, UsageLedger
from ..core.outcome import Outcome
from ..storage.models import ConversationRecord, MessageRecord, MessageRole, UsageEvent
from ..storage.repository import ConversationRepository, UsageRepository, new_id
from .completion_client import CompletionClient

logger = logging.getLogger(__name__)

EMPTY_RESPONSE_TEXT = "No response generated"
DAILY_LIMIT_MESSAGE = "Daily token limit exceeded. Please upgrade your plan."
MONTHLY_LIMIT_MESSAGE = "Monthly token limit exceeded. Please upgrade your plan."


@dataclass(frozen=True)
class ChatReply:
    """Result of a successful chat send."""
    conversation_id: str
    content: str
    tokens_used: int
    model: str
    title: str
    quota: QuotaStatus
    usage_recorded: Outcome


@dataclass(frozen=True)
class UsageSummary:
    """Usage overview for a principal."""
    daily_tokens: int = 0
    monthly_tokens: int = 0
    total_conversations: int = 0
    total_messages: int = 0


def _require_principal(principal_id: Optional[str]) -> str:
    if not principal_id or not principal_id.strip():
        raise PrincipalMissing()
    return principal_id


class ChatService:
    """Orchestrates conversations on behalf of authenticated principals.

    All collaborators are injected; build one per process with
    ``from_settings`` or wire the pieces explicitly in tests.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        builder: ConversationContextBuilder,
        conversations: ConversationRepository,
        client: Optional[CompletionClient],
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.ledger = ledger
        self.builder = builder
        self.conversations = conversations
        self.client = client
        self.settings = settings
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, with_client: bool = True) -> "ChatService":
        """Wire a service against the configured database and completion API.

        Args:
            settings: Loaded settings
            with_client: Build the completion client. Without one the service
                can still manage conversations but cannot send messages.

        Raises:
            ValueError: If a client is requested and the API key is missing
        """
        client = CompletionClient(settings.completion, settings.api_key) if with_client else None
        conversations = ConversationRepository(settings.db_path)
        return cls(
            ledger=UsageLedger(UsageRepository(settings.db_path)),
            builder=ConversationContextBuilder(conversations, client),
            conversations=conversations,
            client=client,
            settings=settings,
        )

    def create_conversation(
        self,
        principal_id: Optional[str],
        title: Optional[str] = None,
        system_prompt: Optional[str] = None
    ) -> ConversationRecord:
        """Start a new conversation, optionally seeded with a system message.

        Raises:
            PrincipalMissing: If there is no caller
        """
        principal_id = _require_principal(principal_id)
        conversation = self.conversations.create_conversation(
            owner_id=principal_id,
            title=title or FALLBACK_TITLE,
            model_id=self.settings.completion.model,
            created_at=self.clock(),
        )
        if system_prompt:
            self.conversations.insert_message(MessageRecord(
                id=new_id("msg"),
                conversation_id=conversation.id,
                role=MessageRole.SYSTEM,
                content=system_prompt,
                tokens_used=0,
                created_at=conversation.created_at,
            ))
        logger.info("Conversation %s created for %s", conversation.id, principal_id)
        return conversation

    def send_message(
        self,
        principal_id: Optional[str],
        conversation_id: str,
        message: str,
        plan: Union[PlanTier, str],
        system_prompt: Optional[str] = None
    ) -> ChatReply:
        """Send a user message and persist the model's reply.

        Args:
            principal_id: Authenticated caller
            conversation_id: Conversation owned by the caller
            message: User message text
            plan: Caller's plan tier
            system_prompt: System instruction (defaults to the general preset)

        Returns:
            ChatReply with the assistant's answer and accounting details

        Raises:
            PrincipalMissing: If there is no caller
            ValueError: If the message is empty, the plan is unknown or the
                service has no completion client
            ConversationNotFound: If the caller does not own the conversation
            QuotaExceeded: If the pre-flight quota check fails
            UpstreamFailure: If the completion call fails; nothing is persisted
        """
        if self.client is None:
            raise ValueError(f"{API_KEY_ENV_VAR} is required")
        principal_id = _require_principal(principal_id)
        if not message or not message.strip():
            raise ValueError("Message cannot be empty")
        limits = get_plan_limits(plan)

        conversation = self.conversations.get_conversation(conversation_id, owner_id=principal_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)

        quota = self.ledger.check_quota(principal_id, plan)
        if not quota.allowed:
            message_text = DAILY_LIMIT_MESSAGE if quota.daily_exceeded else MONTHLY_LIMIT_MESSAGE
            raise QuotaExceeded(message_text, quota)

        first_exchange = self.conversations.count_non_system_messages(conversation_id) == 0
        context = self.builder.build_context(
            conversation_id,
            message,
            system_prompt or DEFAULT_SYSTEM_PROMPT
        )
        sent_at = self.clock()

        result = self.client.chat_completion(
            context,
            model=conversation.model_id,
            max_tokens=limits.max_tokens_per_request,
        )
        content = result.content or EMPTY_RESPONSE_TEXT
        replied_at = self.clock()

        # User messages don't consume tokens
        self.conversations.insert_messages([
            MessageRecord(
                id=new_id("msg"),
                conversation_id=conversation_id,
                role=MessageRole.USER,
                content=message,
                tokens_used=0,
                created_at=sent_at,
            ),
            MessageRecord(
                id=new_id("msg"),
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT,
                content=content,
                tokens_used=result.tokens_used,
                created_at=replied_at,
            ),
        ])

        usage_recorded = self.ledger.record_usage(
            principal_id, result.tokens_used, result.model,
            request_type="chat", occurred_at=replied_at
        )

        title = conversation.title
        if first_exchange:
            title = self.builder.title_for(message)
            self.conversations.update_conversation(conversation_id, replied_at, title=title)
        else:
            self.conversations.update_conversation(conversation_id, replied_at)

        logger.info(
            "Chat reply for %s in %s: %d tokens on %s",
            principal_id, conversation_id, result.tokens_used, result.model
        )

        return ChatReply(
            conversation_id=conversation_id,
            content=content,
            tokens_used=result.tokens_used,
            model=result.model,
            title=title,
            quota=quota,
            usage_recorded=usage_recorded,
        )

    def delete_conversation(self, principal_id: Optional[str], conversation_id: str) -> None:
        """Delete a conversation and its messages.

        Raises:
            PrincipalMissing: If there is no caller
            ConversationNotFound: If the caller does not own the conversation
        """
        principal_id = _require_principal(principal_id)
        if not self.conversations.delete_conversation(conversation_id, principal_id):
            raise ConversationNotFound(conversation_id)
        logger.info("Conversation %s deleted for %s", conversation_id, principal_id)

    def list_conversations(
        self,
        principal_id: Optional[str],
        limit: int = 20
    ) -> List[ConversationRecord]:
        """List the caller's conversations, most recently updated first."""
        principal_id = _require_principal(principal_id)
        return self.conversations.list_conversations(principal_id, limit=limit)

    def get_conversation(
        self,
        principal_id: Optional[str],
        conversation_id: str
    ) -> Tuple[ConversationRecord, List[MessageRecord]]:
        """Load an owned conversation with its full message history."""
        principal_id = _require_principal(principal_id)
        conversation = self.conversations.get_conversation(conversation_id, owner_id=principal_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation, self.conversations.fetch_messages(conversation_id)

    def usage_summary(self, principal_id: Optional[str]) -> UsageSummary:
        """Token and activity totals for the caller; read failures yield zeros."""
        principal_id = _require_principal(principal_id)
        daily = self.ledger.daily_usage(principal_id)
        monthly = self.ledger.monthly_usage(principal_id)
        try:
            stats = self.conversations.get_owner_stats(principal_id)
        except Exception:
            logger.exception("Error getting conversation stats for %s", principal_id)
            stats = {"total_conversations": 0, "total_messages": 0}
        return UsageSummary(
            daily_tokens=daily,
            monthly_tokens=monthly,
            total_conversations=stats["total_conversations"],
            total_messages=stats["total_messages"],
        )

    def recent_activity(self, principal_id: Optional[str], limit: int = 10) -> List[UsageEvent]:
        """The caller's newest usage events; read failures yield an empty list."""
        principal_id = _require_principal(principal_id)
        try:
            return self.ledger.repository.get_recent_events(principal_id, limit=limit)
        except Exception:
            logger.exception("Error getting recent activity for %s", principal_id)
            return []
