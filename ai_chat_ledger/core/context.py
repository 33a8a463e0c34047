"""
Conversation context assembly.

Builds the bounded message history sent to the completion model and
synthesizes titles for new conversations.
"""

import logging
from typing import Dict, List, Optional

from ai_chat_ledger.storage.repository import ConversationRepository

logger = logging.getLogger(__name__)

# Most recent stored messages sent upstream with each request
CONTEXT_WINDOW = 20

FALLBACK_TITLE = "New Conversation"

TITLE_INSTRUCTION = (
    "Generate a short, descriptive title (max 50 characters) for this conversation. "
    "Return only the title, no quotes or extra text."
)
TITLE_MAX_TOKENS = 50
TITLE_TEMPERATURE = 0.3
TITLE_SOURCE_CHARS = 500


class ConversationContextBuilder:
    """Assembles upstream context windows and conversation titles."""

    def __init__(
        self,
        conversations: ConversationRepository,
        client,
        window: int = CONTEXT_WINDOW
    ):
        """Initialize the builder.

        Args:
            conversations: Message storage
            client: Completion client used for title generation
            window: Maximum number of stored messages included in a context
        """
        if window <= 0:
            raise ValueError("window must be > 0")
        self.conversations = conversations
        self.client = client
        self.window = window

    def build_context(
        self,
        conversation_id: str,
        new_user_message: str,
        system_prompt: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Assemble the ordered message list for the completion call.

        Stored messages are kept oldest first and cut to the most recent
        ``window`` entries. An optional system prompt is prepended and the
        new user message appended.

        Args:
            conversation_id: Conversation whose history is loaded
            new_user_message: Message being sent now
            system_prompt: Optional system instruction for this request

        Returns:
            List of {role, content} dictionaries
        """
        history = self.conversations.fetch_messages(conversation_id, last=self.window)

        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.extend(
            {"role": record.role.value, "content": record.content}
            for record in history
        )
        messages.append({"role": "user", "content": new_user_message})
        return messages

    def title_for(self, first_message_content: str) -> str:
        """Generate a short title for a conversation from its first message.

        Never raises: any failure, or an empty completion, yields the
        fallback title.
        """
        messages = [
            {"role": "system", "content": TITLE_INSTRUCTION},
            {
                "role": "user",
                "content": (
                    "Generate a title for this conversation:\n\n"
                    f"{first_message_content[:TITLE_SOURCE_CHARS]}..."
                ),
            },
        ]
        try:
            result = self.client.chat_completion(
                messages,
                max_tokens=TITLE_MAX_TOKENS,
                temperature=TITLE_TEMPERATURE,
            )
            title = (result.content or "").strip()
        except Exception:
            logger.warning("Title generation failed, using fallback", exc_info=True)
            return FALLBACK_TITLE

        return title or FALLBACK_TITLE
