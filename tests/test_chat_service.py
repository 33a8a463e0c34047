"""
Integration tests for the chat service.

Runs chat sends against a temporary SQLite database with a mocked
completion client.
"""

import os
import tempfile
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from ai_chat_ledger.config.loader import DEFAULT_SYSTEM_PROMPT, Settings
from ai_chat_ledger.core.context import FALLBACK_TITLE, ConversationContextBuilder
from ai_chat_ledger.core.errors import (
    ConversationNotFound,
    PrincipalMissing,
    QuotaExceeded,
    UpstreamFailure,
)
from ai_chat_ledger.core.ledger import UsageLedger
from ai_chat_ledger.core.token_counter import TokenUsage
from ai_chat_ledger.sdk.chat_service import ChatService
from ai_chat_ledger.sdk.completion_client import CompletionResult
from ai_chat_ledger.storage.models import MessageRole, UsageEvent
from ai_chat_ledger.storage.repository import (
    ConversationRepository,
    UsageRepository,
    initialize_schema,
)


class FakeClock:
    """Clock that advances one second per call, starting mid-morning today."""

    def __init__(self):
        self.now = datetime.now().replace(hour=10, minute=0, second=0, microsecond=0)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


def _result(content, tokens, model="deepseek/deepseek-r1-0528"):
    return CompletionResult(content=content, usage=TokenUsage(reported_total=tokens), model=model)


def _completion(messages, **kwargs):
    """Route title requests and chat requests to different canned answers."""
    if kwargs.get("max_tokens") == 50:
        return _result("Greeting Chat", 9)
    return _result(f"Reply to: {messages[-1]['content']}", 120)


class TestChatService:
    """Test chat sends end to end."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

        self.clock = FakeClock()
        self.client = Mock()
        self.client.chat_completion.side_effect = _completion
        self.conversations = ConversationRepository(self.db_path)
        self.usage = UsageRepository(self.db_path)
        self.ledger = UsageLedger(self.usage, clock=self.clock)
        self.service = ChatService(
            ledger=self.ledger,
            builder=ConversationContextBuilder(self.conversations, self.client),
            conversations=self.conversations,
            client=self.client,
            settings=Settings(db_path=self.db_path),
            clock=self.clock,
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _chat_calls(self):
        return [
            call for call in self.client.chat_completion.call_args_list
            if call.kwargs.get("max_tokens") != 50
        ]

    def test_create_conversation_defaults(self):
        conversation = self.service.create_conversation("alice")

        assert conversation.owner_id == "alice"
        assert conversation.title == FALLBACK_TITLE
        assert conversation.model_id == "deepseek/deepseek-r1-0528"
        assert self.conversations.fetch_messages(conversation.id) == []

    def test_create_conversation_with_system_prompt(self):
        conversation = self.service.create_conversation("alice", title="Code help",
                                                        system_prompt="You review code.")

        messages = self.conversations.fetch_messages(conversation.id)
        assert conversation.title == "Code help"
        assert len(messages) == 1
        assert messages[0].role == MessageRole.SYSTEM
        assert messages[0].tokens_used == 0

    def test_create_conversation_requires_principal(self):
        with pytest.raises(PrincipalMissing):
            self.service.create_conversation(None)

    def test_first_message_persists_exchange_and_records_usage(self):
        conversation = self.service.create_conversation("alice")

        reply = self.service.send_message("alice", conversation.id, "Hello", "free")

        assert reply.content == "Reply to: Hello"
        assert reply.tokens_used == 120
        assert reply.usage_recorded.ok
        messages = self.conversations.fetch_messages(conversation.id)
        assert [(m.role, m.content, m.tokens_used) for m in messages] == [
            (MessageRole.USER, "Hello", 0),
            (MessageRole.ASSISTANT, "Reply to: Hello", 120),
        ]
        events = self.usage.get_recent_events("alice")
        assert len(events) == 1
        assert events[0].tokens == 120
        assert events[0].request_type == "chat"

    def test_upstream_request_shape(self):
        conversation = self.service.create_conversation("alice")

        self.service.send_message("alice", conversation.id, "Hello", "pro")

        args, kwargs = self._chat_calls()[0]
        assert args[0] == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "Hello"},
        ]
        assert kwargs["model"] == "deepseek/deepseek-r1-0528"
        assert kwargs["max_tokens"] == 4000

    def test_custom_system_prompt(self):
        conversation = self.service.create_conversation("alice")

        self.service.send_message("alice", conversation.id, "Hello", "free",
                                  system_prompt="Answer in French.")

        args, _ = self._chat_calls()[0]
        assert args[0][0] == {"role": "system", "content": "Answer in French."}

    def test_title_set_once_then_only_updated_at_changes(self):
        conversation = self.service.create_conversation("alice")

        first = self.service.send_message("alice", conversation.id, "Hi, who are you?", "free")
        after_first = self.conversations.get_conversation(conversation.id)

        assert first.title == "Greeting Chat"
        assert after_first.title == "Greeting Chat"
        assert after_first.updated_at > conversation.updated_at

        self.client.chat_completion.side_effect = lambda messages, **kwargs: (
            _result("A different title", 9) if kwargs.get("max_tokens") == 50
            else _result("Second reply", 80)
        )
        second = self.service.send_message("alice", conversation.id, "Tell me more", "free")
        after_second = self.conversations.get_conversation(conversation.id)

        assert second.title == "Greeting Chat"
        assert after_second.title == "Greeting Chat"
        assert after_second.updated_at > after_first.updated_at

    def test_system_message_does_not_block_titling(self):
        conversation = self.service.create_conversation("alice", system_prompt="Be terse.")

        reply = self.service.send_message("alice", conversation.id, "Hello", "free")

        assert reply.title == "Greeting Chat"

    def test_title_failure_falls_back(self):
        def completion(messages, **kwargs):
            if kwargs.get("max_tokens") == 50:
                raise UpstreamFailure()
            return _result("Reply", 10)

        self.client.chat_completion.side_effect = completion
        conversation = self.service.create_conversation("alice")

        reply = self.service.send_message("alice", conversation.id, "Hello", "free")

        assert reply.content == "Reply"
        assert reply.title == FALLBACK_TITLE

    def test_history_sent_on_later_messages(self):
        conversation = self.service.create_conversation("alice")
        self.service.send_message("alice", conversation.id, "First", "free")

        self.service.send_message("alice", conversation.id, "Second", "free")

        args, _ = self._chat_calls()[-1]
        assert [m["content"] for m in args[0][1:]] == ["First", "Reply to: First", "Second"]

    def test_upstream_failure_persists_nothing(self):
        """HTTP 500 upstream: no assistant message and no usage event."""
        self.client.chat_completion.side_effect = UpstreamFailure()
        conversation = self.service.create_conversation("alice")

        with pytest.raises(UpstreamFailure, match="Failed to generate AI response"):
            self.service.send_message("alice", conversation.id, "Hello", "free")

        assert self.conversations.fetch_messages(conversation.id) == []
        assert self.usage.get_recent_events("alice") == []
        assert self.conversations.get_conversation(conversation.id).title == FALLBACK_TITLE

    def test_quota_exceeded_blocks_before_upstream(self):
        conversation = self.service.create_conversation("alice")
        self.usage.insert(UsageEvent("alice", 10_000, self.clock(), "m"))

        with pytest.raises(QuotaExceeded, match="Daily token limit exceeded") as exc_info:
            self.service.send_message("alice", conversation.id, "Hello", "free")

        assert not exc_info.value.status.allowed
        assert exc_info.value.status.remaining_daily == 0
        self.client.chat_completion.assert_not_called()
        assert self.conversations.fetch_messages(conversation.id) == []

    def test_monthly_quota_message(self):
        conversation = self.service.create_conversation("alice")
        earlier_this_month = self.clock().replace(day=1, hour=0, minute=0, second=1)
        if earlier_this_month.date() == self.clock.now.date():
            pytest.skip("first of the month: monthly and daily windows coincide")
        self.usage.insert(UsageEvent("alice", 100_000, earlier_this_month, "m"))

        with pytest.raises(QuotaExceeded, match="Monthly token limit exceeded"):
            self.service.send_message("alice", conversation.id, "Hello", "free")

    def test_near_limit_request_still_allowed(self):
        conversation = self.service.create_conversation("alice")
        self.usage.insert(UsageEvent("alice", 9_950, self.clock(), "m"))

        reply = self.service.send_message("alice", conversation.id, "Hello", "free")

        assert reply.quota.allowed
        assert self.ledger.daily_usage("alice") == 9_950 + 120

    def test_usage_recording_failure_does_not_block_reply(self):
        self.usage.insert = Mock(side_effect=RuntimeError("disk full"))
        conversation = self.service.create_conversation("alice")

        reply = self.service.send_message("alice", conversation.id, "Hello", "free")

        assert reply.content == "Reply to: Hello"
        assert not reply.usage_recorded.ok
        assert len(self.conversations.fetch_messages(conversation.id)) == 2

    def test_daily_usage_matches_assistant_tokens(self):
        first = self.service.create_conversation("alice")
        second = self.service.create_conversation("alice")
        for text in ["one", "two", "three"]:
            self.service.send_message("alice", first.id, text, "premium")
        self.service.send_message("alice", second.id, "four", "premium")

        assistant_tokens = sum(
            m.tokens_used
            for conversation in (first, second)
            for m in self.conversations.fetch_messages(conversation.id)
            if m.role == MessageRole.ASSISTANT
        )
        assert assistant_tokens == 4 * 120
        assert self.ledger.daily_usage("alice") == assistant_tokens

    def test_usage_booked_on_the_reply_day_across_midnight(self):
        self.clock.now = datetime(2024, 5, 17, 23, 59, 55)
        conversation = self.service.create_conversation("alice")

        self.service.send_message("alice", conversation.id, "Hello", "free")

        reply = self.conversations.fetch_messages(conversation.id)[-1]
        event = self.usage.get_recent_events("alice")[0]
        assert reply.role == MessageRole.ASSISTANT
        assert event.occurred_at == reply.created_at
        assert self.ledger.daily_usage("alice", as_of=reply.created_at) == reply.tokens_used
        assert self.ledger.daily_usage("alice", as_of=datetime(2024, 5, 18, 0, 0, 1)) == 0

    def test_send_without_client_requires_api_key(self):
        self.service.client = None
        conversation = self.service.create_conversation("alice")

        with pytest.raises(ValueError, match="OPENROUTER_API_KEY is required"):
            self.service.send_message("alice", conversation.id, "Hello", "free")
        assert self.conversations.fetch_messages(conversation.id) == []

    def test_keyless_service_manages_conversations(self):
        service = ChatService.from_settings(Settings(db_path=self.db_path), with_client=False)

        conversation = service.create_conversation("alice")
        service.delete_conversation("alice", conversation.id)

        assert service.client is None
        assert self.conversations.get_conversation(conversation.id) is None

    def test_missing_principal(self):
        conversation = self.service.create_conversation("alice")

        with pytest.raises(PrincipalMissing):
            self.service.send_message("", conversation.id, "Hello", "free")
        self.client.chat_completion.assert_not_called()

    def test_empty_message_rejected(self):
        conversation = self.service.create_conversation("alice")

        with pytest.raises(ValueError, match="Message cannot be empty"):
            self.service.send_message("alice", conversation.id, "   ", "free")

    def test_unknown_plan_rejected(self):
        conversation = self.service.create_conversation("alice")

        with pytest.raises(ValueError, match="Unknown plan tier"):
            self.service.send_message("alice", conversation.id, "Hello", "enterprise")

    def test_other_principals_conversation_not_found(self):
        conversation = self.service.create_conversation("alice")

        with pytest.raises(ConversationNotFound):
            self.service.send_message("mallory", conversation.id, "Hello", "free")

    def test_delete_conversation(self):
        conversation = self.service.create_conversation("alice")
        self.service.send_message("alice", conversation.id, "Hello", "free")

        with pytest.raises(ConversationNotFound):
            self.service.delete_conversation("mallory", conversation.id)

        self.service.delete_conversation("alice", conversation.id)

        assert self.service.list_conversations("alice") == []
        assert self.conversations.fetch_messages(conversation.id) == []
        assert self.ledger.daily_usage("alice") == 120

    def test_get_conversation_with_messages(self):
        conversation = self.service.create_conversation("alice")
        self.service.send_message("alice", conversation.id, "Hello", "free")

        loaded, messages = self.service.get_conversation("alice", conversation.id)

        assert loaded.title == "Greeting Chat"
        assert len(messages) == 2

    def test_usage_summary(self):
        conversation = self.service.create_conversation("alice")
        self.service.send_message("alice", conversation.id, "Hello", "free")
        self.service.create_conversation("alice")

        summary = self.service.usage_summary("alice")

        assert summary.daily_tokens == 120
        assert summary.monthly_tokens == 120
        assert summary.total_conversations == 2
        assert summary.total_messages == 2

    def test_usage_summary_degrades_to_zero(self):
        self.conversations.get_owner_stats = Mock(side_effect=RuntimeError("locked"))

        summary = self.service.usage_summary("alice")

        assert summary.total_conversations == 0
        assert summary.total_messages == 0

    def test_recent_activity(self):
        conversation = self.service.create_conversation("alice")
        self.service.send_message("alice", conversation.id, "Hello", "free")
        self.service.send_message("alice", conversation.id, "Again", "free")

        activity = self.service.recent_activity("alice", limit=1)

        assert len(activity) == 1
        assert activity[0].tokens == 120
