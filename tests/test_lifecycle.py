"""Tests for ConversationLifecycle: close, escalate, titles."""
import pytest

from context.state_machine import InvalidTransitionError
from context.status import StatusTracker
from core.lifecycle import (
    DEFAULT_TITLE, ESCALATION_FALLBACK, GOODBYE_MESSAGE, ConversationLifecycle,
    clean_title, is_placeholder_title,
)
from core.llm import CompletionError
from models.schemas import (
    ClosureMetadata, ConversationStatus, EscalationMetadata, MessageType, OrchestrationState,
)

from conftest import ESCALATION, ORG, TITLE, FakeCompletionService


def _lifecycle(store, ai, clock) -> ConversationLifecycle:
    return ConversationLifecycle(store, StatusTracker(store, clock=clock), ai, clock=clock)


async def _say(store, conv_id, *texts):
    for text in texts:
        await store.add_message(conv_id, ORG, content=text, type=MessageType.CUSTOMER)


class TestClose:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["user_indicated_completion", "ai_detected_completion_intent",
                                        "problem_solved", "customer_satisfied"])
    async def test_resolving_reasons(self, store, conversation, clock, reason):
        await _lifecycle(store, FakeCompletionService(), clock).close(conversation.id, ORG, reason)

        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.status == ConversationStatus.RESOLVED
        assert conv.resolution_metadata.resolved is True
        assert conv.resolution_metadata.confidence == pytest.approx(0.9)
        assert conv.resolution_metadata.reason == reason
        assert conv.ended_at == clock.now
        assert conv.orchestration_status.state == OrchestrationState.WAITING_FOR_USER

    @pytest.mark.asyncio
    async def test_other_reasons_close(self, store, conversation, clock):
        await _lifecycle(store, FakeCompletionService(), clock).close(
            conversation.id, ORG, "customer_unsatisfied")
        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.status == ConversationStatus.CLOSED
        assert conv.resolution_metadata.resolved is False
        assert conv.resolution_metadata.confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_explicit_confidence(self, store, conversation, clock):
        await _lifecycle(store, FakeCompletionService(), clock).close(
            conversation.id, ORG, "inactivity_timeout", confidence=1.0)
        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.resolution_metadata.confidence == 1.0

    @pytest.mark.asyncio
    async def test_close_forces_title(self, store, conversation, clock):
        await store.update_conversation(conversation.id, ORG, {"title": "Old Topic"})
        await _say(store, conversation.id, "my order never arrived")
        ai = FakeCompletionService({TITLE: '"Missing Order Delivery."'})

        await _lifecycle(store, ai, clock).close(conversation.id, ORG, "problem_solved")
        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.title == "Missing Order Delivery"

    @pytest.mark.asyncio
    async def test_cannot_resolve_a_closed_conversation(self, store, conversation, clock):
        await store.update_conversation(conversation.id, ORG, {"status": ConversationStatus.CLOSED})
        with pytest.raises(InvalidTransitionError):
            await _lifecycle(store, FakeCompletionService(), clock).close(
                conversation.id, ORG, "customer_satisfied")

    @pytest.mark.asyncio
    async def test_goodbye_message(self, store, conversation, clock):
        await _lifecycle(store, FakeCompletionService(), clock).say_goodbye(
            conversation.id, ORG, "customer_satisfied")
        [msg] = await store.get_last_messages(conversation.id, ORG, 5)
        assert msg.content == GOODBYE_MESSAGE
        assert msg.type == MessageType.BOT_AGENT
        assert isinstance(msg.metadata, ClosureMetadata)


class TestEscalate:

    @pytest.mark.asyncio
    async def test_escalation_acknowledged(self, store, conversation, clock):
        ai = FakeCompletionService({ESCALATION: "A teammate will follow up shortly."})
        await _lifecycle(store, ai, clock).escalate(
            conversation.id, ORG, "get me a human", "User: get me a human")

        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.status == ConversationStatus.PENDING_HUMAN
        assert conv.resolution_metadata.model_dump() == {
            "resolved": False, "confidence": 0.8, "reason": "user_requested_escalation",
        }
        [msg] = await store.get_last_messages(conversation.id, ORG, 5)
        assert msg.content == "A teammate will follow up shortly."
        assert isinstance(msg.metadata, EscalationMetadata)

    @pytest.mark.asyncio
    async def test_escalation_fallback_text(self, store, conversation, clock):
        ai = FakeCompletionService({ESCALATION: CompletionError("down")})
        await _lifecycle(store, ai, clock).escalate(conversation.id, ORG, "human please")
        [msg] = await store.get_last_messages(conversation.id, ORG, 5)
        assert msg.content == ESCALATION_FALLBACK


class TestTitles:

    @pytest.mark.parametrize("title", ["", "New Conversation", "Playground Test 3", "Untitled chat",
                                       "Conversation 12", "Chat 10:42:01 AM", "2024-06-01 chat"])
    def test_placeholders(self, title):
        assert is_placeholder_title(title)

    def test_real_title(self):
        assert not is_placeholder_title("Password Reset")

    def test_clean_title(self):
        assert clean_title('"Billing Issue With Annual Plan Renewal Today"') == \
            "Billing Issue With Annual Plan"
        assert clean_title("'Order Status'.") == "Order Status"
        assert clean_title("...") == DEFAULT_TITLE

    @pytest.mark.asyncio
    async def test_needs_two_customer_messages_while_open(self, store, conversation, clock):
        ai = FakeCompletionService({TITLE: "Order Status"})
        lifecycle = _lifecycle(store, ai, clock)

        await _say(store, conversation.id, "where is my order")
        assert await lifecycle.generate_title(conversation.id, ORG) is None
        assert ai.calls == []

        await _say(store, conversation.id, "it's order 1234")
        assert await lifecycle.generate_title(conversation.id, ORG) == "Order Status"

    @pytest.mark.asyncio
    async def test_meaningful_title_kept_unless_forced(self, store, conversation, clock):
        await store.update_conversation(conversation.id, ORG, {"title": "Refund Request"})
        await _say(store, conversation.id, "refund", "please")
        ai = FakeCompletionService({TITLE: "Something Else"})
        lifecycle = _lifecycle(store, ai, clock)

        assert await lifecycle.generate_title(conversation.id, ORG) is None
        assert await lifecycle.generate_title(conversation.id, ORG, force=True) == "Something Else"

    @pytest.mark.asyncio
    async def test_ai_failure_uses_default(self, store, conversation, clock):
        await _say(store, conversation.id, "hello", "help me")
        ai = FakeCompletionService({TITLE: CompletionError("down")})
        assert await _lifecycle(store, ai, clock).generate_title(conversation.id, ORG) == DEFAULT_TITLE

    @pytest.mark.asyncio
    async def test_never_raises(self, store, conversation, clock):
        await _say(store, conversation.id, "hello", "help me")
        ai = FakeCompletionService({TITLE: RuntimeError("unexpected")})
        assert await _lifecycle(store, ai, clock).generate_title(conversation.id, ORG) is None
