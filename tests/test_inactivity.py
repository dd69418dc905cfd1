"""
Tests for the InactivityMonitor.

Threshold is 1000 s, reminder window opens at 50 % (500 s).
"""
from datetime import timedelta

import pytest

from context.status import StatusTracker
from core.inactivity import (
    INACTIVITY_CLOSURE_MESSAGE, REMINDER_FALLBACK, InactivityMonitor,
)
from core.lifecycle import ConversationLifecycle
from core.llm import CompletionError
from models.schemas import (
    ClosureMetadata, Conversation, ConversationStatus, MessageType, ReminderMetadata,
)

from conftest import ORG, REMINDER, FakeCompletionService

THRESHOLD_MS = 1_000_000


def _monitor(store, ai, clock) -> InactivityMonitor:
    lifecycle = ConversationLifecycle(store, StatusTracker(store, clock=clock), ai, clock=clock)
    return InactivityMonitor(store, lifecycle, ai, threshold_ms=THRESHOLD_MS,
                             reminder_fraction=0.5, clock=clock)


async def _open_conversation(store, clock, last_reply="Your order ships Monday.") -> Conversation:
    conv = await store.create_conversation(
        Conversation(id="conv_idle", organization_id=ORG, created_at=clock.now))
    await store.add_message(conv.id, ORG, content="when does it ship?",
                            type=MessageType.CUSTOMER, created_at=clock.now)
    if last_reply is not None:
        await store.add_message(conv.id, ORG, content=last_reply,
                                type=MessageType.BOT_AGENT, created_at=clock.now)
    return conv


class TestInactivityMonitor:

    @pytest.mark.asyncio
    async def test_nothing_before_reminder_window(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=490)
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)

        assert stats == {"checked": 1, "reminded": 0, "closed": 0, "errors": 0}
        assert len(await store.get_last_messages(conv.id, ORG, 10)) == 2

    @pytest.mark.asyncio
    async def test_reminder_inside_window(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=510)
        ai = FakeCompletionService({REMINDER: "Still there? Happy to help further."})
        stats = await _monitor(store, ai, clock).check_inactive_conversations(ORG)

        assert stats["reminded"] == 1
        last = (await store.get_last_messages(conv.id, ORG, 10))[-1]
        assert last.content == "Still there? Happy to help further."
        assert isinstance(last.metadata, ReminderMetadata)
        assert last.is_reminder

    @pytest.mark.asyncio
    async def test_only_one_reminder(self, store, clock):
        conv = await _open_conversation(store, clock)
        monitor = _monitor(store, FakeCompletionService({REMINDER: "Still there?"}), clock)

        clock.advance(seconds=510)
        await monitor.check_inactive_conversations(ORG)
        clock.advance(seconds=510)
        stats = await monitor.check_inactive_conversations(ORG)

        assert stats["reminded"] == 0
        reminders = [m for m in await store.get_last_messages(conv.id, ORG, 10) if m.is_reminder]
        assert len(reminders) == 1

    @pytest.mark.asyncio
    async def test_no_reminder_after_anything_else_question(self, store, clock):
        await _open_conversation(store, clock, "Done! Is there anything else I can help you with?")
        clock.advance(seconds=600)
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)
        assert stats["reminded"] == 0

    @pytest.mark.asyncio
    async def test_no_reminder_when_customer_spoke_last(self, store, clock):
        await _open_conversation(store, clock, last_reply=None)
        clock.advance(seconds=600)
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)
        assert stats["reminded"] == 0

    @pytest.mark.asyncio
    async def test_reminder_fallback_text(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=700)
        ai = FakeCompletionService({REMINDER: CompletionError("down")})
        await _monitor(store, ai, clock).check_inactive_conversations(ORG)

        last = (await store.get_last_messages(conv.id, ORG, 10))[-1]
        assert last.content == REMINDER_FALLBACK

    @pytest.mark.asyncio
    async def test_closes_at_threshold(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=1000)
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)

        assert stats["closed"] == 1
        stored = await store.get_conversation(conv.id, ORG)
        assert stored.status == ConversationStatus.CLOSED
        assert stored.ended_at == clock.now
        assert stored.resolution_metadata.model_dump() == {
            "resolved": False, "confidence": 1.0, "reason": "inactivity_timeout",
        }

        last = (await store.get_last_messages(conv.id, ORG, 10))[-1]
        assert last.content == INACTIVITY_CLOSURE_MESSAGE
        assert isinstance(last.metadata, ClosureMetadata)
        assert last.metadata.inactivity_duration_ms == THRESHOLD_MS

    @pytest.mark.asyncio
    async def test_closing_generates_title(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=2000)
        ai = FakeCompletionService({"Generate a short title": "Shipping Date"})
        await _monitor(store, ai, clock).check_inactive_conversations(ORG)

        assert (await store.get_conversation(conv.id, ORG)).title == "Shipping Date"

    @pytest.mark.asyncio
    async def test_conversation_without_messages_uses_creation_time(self, store, clock):
        conv = await store.create_conversation(
            Conversation(id="empty", organization_id=ORG, created_at=clock.now))
        clock.advance(seconds=1001)
        await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)
        assert (await store.get_conversation(conv.id, ORG)).status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_only_open_conversations_are_checked(self, store, clock):
        conv = await _open_conversation(store, clock)
        await store.update_conversation(conv.id, ORG, {"status": ConversationStatus.PENDING_HUMAN})
        clock.advance(seconds=5000)
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)

        assert stats["checked"] == 0
        assert (await store.get_conversation(conv.id, ORG)).status == ConversationStatus.PENDING_HUMAN

    @pytest.mark.asyncio
    async def test_locked_conversation_is_skipped(self, store, clock):
        conv = await _open_conversation(store, clock)
        clock.advance(seconds=5000)
        await store.update_conversation(conv.id, ORG, {
            "processing_locked_until": clock.now + timedelta(seconds=30),
            "processing_locked_by": "w1",
        })
        stats = await _monitor(store, FakeCompletionService(), clock).check_inactive_conversations(ORG)

        assert stats["closed"] == 0
        assert (await store.get_conversation(conv.id, ORG)).status == ConversationStatus.OPEN
