"""
Tests for the ContextDeduplicator and StatusTracker.

Covers:
  - one briefing message per new ID set
  - idempotence for repeated agents / playbooks / documents / tools
  - content-hash keys for documents without an ID
  - clear_context() starting a new epoch
  - status updates carrying context tracking forward
"""
import pytest

from context.dedup import ContextDeduplicator
from context.status import StatusTracker
from core.retrieval import content_hash
from models.schemas import (
    ContextAddedMetadata, ContextKind, IntentAnalysis, MessageType,
    OrchestrationState, SearchResult, ToolSchema,
)

from conftest import ORG


@pytest.fixture
def status(store, clock):
    return StatusTracker(store, clock=clock)


@pytest.fixture
def dedup(store, status, clock):
    return ContextDeduplicator(store, status, clock=clock)


async def _system_messages(store, conv_id):
    messages = await store.get_last_messages(conv_id, ORG, 100)
    return [m for m in messages if m.type == MessageType.SYSTEM]


class TestContextDeduplicator:

    @pytest.mark.asyncio
    async def test_agent_briefing_posted_once(self, store, dedup, conversation, agent):
        assert await dedup.add_agent_context(conversation.id, ORG, agent) is True
        assert await dedup.add_agent_context(conversation.id, ORG, agent) is False

        system = await _system_messages(store, conversation.id)
        assert len(system) == 1
        assert system[0].content.startswith("🤖 Ava has joined the conversation.")
        assert isinstance(system[0].metadata, ContextAddedMetadata)
        assert system[0].metadata.context_type == ContextKind.AGENTS
        assert system[0].metadata.ids == ["agent_1"]

    @pytest.mark.asyncio
    async def test_playbook_briefing(self, store, dedup, conversation, billing_playbook):
        await dedup.add_playbook_context(conversation.id, ORG, billing_playbook)
        await dedup.add_playbook_context(conversation.id, ORG, billing_playbook)

        system = await _system_messages(store, conversation.id)
        assert len(system) == 1
        assert "**Billing Help** playbook is now active." in system[0].content

        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.orchestration_status.context_tracking.playbooks == ["pb_billing"]

    @pytest.mark.asyncio
    async def test_documents_only_new_ids_are_briefed(self, store, dedup, conversation):
        a = SearchResult(id="d1", content="Reset via settings", similarity=0.9,
                         metadata={"title": "Password Reset"})
        b = SearchResult(id="d2", content="Refunds take 5 days", similarity=0.8,
                         metadata={"title": "Refund Policy"})

        await dedup.add_documents_context(conversation.id, ORG, [a])
        await dedup.add_documents_context(conversation.id, ORG, [a, b])
        await dedup.add_documents_context(conversation.id, ORG, [b, a])

        system = await _system_messages(store, conversation.id)
        assert len(system) == 2
        assert system[0].content.startswith("📚 1 knowledge base document added to context:")
        assert "Refund Policy" in system[1].content
        assert "Password Reset" not in system[1].content
        assert system[1].metadata.ids == ["d2"]

        conv = await store.get_conversation(conversation.id, ORG)
        assert conv.orchestration_status.context_tracking.documents == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_document_without_id_uses_content_hash(self, store, dedup, conversation):
        doc = SearchResult(id="", content="Shipping is free over $50", similarity=0.9)
        await dedup.add_documents_context(conversation.id, ORG, [doc])
        await dedup.add_documents_context(conversation.id, ORG, [doc.model_copy()])

        conv = await store.get_conversation(conversation.id, ORG)
        expected = f"doc_{content_hash(doc.content)}"
        assert conv.orchestration_status.context_tracking.documents == [expected]

    @pytest.mark.asyncio
    async def test_tools_briefing(self, store, dedup, conversation):
        tools = [ToolSchema(name="lookup_order", description="Find an order"),
                 ToolSchema(name="refund")]
        await dedup.add_tools_context(conversation.id, ORG, tools)
        await dedup.add_tools_context(conversation.id, ORG, tools[:1])

        system = await _system_messages(store, conversation.id)
        assert len(system) == 1
        assert "🔧 Tools available in this conversation:" in system[0].content
        assert "- **lookup_order**: Find an order" in system[0].content

    @pytest.mark.asyncio
    async def test_empty_input_posts_nothing(self, store, dedup, conversation):
        assert await dedup.add_documents_context(conversation.id, ORG, []) is False
        assert await _system_messages(store, conversation.id) == []

    @pytest.mark.asyncio
    async def test_missing_conversation(self, dedup, agent):
        assert await dedup.add_agent_context("missing", ORG, agent) is False

    @pytest.mark.asyncio
    async def test_clear_context_allows_briefing_again(self, store, dedup, conversation, agent, clock):
        await dedup.add_agent_context(conversation.id, ORG, agent)
        clock.advance(minutes=1)
        await dedup.clear_context(conversation.id, ORG)

        conv = await store.get_conversation(conversation.id, ORG)
        tracking = conv.orchestration_status.context_tracking
        assert tracking.agents == []
        assert tracking.last_context_update == clock.now

        assert await dedup.add_agent_context(conversation.id, ORG, agent) is True
        assert len(await _system_messages(store, conversation.id)) == 2


class TestStatusTracker:

    @pytest.mark.asyncio
    async def test_update_replaces_state_and_keeps_tracking(
            self, store, dedup, status, conversation, agent):
        await dedup.add_agent_context(conversation.id, ORG, agent)
        await status.update(conversation.id, ORG, OrchestrationState.PROCESSING)
        await status.update(
            conversation.id, ORG, OrchestrationState.ANALYZING_INTENT,
            intent_analysis=IntentAnalysis(intents=["billing"], confidence=0.9),
        )

        current = await status.get(conversation.id, ORG)
        assert current.state == OrchestrationState.ANALYZING_INTENT
        assert current.intent_analysis.intents == ["billing"]
        assert current.context_tracking.agents == ["agent_1"]

    @pytest.mark.asyncio
    async def test_fields_not_named_are_kept(self, status, conversation):
        await status.update(conversation.id, ORG, OrchestrationState.PROCESSING,
                            intent_analysis=IntentAnalysis(intents=["greeting"]))
        await status.update(conversation.id, ORG, OrchestrationState.ANALYZING_INTENT)
        current = await status.get(conversation.id, ORG)
        assert current.intent_analysis.intents == ["greeting"]

    @pytest.mark.asyncio
    async def test_explicit_none_clears_field(self, status, conversation):
        await status.update(conversation.id, ORG, OrchestrationState.PROCESSING,
                            intent_analysis=IntentAnalysis(intents=["greeting"]))
        await status.update(conversation.id, ORG, OrchestrationState.WAITING_FOR_USER,
                            intent_analysis=None)
        assert (await status.get(conversation.id, ORG)).intent_analysis is None

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, status, conversation):
        with pytest.raises(ValueError):
            await status.update(conversation.id, ORG, OrchestrationState.PROCESSING, mood="happy")

    @pytest.mark.asyncio
    async def test_out_of_order_state_is_still_recorded(self, status, conversation):
        await status.update(conversation.id, ORG, OrchestrationState.EXECUTING_PLAYBOOK)
        current = await status.get(conversation.id, ORG)
        assert current.state == OrchestrationState.EXECUTING_PLAYBOOK

    @pytest.mark.asyncio
    async def test_last_updated_uses_clock(self, status, conversation, clock):
        clock.advance(minutes=3)
        await status.update(conversation.id, ORG, OrchestrationState.PROCESSING)
        assert (await status.get(conversation.id, ORG)).last_updated == clock.now
