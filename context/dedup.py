"""
Context Deduplicator — inject each briefing into a conversation once.

A briefing is a system message that tells the model (and a human reading
the transcript) which agent persona, playbook, knowledge-base documents or
tools are in play. contextTracking keeps one ID set per kind; an add_*
call posts a single system message covering only the IDs not yet seen
and appends those IDs. The sets only grow until clear_context() starts a
new context epoch.

Documents without a stable ID are keyed by a 32-bit content hash.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable

from context.status import StatusTracker
from core.retrieval import document_key, document_title
from database.store_base import ConversationStore
from models.schemas import (
    Agent, ContextAddedMetadata, ContextKind, ContextTracking, MessageType,
    Playbook, SearchResult, ToolSchema, utcnow,
)

logger = structlog.get_logger()


def _agent_briefing(agent: Agent) -> str:
    parts = [f"🤖 {agent.name} has joined the conversation."]
    if agent.description:
        parts.append(f"📋 **About**: {agent.description}")
    if agent.instructions:
        parts.append(f"📝 **Instructions**: {agent.instructions}")
    if agent.tone:
        parts.append(f"🎭 **Communication Style**: {agent.tone}")
    if agent.avoid:
        parts.append(f"🚫 **Guidelines**: Avoid {agent.avoid}")
    return "\n".join(parts)


def _playbook_briefing(playbook: Playbook) -> str:
    lines = [f"📋 **{playbook.title}** playbook is now active."]
    if playbook.description:
        lines.append(f"**Description:** {playbook.description}")
    if playbook.instructions:
        lines.append(f"**Instructions:** {playbook.instructions}")
    if playbook.trigger:
        lines.append(f"**Trigger:** {playbook.trigger}")
    if playbook.required_fields:
        lines.append(f"**Required information:** {', '.join(playbook.required_fields)}")
    return "\n\n".join(lines)


def _documents_briefing(results: list[SearchResult]) -> str:
    titles = "\n".join(f"- {document_title(r)}" for r in results)
    noun = "document" if len(results) == 1 else "documents"
    return f"📚 {len(results)} knowledge base {noun} added to context:\n{titles}"


def _tools_briefing(tools: list[ToolSchema]) -> str:
    listing = "\n".join(
        f"- **{t.name}**: {t.description}" if t.description else f"- **{t.name}**"
        for t in tools
    )
    return f"🔧 Tools available in this conversation:\n{listing}"


class ContextDeduplicator:

    def __init__(
        self,
        store: ConversationStore,
        status: StatusTracker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._status = status
        self._clock = clock

    async def add_agent_context(
        self, conversation_id: str, organization_id: str, agent: Agent,
    ) -> bool:
        return await self._add(
            conversation_id, organization_id, ContextKind.AGENTS,
            {agent.id: agent}, lambda new: _agent_briefing(new[0]),
        )

    async def add_playbook_context(
        self, conversation_id: str, organization_id: str, playbook: Playbook,
    ) -> bool:
        return await self._add(
            conversation_id, organization_id, ContextKind.PLAYBOOKS,
            {playbook.id: playbook}, lambda new: _playbook_briefing(new[0]),
        )

    async def add_documents_context(
        self, conversation_id: str, organization_id: str, results: list[SearchResult],
    ) -> bool:
        return await self._add(
            conversation_id, organization_id, ContextKind.DOCUMENTS,
            {document_key(r): r for r in results}, _documents_briefing,
        )

    async def add_tools_context(
        self, conversation_id: str, organization_id: str, tools: list[ToolSchema],
    ) -> bool:
        return await self._add(
            conversation_id, organization_id, ContextKind.TOOLS,
            {t.name: t for t in tools}, _tools_briefing,
        )

    async def clear_context(self, conversation_id: str, organization_id: str) -> None:
        """Start a new context epoch: every briefing will be injected again."""
        await self._status.replace_context_tracking(
            conversation_id, organization_id,
            ContextTracking(last_context_update=self._clock()),
        )
        logger.info("context_cleared", conversation_id=conversation_id)

    async def _add(
        self,
        conversation_id: str,
        organization_id: str,
        kind: ContextKind,
        items: dict,
        render: Callable[[list], str],
    ) -> bool:
        if not items:
            return False
        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            logger.warning("context_conversation_missing", conversation_id=conversation_id)
            return False

        tracking = conv.orchestration_status.context_tracking
        seen = set(tracking.ids(kind))
        new_ids = [item_id for item_id in items if item_id not in seen]
        if not new_ids:
            logger.debug("context_already_present", conversation_id=conversation_id,
                         kind=kind.value)
            return False

        await self._store.add_message(
            conversation_id, organization_id,
            content=render([items[i] for i in new_ids]),
            type=MessageType.SYSTEM,
            metadata=ContextAddedMetadata(context_type=kind, ids=new_ids),
        )
        updated = tracking.model_copy(deep=True)
        updated.ids(kind).extend(new_ids)
        updated.last_context_update = self._clock()
        await self._status.replace_context_tracking(conversation_id, organization_id, updated)

        logger.info("context_added", conversation_id=conversation_id,
                    kind=kind.value, count=len(new_ids))
        return True
