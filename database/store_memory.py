"""
InMemoryContextStore — Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlContextStore
  - Lock compare-and-set serialized by an asyncio.Lock (single event loop)
  - All data lost on process restart

Records are copied on the way in and out so callers never share
mutable state with the store.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseContextStore
from models.schemas import (
    Agent, Conversation, ConversationStatus, Message, MessageMetadata,
    MessageType, Playbook, utcnow,
)

logger = structlog.get_logger()


def _expired(value: Optional[datetime], now: datetime) -> bool:
    return value is None or value <= now


class InMemoryContextStore(BaseContextStore):
    """
    Full-featured in-memory store with the same interface as SqlContextStore.
    """

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}          # id → conversation
        self._messages: dict[str, list[Message]] = defaultdict(list)  # conv_id → messages
        self._playbooks: dict[str, Playbook] = {}
        self._agents: dict[str, Agent] = {}
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Conversations ─────────────────────────────────────

    def _get(self, conversation_id: str, organization_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        if conv is None or conv.organization_id != organization_id:
            return None
        return conv

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation.model_copy(deep=True)

    async def get_conversation(
        self, conversation_id: str, organization_id: str,
    ) -> Optional[Conversation]:
        conv = self._get(conversation_id, organization_id)
        return conv.model_copy(deep=True) if conv else None

    async def update_conversation(
        self, conversation_id: str, organization_id: str, patch: dict[str, Any],
    ) -> Optional[Conversation]:
        async with self._lock:
            conv = self._get(conversation_id, organization_id)
            if conv is None:
                return None
            unknown = set(patch) - set(Conversation.model_fields)
            if unknown:
                raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
            updated = conv.model_copy(update={**patch, "updated_at": utcnow()}, deep=True)
            self._conversations[conversation_id] = updated
            return updated.model_copy(deep=True)

    async def try_acquire_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        now: datetime,
        locked_until: datetime,
    ) -> Optional[Conversation]:
        async with self._lock:
            conv = self._get(conversation_id, organization_id)
            if conv is None:
                return None
            if not (_expired(conv.processing_locked_until, now)
                    and _expired(conv.cooldown_until, now)):
                return None
            updated = conv.model_copy(update={
                "processing_locked_until": locked_until,
                "processing_locked_by": worker_token,
                "needs_processing": False,
                "updated_at": now,
            }, deep=True)
            self._conversations[conversation_id] = updated
            return updated.model_copy(deep=True)

    async def release_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        patch: dict[str, Any],
    ) -> bool:
        async with self._lock:
            conv = self._get(conversation_id, organization_id)
            if conv is None or conv.processing_locked_by != worker_token:
                return False
            self._conversations[conversation_id] = conv.model_copy(
                update={**patch, "updated_at": utcnow()}, deep=True,
            )
            return True

    async def add_message(
        self,
        conversation_id: str,
        organization_id: str,
        content: str,
        type: MessageType,
        metadata: Optional[MessageMetadata] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        if self._get(conversation_id, organization_id) is None:
            raise KeyError(f"Conversation {conversation_id} not found")
        msg = Message(
            conversation_id=conversation_id,
            type=type,
            content=content,
            metadata=metadata,
            created_at=created_at or utcnow(),
        )
        self._messages[conversation_id].append(msg)
        self._messages[conversation_id].sort(key=lambda m: m.created_at)
        return msg.model_copy(deep=True)

    async def get_last_messages(
        self, conversation_id: str, organization_id: str, n: int,
    ) -> list[Message]:
        if self._get(conversation_id, organization_id) is None:
            return []
        return [m.model_copy(deep=True) for m in self._messages[conversation_id][-n:]]

    async def list_conversations(
        self, organization_id: str, status: Optional[ConversationStatus] = None,
    ) -> list[Conversation]:
        return [
            c.model_copy(deep=True) for c in self._conversations.values()
            if c.organization_id == organization_id and (status is None or c.status == status)
        ]

    async def find_conversations_needing_processing(self, limit: int = 50) -> list[Conversation]:
        pending = [
            c for c in self._conversations.values()
            if c.needs_processing and c.status == ConversationStatus.OPEN
        ]
        pending.sort(key=lambda c: c.updated_at)
        return [c.model_copy(deep=True) for c in pending[:limit]]

    async def list_organization_ids(
        self, status: Optional[ConversationStatus] = None,
    ) -> list[str]:
        return sorted({
            c.organization_id for c in self._conversations.values()
            if status is None or c.status == status
        })

    # ── Playbooks ─────────────────────────────────────────

    async def get_playbooks(self, organization_id: str) -> list[Playbook]:
        return [p.model_copy(deep=True) for p in self._playbooks.values()
                if p.organization_id == organization_id]

    async def get_playbook(self, playbook_id: str, organization_id: str) -> Optional[Playbook]:
        p = self._playbooks.get(playbook_id)
        if p is None or p.organization_id != organization_id:
            return None
        return p.model_copy(deep=True)

    async def upsert_playbook(self, playbook: Playbook) -> Playbook:
        self._playbooks[playbook.id] = playbook.model_copy(deep=True)
        return playbook

    # ── Agents ────────────────────────────────────────────

    async def get_agents(self, organization_id: str) -> list[Agent]:
        return [a.model_copy(deep=True) for a in self._agents.values()
                if a.organization_id == organization_id]

    async def get_agent(self, agent_id: str, organization_id: str) -> Optional[Agent]:
        a = self._agents.get(agent_id)
        if a is None or a.organization_id != organization_id:
            return None
        return a.model_copy(deep=True)

    async def upsert_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        return agent
