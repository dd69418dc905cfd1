"""
Abstract store interfaces consumed by the orchestration engine.

Implementations:
  - SqlContextStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryContextStore (dict-based, single-process, no persistence)

Components depend on the narrowest interface they need
(ConversationStore, PlaybookStore, AgentStore); backends implement all
three through BaseContextStore.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Agent, Conversation, ConversationStatus, Message, MessageMetadata,
    MessageType, Playbook,
)


class ConversationStore(ABC):
    """Conversation records and their message log."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(
        self, conversation_id: str, organization_id: str,
    ) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, organization_id: str, patch: dict[str, Any],
    ) -> Optional[Conversation]:
        """Apply a field patch. Returns the updated record or None if missing."""
        ...

    @abstractmethod
    async def try_acquire_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        now: datetime,
        locked_until: datetime,
    ) -> Optional[Conversation]:
        """
        Atomic compare-and-set on the processing lock.

        Succeeds only if neither processing_locked_until nor cooldown_until
        is later than ``now``. On success the lock is set, needs_processing
        is cleared and the updated record is returned; otherwise None and
        nothing is written.
        """
        ...

    @abstractmethod
    async def release_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        patch: dict[str, Any],
    ) -> bool:
        """
        Apply ``patch`` only while ``worker_token`` still holds the lock.

        Returns False and writes nothing when the lock has since been
        taken by another worker (or was already cleared).
        """
        ...

    @abstractmethod
    async def add_message(
        self,
        conversation_id: str,
        organization_id: str,
        content: str,
        type: MessageType,
        metadata: Optional[MessageMetadata] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        ...

    @abstractmethod
    async def get_last_messages(
        self, conversation_id: str, organization_id: str, n: int,
    ) -> list[Message]:
        """The ``n`` most recent messages, oldest first."""
        ...

    @abstractmethod
    async def list_conversations(
        self, organization_id: str, status: Optional[ConversationStatus] = None,
    ) -> list[Conversation]:
        ...

    @abstractmethod
    async def find_conversations_needing_processing(self, limit: int = 50) -> list[Conversation]:
        """Open conversations with needs_processing set, across organizations."""
        ...

    @abstractmethod
    async def list_organization_ids(
        self, status: Optional[ConversationStatus] = None,
    ) -> list[str]:
        ...


class PlaybookStore(ABC):

    @abstractmethod
    async def get_playbooks(self, organization_id: str) -> list[Playbook]:
        ...

    @abstractmethod
    async def get_playbook(self, playbook_id: str, organization_id: str) -> Optional[Playbook]:
        ...

    @abstractmethod
    async def upsert_playbook(self, playbook: Playbook) -> Playbook:
        ...


class AgentStore(ABC):

    @abstractmethod
    async def get_agents(self, organization_id: str) -> list[Agent]:
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str, organization_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def upsert_agent(self, agent: Agent) -> Agent:
        ...


class BaseContextStore(ConversationStore, PlaybookStore, AgentStore):
    """Interface that all store backends must implement."""
