"""
SqlContextStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The processing lock is taken with a single conditional UPDATE; the row
count tells the caller whether it won. No read-then-write.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, TypeAdapter
from sqlalchemy import select, update, or_, distinct

from database.models import AgentRow, ConversationRow, MessageRow, PlaybookRow
from database.session import get_session
from database.store_base import BaseContextStore
from models.schemas import (
    Agent, Conversation, ConversationStatus, Message, MessageMetadata,
    MessageType, OrchestrationStatus, Playbook, ResolutionMetadata, utcnow,
)

logger = structlog.get_logger()

_metadata_adapter = TypeAdapter(MessageMetadata)

_CONVERSATION_COLUMNS = {
    "title", "status", "agent_id", "playbook_id", "processing_locked_until",
    "processing_locked_by", "cooldown_until", "needs_processing",
    "last_processed_at", "ended_at", "orchestration_status", "resolution_metadata",
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_column(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    return value


class SqlContextStore(BaseContextStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Conversation operations ────────────────────────────

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with get_session() as db:
            db.add(ConversationRow(
                id=conversation.id,
                organization_id=conversation.organization_id,
                created_at=conversation.created_at,
                updated_at=conversation.updated_at,
                **{k: _to_column(getattr(conversation, k)) for k in _CONVERSATION_COLUMNS},
            ))
        return conversation

    async def get_conversation(
        self, conversation_id: str, organization_id: str,
    ) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            if row is None or row.organization_id != organization_id:
                return None
            return self._row_to_conversation(row)

    async def update_conversation(
        self, conversation_id: str, organization_id: str, patch: dict[str, Any],
    ) -> Optional[Conversation]:
        unknown = set(patch) - _CONVERSATION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        values = {k: _to_column(v) for k, v in patch.items()}
        values["updated_at"] = utcnow()
        async with get_session() as db:
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id,
                       ConversationRow.organization_id == organization_id)
                .values(**values)
            )
        return await self.get_conversation(conversation_id, organization_id)

    async def try_acquire_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        now: datetime,
        locked_until: datetime,
    ) -> Optional[Conversation]:
        async with get_session() as db:
            result = await db.execute(
                update(ConversationRow)
                .where(
                    ConversationRow.id == conversation_id,
                    ConversationRow.organization_id == organization_id,
                    or_(ConversationRow.processing_locked_until.is_(None),
                        ConversationRow.processing_locked_until <= now),
                    or_(ConversationRow.cooldown_until.is_(None),
                        ConversationRow.cooldown_until <= now),
                )
                .values(
                    processing_locked_until=locked_until,
                    processing_locked_by=worker_token,
                    needs_processing=False,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1
        if not won:
            return None
        return await self.get_conversation(conversation_id, organization_id)

    async def release_lock(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str,
        patch: dict[str, Any],
    ) -> bool:
        values = {k: _to_column(v) for k, v in patch.items()}
        values["updated_at"] = utcnow()
        async with get_session() as db:
            result = await db.execute(
                update(ConversationRow)
                .where(
                    ConversationRow.id == conversation_id,
                    ConversationRow.organization_id == organization_id,
                    ConversationRow.processing_locked_by == worker_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def add_message(
        self,
        conversation_id: str,
        organization_id: str,
        content: str,
        type: MessageType,
        metadata: Optional[MessageMetadata] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        msg = Message(
            conversation_id=conversation_id, type=type, content=content,
            metadata=metadata, created_at=created_at or utcnow(),
        )
        async with get_session() as db:
            conv = await db.get(ConversationRow, conversation_id)
            if conv is None or conv.organization_id != organization_id:
                raise KeyError(f"Conversation {conversation_id} not found")
            db.add(MessageRow(
                id=msg.id,
                conversation_id=conversation_id,
                type=msg.type.value,
                content=content,
                metadata_=metadata.model_dump(mode="json") if metadata else None,
                created_at=msg.created_at,
            ))
        return msg

    async def get_last_messages(
        self, conversation_id: str, organization_id: str, n: int,
    ) -> list[Message]:
        async with get_session() as db:
            conv = await db.get(ConversationRow, conversation_id)
            if conv is None or conv.organization_id != organization_id:
                return []
            stmt = (
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.created_at.desc())
                .limit(n)
            )
            result = await db.execute(stmt)
            rows = list(result.scalars().all())
        return [self._row_to_message(r) for r in reversed(rows)]

    async def list_conversations(
        self, organization_id: str, status: Optional[ConversationStatus] = None,
    ) -> list[Conversation]:
        async with get_session() as db:
            stmt = select(ConversationRow).where(
                ConversationRow.organization_id == organization_id)
            if status is not None:
                stmt = stmt.where(ConversationRow.status == status.value)
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars().all()]

    async def find_conversations_needing_processing(self, limit: int = 50) -> list[Conversation]:
        async with get_session() as db:
            stmt = (
                select(ConversationRow)
                .where(ConversationRow.needs_processing.is_(True),
                       ConversationRow.status == ConversationStatus.OPEN.value)
                .order_by(ConversationRow.updated_at.asc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars().all()]

    async def list_organization_ids(
        self, status: Optional[ConversationStatus] = None,
    ) -> list[str]:
        async with get_session() as db:
            stmt = select(distinct(ConversationRow.organization_id))
            if status is not None:
                stmt = stmt.where(ConversationRow.status == status.value)
            result = await db.execute(stmt)
            return sorted(result.scalars().all())

    # ── Playbook operations ────────────────────────────────

    async def get_playbooks(self, organization_id: str) -> list[Playbook]:
        async with get_session() as db:
            result = await db.execute(
                select(PlaybookRow).where(PlaybookRow.organization_id == organization_id))
            return [self._row_to_playbook(r) for r in result.scalars().all()]

    async def get_playbook(self, playbook_id: str, organization_id: str) -> Optional[Playbook]:
        async with get_session() as db:
            row = await db.get(PlaybookRow, playbook_id)
            if row is None or row.organization_id != organization_id:
                return None
            return self._row_to_playbook(row)

    async def upsert_playbook(self, playbook: Playbook) -> Playbook:
        data = playbook.model_dump(mode="json")
        async with get_session() as db:
            row = await db.get(PlaybookRow, playbook.id)
            if row is None:
                db.add(PlaybookRow(**data))
            else:
                for key, value in data.items():
                    setattr(row, key, value)
        return playbook

    # ── Agent operations ───────────────────────────────────

    async def get_agents(self, organization_id: str) -> list[Agent]:
        async with get_session() as db:
            result = await db.execute(
                select(AgentRow).where(AgentRow.organization_id == organization_id))
            return [self._row_to_agent(r) for r in result.scalars().all()]

    async def get_agent(self, agent_id: str, organization_id: str) -> Optional[Agent]:
        async with get_session() as db:
            row = await db.get(AgentRow, agent_id)
            if row is None or row.organization_id != organization_id:
                return None
            return self._row_to_agent(row)

    async def upsert_agent(self, agent: Agent) -> Agent:
        data = agent.model_dump(mode="json")
        async with get_session() as db:
            row = await db.get(AgentRow, agent.id)
            if row is None:
                db.add(AgentRow(**data))
            else:
                for key, value in data.items():
                    setattr(row, key, value)
        return agent

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            organization_id=row.organization_id,
            title=row.title,
            status=ConversationStatus(row.status),
            agent_id=row.agent_id,
            playbook_id=row.playbook_id,
            processing_locked_until=_aware(row.processing_locked_until),
            processing_locked_by=row.processing_locked_by,
            cooldown_until=_aware(row.cooldown_until),
            needs_processing=bool(row.needs_processing),
            last_processed_at=_aware(row.last_processed_at),
            ended_at=_aware(row.ended_at),
            orchestration_status=OrchestrationStatus.model_validate(
                row.orchestration_status or {}),
            resolution_metadata=(ResolutionMetadata.model_validate(row.resolution_metadata)
                                 if row.resolution_metadata else None),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            conversation_id=row.conversation_id,
            type=MessageType(row.type),
            content=row.content,
            metadata=_metadata_adapter.validate_python(row.metadata_) if row.metadata_ else None,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_playbook(row: PlaybookRow) -> Playbook:
        return Playbook(
            id=row.id, organization_id=row.organization_id, title=row.title,
            trigger=row.trigger or "", description=row.description or "",
            instructions=row.instructions or "", kind=row.kind,
            required_fields=row.required_fields or [], tools=row.tools or [],
            status=row.status,
        )

    @staticmethod
    def _row_to_agent(row: AgentRow) -> Agent:
        return Agent(
            id=row.id, organization_id=row.organization_id, name=row.name,
            description=row.description or "", instructions=row.instructions or "",
            tone=row.tone or "", avoid=row.avoid or "", trigger=row.trigger or "",
            enabled=bool(row.enabled),
        )
