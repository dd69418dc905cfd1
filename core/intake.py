"""
Message intake — record an inbound customer message and arm the cooldown.

The cooldown window set here is what LockCoordinator.try_acquire checks,
so a burst of customer messages is answered once, after the burst.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable

from context.state_machine import conversation_machine
from database.store_base import ConversationStore
from models.schemas import ConversationStatus, Message, MessageType, utcnow

logger = structlog.get_logger()


class MessageIntake:

    def __init__(
        self,
        store: ConversationStore,
        cooldown_interval_ms: int = 5_000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self.cooldown_interval_ms = cooldown_interval_ms
        self._clock = clock

    async def record_customer_message(
        self,
        conversation_id: str,
        organization_id: str,
        content: str,
    ) -> Message:
        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            raise LookupError(f"Conversation {conversation_id} not found")

        now = self._clock()
        message = await self._store.add_message(
            conversation_id, organization_id,
            content=content, type=MessageType.CUSTOMER, created_at=now,
        )

        status = ConversationStatus.OPEN
        if conv.status == ConversationStatus.HUMAN_TOOK_OVER and await self._human_has_replied(conv.id, organization_id):
            status = ConversationStatus.HUMAN_TOOK_OVER
        conversation_machine.require(conv.status, status)

        await self._store.update_conversation(conversation_id, organization_id, {
            "status": status,
            "cooldown_until": now + timedelta(milliseconds=self.cooldown_interval_ms),
            "needs_processing": status == ConversationStatus.OPEN,
        })
        if status != conv.status:
            logger.info("conversation_reopened", conversation_id=conversation_id,
                        previous=conv.status.value, status=status.value)
        logger.debug("customer_message_recorded", conversation_id=conversation_id,
                     message_id=message.id)
        return message

    async def _human_has_replied(self, conversation_id: str, organization_id: str) -> bool:
        messages = await self._store.get_last_messages(conversation_id, organization_id, 100)
        return any(m.type == MessageType.HUMAN_AGENT for m in messages)
