"""
Inactivity Monitor — nudge, then close, conversations the customer left.

For every open conversation of an organization:
  elapsed <= reminder window           nothing
  reminder window < elapsed < limit    one reminder, if the assistant spoke
                                       last without asking "anything else?"
                                       and no reminder is among the last two
                                       messages
  elapsed >= limit                     closure notice, then close as
                                       inactivity_timeout

Elapsed time is measured from the last message, or from creation when the
conversation has none.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable

from core.lifecycle import ConversationLifecycle
from core.llm import CompletionError, TextCompletionService
from database.store_base import ConversationStore
from models.schemas import (
    ClosureMetadata, Conversation, ConversationStatus, MessageType,
    ReminderMetadata, utcnow,
)
from utils.transcript import format_history, has_ender

logger = structlog.get_logger()

REMINDER_FALLBACK = (
    "Hi! I noticed you've been away for a bit. Is there anything else I can help you with?"
)
INACTIVITY_CLOSURE_MESSAGE = (
    "This conversation has been automatically closed due to inactivity. "
    "If you need further assistance, please start a new conversation."
)
INACTIVITY_REASON = "inactivity_timeout"

_REMINDER_PROMPT = """The customer has not replied for a while. Write one short, friendly check-in message asking whether they still need help.
Keep it to one or two sentences. Do not repeat earlier answers."""


class InactivityMonitor:

    def __init__(
        self,
        store: ConversationStore,
        lifecycle: ConversationLifecycle,
        completion: TextCompletionService,
        threshold_ms: int = 30 * 60 * 1000,
        reminder_fraction: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._lifecycle = lifecycle
        self._completion = completion
        self.threshold_ms = threshold_ms
        self.reminder_fraction = reminder_fraction
        self._clock = clock

    async def check_inactive_conversations(self, organization_id: str) -> dict[str, int]:
        """Returns counts: {"checked": N, "reminded": N, "closed": N, "errors": N}"""
        stats = {"checked": 0, "reminded": 0, "closed": 0, "errors": 0}
        conversations = await self._store.list_conversations(
            organization_id, status=ConversationStatus.OPEN,
        )
        for conv in conversations:
            stats["checked"] += 1
            try:
                action = await self._check(conv)
            except Exception as e:
                logger.error("inactivity_check_failed", conversation_id=conv.id, error=str(e))
                stats["errors"] += 1
                continue
            if action:
                stats[action] += 1

        if stats["reminded"] or stats["closed"]:
            logger.info("inactivity_sweep_done", organization_id=organization_id, **stats)
        return stats

    async def _check(self, conv: Conversation) -> str:
        now = self._clock()
        if conv.processing_locked_until and conv.processing_locked_until > now:
            return ""

        messages = await self._store.get_last_messages(conv.id, conv.organization_id, 10)
        last_activity = messages[-1].created_at if messages else conv.created_at
        elapsed_ms = int((now - last_activity).total_seconds() * 1000)

        if elapsed_ms >= self.threshold_ms:
            await self._close(conv, elapsed_ms)
            return "closed"

        if elapsed_ms > self.threshold_ms * self.reminder_fraction and self._wants_reminder(messages):
            await self._remind(conv, messages)
            return "reminded"
        return ""

    @staticmethod
    def _wants_reminder(messages) -> bool:
        if not messages:
            return False
        last = messages[-1]
        if last.type != MessageType.BOT_AGENT or has_ender(last.content):
            return False
        return not any(m.is_reminder for m in messages[-2:])

    async def _remind(self, conv: Conversation, messages) -> None:
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _REMINDER_PROMPT,
                f"Conversation so far:\n{format_history(messages)}",
                max_tokens=100, temperature=0.7,
            )
            content = reply.content.strip() or REMINDER_FALLBACK
        except CompletionError as e:
            logger.warning("reminder_generation_fallback", error=str(e))
            content = REMINDER_FALLBACK

        await self._store.add_message(
            conv.id, conv.organization_id,
            content=content,
            type=MessageType.BOT_AGENT,
            metadata=ReminderMetadata(),
            created_at=self._clock(),
        )
        logger.info("inactivity_reminder_sent", conversation_id=conv.id)

    async def _close(self, conv: Conversation, elapsed_ms: int) -> None:
        await self._store.add_message(
            conv.id, conv.organization_id,
            content=INACTIVITY_CLOSURE_MESSAGE,
            type=MessageType.BOT_AGENT,
            metadata=ClosureMetadata(reason=INACTIVITY_REASON, inactivity_duration_ms=elapsed_ms),
            created_at=self._clock(),
        )
        await self._lifecycle.close(
            conv.id, conv.organization_id, INACTIVITY_REASON, confidence=1.0,
        )
        logger.info("conversation_closed_inactive", conversation_id=conv.id,
                    inactive_ms=elapsed_ms)
