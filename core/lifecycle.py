"""
Conversation lifecycle — closing, escalating and titling conversations.

close() maps a reason to resolved / closed, stamps resolution metadata
and always regenerates the title. escalate() hands the conversation to a
human with one acknowledgment message. Every status change is checked
against the conversation transition table.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime
from typing import Callable, Optional

from context.state_machine import conversation_machine
from context.status import StatusTracker
from core.llm import CompletionError, TextCompletionService
from database.store_base import ConversationStore
from models.schemas import (
    ClosureMetadata, Conversation, ConversationStatus, EscalationMetadata,
    MessageType, OrchestrationState, ResolutionMetadata, utcnow,
)
from utils.transcript import format_history

logger = structlog.get_logger()

RESOLVED_REASONS = frozenset({
    "user_indicated_completion",
    "ai_detected_completion_intent",
    "problem_solved",
    "customer_satisfied",
})

GOODBYE_MESSAGE = "Thank you for contacting us! Have a great day! 👋"
ESCALATION_FALLBACK = (
    "I understand you'd like to speak with a human representative. I'll make sure "
    "your request is prioritized. Is there anything specific you'd like me to note "
    "for them about your inquiry?"
)
DEFAULT_TITLE = "Customer Inquiry"
MAX_TITLE_WORDS = 5

PLACEHOLDER_TITLE_PATTERNS = [
    re.compile(r"^New Conversation$", re.I),
    re.compile(r"^Playground Test", re.I),
    re.compile(r"^Test Conversation", re.I),
    re.compile(r"^Untitled", re.I),
    re.compile(r"^Conversation \d+$", re.I),
    re.compile(r"\d{1,2}:\d{2}:\d{2} (AM|PM)$", re.I),
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
]

_TITLE_PROMPT = """Generate a short title for a customer support conversation.

Rules:
1. At most 5 words
2. Describe the customer's main topic or problem
3. Title Case
4. No quotes, punctuation or special characters
5. Examples: "Password Reset", "Order Status", "Billing Issue", "Product Return"

Respond with ONLY the title."""

_ESCALATION_PROMPT = """The customer has asked to speak with a human representative.
Write a short, warm acknowledgment (2 sentences at most) that:
- confirms a human representative will follow up
- asks if there is anything specific to pass along
Never invent contact details, names, wait times or support hours."""


def is_placeholder_title(title: Optional[str]) -> bool:
    if not title or not title.strip():
        return True
    return any(p.search(title.strip()) for p in PLACEHOLDER_TITLE_PATTERNS)


def clean_title(raw: str) -> str:
    title = re.sub(r"[\"'`]", "", raw or "")
    title = re.sub(r"^\W+|\W+$", "", title).strip()
    words = title.split()
    if len(words) > MAX_TITLE_WORDS:
        title = " ".join(words[:MAX_TITLE_WORDS])
    return title if len(title) >= 2 else DEFAULT_TITLE


class ConversationLifecycle:

    def __init__(
        self,
        store: ConversationStore,
        status: StatusTracker,
        completion: TextCompletionService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._status = status
        self._completion = completion
        self._clock = clock

    # ── Closing ───────────────────────────────────────────

    async def close(
        self,
        conversation_id: str,
        organization_id: str,
        reason: str,
        confidence: float = None,
    ) -> Optional[Conversation]:
        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            return None

        resolved = reason in RESOLVED_REASONS
        target = ConversationStatus.RESOLVED if resolved else ConversationStatus.CLOSED
        conversation_machine.require(conv.status, target)
        if confidence is None:
            confidence = 0.9 if resolved else 0.7

        updated = await self._store.update_conversation(conversation_id, organization_id, {
            "status": target,
            "ended_at": self._clock(),
            "needs_processing": False,
            "resolution_metadata": ResolutionMetadata(
                resolved=resolved, confidence=confidence, reason=reason,
            ),
        })
        await self._status.update(
            conversation_id, organization_id, OrchestrationState.WAITING_FOR_USER,
        )
        logger.info("conversation_closed", conversation_id=conversation_id,
                    status=target.value, reason=reason)

        await self.generate_title(conversation_id, organization_id, force=True, closing=True)
        return updated

    async def say_goodbye(self, conversation_id: str, organization_id: str, reason: str) -> None:
        await self._store.add_message(
            conversation_id, organization_id,
            content=GOODBYE_MESSAGE,
            type=MessageType.BOT_AGENT,
            metadata=ClosureMetadata(reason=reason),
            created_at=self._clock(),
        )

    # ── Escalation ────────────────────────────────────────

    async def escalate(
        self,
        conversation_id: str,
        organization_id: str,
        message: str = "",
        history_text: str = "",
        reason: str = "user_requested_escalation",
    ) -> Optional[Conversation]:
        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            return None
        conversation_machine.require(conv.status, ConversationStatus.PENDING_HUMAN)

        acknowledgment = await self._acknowledgment(message, history_text)
        await self._store.add_message(
            conversation_id, organization_id,
            content=acknowledgment,
            type=MessageType.BOT_AGENT,
            metadata=EscalationMetadata(reason=reason),
            created_at=self._clock(),
        )
        updated = await self._store.update_conversation(conversation_id, organization_id, {
            "status": ConversationStatus.PENDING_HUMAN,
            "needs_processing": False,
            "resolution_metadata": ResolutionMetadata(
                resolved=False, confidence=0.8, reason=reason,
            ),
        })
        await self._status.update(
            conversation_id, organization_id, OrchestrationState.WAITING_FOR_USER,
        )
        logger.info("conversation_escalated", conversation_id=conversation_id, reason=reason)
        return updated

    async def _acknowledgment(self, message: str, history_text: str) -> str:
        user = (f"Conversation so far:\n{history_text}\n\n" if history_text else "") \
            + f"Customer's latest message: {message}"
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _ESCALATION_PROMPT, user, max_tokens=150,
            )
            return reply.content.strip()
        except CompletionError as e:
            logger.warning("escalation_ack_fallback", error=str(e))
            return ESCALATION_FALLBACK

    # ── Titles ────────────────────────────────────────────

    async def generate_title(
        self,
        conversation_id: str,
        organization_id: str,
        force: bool = False,
        closing: bool = False,
    ) -> Optional[str]:
        """Best effort. Returns the new title, or None when nothing changed."""
        try:
            conv = await self._store.get_conversation(conversation_id, organization_id)
            if conv is None:
                return None
            if not is_placeholder_title(conv.title) and not force and not closing:
                return None

            messages = await self._store.get_last_messages(conversation_id, organization_id, 20)
            customer_turns = [m for m in messages if m.type == MessageType.CUSTOMER]
            if len(customer_turns) < (1 if closing else 2):
                return None

            try:
                reply = await self._completion.invoke_with_system_prompt(
                    _TITLE_PROMPT,
                    f"Generate a title for this conversation:\n\n{format_history(messages)}",
                    max_tokens=20, temperature=0.3,
                )
                title = clean_title(reply.content)
            except CompletionError as e:
                logger.warning("title_generation_fallback", error=str(e))
                title = DEFAULT_TITLE

            await self._store.update_conversation(
                conversation_id, organization_id, {"title": title},
            )
            logger.info("conversation_titled", conversation_id=conversation_id, title=title)
            return title
        except Exception as e:
            logger.error("title_generation_failed", conversation_id=conversation_id,
                         error=str(e))
            return None
