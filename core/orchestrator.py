"""
Orchestrator — one processing cycle per conversation, end to end.

Cycle:
  open? → LockCoordinator.try_acquire (lock + cooldown)
        → route to an agent (or hand off to a human when none is enabled)
        → batch the customer messages since the last assistant reply
        → PlanBuilder.build → ExecutionEngine.execute
        → DetectionChain: close / escalate / continue
        → persist the reply, release the lock

Every exit path clears the processing lock, as its last write. Errors never leave
process_conversation; they are recorded on the conversation instead
(state error, needs_processing set for a retry, one apology message).

Collaborators are passed in explicitly; build_orchestrator() wires the
default graph from Settings.
"""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from config.settings import Settings
from context.dedup import ContextDeduplicator
from context.state_machine import conversation_machine
from context.status import StatusTracker
from core.detection import DetectionAction, DetectionChain, DetectionContext, default_chain
from core.executor import ExecutionEngine
from core.inactivity import InactivityMonitor
from core.intake import MessageIntake
from core.intent import IntentClassifier
from core.lifecycle import ConversationLifecycle
from core.llm import LLMCompletionService, TextCompletionService
from core.lock import LockCoordinator
from core.planner import PlanBuilder
from core.playbooks import PlaybookMatcher
from core.retrieval import HttpVectorSearchService, VectorSearchService
from database.store_base import BaseContextStore
from models.schemas import (
    AssistantReplyMetadata, Conversation, ConversationStatus, EscalationMetadata,
    ErrorMetadata, ExecutionResult, LockResult, MessageType, OrchestrationPlan,
    OrchestrationState, ProcessingDetails, utcnow,
)
from utils.transcript import format_history, unprocessed_customer_messages

logger = structlog.get_logger()

NO_AGENT_MESSAGE = (
    "I understand you'd like assistance. I'll make sure a human representative is "
    "notified about your request. Someone will get back to you as soon as possible."
)
PROCESSING_ERROR_MESSAGE = (
    "I apologize, but I encountered an issue processing your request. "
    "Please try again or I can connect you with a human representative."
)


class CycleOutcome(str, Enum):
    SKIPPED = "skipped"
    LOCKED = "locked"
    COOLDOWN = "cooldown"
    NO_INPUT = "no_input"
    HANDED_OFF = "handed_off"
    REPLIED = "replied"
    DEGRADED = "degraded"
    CLOSED = "closed"
    ESCALATED = "escalated"
    ERROR = "error"


class Orchestrator:

    def __init__(
        self,
        store: BaseContextStore,
        lock: LockCoordinator,
        status: StatusTracker,
        dedup: ContextDeduplicator,
        planner: PlanBuilder,
        executor: ExecutionEngine,
        detection: DetectionChain,
        lifecycle: ConversationLifecycle,
        inactivity: InactivityMonitor,
        history_limit: int = 20,
    ):
        self.store = store
        self.lock = lock
        self.status = status
        self.dedup = dedup
        self.planner = planner
        self.executor = executor
        self.detection = detection
        self.lifecycle = lifecycle
        self.inactivity = inactivity
        self.history_limit = history_limit

    @property
    def worker_token(self) -> str:
        return self.lock.worker_token

    # ══════════════════════════════════════════════════════════
    #  PROCESSING CYCLE
    # ══════════════════════════════════════════════════════════

    async def process_conversation(
        self, conversation_id: str, organization_id: str,
    ) -> CycleOutcome:
        conv = await self.store.get_conversation(conversation_id, organization_id)
        if conv is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            return CycleOutcome.SKIPPED
        if conv.status != ConversationStatus.OPEN:
            logger.debug("conversation_not_open", conversation_id=conversation_id,
                         status=conv.status.value)
            return CycleOutcome.SKIPPED

        lock_result = await self.lock.try_acquire(conversation_id, organization_id)
        if lock_result == LockResult.ALREADY_LOCKED:
            return CycleOutcome.LOCKED
        if lock_result == LockResult.COOLDOWN:
            return CycleOutcome.COOLDOWN

        try:
            return await self._run_cycle(conversation_id, organization_id)
        except Exception as e:
            logger.error("conversation_processing_failed",
                         conversation_id=conversation_id, error=str(e), exc_info=True)
            await self._record_failure(conversation_id, organization_id, e)
            return CycleOutcome.ERROR

    async def _run_cycle(self, conversation_id: str, organization_id: str) -> CycleOutcome:
        conv = await self.store.get_conversation(conversation_id, organization_id)
        await self.status.update(
            conversation_id, organization_id, OrchestrationState.PROCESSING,
            processing_details=ProcessingDetails(
                worker_token=conv.processing_locked_by,
                locked_until=conv.processing_locked_until,
                cooldown_until=conv.cooldown_until,
                started_at=utcnow(),
            ),
        )

        # 1. Agent routing
        conv = await self._ensure_agent(conv)
        if conv is None:
            return CycleOutcome.HANDED_OFF

        # 2. Batch everything the customer said since the last reply
        messages = await self.store.get_last_messages(
            conversation_id, organization_id, self.history_limit)
        pending = unprocessed_customer_messages(messages)
        if not pending:
            logger.debug("no_unprocessed_messages", conversation_id=conversation_id)
            await self._finish(conversation_id, organization_id)
            return CycleOutcome.NO_INPUT

        user_message = "\n".join(m.content for m in pending)
        history_text = format_history(messages)

        # 3. Plan and execute
        plan = await self.planner.build(conv, user_message, history_text)
        conv = await self.store.get_conversation(conversation_id, organization_id)
        result = await self.executor.execute(plan, conv, messages, user_message)

        # 4. Closure / escalation
        outcome = await self.detection.detect(user_message, DetectionContext(messages))
        if outcome.action == DetectionAction.CLOSE:
            await self.lifecycle.say_goodbye(conversation_id, organization_id, outcome.reason)
            await self.lifecycle.close(conversation_id, organization_id, outcome.reason)
            await self.lock.release(conversation_id, organization_id)
            return CycleOutcome.CLOSED
        if outcome.action == DetectionAction.ESCALATE:
            await self.lifecycle.escalate(
                conversation_id, organization_id, user_message, history_text, outcome.reason,
            )
            await self.lock.release(conversation_id, organization_id)
            return CycleOutcome.ESCALATED

        # 5. Reply
        await self._save_reply(conversation_id, organization_id, plan, result)
        if result.degraded:
            try:
                await self.status.update(
                    conversation_id, organization_id, OrchestrationState.ERROR,
                    processing_details=ProcessingDetails(path=result.path, error=result.error),
                )
            finally:
                await self.lock.fail(conversation_id, organization_id)
            logger.warning("conversation_cycle_degraded", conversation_id=conversation_id,
                           error=result.error)
            return CycleOutcome.DEGRADED

        await self.lifecycle.generate_title(conversation_id, organization_id)
        await self._finish(conversation_id, organization_id)
        logger.info("conversation_processed", conversation_id=conversation_id,
                    path=result.path.value, playbook_id=result.playbook_id,
                    latency_ms=result.latency_ms)
        return CycleOutcome.REPLIED

    async def _ensure_agent(self, conv: Conversation) -> Optional[Conversation]:
        """Assign the first enabled agent, or hand the conversation to a human."""
        if conv.agent_id:
            return conv

        agents = await self.store.get_agents(conv.organization_id)
        enabled = [a for a in agents if a.enabled]
        if enabled:
            agent = enabled[0]
            logger.info("agent_assigned", conversation_id=conv.id, agent_id=agent.id)
            return await self.store.update_conversation(
                conv.id, conv.organization_id, {"agent_id": agent.id},
            )

        logger.warning("no_agent_available", conversation_id=conv.id,
                       organization_id=conv.organization_id)
        conversation_machine.require(conv.status, ConversationStatus.PENDING_HUMAN)
        await self.store.add_message(
            conv.id, conv.organization_id,
            content=NO_AGENT_MESSAGE,
            type=MessageType.BOT_AGENT,
            metadata=EscalationMetadata(reason="no_agent_available"),
        )
        await self.store.update_conversation(conv.id, conv.organization_id, {
            "status": ConversationStatus.PENDING_HUMAN,
        })
        await self._finish(conv.id, conv.organization_id)
        return None

    async def _save_reply(
        self,
        conversation_id: str,
        organization_id: str,
        plan: OrchestrationPlan,
        result: ExecutionResult,
    ) -> None:
        await self.store.add_message(
            conversation_id, organization_id,
            content=result.content,
            type=MessageType.BOT_AGENT,
            metadata=AssistantReplyMetadata(
                path=result.path,
                playbook_id=result.playbook_id,
                model=result.model,
                prompt_tokens=result.usage.get("prompt_tokens", 0),
                completion_tokens=result.usage.get("completion_tokens", 0),
                total_tokens=result.usage.get("total_tokens", 0),
                latency_ms=result.latency_ms,
                confidence=plan.intent_analysis.confidence if plan.intent_analysis else None,
            ),
        )

    async def _finish(self, conversation_id: str, organization_id: str) -> None:
        await self.status.update(
            conversation_id, organization_id, OrchestrationState.WAITING_FOR_USER,
            processing_details=None,
        )
        await self.lock.release(conversation_id, organization_id)

    async def _record_failure(
        self, conversation_id: str, organization_id: str, error: Exception,
    ) -> None:
        """Best effort: a failure while recording the failure is only logged."""
        try:
            try:
                await self.status.update(
                    conversation_id, organization_id, OrchestrationState.ERROR,
                    processing_details=ProcessingDetails(error=str(error), started_at=utcnow()),
                )
                await self.store.add_message(
                    conversation_id, organization_id,
                    content=PROCESSING_ERROR_MESSAGE,
                    type=MessageType.BOT_AGENT,
                    metadata=ErrorMetadata(error=str(error)),
                )
            finally:
                await self.lock.fail(conversation_id, organization_id)
        except Exception as e:
            logger.error("failure_recording_failed", conversation_id=conversation_id,
                         error=str(e))

    # ══════════════════════════════════════════════════════════
    #  MAINTENANCE
    # ══════════════════════════════════════════════════════════

    async def check_inactive_conversations(self, organization_id: str) -> dict[str, int]:
        return await self.inactivity.check_inactive_conversations(organization_id)

    async def clear_context(self, conversation_id: str, organization_id: str) -> None:
        await self.dedup.clear_context(conversation_id, organization_id)


# ──────────────────────────────────────────────────────────────
#  Wiring
# ──────────────────────────────────────────────────────────────

def build_orchestrator(
    settings: Settings,
    store: BaseContextStore,
    completion: TextCompletionService = None,
    search: VectorSearchService = None,
    worker_token: str = None,
) -> Orchestrator:
    """Wire the default component graph. Pass ``completion`` / ``search`` to replace the network clients."""
    cfg = settings.orchestrator
    completion = completion or LLMCompletionService(settings.llm, settings.llm_timeout_seconds)
    search = search or HttpVectorSearchService(settings.vector_search)

    lock = LockCoordinator(store, window_ms=cfg.lock_window_ms, worker_token=worker_token)
    status = StatusTracker(store)
    dedup = ContextDeduplicator(store, status)
    matcher = PlaybookMatcher(
        store, IntentClassifier(completion), completion,
        confidence_floor=cfg.match_confidence_floor,
        switch_threshold=cfg.switch_threshold,
    )
    planner = PlanBuilder(
        store, store, matcher, dedup, status, completion, search,
        relevance_threshold=cfg.document_relevance_threshold,
        non_interruptible_kinds=cfg.non_interruptible_kinds,
    )
    executor = ExecutionEngine(
        store, store, dedup, status, completion, search, top_k=cfg.document_top_k,
    )
    lifecycle = ConversationLifecycle(store, status, completion)
    inactivity = InactivityMonitor(
        store, lifecycle, completion,
        threshold_ms=cfg.inactivity_threshold_ms,
        reminder_fraction=cfg.reminder_fraction,
    )

    logger.info("orchestrator_built", worker=lock.worker_token,
                provider=settings.llm.provider, model=settings.llm.model)
    return Orchestrator(
        store=store,
        lock=lock,
        status=status,
        dedup=dedup,
        planner=planner,
        executor=executor,
        detection=default_chain(completion),
        lifecycle=lifecycle,
        inactivity=inactivity,
        history_limit=cfg.history_limit,
    )


def build_intake(settings: Settings, store: BaseContextStore) -> MessageIntake:
    return MessageIntake(store, cooldown_interval_ms=settings.orchestrator.cooldown_interval_ms)
