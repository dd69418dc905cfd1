"""
Status Tracker — the externally observable orchestration status.

Every update builds a complete new OrchestrationStatus from the stored one
plus the requested changes and writes it back in a single conversation
update. context_tracking is always carried over from the stored value;
only the Context Deduplicator changes it, through replace_context_tracking().
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from context.state_machine import orchestration_machine, is_in_flight
from database.store_base import ConversationStore
from models.schemas import (
    ContextTracking, OrchestrationState, OrchestrationStatus, utcnow,
)

logger = structlog.get_logger()

_UPDATABLE = {
    "current_playbook", "documents_used", "intent_analysis", "processing_details",
}


class StatusTracker:

    def __init__(self, store: ConversationStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    async def get(self, conversation_id: str, organization_id: str) -> Optional[OrchestrationStatus]:
        conv = await self._store.get_conversation(conversation_id, organization_id)
        return conv.orchestration_status if conv else None

    async def update(
        self,
        conversation_id: str,
        organization_id: str,
        state: OrchestrationState,
        **changes: Any,
    ) -> Optional[OrchestrationStatus]:
        """
        Replace the status with ``state`` plus ``changes``. Fields not named
        keep their stored values; pass None explicitly to clear one.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown orchestration status fields: {sorted(unknown)}")

        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            logger.warning("status_update_conversation_missing",
                           conversation_id=conversation_id)
            return None

        current = conv.orchestration_status
        if state == OrchestrationState.ERROR and not is_in_flight(current.state):
            logger.debug("status_error_outside_cycle", conversation_id=conversation_id,
                         from_state=current.state.value)
        elif not orchestration_machine.check(current.state, state):
            # Observability only: record the state the pipeline actually reached
            logger.warning("orchestration_state_jump",
                           conversation_id=conversation_id,
                           from_state=current.state.value, to_state=state.value)

        status = OrchestrationStatus(
            state=state,
            current_playbook=changes.get("current_playbook", current.current_playbook),
            documents_used=changes.get("documents_used", current.documents_used),
            intent_analysis=changes.get("intent_analysis", current.intent_analysis),
            processing_details=changes.get("processing_details", current.processing_details),
            context_tracking=current.context_tracking.model_copy(deep=True),
            last_updated=self._clock(),
        )
        await self._store.update_conversation(
            conversation_id, organization_id, {"orchestration_status": status},
        )
        logger.debug("orchestration_status_updated", conversation_id=conversation_id,
                     state=state.value)
        return status

    async def replace_context_tracking(
        self, conversation_id: str, organization_id: str, tracking: ContextTracking,
    ) -> Optional[OrchestrationStatus]:
        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            return None
        status = conv.orchestration_status.model_copy(
            update={"context_tracking": tracking, "last_updated": self._clock()}, deep=True,
        )
        await self._store.update_conversation(
            conversation_id, organization_id, {"orchestration_status": status},
        )
        return status
