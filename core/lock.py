"""
Lock Coordinator — one worker per conversation at a time.

try_acquire() first reads the record and bows out without writing if a
lock or cooldown is still running. Otherwise it asks the store for an
atomic conditional update; only the caller whose update matched wins.
Locks expire on their own after the window, so a crashed worker never
blocks a conversation for longer than that.

release() ends a successful cycle. fail() ends a failed one and re-arms
needs_processing so the next scheduled run retries. Both write only
while this worker still holds the lock; a late release after expiry
leaves the new holder untouched.
"""
from __future__ import annotations

import os
import socket
import structlog
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from database.store_base import ConversationStore
from models.schemas import LockResult, utcnow

logger = structlog.get_logger()


def make_worker_token() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LockCoordinator:

    def __init__(
        self,
        store: ConversationStore,
        window_ms: int = 30_000,
        worker_token: str = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self.window_ms = window_ms
        self.worker_token = worker_token or make_worker_token()
        self._clock = clock

    async def try_acquire(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: str = None,
        window_ms: int = None,
    ) -> LockResult:
        token = worker_token or self.worker_token
        window = window_ms if window_ms is not None else self.window_ms
        now = self._clock()

        conv = await self._store.get_conversation(conversation_id, organization_id)
        if conv is None:
            raise LookupError(f"Conversation {conversation_id} not found")

        if conv.processing_locked_until and conv.processing_locked_until > now:
            logger.debug("lock_held", conversation_id=conversation_id,
                         holder=conv.processing_locked_by,
                         until=conv.processing_locked_until.isoformat())
            return LockResult.ALREADY_LOCKED
        if conv.cooldown_until and conv.cooldown_until > now:
            logger.debug("lock_cooldown", conversation_id=conversation_id,
                         until=conv.cooldown_until.isoformat())
            return LockResult.COOLDOWN

        acquired = await self._store.try_acquire_lock(
            conversation_id, organization_id, token,
            now=now, locked_until=now + timedelta(milliseconds=window),
        )
        if acquired is None:
            logger.debug("lock_lost_race", conversation_id=conversation_id)
            return LockResult.ALREADY_LOCKED

        logger.debug("lock_acquired", conversation_id=conversation_id, worker=token)
        return LockResult.GRANTED

    async def release(
        self, conversation_id: str, organization_id: str, worker_token: str = None,
    ) -> bool:
        return await self._release(conversation_id, organization_id, worker_token, {
            "processing_locked_until": None,
            "processing_locked_by": None,
            "cooldown_until": None,
            "needs_processing": False,
            "last_processed_at": self._clock(),
        }, event="lock_released")

    async def fail(
        self, conversation_id: str, organization_id: str, worker_token: str = None,
    ) -> bool:
        """Clear the lock after an error and leave the conversation retryable."""
        return await self._release(conversation_id, organization_id, worker_token, {
            "processing_locked_until": None,
            "processing_locked_by": None,
            "cooldown_until": None,
            "needs_processing": True,
        }, event="lock_released_for_retry")

    async def _release(
        self,
        conversation_id: str,
        organization_id: str,
        worker_token: Optional[str],
        patch: dict,
        event: str,
    ) -> bool:
        # A lock that expired mid-cycle may already belong to another worker
        token = worker_token or self.worker_token
        released = await self._store.release_lock(
            conversation_id, organization_id, token, patch,
        )
        if released:
            logger.debug(event, conversation_id=conversation_id)
        else:
            logger.warning("lock_release_skipped_not_holder",
                           conversation_id=conversation_id, worker=token)
        return released
