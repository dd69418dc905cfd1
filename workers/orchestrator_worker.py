"""
Orchestrator Worker — polls the store and runs processing cycles.

Two loops, both started as background tasks:
  processing   every poll_interval_seconds: open conversations with
               needs_processing set → Orchestrator.process_conversation,
               at most max_concurrency at a time
  inactivity   every inactivity_interval_seconds: every organization
               with open conversations → check_inactive_conversations

Usage:
    worker = OrchestratorWorker(orchestrator, store, settings.worker)
    await worker.start()
    ...
    await worker.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from typing import Optional

from config.settings import WorkerConfig
from core.orchestrator import Orchestrator
from database.store_base import ConversationStore
from models.schemas import Conversation, ConversationStatus

logger = structlog.get_logger()


class OrchestratorWorker:

    def __init__(
        self,
        orchestrator: Orchestrator,
        store: ConversationStore,
        config: WorkerConfig = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.config = config or WorkerConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start both loops as background tasks."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._process_loop(), name="orchestrator_process_loop"),
            asyncio.create_task(self._inactivity_loop(), name="orchestrator_inactivity_loop"),
        ]
        logger.info("orchestrator_worker_started",
                    worker=self.orchestrator.worker_token,
                    poll_interval_s=self.config.poll_interval_seconds,
                    concurrency=self.config.max_concurrency)

    async def stop(self) -> None:
        """Cancel the loops and wait for them to finish."""
        self._running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("orchestrator_worker_stopped")

    # ── loops ─────────────────────────────────────────────

    async def _process_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("process_tick_error", error=str(e))
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _inactivity_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_inactive()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("inactivity_sweep_error", error=str(e))
            await asyncio.sleep(self.config.inactivity_interval_seconds)

    # ── single iterations ─────────────────────────────────

    async def tick(self) -> dict[str, int]:
        """
        One processing pass. Returns outcome counts, e.g.
        {"replied": 2, "cooldown": 1}.
        """
        pending = await self.store.find_conversations_needing_processing(self.config.batch_size)
        if not pending:
            return {}

        outcomes = await asyncio.gather(*(self._process_one(conv) for conv in pending))
        counts = dict(Counter(o for o in outcomes if o))
        logger.debug("process_tick_done", **counts)
        return counts

    async def _process_one(self, conv: Conversation) -> Optional[str]:
        async with self._semaphore:
            try:
                outcome = await self.orchestrator.process_conversation(
                    conv.id, conv.organization_id)
                return outcome.value
            except Exception as e:
                logger.error("process_conversation_error", conversation_id=conv.id,
                             error=str(e), exc_info=True)
                return "error"

    async def sweep_inactive(self) -> dict[str, int]:
        """One inactivity pass over every organization with open conversations."""
        totals: Counter = Counter()
        org_ids = await self.store.list_organization_ids(status=ConversationStatus.OPEN)
        for org_id in org_ids:
            try:
                stats = await self.orchestrator.check_inactive_conversations(org_id)
            except Exception as e:
                logger.error("inactivity_org_failed", organization_id=org_id, error=str(e))
                totals["errors"] += 1
                continue
            totals.update(stats)
        return dict(totals)
