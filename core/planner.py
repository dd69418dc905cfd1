"""
Plan Builder — turn the latest customer input into an OrchestrationPlan.

Build order, one cycle:
  1. status → analyzing_intent
  2. PlaybookMatcher (which runs the IntentClassifier)
  3. if the matcher switched away from a playbook that may not be
     interrupted, keep the current one
  4. persist the chosen playbook and brief it once via the deduplicator
  5. document-relevance probe: AI yes/no, then a top-1 vector search;
     only a hit above the relevance threshold routes to document-qa

document-qa and playbook are mutually exclusive for a cycle.
"""
from __future__ import annotations

import structlog
from typing import Iterable, Optional

from context.dedup import ContextDeduplicator
from context.status import StatusTracker
from core.llm import CompletionError, TextCompletionService, parse_json_reply
from core.playbooks import (
    DEFAULT_NON_INTERRUPTIBLE_KINDS, PlaybookMatcher, should_allow_switch,
)
from core.retrieval import VectorSearchError, VectorSearchService
from database.store_base import ConversationStore, PlaybookStore
from models.schemas import (
    Conversation, ExecutionPath, OrchestrationPlan, OrchestrationState,
    Playbook, PlaybookStatus, PlaybookStatusValue,
)

logger = structlog.get_logger()

_PROBE_SYSTEM_PROMPT = """You are a routing assistant. Decide whether a customer's message would benefit from searching documentation and knowledge base articles.

Benefits from document search:
- Questions about how to use features
- Requests for specific information or explanations
- Technical questions likely covered by documentation
- Questions about processes or procedures

Does NOT need document search:
- Greetings and small talk
- Simple confirmations
- Account or billing service requests
- Complaints that need human attention

Respond ONLY with JSON: {"use_documents": true or false, "reasoning": "explanation"}"""


class PlanBuilder:

    def __init__(
        self,
        conversations: ConversationStore,
        playbooks: PlaybookStore,
        matcher: PlaybookMatcher,
        dedup: ContextDeduplicator,
        status: StatusTracker,
        completion: TextCompletionService,
        search: VectorSearchService,
        relevance_threshold: float = 0.7,
        non_interruptible_kinds: Iterable[str] = DEFAULT_NON_INTERRUPTIBLE_KINDS,
    ):
        self._conversations = conversations
        self._playbooks = playbooks
        self._matcher = matcher
        self._dedup = dedup
        self._status = status
        self._completion = completion
        self._search = search
        self.relevance_threshold = relevance_threshold
        self.non_interruptible_kinds = frozenset(non_interruptible_kinds)

    async def build(
        self,
        conversation: Conversation,
        message: str,
        history_text: Optional[str] = None,
    ) -> OrchestrationPlan:
        conv_id, org_id = conversation.id, conversation.organization_id
        await self._status.update(conv_id, org_id, OrchestrationState.ANALYZING_INTENT)

        selection = await self._matcher.select_playbook(
            message, org_id, history_text, conversation.playbook_id,
        )
        playbook = selection.playbook
        confidence, reasoning = selection.confidence, selection.reasoning

        if selection.switched:
            current = await self._current_playbook(conversation)
            if current is not None and not should_allow_switch(
                    current, playbook, self.non_interruptible_kinds):
                logger.info("playbook_switch_blocked", conversation_id=conv_id,
                            current=current.id,
                            proposed=playbook.id if playbook else None)
                playbook = current
                confidence = self._recorded_confidence(conversation, current)
                reasoning = "Current playbook cannot be interrupted"

        await self._status.update(
            conv_id, org_id, OrchestrationState.ANALYZING_INTENT,
            intent_analysis=selection.intent_analysis,
            current_playbook=PlaybookStatus(
                id=playbook.id, title=playbook.title,
                selection_confidence=confidence, selection_reasoning=reasoning,
            ) if playbook else None,
        )

        if playbook is not None:
            if playbook.id != conversation.playbook_id:
                await self._conversations.update_conversation(
                    conv_id, org_id, {"playbook_id": playbook.id},
                )
                logger.info("playbook_assigned", conversation_id=conv_id,
                            playbook_id=playbook.id, previous=conversation.playbook_id)
            await self._dedup.add_playbook_context(conv_id, org_id, playbook)

        path = ExecutionPath.PLAYBOOK
        if await self._should_use_documents(message, org_id):
            path = ExecutionPath.DOCUMENT_QA

        return OrchestrationPlan(
            path=path,
            agent_id=conversation.agent_id or "",
            playbook_id=playbook.id if playbook else None,
            intent_analysis=selection.intent_analysis,
        )

    async def _current_playbook(self, conversation: Conversation) -> Optional[Playbook]:
        if not conversation.playbook_id:
            return None
        current = await self._playbooks.get_playbook(
            conversation.playbook_id, conversation.organization_id)
        if current is None:
            logger.warning("current_playbook_missing", conversation_id=conversation.id,
                           playbook_id=conversation.playbook_id)
            return None
        return current if current.status == PlaybookStatusValue.ACTIVE else None

    @staticmethod
    def _recorded_confidence(conversation: Conversation, playbook: Playbook) -> Optional[float]:
        """Confidence stored when ``playbook`` was selected, if the status still has it."""
        recorded = conversation.orchestration_status.current_playbook
        if recorded is not None and recorded.id == playbook.id:
            return recorded.selection_confidence
        return None

    async def _should_use_documents(self, message: str, organization_id: str) -> bool:
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _PROBE_SYSTEM_PROMPT, f"User message: {message}",
                max_tokens=150, temperature=0.0,
            )
            verdict = parse_json_reply(reply.content).get("use_documents")
            wants_documents = verdict is True or str(verdict).lower() == "true"
        except CompletionError as e:
            logger.warning("document_probe_unavailable", error=str(e))
            return False
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("document_probe_unparseable", error=str(e))
            return False

        if not wants_documents:
            return False

        try:
            hits = await self._search.search(organization_id, message, 1)
        except VectorSearchError as e:
            logger.warning("document_probe_search_failed", error=str(e))
            return False

        if hits and hits[0].similarity > self.relevance_threshold:
            logger.info("document_route_selected", similarity=hits[0].similarity)
            return True
        return False
