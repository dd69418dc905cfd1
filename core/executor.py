"""
Execution Engine — produce the reply for an OrchestrationPlan.

Two paths:

  document-qa
    top-K vector search → drop placeholder/demo entries → nothing left?
    fixed "don't know" answer, no AI call. Otherwise the AI answers
    strictly from the numbered, cited results.

  playbook
    a layered system prompt, always in this order:
      1. playbook description + instructions (or the default assistant prompt)
      2. agent persona: instructions, tone, avoid, trigger
      3. conversation-flow guidance from satisfaction / closing signals
      4. retrieved knowledge-base context, if any
      5. anti-hallucination rules
      6. conversation history
    then one AI call with the customer's message.

AI failures never propagate: the result carries a fixed apologetic reply
and ``error`` is set so the caller can treat the cycle as retryable.
"""
from __future__ import annotations

import re
import structlog
import time
from datetime import datetime
from typing import Callable, Optional

from context.dedup import ContextDeduplicator
from context.status import StatusTracker
from core.llm import Completion, CompletionError, TextCompletionService
from core.retrieval import (
    VectorSearchError, VectorSearchService, filter_placeholders,
    format_citations, to_documents_used,
)
from database.store_base import AgentStore, PlaybookStore
from models.schemas import (
    Agent, Conversation, ExecutionPath, ExecutionResult, Message, MessageType,
    OrchestrationPlan, OrchestrationState, Playbook, ProcessingDetails, SearchResult,
    utcnow,
)
from utils.transcript import format_history, has_ender, last_of_type

logger = structlog.get_logger()

DONT_KNOW_REPLY = (
    "I don't have specific information about that in my knowledge base. "
    "I'd be happy to help you with other questions, or I can connect you with "
    "a human representative who might have more details."
)
DOCUMENT_ERROR_REPLY = (
    "I encountered an issue while searching for information. "
    "Would you like to speak with a human representative?"
)
PLAYBOOK_ERROR_REPLY = (
    "I apologize, but I'm having trouble processing your request at the moment. "
    "Please try again or let me connect you with a human representative who can "
    "assist you better."
)

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant. Your role is to assist users with their requests in a friendly and professional manner.

Guidelines:
- Be helpful and informative based ONLY on information you have been provided
- Ask clarifying questions when needed
- Provide clear and concise answers
- Be polite and professional
- NEVER make up contact information, URLs, or specific details you don't have
- When you don't know something, say "I don't have that specific information"
- For human assistance requests, acknowledge and say you'll help connect them without providing fake contact details"""

ANTI_HALLUCINATION_RULES = """

## CRITICAL INSTRUCTIONS - NEVER VIOLATE THESE RULES:

1. **NEVER make up or invent information**, especially:
   - Contact information (emails, phone numbers, addresses)
   - Website URLs or portals
   - Support hours or availability
   - Company policies or procedures
   - Product features or specifications
   - Names of people or departments

2. **When you don't have specific information**, you MUST:
   - Say "I don't have that information"
   - Offer to help in other ways if possible
   - Suggest that a human representative can provide the specific details

3. **NEVER use example or placeholder data** such as @example.com emails,
   1-800 numbers, example.com websites, or department names you are not certain exist.

4. **For requests to speak with a human**:
   - Acknowledge the request and say you'll help connect them
   - Do NOT provide contact information or support hours

5. **For conversation flow**:
   - Be natural and conversational
   - Don't force conversation enders into every response
   - Listen for cues that the user is satisfied or done"""

KNOWLEDGE_BASE_RULE = (
    "\n\nIMPORTANT: Use ONLY the above information from the knowledge base when "
    "answering questions. If the information needed is not available above, you MUST "
    "say you don't have that information rather than making something up."
)

SATISFACTION_SIGNALS = [
    re.compile(r"thank you|thanks|thx", re.I),
    re.compile(r"that('s| is) (helpful|great|perfect|all)", re.I),
    re.compile(r"perfect|awesome|great|excellent", re.I),
    re.compile(r"that helps|that helped", re.I),
    re.compile(r"got it|understood|makes sense", re.I),
    re.compile(r"\b(okay|ok|alright)\b", re.I),
]
CLOSING_SIGNALS = [
    re.compile(r"that('s| is) all", re.I),
    re.compile(r"no(thing)? (else|more)", re.I),
    re.compile(r"i('m| am) (good|done|finished)", re.I),
    re.compile(r"\b(bye|goodbye|see you)\b", re.I),
]
_NEGATIVE_REPLY = re.compile(r"^(no|nope|n)$", re.I)
_POSITIVE_REPLY = re.compile(r"^(yes|yeah|yep|sure)$", re.I)


def conversation_flow_guidance(user_message: str, messages: list[Message]) -> str:
    """Layer 3 of the playbook prompt."""
    satisfied = any(p.search(user_message) for p in SATISFACTION_SIGNALS)
    closing = any(p.search(user_message) for p in CLOSING_SIGNALS)

    lines = ["\n\n## Conversation Flow Instructions:"]
    if satisfied or closing:
        lines += [
            "- The user appears to be satisfied or ending the conversation",
            "- After acknowledging their message, naturally ask if there's anything else you can help with",
            "- Keep your response brief and friendly",
            "- Don't force the question if it doesn't fit naturally in your response",
        ]
    else:
        lines += [
            "- Focus on addressing the user's current question or concern",
            "- Only ask if they need more help when it's natural to do so",
            "- Don't append \"Is there anything else?\" to every response",
        ]

    last_reply = last_of_type(messages, MessageType.BOT_AGENT)
    if last_reply is not None and has_ender(last_reply.content):
        answer = user_message.strip()
        if _NEGATIVE_REPLY.match(answer):
            lines += [
                "- The user has indicated they don't need more help",
                "- Provide a brief, friendly closing message and let them know they can return",
            ]
        elif _POSITIVE_REPLY.match(answer):
            lines += [
                "- The user needs more help",
                "- Ask what else you can help them with",
            ]
    return "\n".join(lines)


def knowledge_base_context(results: list[SearchResult]) -> str:
    """Layer 4 of the playbook prompt."""
    if not results:
        return ""
    parts = ["\n\n## Relevant Information from Knowledge Base:"]
    for i, r in enumerate(results, start=1):
        block = f"\n[Document {i}] (Relevance: {r.similarity:.2f}):\n{r.content}"
        source = r.metadata.get("source")
        if source:
            block += f"\n(Source: {source})"
        parts.append(block)
    return "\n".join(parts) + KNOWLEDGE_BASE_RULE


def build_system_prompt(
    playbook: Optional[Playbook],
    agent: Optional[Agent],
    user_message: str,
    messages: list[Message],
    documents: list[SearchResult],
) -> str:
    if playbook is not None:
        prompt = playbook.description or "You are a helpful AI assistant."
        if playbook.instructions:
            prompt += f"\n\nInstructions:\n{playbook.instructions}"
        if playbook.required_fields:
            prompt += ("\n\nCollect the following information from the customer: "
                       + ", ".join(playbook.required_fields))
        if playbook.tools:
            prompt += "\n\nAvailable tools:\n" + "\n".join(
                f"- {t.name}: {t.description}" for t in playbook.tools)
    else:
        prompt = DEFAULT_SYSTEM_PROMPT

    if agent is not None:
        if agent.instructions:
            prompt += f"\n\n## Agent Instructions:\n{agent.instructions}"
        if agent.tone:
            prompt += f"\n\n## Communication Tone:\n{agent.tone}"
        if agent.avoid:
            prompt += f"\n\n## Things to Avoid:\n{agent.avoid}"
        if agent.trigger:
            prompt += f"\n\n## Trigger Conditions:\n{agent.trigger}"

    prompt += conversation_flow_guidance(user_message, messages)
    prompt += knowledge_base_context(documents)
    prompt += ANTI_HALLUCINATION_RULES

    history = format_history(messages)
    if history and len(messages) > 1:
        prompt += f"\n\nConversation history:\n{history}"
    return prompt


class ExecutionEngine:

    def __init__(
        self,
        playbooks: PlaybookStore,
        agents: AgentStore,
        dedup: ContextDeduplicator,
        status: StatusTracker,
        completion: TextCompletionService,
        search: VectorSearchService,
        top_k: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._playbooks = playbooks
        self._agents = agents
        self._dedup = dedup
        self._status = status
        self._completion = completion
        self._search = search
        self.top_k = top_k
        self._clock = clock

    async def execute(
        self,
        plan: OrchestrationPlan,
        conversation: Conversation,
        messages: list[Message],
        user_message: str,
    ) -> ExecutionResult:
        if plan.path == ExecutionPath.DOCUMENT_QA:
            return await self._answer_from_documents(conversation, user_message)
        return await self._run_playbook(plan, conversation, messages, user_message)

    # ── document-qa ───────────────────────────────────────

    async def _answer_from_documents(
        self, conversation: Conversation, query: str,
    ) -> ExecutionResult:
        conv_id, org_id = conversation.id, conversation.organization_id
        await self._status.update(
            conv_id, org_id, OrchestrationState.SEARCHING_DOCUMENTS,
            processing_details=self._details(conversation, ExecutionPath.DOCUMENT_QA),
        )
        try:
            results = filter_placeholders(await self._search.search(org_id, query, self.top_k))
            if not results:
                logger.info("document_answer_no_results", conversation_id=conv_id)
                return ExecutionResult(content=DONT_KNOW_REPLY, path=ExecutionPath.DOCUMENT_QA)

            await self._dedup.add_documents_context(conv_id, org_id, results)
            documents = to_documents_used(results)
            await self._status.update(
                conv_id, org_id, OrchestrationState.SEARCHING_DOCUMENTS,
                documents_used=documents,
            )

            prompt = (
                f'Based on the following information, answer the user\'s question: "{query}"\n\n'
                f"Relevant information:\n{format_citations(results)}\n\n"
                "Answer ONLY from the information above and cite sources by their "
                "number. If it does not contain the answer, say you don't have that "
                "information. Keep the answer concise and helpful."
            )
            started = time.monotonic()
            completion = await self._completion.invoke(prompt)
            return self._result(
                completion, ExecutionPath.DOCUMENT_QA, started,
                documents_used=documents,
            )
        except (CompletionError, VectorSearchError) as e:
            logger.warning("document_answer_failed", conversation_id=conv_id, error=str(e))
            return ExecutionResult(
                content=DOCUMENT_ERROR_REPLY, path=ExecutionPath.DOCUMENT_QA, error=str(e),
            )

    # ── playbook ──────────────────────────────────────────

    async def _run_playbook(
        self,
        plan: OrchestrationPlan,
        conversation: Conversation,
        messages: list[Message],
        user_message: str,
    ) -> ExecutionResult:
        conv_id, org_id = conversation.id, conversation.organization_id
        await self._status.update(
            conv_id, org_id, OrchestrationState.EXECUTING_PLAYBOOK,
            processing_details=self._details(conversation, ExecutionPath.PLAYBOOK),
        )

        playbook = await self._load_playbook(plan.playbook_id, org_id)
        agent = await self._load_agent(plan.agent_id, org_id)
        if agent is not None:
            await self._dedup.add_agent_context(conv_id, org_id, agent)
        if playbook is not None and playbook.tools:
            await self._dedup.add_tools_context(conv_id, org_id, playbook.tools)

        documents = await self._retrieve_for_prompt(conv_id, org_id, user_message)
        used = to_documents_used(documents)
        if used:
            await self._status.update(
                conv_id, org_id, OrchestrationState.EXECUTING_PLAYBOOK, documents_used=used,
            )

        system = build_system_prompt(playbook, agent, user_message, messages, documents)
        started = time.monotonic()
        try:
            completion = await self._completion.invoke_with_system_prompt(system, user_message)
        except CompletionError as e:
            logger.warning("playbook_reply_failed", conversation_id=conv_id, error=str(e))
            return ExecutionResult(
                content=PLAYBOOK_ERROR_REPLY, path=ExecutionPath.PLAYBOOK,
                playbook_id=playbook.id if playbook else None, error=str(e),
            )
        return self._result(
            completion, ExecutionPath.PLAYBOOK, started,
            playbook_id=playbook.id if playbook else None, documents_used=used,
        )

    async def _retrieve_for_prompt(
        self, conversation_id: str, organization_id: str, query: str,
    ) -> list[SearchResult]:
        try:
            return filter_placeholders(
                await self._search.search(organization_id, query, self.top_k))
        except VectorSearchError as e:
            # Answer without knowledge-base context
            logger.warning("playbook_retrieval_failed", conversation_id=conversation_id,
                           error=str(e))
            return []

    async def _load_playbook(self, playbook_id: Optional[str], org_id: str) -> Optional[Playbook]:
        if not playbook_id:
            return None
        playbook = await self._playbooks.get_playbook(playbook_id, org_id)
        if playbook is None:
            logger.warning("playbook_not_found", playbook_id=playbook_id)
        return playbook

    async def _load_agent(self, agent_id: Optional[str], org_id: str) -> Optional[Agent]:
        if not agent_id:
            return None
        agent = await self._agents.get_agent(agent_id, org_id)
        if agent is None:
            logger.warning("agent_not_found", agent_id=agent_id)
        return agent

    # ── helpers ───────────────────────────────────────────

    def _details(self, conversation: Conversation, path: ExecutionPath) -> ProcessingDetails:
        return ProcessingDetails(
            worker_token=conversation.processing_locked_by,
            locked_until=conversation.processing_locked_until,
            cooldown_until=conversation.cooldown_until,
            started_at=self._clock(),
            path=path,
        )

    @staticmethod
    def _result(
        completion: Completion,
        path: ExecutionPath,
        started: float,
        playbook_id: Optional[str] = None,
        documents_used=None,
    ) -> ExecutionResult:
        return ExecutionResult(
            content=completion.content,
            path=path,
            playbook_id=playbook_id,
            documents_used=documents_used or [],
            model=completion.model,
            usage=dict(completion.usage_metadata),
            latency_ms=int((time.monotonic() - started) * 1000),
        )
