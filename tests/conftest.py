"""Shared test fixtures for the support orchestrator."""
from __future__ import annotations

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from core.llm import Completion, TextCompletionService
from core.retrieval import VectorSearchService
from database.store_memory import InMemoryContextStore
from models.schemas import Agent, Conversation, Playbook, SearchResult


ORG = "org_1"

# Substrings that identify which component is calling the AI service
INTENT = "Analyze the user's message and identify"
MATCHER = "You decide which support playbooks apply"
PROBE = "routing assistant"
CLOSURE = "CLOSE_SATISFIED"
TITLE = "Generate a short title"
ESCALATION = "asked to speak with a human representative"
REMINDER = "has not replied for a while"
REPLY = "## Conversation Flow Instructions"
DOCUMENT_ANSWER = "Based on the following information"

Reply = Union[str, Exception, list]


class FakeCompletionService(TextCompletionService):
    """
    Scripted completion service.

    ``routes`` maps a substring of the system prompt (or of the prompt, for
    plain ``invoke``) to a reply: a string, an exception to raise, or a
    list consumed one item per call. Unrouted calls get ``default``.
    """

    def __init__(self, routes: dict[str, Reply] = None, default: Reply = "OK"):
        self.routes: dict[str, Reply] = dict(routes or {})
        self.default = default
        self.calls: list[tuple[Optional[str], str]] = []
        self.model_name = "fake-model"

    def calls_for(self, key: str) -> list[tuple[Optional[str], str]]:
        return [c for c in self.calls if key in (c[0] or c[1])]

    def _reply(self, text: str) -> Completion:
        reply = self.default
        for key, value in self.routes.items():
            if key in text:
                reply = value
                break
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        return Completion(
            content=reply, model=self.model_name,
            usage_metadata={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )

    async def invoke(self, prompt, max_tokens=None, temperature=None) -> Completion:
        self.calls.append((None, prompt))
        return self._reply(prompt)

    async def invoke_with_system_prompt(
        self, system_prompt, user_prompt, max_tokens=None, temperature=None,
    ) -> Completion:
        self.calls.append((system_prompt, user_prompt))
        return self._reply(system_prompt)


class FakeVectorSearch(VectorSearchService):

    def __init__(self, results: list[SearchResult] = None, error: Exception = None):
        self.results = list(results or [])
        self.error = error
        self.queries: list[tuple[str, str, int]] = []

    async def search(self, organization_id: str, query: str, limit: int = 5) -> list[SearchResult]:
        self.queries.append((organization_id, query, limit))
        if self.error is not None:
            raise self.error
        return self.results[:limit]


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    return InMemoryContextStore()


@pytest.fixture
def completion():
    return FakeCompletionService()


@pytest.fixture
def search():
    return FakeVectorSearch()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def agent() -> Agent:
    return Agent(
        id="agent_1", organization_id=ORG, name="Ava",
        description="Front-line support agent",
        instructions="Help customers with orders and accounts.",
        tone="Warm and concise",
        avoid="Promising refunds",
    )


@pytest.fixture
def billing_playbook() -> Playbook:
    return Playbook(
        id="pb_billing", organization_id=ORG, title="Billing Help",
        trigger="billing", description="You help customers with billing questions.",
        instructions="Explain charges clearly.",
    )


@pytest.fixture
def general_playbook() -> Playbook:
    return Playbook(
        id="pb_general", organization_id=ORG, title="General Help",
        trigger="general_help", description="You answer general questions.",
    )


@pytest.fixture
def escalation_playbook() -> Playbook:
    return Playbook(
        id="pb_human", organization_id=ORG, title="Human Handoff",
        trigger="human_escalation", description="Hand the customer to a person.",
    )


@pytest_asyncio.fixture
async def conversation(store) -> Conversation:
    return await store.create_conversation(Conversation(id="conv_1", organization_id=ORG))
