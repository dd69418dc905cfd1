"""
Tests for the PlaybookMatcher and the switch rule.

Covers:
  - best match above the confidence floor
  - general_help fallback at 0.3
  - stickiness below the switch threshold, escalation exemption
  - should_allow_switch()
"""
import json

import pytest
import pytest_asyncio

from core.intent import IntentClassifier
from core.llm import CompletionError
from core.playbooks import (
    FALLBACK_CONFIDENCE, STICKY_REASONING, PlaybookMatcher, should_allow_switch,
)
from models.schemas import Playbook, PlaybookStatusValue

from conftest import INTENT, MATCHER, ORG, FakeCompletionService


def _matches(*pairs) -> str:
    return json.dumps({"matches": [
        {"playbook_id": pid, "confidence": conf, "reasoning": f"fits {pid}"}
        for pid, conf in pairs
    ]})


@pytest_asyncio.fixture
async def seeded(store, billing_playbook, general_playbook, escalation_playbook):
    for pb in (billing_playbook, general_playbook, escalation_playbook):
        await store.upsert_playbook(pb)
    return store


def _matcher(store, matcher_reply) -> tuple[PlaybookMatcher, FakeCompletionService]:
    ai = FakeCompletionService({
        INTENT: '{"intents": ["billing"], "confidence": 0.9}',
        MATCHER: matcher_reply,
    })
    return PlaybookMatcher(store, IntentClassifier(ai), ai), ai


class TestPlaybookMatcher:

    @pytest.mark.asyncio
    async def test_best_match_wins(self, seeded):
        matcher, _ = _matcher(seeded, _matches(("pb_general", 0.75), ("pb_billing", 0.95)))
        selection = await matcher.select_playbook("I was double charged", ORG)

        assert selection.playbook.id == "pb_billing"
        assert selection.confidence == pytest.approx(0.95)
        assert selection.switched is True
        assert selection.intent_analysis.intents == ["billing"]

    @pytest.mark.asyncio
    async def test_matches_at_or_below_floor_are_ignored(self, seeded):
        matcher, _ = _matcher(seeded, _matches(("pb_billing", 0.7)))
        selection = await matcher.select_playbook("hmm", ORG)

        assert selection.playbook.id == "pb_general"
        assert selection.confidence == FALLBACK_CONFIDENCE

    @pytest.mark.asyncio
    async def test_unknown_playbook_ids_are_skipped(self, seeded):
        matcher, _ = _matcher(seeded, _matches(("pb_ghost", 0.99), ("pb_billing", 0.8)))
        selection = await matcher.select_playbook("billing", ORG)
        assert selection.playbook.id == "pb_billing"

    @pytest.mark.asyncio
    async def test_inactive_playbooks_are_not_candidates(self, seeded, billing_playbook):
        billing_playbook.status = PlaybookStatusValue.INACTIVE
        await seeded.upsert_playbook(billing_playbook)
        matcher, _ = _matcher(seeded, _matches(("pb_billing", 0.95)))

        selection = await matcher.select_playbook("charge", ORG)
        assert selection.playbook.id == "pb_general"

    @pytest.mark.asyncio
    async def test_no_playbooks_at_all(self, store):
        matcher, ai = _matcher(store, _matches())
        selection = await matcher.select_playbook("hello", ORG)

        assert selection.playbook is None
        assert selection.switched is False
        assert not ai.calls_for(MATCHER)

    @pytest.mark.asyncio
    async def test_evaluation_failure_uses_fallback(self, seeded):
        matcher, _ = _matcher(seeded, CompletionError("boom"))
        selection = await matcher.select_playbook("hello", ORG)
        assert selection.playbook.id == "pb_general"

    @pytest.mark.asyncio
    async def test_low_confidence_keeps_current_playbook(self, seeded):
        matcher, _ = _matcher(seeded, _matches())
        selection = await matcher.select_playbook(
            "ok and what else", ORG, current_playbook_id="pb_billing")

        assert selection.playbook.id == "pb_billing"
        assert selection.switched is False
        assert selection.reasoning == STICKY_REASONING

    @pytest.mark.asyncio
    async def test_confident_alternative_replaces_current(self, seeded, store):
        await store.upsert_playbook(Playbook(
            id="pb_returns", organization_id=ORG, title="Returns", trigger="returns"))
        matcher, _ = _matcher(seeded, _matches(("pb_returns", 0.9)))
        selection = await matcher.select_playbook(
            "I want to return it", ORG, current_playbook_id="pb_billing")

        assert selection.playbook.id == "pb_returns"
        assert selection.switched is True

    @pytest.mark.asyncio
    async def test_escalation_is_never_sticky(self, seeded):
        # 0.75 passes the floor; with the threshold raised it would otherwise stick
        ai = FakeCompletionService({
            INTENT: '{"intents": ["request_human"], "confidence": 0.9}',
            MATCHER: _matches(("pb_human", 0.75)),
        })
        matcher = PlaybookMatcher(seeded, IntentClassifier(ai), ai, switch_threshold=0.8)
        selection = await matcher.select_playbook(
            "get me a person", ORG, current_playbook_id="pb_billing")

        assert selection.playbook.id == "pb_human"
        assert selection.switched is True


class TestShouldAllowSwitch:

    def _pb(self, **kwargs) -> Playbook:
        return Playbook(organization_id=ORG, title=kwargs.pop("title", "pb"), **kwargs)

    def test_no_current_playbook(self):
        assert should_allow_switch(None, self._pb()) is True

    def test_plain_playbook_may_be_left(self):
        assert should_allow_switch(self._pb(), self._pb()) is True

    def test_required_fields_block_switch(self):
        current = self._pb(required_fields=["order_number"])
        assert should_allow_switch(current, self._pb()) is False

    def test_non_interruptible_kind_blocks_switch(self):
        current = self._pb(kind="intake")
        assert should_allow_switch(current, self._pb()) is False
        assert should_allow_switch(current, self._pb(), non_interruptible_kinds=[]) is True

    def test_escalation_overrides_block(self):
        current = self._pb(kind="onboarding", required_fields=["email"])
        assert should_allow_switch(current, self._pb(trigger="human_escalation")) is True
