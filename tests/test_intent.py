"""Tests for the IntentClassifier and its rule fallback."""
import pytest

from core.intent import INTENT_VOCABULARY, IntentClassifier, classify_by_rules
from core.llm import CompletionError

from conftest import INTENT, FakeCompletionService


class TestRuleClassification:

    def test_billing_question(self):
        result = classify_by_rules("Why was my invoice charged twice?")
        assert "billing" in result.intents
        assert result.confidence == 0.6
        assert result.source == "rules"

    def test_request_for_human(self):
        result = classify_by_rules("Can I talk to a real person please")
        assert result.intents[0] == "request_human"

    def test_greeting(self):
        assert "greeting" in classify_by_rules("hello there").intents

    def test_unmatched_defaults_to_general_help(self):
        result = classify_by_rules("blue elephants")
        assert result.intents == ["general_help"]
        assert result.confidence == 0.5

    def test_at_most_three_intents(self):
        result = classify_by_rules(
            "Hi, I'm frustrated, my payment failed with an error, where is my refund?")
        assert 1 <= len(result.intents) <= 3

    def test_only_vocabulary_intents(self):
        for text in ["hello", "refund please", "it crashed", "bye", "what?"]:
            assert set(classify_by_rules(text).intents) <= set(INTENT_VOCABULARY)


class TestIntentClassifier:

    @pytest.mark.asyncio
    async def test_parses_ai_reply(self):
        ai = FakeCompletionService({INTENT: '{"intents": ["billing", "complaint"], "confidence": 0.92}'})
        result = await IntentClassifier(ai).classify("I was overcharged!")

        assert result.intents == ["billing", "complaint"]
        assert result.confidence == pytest.approx(0.92)
        assert result.source == "ai"

    @pytest.mark.asyncio
    async def test_accepts_fenced_json(self):
        ai = FakeCompletionService({INTENT: '```json\n{"intents": ["greeting"], "confidence": 0.8}\n```'})
        result = await IntentClassifier(ai).classify("hi")
        assert result.intents == ["greeting"]

    @pytest.mark.asyncio
    async def test_unknown_intents_are_dropped(self):
        ai = FakeCompletionService({INTENT: '{"intents": ["teleport"], "confidence": 0.9}'})
        result = await IntentClassifier(ai).classify("beam me up")
        assert result.intents == ["general_help"]

    @pytest.mark.asyncio
    async def test_unparseable_reply_falls_back_to_rules(self):
        ai = FakeCompletionService({INTENT: "The user wants a refund."})
        result = await IntentClassifier(ai).classify("I want a refund")

        assert result.source == "rules"
        assert "billing" in result.intents
        assert len(ai.calls) == 1

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_rules(self):
        ai = FakeCompletionService({INTENT: CompletionError("timeout")})
        result = await IntentClassifier(ai).classify("hello")
        assert result.source == "rules"
        assert result.intents == ["greeting"]

    @pytest.mark.asyncio
    async def test_history_is_included_in_prompt(self):
        ai = FakeCompletionService({INTENT: '{"intents": ["question"], "confidence": 0.7}'})
        await IntentClassifier(ai).classify("and the second one?", "User: how do I export?")
        _, user = ai.calls[0]
        assert "User: how do I export?" in user
        assert "and the second one?" in user
