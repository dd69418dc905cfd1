"""
Intent Classifier — what is the customer trying to do?

Primary path: one AI call that returns {"intents": [...], "confidence": x}
over a fixed vocabulary. When the reply is not parseable JSON, or the AI
call fails outright, the message is classified by regex rules instead.
The rule path never touches the AI service, so classification always
terminates.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from core.llm import CompletionError, TextCompletionService, parse_json_reply
from models.schemas import IntentAnalysis

logger = structlog.get_logger()

INTENT_VOCABULARY = (
    "question",
    "complaint",
    "request_human",
    "greeting",
    "farewell",
    "technical_support",
    "billing",
    "product_inquiry",
    "feedback",
    "confirmation",
    "clarification",
    "status_check",
    "general_help",
)

RULE_CONFIDENCE = 0.6
RULE_DEFAULT_CONFIDENCE = 0.5

# Checked in order; a message may match several categories.
INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("request_human", re.compile(
        r"\b(human|real person|representative|agent|supervisor|manager|someone real)\b", re.I)),
    ("complaint", re.compile(
        r"\b(complain\w*|unacceptable|terrible|awful|frustrat\w*|angry|disappoint\w*|worst|ridiculous)\b",
        re.I)),
    ("billing", re.compile(
        r"\b(bill\w*|invoice|charge[ds]?|refund|payment|paid|pay|subscription|price|pricing|cost)\b",
        re.I)),
    ("technical_support", re.compile(
        r"\b(error|bug|crash\w*|broken|not working|doesn'?t work|won'?t (load|start|open)|install\w*|"
        r"login|log in|password|reset|setup|configure)\b", re.I)),
    ("status_check", re.compile(
        r"\b(status|track\w*|where is|when will|eta|update on|progress|shipped|delivery)\b", re.I)),
    ("product_inquiry", re.compile(
        r"\b(product|plan|feature|offer|available|availability|model|version|compare|difference)\b",
        re.I)),
    ("feedback", re.compile(r"\b(feedback|suggest\w*|review|rating|recommend)\b", re.I)),
    ("greeting", re.compile(r"^\s*(hi|hello|hey|good (morning|afternoon|evening)|greetings)\b", re.I)),
    ("farewell", re.compile(r"\b(bye|goodbye|see you|farewell|that'?s all)\b", re.I)),
    ("confirmation", re.compile(
        r"^\s*(yes|yeah|yep|sure|ok(ay)?|correct|confirmed?|sounds good|got it)\b", re.I)),
    ("clarification", re.compile(
        r"\b(what do you mean|clarify|don'?t understand|confused|explain)\b", re.I)),
    ("question", re.compile(r"\?\s*$|^\s*(what|how|why|when|where|who|which|can|could|do|does|is|are)\b",
                            re.I)),
]


def classify_by_rules(message: str) -> IntentAnalysis:
    """
    Deterministic regex classification over the same vocabulary.
    Pure function: no I/O, no AI.
    """
    intents = [name for name, pattern in INTENT_PATTERNS if pattern.search(message or "")]
    if not intents:
        return IntentAnalysis(
            intents=["general_help"], confidence=RULE_DEFAULT_CONFIDENCE, source="rules",
        )
    return IntentAnalysis(intents=intents[:3], confidence=RULE_CONFIDENCE, source="rules")


_SYSTEM_PROMPT = """You are an intent detection system. Analyze the user's message and identify their primary intents.

Allowed intents:
- question: asking for information
- complaint: expressing dissatisfaction
- request_human: wants to speak with a human
- greeting: greeting or starting the conversation
- farewell: saying goodbye or ending the conversation
- technical_support: needs technical help
- billing: billing or payment questions
- product_inquiry: asking about products or services
- feedback: giving feedback
- confirmation: confirming or acknowledging
- clarification: needs clarification
- status_check: checking on status or progress
- general_help: general assistance

Respond ONLY with a JSON object:
{"intents": ["primary_intent", "secondary_intent"], "confidence": 0.95, "explanation": "why"}

Only include intents you are confident about. Confidence is between 0 and 1."""


class IntentClassifier:

    def __init__(self, completion: TextCompletionService):
        self._completion = completion

    async def classify(self, message: str, history_text: Optional[str] = None) -> IntentAnalysis:
        user_prompt = (
            f"Conversation context:\n{history_text}\n\nLatest message: {message}"
            if history_text else f"User message: {message}"
        )
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _SYSTEM_PROMPT, user_prompt, max_tokens=200, temperature=0.0,
            )
        except CompletionError as e:
            logger.warning("intent_ai_unavailable", error=str(e))
            return classify_by_rules(message)

        try:
            data = parse_json_reply(reply.content)
            raw_intents = data.get("intents") or []
            confidence = float(data.get("confidence", 0.5))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("intent_reply_unparseable", error=str(e))
            return classify_by_rules(message)

        intents = [i for i in raw_intents if isinstance(i, str) and i in INTENT_VOCABULARY]
        if not intents:
            intents = ["general_help"]
        return IntentAnalysis(
            intents=intents, confidence=min(max(confidence, 0.0), 1.0), source="ai",
        )
