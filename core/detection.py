"""
Closure / escalation detection as an ordered strategy chain.

Each detector implements ``detect(message, context)`` and returns either a
DetectionOutcome (conclusive) or None (inconclusive, ask the next one).
The chain stops at the first conclusive answer; an exhausted chain means
"continue the conversation".

Default order:
  1. PatternDetector        strong closure / escalation phrases, no AI
  2. AIClosureDetector      one AI classification for ambiguous messages
  3. EnderFallbackDetector  short "no / all good" replies to an
                            "anything else?" question; only reached when
                            the AI tier was inconclusive
"""
from __future__ import annotations

import abc
import re
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from core.llm import CompletionError, TextCompletionService
from models.schemas import Message, MessageType
from utils.transcript import format_history, has_ender

logger = structlog.get_logger()


class DetectionAction(str, Enum):
    CLOSE = "close"
    ESCALATE = "escalate"
    CONTINUE = "continue"


@dataclass
class DetectionOutcome:
    action: DetectionAction
    reason: str = ""
    detector: str = ""


@dataclass
class DetectionContext:
    recent_messages: list[Message] = field(default_factory=list)

    @property
    def history_text(self) -> str:
        return format_history(self.recent_messages[-5:])


class Detector(abc.ABC):
    name = "detector"

    @abc.abstractmethod
    async def detect(self, message: str, context: DetectionContext) -> Optional[DetectionOutcome]:
        ...


# ──────────────────────────────────────────────────────────────
#  Tier 1: patterns
# ──────────────────────────────────────────────────────────────

STRONG_CLOSURE_PATTERNS = [
    re.compile(r"^(bye|goodbye|see you|farewell)$", re.I),
    re.compile(r"^(thanks|thank you)[,.]?\s*(bye|goodbye)?$", re.I),
    re.compile(r"^that'?s all\s*(thanks|thank you|for now)?$", re.I),
    re.compile(r"^no\s+(thanks|need).*$", re.I),
    re.compile(r"^i'?m\s+(done|finished|satisfied)$", re.I),
    re.compile(r"^(problem|issue)\s+(solved|resolved)$", re.I),
    re.compile(r"^(perfect|great|excellent)\s*(thanks)?$", re.I),
]
POSITIVE_CLOSURE_PATTERNS = [
    re.compile(r"^(thanks|thank you)", re.I),
    re.compile(r"^(problem|issue)\s+(solved|resolved)", re.I),
    re.compile(r"^(perfect|great|excellent)", re.I),
    re.compile(r"^(all good|all set)", re.I),
]
ESCALATION_PATTERNS = [
    re.compile(r"(talk|speak).*(person|human|representative|agent)", re.I),
    re.compile(r"\b(need|want)\b.*\b(human|person|real person)\b", re.I),
    re.compile(r"didn'?t help", re.I),
    re.compile(r"frustrated", re.I),
    re.compile(r"transfer.*(human|person|agent)", re.I),
    re.compile(r"\b(supervisor|manager)\b", re.I),
]


def _normalize(message: str) -> str:
    return re.sub(r"[!.?]+$", "", (message or "").strip().lower()).strip()


class PatternDetector(Detector):
    name = "patterns"

    async def detect(self, message: str, context: DetectionContext) -> Optional[DetectionOutcome]:
        normalized = _normalize(message)
        if any(p.match(normalized) for p in STRONG_CLOSURE_PATTERNS):
            positive = any(p.match(normalized) for p in POSITIVE_CLOSURE_PATTERNS)
            reason = "customer_satisfied" if positive else "user_indicated_completion"
            return DetectionOutcome(DetectionAction.CLOSE, reason, self.name)
        if any(p.search(normalized) for p in ESCALATION_PATTERNS):
            return DetectionOutcome(DetectionAction.ESCALATE, "user_requested_escalation", self.name)
        return None


# ──────────────────────────────────────────────────────────────
#  Tier 2: AI classification
# ──────────────────────────────────────────────────────────────

_AI_SYSTEM_PROMPT = """You are an intent detection system. Using the user's message and the conversation context, decide whether:
1. The user wants to END the conversation (satisfied, done, saying goodbye)
2. The user wants to ESCALATE to a human (frustrated, asking for human help)
3. The user wants to CONTINUE the conversation (more questions, needs more help)

If the user is ending the conversation, also decide whether they are SATISFIED (problem solved, thanking) or UNSATISFIED (giving up, not helped).

Respond with ONLY one of:
CLOSE_SATISFIED
CLOSE_UNSATISFIED
ESCALATE
CONTINUE"""

_AI_VERDICTS = {
    "CLOSE_SATISFIED": (DetectionAction.CLOSE, "customer_satisfied"),
    "CLOSE_UNSATISFIED": (DetectionAction.CLOSE, "customer_unsatisfied"),
    "CLOSE": (DetectionAction.CLOSE, "ai_detected_completion_intent"),
    "ESCALATE": (DetectionAction.ESCALATE, "user_requested_escalation"),
    "CONTINUE": (DetectionAction.CONTINUE, ""),
}


class AIClosureDetector(Detector):
    name = "ai"

    def __init__(self, completion: TextCompletionService):
        self._completion = completion

    async def detect(self, message: str, context: DetectionContext) -> Optional[DetectionOutcome]:
        user = (
            f"Conversation context:\n{context.history_text}\n\n"
            f'Latest user message: "{message}"\n\nWhat is the user\'s intent?'
        )
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _AI_SYSTEM_PROMPT, user, max_tokens=10, temperature=0.0,
            )
        except CompletionError as e:
            logger.warning("closure_ai_unavailable", error=str(e))
            return None

        verdict = re.sub(r"[^A-Z_]", "", reply.content.strip().upper())
        action, reason = _AI_VERDICTS.get(verdict, (DetectionAction.CONTINUE, ""))
        if verdict not in _AI_VERDICTS:
            logger.debug("closure_ai_unrecognized", reply=reply.content[:50])
        return DetectionOutcome(action, reason, self.name)


# ──────────────────────────────────────────────────────────────
#  Tier 3: rule fallback after an "anything else?" question
# ──────────────────────────────────────────────────────────────

ENDER_REPLY_PATTERNS = [
    re.compile(r"^(no|nope|n)$", re.I),
    re.compile(r"^no\s*(thanks|thank you)?$", re.I),
    re.compile(r"^(all good|all set)$", re.I),
    re.compile(r"^(nothing else|that'?s it)$", re.I),
    re.compile(r"^i'?m good$", re.I),
]


class EnderFallbackDetector(Detector):
    name = "ender_fallback"

    async def detect(self, message: str, context: DetectionContext) -> Optional[DetectionOutcome]:
        asked = any(
            m.type == MessageType.BOT_AGENT and has_ender(m.content)
            for m in context.recent_messages
        )
        if asked and any(p.match(_normalize(message)) for p in ENDER_REPLY_PATTERNS):
            return DetectionOutcome(DetectionAction.CLOSE, "user_indicated_completion", self.name)
        return None


# ──────────────────────────────────────────────────────────────
#  Chain
# ──────────────────────────────────────────────────────────────

class DetectionChain:

    def __init__(self, detectors: list[Detector]):
        self.detectors = list(detectors)

    async def detect(self, message: str, context: DetectionContext) -> DetectionOutcome:
        for detector in self.detectors:
            outcome = await detector.detect(message, context)
            if outcome is not None:
                if outcome.action != DetectionAction.CONTINUE:
                    logger.info("conversation_signal_detected", detector=detector.name,
                                action=outcome.action.value, reason=outcome.reason)
                return outcome
        return DetectionOutcome(DetectionAction.CONTINUE, "", "chain")


def default_chain(completion: TextCompletionService) -> DetectionChain:
    return DetectionChain([
        PatternDetector(),
        AIClosureDetector(completion),
        EnderFallbackDetector(),
    ])
