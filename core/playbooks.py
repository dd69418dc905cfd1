"""
Playbook Matcher — choose the playbook that should drive the next reply.

Selection:
  1. Classify intents (IntentClassifier).
  2. Ask the AI to score every active playbook against the message and
     keep matches above the confidence floor; best score wins.
  3. No match → fall back to a general_help / default_welcome playbook
     at confidence 0.3.
  4. Stickiness: with a playbook already active and the winner below the
     switch threshold, stay on the current playbook. Escalation playbooks
     are exempt.

should_allow_switch() is the separate rule the Plan Builder applies when
a switch did happen: playbooks collecting required fields, and
non-interruptible kinds, keep control.
"""
from __future__ import annotations

import json
import structlog
from typing import Iterable, Optional

from core.intent import IntentClassifier
from core.llm import CompletionError, TextCompletionService, parse_json_reply
from database.store_base import PlaybookStore
from models.schemas import Playbook, PlaybookSelection, PlaybookStatusValue

logger = structlog.get_logger()

ESCALATION_TRIGGER = "human_escalation"
FALLBACK_TRIGGERS = ("general_help", "default_welcome")
FALLBACK_CONFIDENCE = 0.3
DEFAULT_NON_INTERRUPTIBLE_KINDS = frozenset({"intake", "onboarding"})

STICKY_REASONING = "Continuing with current playbook due to low confidence in alternative"


def should_allow_switch(
    current: Optional[Playbook],
    proposed: Optional[Playbook],
    non_interruptible_kinds: Iterable[str] = DEFAULT_NON_INTERRUPTIBLE_KINDS,
) -> bool:
    """May the conversation leave ``current`` for ``proposed``?"""
    if current is None:
        return True
    if proposed is not None and proposed.trigger == ESCALATION_TRIGGER:
        return True
    if current.required_fields:
        return False
    if current.kind and current.kind in set(non_interruptible_kinds):
        return False
    return True


_MATCH_SYSTEM_PROMPT = """You decide which support playbooks apply to a customer's message.

For each playbook, judge how well the message matches its trigger and description.
Only return playbooks that clearly match, with confidence above {floor}.
Generic greetings or small talk do not match specific playbooks.

Respond ONLY with JSON:
{{"matches": [{{"playbook_id": "...", "confidence": 0.0, "reasoning": "..."}}]}}
Return {{"matches": []}} when nothing matches."""


class PlaybookMatcher:

    def __init__(
        self,
        playbooks: PlaybookStore,
        intents: IntentClassifier,
        completion: TextCompletionService,
        confidence_floor: float = 0.7,
        switch_threshold: float = 0.6,
    ):
        self._playbooks = playbooks
        self._intents = intents
        self._completion = completion
        self.confidence_floor = confidence_floor
        self.switch_threshold = switch_threshold

    async def select_playbook(
        self,
        message: str,
        organization_id: str,
        history_text: Optional[str] = None,
        current_playbook_id: Optional[str] = None,
    ) -> PlaybookSelection:
        intent_analysis = await self._intents.classify(message, history_text)
        logger.debug("intents_detected", intents=intent_analysis.intents,
                     confidence=intent_analysis.confidence, source=intent_analysis.source)

        playbooks = await self._playbooks.get_playbooks(organization_id)
        active = [p for p in playbooks if p.status == PlaybookStatusValue.ACTIVE]
        if not active:
            logger.debug("no_active_playbooks", organization_id=organization_id)
            return PlaybookSelection(playbook=None, intent_analysis=intent_analysis, switched=False)

        by_id = {p.id: p for p in active}
        matches = await self._evaluate(message, active, history_text)

        selected: Optional[Playbook] = None
        confidence: Optional[float] = None
        reasoning: Optional[str] = None

        for match in matches:
            if match["playbook_id"] in by_id:
                selected = by_id[match["playbook_id"]]
                confidence = match["confidence"]
                reasoning = match.get("reasoning") or None
                break

        if selected is None:
            selected = next((p for p in active if p.trigger in FALLBACK_TRIGGERS), None)
            confidence = FALLBACK_CONFIDENCE if selected else 0.0
            reasoning = ("No specific match found, using fallback playbook"
                         if selected else "No matching playbook")

        current = by_id.get(current_playbook_id) if current_playbook_id else None
        escalating = selected is not None and selected.trigger == ESCALATION_TRIGGER
        if (current is not None and not escalating
                and (confidence or 0.0) < self.switch_threshold):
            logger.debug("playbook_kept_low_confidence", playbook_id=current.id,
                         alternative=selected.id if selected else None, confidence=confidence)
            selected = current
            reasoning = STICKY_REASONING

        switched = current_playbook_id != (selected.id if selected else None)
        if selected is not None:
            logger.info("playbook_selected", playbook_id=selected.id, title=selected.title,
                        switched=switched, confidence=confidence)

        return PlaybookSelection(
            playbook=selected,
            intent_analysis=intent_analysis,
            switched=switched,
            confidence=confidence,
            reasoning=reasoning,
        )

    async def _evaluate(
        self, message: str, playbooks: list[Playbook], history_text: Optional[str],
    ) -> list[dict]:
        """AI relevance scores above the floor, best first. Empty on any failure."""
        catalog = [
            {"id": p.id, "title": p.title, "trigger": p.trigger, "description": p.description}
            for p in playbooks
        ]
        user = (
            (f"Conversation context:\n{history_text}\n\n" if history_text else "")
            + f"Customer message: {message}\n\nPlaybooks:\n{json.dumps(catalog, indent=2)}"
        )
        try:
            reply = await self._completion.invoke_with_system_prompt(
                _MATCH_SYSTEM_PROMPT.format(floor=self.confidence_floor), user,
                max_tokens=500, temperature=0.0,
            )
            data = parse_json_reply(reply.content)
            raw = data.get("matches", []) if isinstance(data, dict) else []
        except CompletionError as e:
            logger.warning("playbook_evaluation_unavailable", error=str(e))
            return []
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("playbook_evaluation_unparseable", error=str(e))
            return []

        matches = []
        for item in raw:
            try:
                score = float(item.get("confidence", 0))
                playbook_id = str(item["playbook_id"])
            except (KeyError, TypeError, ValueError, AttributeError):
                continue
            if score > self.confidence_floor:
                matches.append({"playbook_id": playbook_id, "confidence": score,
                                "reasoning": item.get("reasoning", "")})
        matches.sort(key=lambda m: m["confidence"], reverse=True)
        return matches
