"""
Transcript helpers shared by the planner, executor, detectors and the
inactivity monitor.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import Message, MessageType

ENDER_PHRASES = (
    "is there anything else",
    "can i help with anything else",
    "anything else i can help",
)

_SPEAKERS = {
    MessageType.CUSTOMER: "User",
    MessageType.BOT_AGENT: "Assistant",
    MessageType.HUMAN_AGENT: "Agent",
}


def format_history(messages: list[Message]) -> str:
    """Customer / assistant / human-agent turns as ``Speaker: text`` lines."""
    lines = []
    for msg in messages:
        speaker = _SPEAKERS.get(msg.type)
        if speaker:
            lines.append(f"{speaker}: {msg.content}")
    return "\n".join(lines)


def last_of_type(messages: list[Message], type: MessageType) -> Optional[Message]:
    for msg in reversed(messages):
        if msg.type == type:
            return msg
    return None


def has_ender(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in ENDER_PHRASES)


def unprocessed_customer_messages(messages: list[Message]) -> list[Message]:
    """Customer messages that arrived after the last assistant reply."""
    pending: list[Message] = []
    for msg in messages:
        if msg.type == MessageType.BOT_AGENT:
            pending = []
        elif msg.type == MessageType.CUSTOMER:
            pending.append(msg)
    return pending
