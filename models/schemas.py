"""
Core data models for the support orchestrator.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ConversationStatus(str, Enum):
    OPEN = "open"
    PROCESSING = "processing"
    PENDING_HUMAN = "pending-human"
    HUMAN_TOOK_OVER = "human-took-over"
    RESOLVED = "resolved"
    CLOSED = "closed"


class MessageType(str, Enum):
    CUSTOMER = "customer"
    BOT_AGENT = "bot-agent"
    HUMAN_AGENT = "human-agent"
    SYSTEM = "system"
    TOOL_CALL = "tool-call"
    TOOL_RESPONSE = "tool-response"


class OrchestrationState(str, Enum):
    WAITING_FOR_USER = "waiting_for_user"
    PROCESSING = "processing"
    ANALYZING_INTENT = "analyzing_intent"
    SEARCHING_DOCUMENTS = "searching_documents"
    EXECUTING_PLAYBOOK = "executing_playbook"
    COOLDOWN = "cooldown"
    ERROR = "error"


class ExecutionPath(str, Enum):
    DOCUMENT_QA = "document-qa"
    PLAYBOOK = "playbook"


class LockResult(str, Enum):
    GRANTED = "granted"
    ALREADY_LOCKED = "already_locked"
    COOLDOWN = "cooldown"


class ContextKind(str, Enum):
    AGENTS = "agents"
    PLAYBOOKS = "playbooks"
    DOCUMENTS = "documents"
    TOOLS = "tools"


# ──────────────────────────────────────────────────────────────
#  Message metadata — one tagged variant per message purpose
# ──────────────────────────────────────────────────────────────

class ContextAddedMetadata(BaseModel):
    """System message announcing newly injected context."""
    kind: Literal["context_added"] = "context_added"
    context_type: ContextKind
    ids: list[str] = []


class ToolCallMetadata(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    tool_name: str
    arguments: dict[str, Any] = {}


class ToolResponseMetadata(BaseModel):
    kind: Literal["tool_response"] = "tool_response"
    tool_name: str
    success: bool = True
    result: Any = None


class ClosureMetadata(BaseModel):
    kind: Literal["closure"] = "closure"
    reason: str
    inactivity_duration_ms: Optional[int] = None


class EscalationMetadata(BaseModel):
    kind: Literal["escalation"] = "escalation"
    reason: str


class ReminderMetadata(BaseModel):
    kind: Literal["reminder"] = "reminder"
    is_reminder: bool = True
    reason: str = "inactivity_check"


class AssistantReplyMetadata(BaseModel):
    """Bookkeeping attached to every AI-generated reply."""
    kind: Literal["assistant_reply"] = "assistant_reply"
    path: ExecutionPath
    playbook_id: Optional[str] = None
    model: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    latency_ms: int = 0
    confidence: Optional[float] = None


class ErrorMetadata(BaseModel):
    kind: Literal["error"] = "error"
    error: str


MessageMetadata = Annotated[
    Union[
        ContextAddedMetadata,
        ToolCallMetadata,
        ToolResponseMetadata,
        ClosureMetadata,
        EscalationMetadata,
        ReminderMetadata,
        AssistantReplyMetadata,
        ErrorMetadata,
    ],
    Field(discriminator="kind"),
]


# ──────────────────────────────────────────────────────────────
#  Message — a single immutable entry in a conversation
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    conversation_id: str
    type: MessageType
    content: str
    metadata: Optional[MessageMetadata] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_reminder(self) -> bool:
        return isinstance(self.metadata, ReminderMetadata) and self.metadata.is_reminder


# ──────────────────────────────────────────────────────────────
#  Orchestration status — fully replaced on every update
# ──────────────────────────────────────────────────────────────

class ContextTracking(BaseModel):
    """Dedup sets for injected briefings. Append-only within a context epoch."""
    agents: list[str] = []
    playbooks: list[str] = []
    documents: list[str] = []
    tools: list[str] = []
    last_context_update: Optional[datetime] = None

    def ids(self, kind: ContextKind) -> list[str]:
        return getattr(self, kind.value)


class PlaybookStatus(BaseModel):
    id: str
    title: str
    selection_confidence: Optional[float] = None
    selection_reasoning: Optional[str] = None


class DocumentUsed(BaseModel):
    id: str
    title: str = ""
    relevance_score: float = 0.0


class IntentAnalysis(BaseModel):
    intents: list[str] = []
    confidence: float = 0.0
    source: str = "ai"                         # "ai" | "rules"


class ProcessingDetails(BaseModel):
    worker_token: Optional[str] = None
    locked_until: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    started_at: Optional[datetime] = None
    path: Optional[ExecutionPath] = None
    error: Optional[str] = None


class OrchestrationStatus(BaseModel):
    state: OrchestrationState = OrchestrationState.WAITING_FOR_USER
    current_playbook: Optional[PlaybookStatus] = None
    documents_used: Optional[list[DocumentUsed]] = None
    intent_analysis: Optional[IntentAnalysis] = None
    processing_details: Optional[ProcessingDetails] = None
    context_tracking: ContextTracking = Field(default_factory=ContextTracking)
    last_updated: datetime = Field(default_factory=utcnow)


class ResolutionMetadata(BaseModel):
    resolved: bool
    confidence: float
    reason: str


# ──────────────────────────────────────────────────────────────
#  Conversation — the single shared mutable record
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    organization_id: str
    title: str = "New Conversation"
    status: ConversationStatus = ConversationStatus.OPEN
    agent_id: Optional[str] = None
    playbook_id: Optional[str] = None
    processing_locked_until: Optional[datetime] = None
    processing_locked_by: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    needs_processing: bool = False
    last_processed_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    orchestration_status: OrchestrationStatus = Field(default_factory=OrchestrationStatus)
    resolution_metadata: Optional[ResolutionMetadata] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Playbook / Agent — externally owned, read-only to the engine
# ──────────────────────────────────────────────────────────────

class PlaybookStatusValue(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class ToolSchema(BaseModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = {}


class Playbook(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    organization_id: str
    title: str
    trigger: str = ""
    description: str = ""
    instructions: str = ""
    kind: Optional[str] = None                 # e.g. "intake", "onboarding"
    required_fields: list[str] = []
    tools: list[ToolSchema] = []
    status: PlaybookStatusValue = PlaybookStatusValue.ACTIVE


class Agent(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    organization_id: str
    name: str
    description: str = ""
    instructions: str = ""
    tone: str = ""
    avoid: str = ""
    trigger: str = ""
    enabled: bool = True


# ──────────────────────────────────────────────────────────────
#  Pipeline values
# ──────────────────────────────────────────────────────────────

class SearchResult(BaseModel):
    id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = {}


class PlaybookSelection(BaseModel):
    playbook: Optional[Playbook] = None
    intent_analysis: IntentAnalysis
    switched: bool = False
    confidence: Optional[float] = None
    reasoning: Optional[str] = None


class OrchestrationPlan(BaseModel):
    path: ExecutionPath
    agent_id: str
    playbook_id: Optional[str] = None
    intent_analysis: Optional[IntentAnalysis] = None


class ExecutionResult(BaseModel):
    content: str
    path: ExecutionPath
    playbook_id: Optional[str] = None
    documents_used: list[DocumentUsed] = []
    model: Optional[str] = None
    usage: dict[str, int] = {}
    latency_ms: int = 0
    error: Optional[str] = None                # set when the content is a fallback

    @property
    def degraded(self) -> bool:
        return self.error is not None
