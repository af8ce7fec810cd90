"""
Defines the core Pydantic data models for the application.

These models serve as the formal, validated data contract between the pillars
(inference, persistence, analytical queries, semantic search) and the
orchestrator that drives a chat turn.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal[USER_ROLE, ASSISTANT_ROLE]

VIZ_TYPES = ("table", "bar", "line", "pie")
VizType = Literal["table", "bar", "line", "pie"]

CHUNK = "chunk"
DONE = "done"
ERROR = "error"
EventKind = Literal[CHUNK, DONE, ERROR]

Intent = Literal["sql", "document", "both"]


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Conversation models ---
class ChatMessage(BaseModel):
    """A single persisted message. Assistant content keeps its command blocks."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    context_tables: Optional[List[str]] = None


class Conversation(BaseModel):
    """Conversation metadata, without its messages."""

    id: str = Field(default_factory=_new_id)
    project_id: str
    title: str = "New conversation"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ConversationWithMessages(Conversation):
    """A conversation together with its ordered messages."""

    messages: List[ChatMessage] = Field(default_factory=list)


# --- Command blocks and visualizations ---
class CommandBlock(BaseModel):
    """A query plus visualization hint embedded in model output."""

    sql: str
    viz: VizType = "table"
    x_key: Optional[str] = None
    y_key: Optional[str] = None


class Extraction(BaseModel):
    """Result of scanning text for command blocks."""

    blocks: List[CommandBlock] = Field(default_factory=list)
    clean_text: str = ""


class QueryResult(BaseModel):
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0


class VisualizationConfig(BaseModel):
    type: VizType = "table"
    x_key: Optional[str] = None
    y_key: Optional[str] = None


class VisualizationResult(BaseModel):
    """Outcome of executing one command block. Never persisted."""

    config: VisualizationConfig
    sql: str
    result: Optional[QueryResult] = None
    error: Optional[str] = None


# --- Schema context ---
class ColumnInfo(BaseModel):
    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False


class TableContext(BaseModel):
    name: str
    row_count: int = 0
    columns: List[ColumnInfo] = Field(default_factory=list)
    sample_rows: Optional[List[Dict[str, Any]]] = None


class ProjectContext(BaseModel):
    tables: List[TableContext] = Field(default_factory=list)


class TableInfo(BaseModel):
    name: str
    row_count: int = 0
    column_count: int = 0


# --- Semantic search hits ---
class SemanticSearchResult(BaseModel):
    row_id: int
    content: str
    similarity: float


class DocumentSearchResult(BaseModel):
    document_id: str
    document_name: str
    content: str
    similarity: float


# --- Streaming ---
class StreamEvent(BaseModel):
    """Tagged union emitted by an inference stream: chunk, done or error."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    content: str = ""
    error: Optional[str] = None

    @classmethod
    def chunk(cls, content: str) -> "StreamEvent":
        return cls(kind=CHUNK, content=content)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(kind=DONE)

    @classmethod
    def failure(cls, error: str) -> "StreamEvent":
        return cls(kind=ERROR, error=error)


class StreamingState(BaseModel):
    is_streaming: bool = False
    streaming_content: str = ""


# --- Orchestration ---
class IntentResult(BaseModel):
    intent: Intent
    confidence: float = Field(ge=0.0, le=1.0)


class TurnState(str, Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    SEARCHING = "searching"
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    EXECUTING_COMMANDS = "executing_commands"


class TurnResult(BaseModel):
    """What a single turn produced."""

    conversation_id: Optional[str] = None
    user_message: Optional[ChatMessage] = None
    assistant_message: Optional[ChatMessage] = None
    results: List[VisualizationResult] = Field(default_factory=list)
    intent: Optional[IntentResult] = None
    error: Optional[str] = None
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.stale
