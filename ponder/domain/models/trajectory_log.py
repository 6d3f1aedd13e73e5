from typing import Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from ponder.domain.models.agent_state import TokenCounts, utcnow


class LogEntryType(str, Enum):
    """Kinds of trajectory log entries"""
    THOUGHT = "thought"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    OBSERVATION = "observation"
    REFLECTION = "reflection"
    ERROR = "error"


class TrajectoryLogEntry(BaseModel):
    """A single observability record"""
    timestamp: datetime = Field(default_factory=utcnow)
    step_number: int = Field(ge=0)
    type: LogEntryType
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TrajectoryMetrics(BaseModel):
    """Aggregates maintained alongside the entries"""
    total_steps: int = Field(default=0, ge=0)
    optimal_steps: int = Field(default=0, ge=0)
    efficiency: float = Field(default=1.0, ge=0.0, le=1.0)
    total_tokens: TokenCounts = Field(default_factory=TokenCounts)
    duration_ms: float = Field(default=0.0, ge=0.0)
    error_count: int = Field(default=0, ge=0)


class TrajectoryLog(BaseModel):
    """Bounded, append-only log of one run"""
    request_id: str
    entries: List[TrajectoryLogEntry] = Field(default_factory=list)
    metrics: TrajectoryMetrics = Field(default_factory=TrajectoryMetrics)
