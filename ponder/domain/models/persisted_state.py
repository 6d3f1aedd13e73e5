from typing import List, Optional, Tuple
from pydantic import BaseModel, Field, model_validator
from collections import Counter
from datetime import datetime

from ponder.domain.models.agent_state import (
    AgentTrajectory, ContextEntry, GroundingSection, Reflection, TokenUsage
)

AGENT_STATE_VERSION = 1


class SerializedContext(BaseModel):
    """Context with reflections stored by id"""
    grounding: GroundingSection
    history: List[ContextEntry]
    reflection_ids: List[str]
    token_count: int = Field(ge=0)
    max_tokens: int = Field(ge=0)


class SerializedMemory(BaseModel):
    """Episodic memory with error counts as key/count pairs"""
    session_id: str
    reflections: List[Reflection]
    error_counts: List[Tuple[str, int]]

    @model_validator(mode="after")
    def counts_match_reflections(self) -> "SerializedMemory":
        """Each error type is counted once per stored reflection of that type"""

        counts = dict(self.error_counts)
        if len(counts) != len(self.error_counts):
            raise ValueError("duplicate error type in error_counts")
        if counts != dict(Counter(r.error_type for r in self.reflections)):
            raise ValueError("error_counts do not match stored reflections")
        return self


class PersistedAgentState(BaseModel):
    """Storage form of AgentState"""
    version: int
    session_id: str = Field(min_length=1)
    trajectory: Optional[AgentTrajectory] = None
    context: SerializedContext
    memory: SerializedMemory
    token_usage: TokenUsage
    timestamp: datetime
