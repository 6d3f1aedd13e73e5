from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


class AgentPhase(str, Enum):
    """Phase of the orchestration loop"""
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING = "executing"
    ANALYZING = "analyzing"
    REFLECTING = "reflecting"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


class TrajectoryStatus(str, Enum):
    """Lifecycle status of a trajectory; terminal once not running"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"


class StepType(str, Enum):
    """Kind of step recorded in a trajectory"""
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    REFLECTION = "reflection"
    SYNTHESIS = "synthesis"


class ContextEntryType(str, Enum):
    """Origin of a conversation history entry"""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    OBSERVATION = "observation"


class TokenCounts(BaseModel):
    """Input/output token pair"""
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input + self.output

    def plus(self, other: "TokenCounts") -> "TokenCounts":
        return TokenCounts(input=self.input + other.input, output=self.output + other.output)


class ToolCall(BaseModel):
    """A tool invocation proposed by the model"""
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""


class ToolSuccess(BaseModel):
    """Successful tool outcome"""
    status: Literal["success"] = "success"
    data: Any = None
    token_count: int = Field(default=0, ge=0)

    @property
    def success(self) -> bool:
        return True


class ToolFailure(BaseModel):
    """Failed tool outcome; never raised past the tool boundary"""
    status: Literal["failure"] = "failure"
    error: str
    token_count: int = Field(default=0, ge=0)

    @property
    def success(self) -> bool:
        return False


ToolResult = Annotated[Union[ToolSuccess, ToolFailure], Field(discriminator="status")]


class AgentStep(BaseModel):
    """One recorded step of a trajectory"""
    step_number: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    type: StepType
    content: str
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResult] = None
    token_count: int = Field(default=0, ge=0)


class AgentTrajectory(BaseModel):
    """Ordered record of one goal-directed run"""
    request_id: str
    goal: str
    steps: List[AgentStep] = Field(default_factory=list)
    status: TrajectoryStatus = Field(default=TrajectoryStatus.RUNNING)
    total_tokens: TokenCounts = Field(default_factory=TokenCounts)
    efficiency: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    @property
    def is_terminal(self) -> bool:
        return self.status != TrajectoryStatus.RUNNING

    def add_step(self, step: AgentStep) -> None:
        """Append a step"""

        self.steps.append(step)

    def finish(self, status: TrajectoryStatus) -> None:
        """Move to a terminal status; a terminal trajectory never changes status again"""

        if not self.is_terminal:
            self.status = status


class GroundingSection(BaseModel):
    """Durable facts re-injected at the head of every prompt"""
    current_goal: str = ""
    completed_subtasks: List[str] = Field(default_factory=list)
    key_decisions: List[str] = Field(default_factory=list)
    user_preferences: Dict[str, str] = Field(default_factory=dict)


class ContextEntry(BaseModel):
    """Conversation history entry"""
    type: ContextEntryType
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    token_count: int = Field(default=0, ge=0)
    compacted: bool = False


class Reflection(BaseModel):
    """Structured analysis of a failed action"""
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    error_type: str
    failed_action: ToolCall
    analysis: str
    suggested_fix: str
    applied: bool = False


class AgentContext(BaseModel):
    """Working context assembled into prompts"""
    grounding: GroundingSection = Field(default_factory=GroundingSection)
    history: List[ContextEntry] = Field(default_factory=list)
    reflections: List[Reflection] = Field(default_factory=list)
    token_count: int = Field(default=0, ge=0)
    max_tokens: int = Field(default=128000, ge=0)


class EpisodicMemory(BaseModel):
    """Per-session store of reflections and error-type counts"""
    session_id: str
    reflections: List[Reflection] = Field(default_factory=list)
    error_counts: Dict[str, int] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    """Token accounting against a session budget"""
    session_total: TokenCounts = Field(default_factory=TokenCounts)
    current_operation: TokenCounts = Field(default_factory=TokenCounts)
    budget: int = Field(default=100000, ge=0)
    warning_threshold: int = Field(default=80000, ge=0)


class AgentState(BaseModel):
    """Complete resumable state of one session"""
    session_id: str = Field(min_length=1)
    trajectory: Optional[AgentTrajectory] = None
    context: AgentContext = Field(default_factory=AgentContext)
    memory: EpisodicMemory
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    last_updated: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        """Mark state as modified"""

        self.last_updated = utcnow()


class AgentStatus(BaseModel):
    """Status payload emitted to the status sink after every phase"""
    session_id: str
    phase: AgentPhase
    step_number: int = Field(default=0, ge=0)
    max_steps: int = Field(default=0, ge=0)
    token_usage: TokenCounts = Field(default_factory=TokenCounts)
    current_tool: Optional[str] = None
