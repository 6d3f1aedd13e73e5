from typing import Any, Optional, Set, TYPE_CHECKING
from pydantic import BaseModel, Field
import asyncio
import math
import structlog

from ponder.config import AgentSettings
from ponder.domain.context.memory.episodic_memory import extract_error_type
from ponder.domain.errors import AgentRunError, AgentTimeoutError
from ponder.domain.models.agent_state import ToolCall, ToolFailure, ToolSuccess
from ponder.domain.tool.tool_definitions import SEARCH_TOOLS

if TYPE_CHECKING:
    from ponder.domain.orchestration.core.main_agent import AgentOrchestrator, RunContext, RunResult

logger = structlog.get_logger(__name__)

RETRYABLE_ERROR_TYPES = {"timeout", "rate_limit", "network_error"}

SEARCH_FAILURE_SIGNATURES = (
    "search unavailable",
    "search was unavailable",
    "search api",
    "search provider",
    "search quota",
    "search service",
)


class RunConfig(BaseModel):
    """Limits for one attempt of a run"""
    max_steps: int = Field(default=5, ge=1, description="Ceiling on the trajectory step number")
    max_retries: int = Field(default=3, ge=0)
    max_context_tokens: int = Field(default=128000, ge=1)
    language: str = "en"
    disabled_tools: Set[str] = Field(default_factory=set)
    degraded: bool = False
    attempt: int = Field(default=0, ge=0)

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "RunConfig":
        return cls(
            max_steps=settings.max_steps,
            max_retries=settings.max_retries,
            max_context_tokens=settings.max_context_tokens,
            language=settings.language,
        )


def classify_loop_error(error: BaseException) -> str:
    """Error type of a failure raised by the loop itself (no tool involved)"""

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    error_type = extract_error_type(str(error) or type(error).__name__)
    return error_type.split(":", 1)[0] if error_type.endswith(":unknown") else error_type


def has_search_signature(message: str) -> bool:
    lower = (message or "").lower()
    return any(signature in lower for signature in SEARCH_FAILURE_SIGNATURES)


def is_search_failure(tool_call: Optional[ToolCall], result: Any) -> bool:
    """True when a retrieval tool reports that search itself is out of service"""

    if tool_call is None or tool_call.name not in SEARCH_TOOLS:
        return False
    if isinstance(result, ToolFailure):
        return has_search_signature(result.error)
    if isinstance(result, ToolSuccess) and isinstance(result.data, dict):
        return bool(result.data.get("searchUnavailable"))
    return False


def degrade_config(config: RunConfig, steps_used: int, context_ratio: float) -> RunConfig:
    """Smaller context ceiling and fewer remaining steps for the next attempt.

    The step ceiling never rises above the current one; with no steps left
    the next attempt goes straight to synthesis.
    """

    remaining = max(1, config.max_steps - steps_used - 1)
    return config.model_copy(update={
        "max_steps": min(config.max_steps, steps_used + remaining),
        "max_context_tokens": max(1, math.floor(config.max_context_tokens * context_ratio)),
        "degraded": True,
        "attempt": config.attempt + 1,
    })


class DegradationPolicy:
    """Per-attempt timeout with a bounded number of degraded re-entries"""

    def __init__(
        self,
        timeout_seconds: float = 120.0,
        degraded_retries: int = 2,
        context_ratio: float = 0.5,
    ):
        self.timeout_seconds = timeout_seconds
        self.degraded_retries = degraded_retries
        self.context_ratio = context_ratio

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "DegradationPolicy":
        return cls(
            timeout_seconds=settings.run_timeout_seconds,
            degraded_retries=settings.degraded_retries,
            context_ratio=settings.degraded_context_ratio,
        )

    async def execute(self, orchestrator: "AgentOrchestrator", run: "RunContext") -> "RunResult":
        """Run the loop, re-entering in degraded mode on timeouts and transient failures.

        Raises ``AgentTimeoutError`` or ``AgentRunError`` carrying the best
        partial result once no attempts remain.
        """

        while True:
            try:
                return await asyncio.wait_for(orchestrator.execute(run), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                error_type = "timeout"
                message = f"Run attempt {run.config.attempt + 1} timed out after {self.timeout_seconds:g}s"
            except Exception as e:
                error_type = classify_loop_error(e)
                message = str(e) or type(e).__name__
                if has_search_signature(message):
                    run.disabled_tools.update(SEARCH_TOOLS)
                    logger.warning("Retrieval disabled for the rest of the run", session_id=run.session_id)
                elif error_type not in RETRYABLE_ERROR_TYPES and not run.cancel_token.cancelled:
                    orchestrator.record_error(run, message, {"error_type": error_type, "attempt": run.config.attempt})
                    partial = await orchestrator.fail(run, message)
                    raise AgentRunError(message, error_type=error_type, partial=partial) from e

            if run.cancel_token.cancelled:
                return await orchestrator.cancelled(run)

            orchestrator.record_error(run, message, {"error_type": error_type, "attempt": run.config.attempt})
            if run.config.attempt >= self.degraded_retries:
                partial = await orchestrator.fail(run, message)
                if error_type == "timeout":
                    raise AgentTimeoutError(message, partial=partial)
                raise AgentRunError(message, error_type=error_type, partial=partial)

            orchestrator.degrade(run, self.context_ratio)
            logger.warning(
                "Re-entering run in degraded mode",
                session_id=run.session_id,
                error_type=error_type,
                attempt=run.config.attempt,
                max_steps=run.config.max_steps,
                max_context_tokens=run.config.max_context_tokens,
            )
