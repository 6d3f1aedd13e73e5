from typing import Optional, Set
import asyncio
import time
import structlog

from ponder.domain.errors import RunCancelled
from ponder.domain.models.agent_state import ToolCall, ToolFailure
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.tool.tool_registry import ToolRegistry, as_tool_result
from ponder.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0


class ToolExecutor:
    """Runs validated tool calls; failures come back as values, never as exceptions"""

    def __init__(self, registry: ToolRegistry, default_timeout: float = DEFAULT_TOOL_TIMEOUT):
        self.registry = registry
        self.default_timeout = default_timeout

    async def execute_tool(
        self,
        tool_call: ToolCall,
        cancel_token: CancellationToken,
        session_id: str = "",
        exclude: Optional[Set[str]] = None,
    ):
        """Validate then run a tool call under the run's cancellation token.

        Only cancellation propagates (as ``RunCancelled``); validation errors,
        timeouts and handler exceptions become ``ToolFailure`` results.
        """

        cancel_token.raise_if_cancelled()
        validation = self.registry.validate_tool_call(tool_call, exclude)
        if not validation.valid:
            error = f"Validation failed: {'; '.join(validation.errors)}"
            agent_logger.log_tool_execution(tool_call.name, session_id, tool_call.parameters, success=False, error=error)
            return ToolFailure(error=error)

        tool = self.registry.get_tool(tool_call.name)
        timeout = tool.timeout_seconds or self.default_timeout
        started = time.monotonic()

        try:
            raw = await cancel_token.guard(
                asyncio.wait_for(tool.handler(tool_call.parameters, cancel_token), timeout=timeout)
            )
            result = as_tool_result(raw)
        except RunCancelled:
            raise
        except asyncio.TimeoutError:
            result = ToolFailure(error=f"Tool execution timeout after {timeout:g}s")
        except Exception as e:
            logger.warning("Tool handler raised", tool=tool_call.name, error=str(e))
            result = ToolFailure(error=str(e) or type(e).__name__)

        duration_ms = (time.monotonic() - started) * 1000
        agent_logger.log_tool_execution(
            tool_call.name,
            session_id,
            tool_call.parameters,
            duration_ms=duration_ms,
            success=result.success,
            error=None if result.success else result.error,
        )
        return result
