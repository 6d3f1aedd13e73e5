import structlog
import logging
import sys
from typing import Dict, Any, Optional
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "ponder-agent"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_run_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_run_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy session and request ids bound for the current run onto every entry"""

    bound = structlog.contextvars.get_contextvars()
    for key in ("session_id", "request_id"):
        if key in bound and key not in event_dict:
            event_dict[key] = bound[key]
    return event_dict


def bind_run_context(session_id: str, request_id: Optional[str] = None) -> None:
    """Bind ids for log entries emitted by the current task"""

    structlog.contextvars.bind_contextvars(session_id=session_id)
    if request_id:
        structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_run_context() -> None:
    structlog.contextvars.unbind_contextvars("session_id", "request_id")


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_phase_transition(
        self,
        session_id: str,
        from_phase: str,
        to_phase: str,
        step_number: int,
        reason: Optional[str] = None
    ):
        """Log orchestration phase changes"""

        self.logger.info(
            "phase_transition",
            session_id=session_id,
            from_phase=from_phase,
            to_phase=to_phase,
            step_number=step_number,
            reason=reason
        )

    def log_tool_execution(
        self,
        tool_name: str,
        session_id: str,
        input_data: Dict[str, Any],
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            session_id=session_id,
            input_keys=sorted(input_data.keys()),
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_reflection(
        self,
        session_id: str,
        error_type: str,
        repeated: bool,
        error_count: int
    ):
        """Log stored reflections"""

        self.logger.info(
            "reflection_stored",
            session_id=session_id,
            error_type=error_type,
            repeated=repeated,
            error_count=error_count
        )

    def log_session_event(
        self,
        session_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log session lifecycle events"""

        self.logger.info(
            "session_event",
            session_id=session_id,
            action=action,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("ponder")
