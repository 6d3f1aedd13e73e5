"""Trajectory logging.

All functions are pure: they take a ``TrajectoryLog`` and return a new one.
The log holds at most ``MAX_LOG_ENTRIES`` entries; older entries slide out
of the window while the running metrics keep counting.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime
import json

from ponder.domain.models.agent_state import ToolCall, ToolFailure, ToolSuccess, TokenCounts, utcnow
from ponder.domain.models.trajectory_log import (
    LogEntryType, TrajectoryLog, TrajectoryLogEntry, TrajectoryMetrics
)

MAX_LOG_ENTRIES = 200
SUMMARY_MAX_CHARS = 100
RULE = "=" * 60


def create_trajectory_log(request_id: str) -> TrajectoryLog:
    return TrajectoryLog(request_id=request_id)


def log_step(
    log: TrajectoryLog,
    step_number: int,
    entry_type: LogEntryType,
    content: str,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None,
) -> TrajectoryLog:
    """Append an entry, evicting the oldest beyond the cap, and refresh metrics"""

    entry = TrajectoryLogEntry(
        timestamp=timestamp or utcnow(),
        step_number=step_number,
        type=entry_type,
        content=content,
        metadata=metadata or {},
    )
    entries = (log.entries + [entry])[-MAX_LOG_ENTRIES:]

    metrics = log.metrics.model_copy(update={
        "total_steps": max(log.metrics.total_steps, step_number),
        "error_count": log.metrics.error_count + (1 if entry_type == LogEntryType.ERROR else 0),
        "duration_ms": _duration_ms(entries),
    })
    return log.model_copy(update={"entries": entries, "metrics": metrics})


def _duration_ms(entries: List[TrajectoryLogEntry]) -> float:
    if len(entries) < 2:
        return 0.0
    delta = (entries[-1].timestamp - entries[0].timestamp).total_seconds() * 1000
    return max(0.0, delta)


def log_thought(log: TrajectoryLog, step_number: int, thought: str) -> TrajectoryLog:
    return log_step(log, step_number, LogEntryType.THOUGHT, thought)


def log_tool_call(log: TrajectoryLog, step_number: int, tool_call: ToolCall) -> TrajectoryLog:
    return log_step(
        log,
        step_number,
        LogEntryType.TOOL_CALL,
        f"Tool: {tool_call.name}, Reasoning: {tool_call.reasoning}",
        {"tool_name": tool_call.name, "parameters": tool_call.parameters},
    )


def log_tool_result(log: TrajectoryLog, step_number: int, result: Any) -> TrajectoryLog:
    if isinstance(result, ToolSuccess):
        content = f"Success: {summarize_data(result.data)}"
    elif isinstance(result, ToolFailure):
        content = f"Error: {result.error}"
    else:
        raise TypeError(f"Unsupported tool result: {type(result).__name__}")

    return log_step(
        log,
        step_number,
        LogEntryType.TOOL_RESULT,
        content,
        {"success": result.success, "token_count": result.token_count},
    )


def log_observation(log: TrajectoryLog, step_number: int, observation: str) -> TrajectoryLog:
    return log_step(log, step_number, LogEntryType.OBSERVATION, observation)


def log_reflection(
    log: TrajectoryLog,
    step_number: int,
    reflection: str,
    trigger_condition: Optional[str] = None,
) -> TrajectoryLog:
    return log_step(
        log,
        step_number,
        LogEntryType.REFLECTION,
        reflection,
        {"trigger_condition": trigger_condition} if trigger_condition else None,
    )


def log_error(
    log: TrajectoryLog,
    step_number: int,
    error: str,
    context_state: Optional[Dict[str, Any]] = None,
) -> TrajectoryLog:
    return log_step(
        log,
        step_number,
        LogEntryType.ERROR,
        error,
        {"context_state": context_state} if context_state else None,
    )


def update_token_usage(log: TrajectoryLog, tokens: TokenCounts) -> TrajectoryLog:
    """Add tokens to the log's running total"""

    metrics = log.metrics.model_copy(update={"total_tokens": log.metrics.total_tokens.plus(tokens)})
    return log.model_copy(update={"metrics": metrics})


def calculate_efficiency(log: TrajectoryLog, optimal_steps: int) -> float:
    """optimal / actual steps clamped to [0, 1]; an empty run is perfectly efficient"""

    total = log.metrics.total_steps
    if total == 0:
        return 1.0
    return min(1.0, max(0.0, optimal_steps / total))


def set_optimal_steps(log: TrajectoryLog, optimal_steps: int) -> TrajectoryLog:
    metrics = log.metrics.model_copy(update={
        "optimal_steps": optimal_steps,
        "efficiency": calculate_efficiency(log, optimal_steps),
    })
    return log.model_copy(update={"metrics": metrics})


def export_log(log: TrajectoryLog) -> str:
    """Deterministic plain-text rendering of the log"""

    m = log.metrics
    lines = [
        RULE,
        f"TRAJECTORY LOG: {log.request_id}",
        RULE,
        "",
        "METRICS:",
        f"  Total Steps: {m.total_steps}",
        f"  Optimal Steps: {m.optimal_steps}",
        f"  Efficiency: {m.efficiency * 100:.1f}%",
        f"  Total Tokens: {m.total_tokens.input} in / {m.total_tokens.output} out",
        f"  Duration: {m.duration_ms:.0f}ms",
        f"  Errors: {m.error_count}",
        "",
        "ENTRIES:",
        "-" * 60,
    ]

    for entry in log.entries:
        lines.append(f"[{entry.timestamp.isoformat()}] Step {entry.step_number} - {entry.type.value.upper()}")
        lines.append(f"  {entry.content}")
        if entry.metadata:
            lines.append(f"  Metadata: {json.dumps(entry.metadata, sort_keys=True, default=str)}")
        lines.append("")

    lines.append(RULE)
    lines.append("END OF LOG")
    lines.append(RULE)
    return "\n".join(lines)


def export_log_as_json(log: TrajectoryLog) -> str:
    """Lossless structured export"""

    return log.model_dump_json(indent=2)


def get_entries_by_type(log: TrajectoryLog, entry_type: LogEntryType) -> List[TrajectoryLogEntry]:
    return [entry for entry in log.entries if entry.type == entry_type]


def get_entries_for_step(log: TrajectoryLog, step_number: int) -> List[TrajectoryLogEntry]:
    return [entry for entry in log.entries if entry.step_number == step_number]


def has_errors(log: TrajectoryLog) -> bool:
    return log.metrics.error_count > 0


def get_last_entry(log: TrajectoryLog) -> Optional[TrajectoryLogEntry]:
    return log.entries[-1] if log.entries else None


def summarize_data(data: Any) -> str:
    """Short description of a tool payload for log lines"""

    if data is None:
        return "null"
    if isinstance(data, str):
        if len(data) > SUMMARY_MAX_CHARS:
            return data[:SUMMARY_MAX_CHARS] + "..."
        return data
    if isinstance(data, (list, tuple)):
        return f"Array[{len(data)}]"
    if isinstance(data, dict):
        keys = list(data.keys())
        suffix = "..." if len(keys) > 3 else ""
        return "Object{" + ", ".join(str(k) for k in keys[:3]) + suffix + "}"
    return str(data)
