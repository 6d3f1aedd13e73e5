"""Episodic memory of failed actions.

Reflections are stored per session together with a count per error type.
Functions here never mutate their inputs; each returns a new
``EpisodicMemory``.
"""
from typing import Any, Dict, List, Optional
import json
import re

from ponder.domain.models.agent_state import EpisodicMemory, Reflection, ToolCall

REPEATED_ERROR_THRESHOLD = 2

_WHITESPACE = re.compile(r"\s+")

# (substrings, error type template); first match wins
_ERROR_PATTERNS = [
    (("timeout", "timed out"), "timeout:{tool}"),
    (("rate limit", "rate_limit"), "rate_limit"),
    (("invalid", "validation"), "validation:{tool}"),
    (("not found", "404"), "not_found:{tool}"),
    (("unauthorized", "401"), "unauthorized"),
    (("forbidden", "403"), "forbidden"),
    (("network", "connection"), "network_error"),
]


def create_episodic_memory(session_id: str) -> EpisodicMemory:
    return EpisodicMemory(session_id=session_id)


def extract_error_type(error_message: str, failed_action: Optional[ToolCall] = None) -> str:
    """Map an error message onto the error-type taxonomy"""

    message = (error_message or "").lower()
    tool = failed_action.name if failed_action else "unknown"
    for needles, template in _ERROR_PATTERNS:
        if any(needle in message for needle in needles):
            return template.format(tool=tool)
    return f"error:{tool}"


def store_reflection(memory: EpisodicMemory, reflection: Reflection) -> EpisodicMemory:
    """Append a reflection and bump its error-type count"""

    counts = dict(memory.error_counts)
    counts[reflection.error_type] = counts.get(reflection.error_type, 0) + 1
    return memory.model_copy(update={
        "reflections": memory.reflections + [reflection],
        "error_counts": counts,
    })


def get_error_count(error_type: str, memory: EpisodicMemory) -> int:
    return memory.error_counts.get(error_type, 0)


def is_repeated_error(error_type: str, memory: EpisodicMemory) -> bool:
    """True once the error type has been seen at least twice"""

    return get_error_count(error_type, memory) >= REPEATED_ERROR_THRESHOLD


def normalize_value(value: Any) -> Any:
    """Canonical form used for fuzzy parameter equality"""

    if isinstance(value, str):
        return _WHITESPACE.sub(" ", value).strip().lower()
    if isinstance(value, dict):
        return json.dumps(
            {str(k): normalize_value(v) for k, v in value.items()},
            sort_keys=True,
            default=str,
        )
    if isinstance(value, (list, tuple)):
        return json.dumps([normalize_value(v) for v in value], sort_keys=True, default=str)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    return value


def params_match(candidate: Dict[str, Any], stored: Dict[str, Any]) -> bool:
    """At least one shared parameter whose values are fuzzily equal"""

    for key in candidate.keys() & stored.keys():
        if normalize_value(candidate[key]) == normalize_value(stored[key]):
            return True
    return False


def get_relevant_reflections(candidate: ToolCall, memory: EpisodicMemory) -> List[Reflection]:
    """Reflections for the same tool or overlapping parameters"""

    return [
        reflection
        for reflection in memory.reflections
        if reflection.failed_action.name == candidate.name
        or params_match(candidate.parameters, reflection.failed_action.parameters)
    ]


def format_reflections_for_context(reflections: List[Reflection]) -> str:
    """Render reflections as a delimited prompt block; empty input renders nothing"""

    if not reflections:
        return ""

    blocks = []
    for i, reflection in enumerate(reflections, start=1):
        blocks.append("\n".join([
            f"[Previous Failure {i}]",
            f"Tool: {reflection.failed_action.name}",
            f"Error Type: {reflection.error_type}",
            f"Analysis: {reflection.analysis}",
            f"Suggested Fix: {reflection.suggested_fix}",
        ]))
    return "<previous_failures>\n" + "\n\n".join(blocks) + "\n</previous_failures>"


def mark_reflection_applied(memory: EpisodicMemory, reflection_id: str) -> EpisodicMemory:
    reflections = [
        r.model_copy(update={"applied": True}) if r.id == reflection_id else r
        for r in memory.reflections
    ]
    return memory.model_copy(update={"reflections": reflections})


def get_unapplied_reflections(memory: EpisodicMemory) -> List[Reflection]:
    return [r for r in memory.reflections if not r.applied]


def clear_reflections(memory: EpisodicMemory) -> EpisodicMemory:
    return EpisodicMemory(session_id=memory.session_id)


def get_memory_summary(memory: EpisodicMemory) -> str:
    """One-paragraph overview of what has gone wrong so far"""

    if not memory.reflections:
        return "No previous failures recorded."

    ranked = sorted(memory.error_counts.items(), key=lambda item: (-item[1], item[0]))
    error_list = ", ".join(f"{error_type} ({count}x)" for error_type, count in ranked)
    unapplied = len(get_unapplied_reflections(memory))
    return (
        f"{len(memory.reflections)} failures recorded. "
        f"Error types: {error_list}. "
        f"{unapplied} reflections not yet applied."
    )
