from typing import Any, Dict, List, Optional
import structlog

from ponder.domain.context.memory.episodic_memory import format_reflections_for_context
from ponder.domain.models.agent_state import (
    AgentContext, ContextEntry, ContextEntryType, GroundingSection, Reflection
)
from ponder.infrastructure.tokenizer import TokenCounter, count_tokens

logger = structlog.get_logger(__name__)

COMPACTION_THRESHOLD = 0.8
COMPACTED_PREVIEW_CHARS = 160


class ContextBuilder:
    """Assembles and bounds the working context that goes into every prompt.

    Context values are treated as immutable: every method returns a new
    ``AgentContext``. ``token_count`` always equals the grounding tokens plus
    the counted tokens of every history entry and attached reflection.
    """

    def __init__(self, token_counter: Optional[TokenCounter] = None):
        self.count_tokens = token_counter or count_tokens

    def create_context(self, goal: str, max_tokens: int = 128000) -> AgentContext:
        """Fresh context grounded on a goal"""

        context = AgentContext(
            grounding=GroundingSection(current_goal=goal),
            max_tokens=max_tokens,
        )
        return self._recount(context)

    def create_entry(self, entry_type: ContextEntryType, content: str) -> ContextEntry:
        """History entry with its token cost measured"""

        return ContextEntry(type=entry_type, content=content, token_count=self.count_tokens(content))

    def add_entry(self, context: AgentContext, entry: ContextEntry) -> AgentContext:
        """Append an entry, compacting the oldest entries if the ceiling would be exceeded"""

        updated = self._recount(context.model_copy(update={"history": context.history + [entry]}))
        if updated.token_count > updated.max_tokens:
            updated = self._compact(updated, keep_last=1)
        return updated

    def add_message(self, context: AgentContext, entry_type: ContextEntryType, content: str) -> AgentContext:
        return self.add_entry(context, self.create_entry(entry_type, content))

    def attach_reflections(self, context: AgentContext, reflections: List[Reflection]) -> AgentContext:
        """Attach reflections not already present"""

        known = {r.id for r in context.reflections}
        fresh = [r for r in reflections if r.id not in known]
        if not fresh:
            return context
        return self._recount(context.model_copy(update={"reflections": context.reflections + fresh}))

    def set_goal(self, context: AgentContext, goal: str) -> AgentContext:
        """Re-ground an existing context on a new goal"""

        grounding = context.grounding.model_copy(update={"current_goal": goal})
        return self._recount(context.model_copy(update={"grounding": grounding}))

    def mark_subtask_complete(self, context: AgentContext, subtask: str) -> AgentContext:
        grounding = context.grounding.model_copy(update={
            "completed_subtasks": context.grounding.completed_subtasks + [subtask],
        })
        return self._recount(context.model_copy(update={"grounding": grounding}))

    def record_key_decision(self, context: AgentContext, decision: str) -> AgentContext:
        grounding = context.grounding.model_copy(update={
            "key_decisions": context.grounding.key_decisions + [decision],
        })
        return self._recount(context.model_copy(update={"grounding": grounding}))

    def set_user_preference(self, context: AgentContext, key: str, value: str) -> AgentContext:
        preferences = dict(context.grounding.user_preferences)
        preferences[key] = value
        grounding = context.grounding.model_copy(update={"user_preferences": preferences})
        return self._recount(context.model_copy(update={"grounding": grounding}))

    def resize(self, context: AgentContext, max_tokens: int) -> AgentContext:
        """Apply a new ceiling, compacting as needed"""

        updated = context.model_copy(update={"max_tokens": max_tokens})
        if updated.token_count > max_tokens:
            updated = self._compact(updated, keep_last=0)
        return updated

    def needs_compaction(self, context: AgentContext) -> bool:
        return context.token_count >= context.max_tokens * COMPACTION_THRESHOLD

    def get_context_utilization(self, context: AgentContext) -> float:
        if context.max_tokens == 0:
            return 1.0
        return context.token_count / context.max_tokens

    def grounding_tokens(self, grounding: GroundingSection) -> int:
        return self.count_tokens(serialize_grounding(grounding))

    def _recount(self, context: AgentContext) -> AgentContext:
        total = self.grounding_tokens(context.grounding)
        total += sum(entry.token_count for entry in context.history)
        total += sum(self._reflection_tokens(r) for r in context.reflections)
        return context.model_copy(update={"token_count": total})

    def _reflection_tokens(self, reflection: Reflection) -> int:
        return self.count_tokens(reflection.analysis + reflection.suggested_fix)

    def _compact(self, context: AgentContext, keep_last: int) -> AgentContext:
        """Shrink the oldest uncompacted entries until the context fits"""

        history = list(context.history)
        candidates = len(history) - keep_last
        total = context.token_count
        compacted = 0

        for index in range(max(0, candidates)):
            if total <= context.max_tokens:
                break
            entry = history[index]
            if entry.compacted:
                continue
            reduced = min(entry.token_count, self.count_tokens(compact_preview(entry.content)))
            total -= entry.token_count - reduced
            history[index] = entry.model_copy(update={"compacted": True, "token_count": reduced})
            compacted += 1

        if compacted:
            logger.info(
                "Context compacted",
                entries=compacted,
                token_count=total,
                max_tokens=context.max_tokens,
            )
        return self._recount(context.model_copy(update={"history": history}))

    def render(self, context: AgentContext, include_reflections: bool = True) -> str:
        """Prompt serialization of the full context"""

        sections = [serialize_grounding(context.grounding)]

        if context.history:
            lines = ["<conversation_history>"]
            for entry in context.history:
                if entry.compacted:
                    lines.append(f"[{entry.type.value} - compacted] {compact_preview(entry.content)}")
                else:
                    lines.append(f"[{entry.type.value}] {entry.content}")
            lines.append("</conversation_history>")
            sections.append("\n".join(lines))

        if include_reflections:
            block = format_reflections_for_context(context.reflections)
            if block:
                sections.append(block)

        return "\n\n".join(sections)

    def get_context_summary(self, context: AgentContext) -> Dict[str, Any]:
        """Counters for status reporting"""

        return {
            "goal": context.grounding.current_goal,
            "history_entries": len(context.history),
            "compacted_entries": sum(1 for e in context.history if e.compacted),
            "reflections": len(context.reflections),
            "token_count": context.token_count,
            "max_tokens": context.max_tokens,
            "utilization": round(self.get_context_utilization(context), 3),
            "needs_compaction": self.needs_compaction(context),
        }


def compact_preview(content: str) -> str:
    """Short stand-in rendered for a compacted entry"""

    if len(content) <= COMPACTED_PREVIEW_CHARS:
        return content
    return content[:COMPACTED_PREVIEW_CHARS].rstrip() + "..."


def serialize_grounding(grounding: GroundingSection) -> str:
    lines = ["<grounding>", f"<goal>{grounding.current_goal}</goal>"]

    if grounding.completed_subtasks:
        lines.append("<completed_subtasks>")
        lines.extend(f"{i}. {task}" for i, task in enumerate(grounding.completed_subtasks, start=1))
        lines.append("</completed_subtasks>")

    if grounding.key_decisions:
        lines.append("<key_decisions>")
        lines.extend(f"{i}. {decision}" for i, decision in enumerate(grounding.key_decisions, start=1))
        lines.append("</key_decisions>")

    if grounding.user_preferences:
        lines.append("<user_preferences>")
        lines.extend(f"- {key}: {value}" for key, value in sorted(grounding.user_preferences.items()))
        lines.append("</user_preferences>")

    lines.append("</grounding>")
    return "\n".join(lines)
