import pytest

from ponder.domain.context.context_manager import ContextBuilder, compact_preview, serialize_grounding
from ponder.domain.context.context_ranker import ContextRanker
from ponder.domain.models.agent_state import ContextEntryType, Reflection, ToolCall
from ponder.domain.tool.tool_definitions import default_tool_schemas, SEARCH_TOOL, SUMMARIZE_TOOL

from conftest import word_count


@pytest.fixture
def builder():
    return ContextBuilder(word_count)


def expected_tokens(builder, context):
    return (
        builder.grounding_tokens(context.grounding)
        + sum(e.token_count for e in context.history)
        + sum(word_count(r.analysis + r.suggested_fix) for r in context.reflections)
    )


def reflection(rid="r1"):
    return Reflection(
        id=rid,
        error_type="timeout:fetch_page",
        failed_action=ToolCall(name="fetch_page"),
        analysis="The page was slow.",
        suggested_fix="Fetch a smaller page.",
    )


def test_create_context_counts_grounding(builder):
    context = builder.create_context("find python news", max_tokens=1000)

    assert context.grounding.current_goal == "find python news"
    assert context.max_tokens == 1000
    assert context.token_count == builder.grounding_tokens(context.grounding)


def test_token_count_tracks_every_change(builder):
    context = builder.create_context("goal")
    context = builder.add_message(context, ContextEntryType.USER, "what is new in python")
    context = builder.mark_subtask_complete(context, "searched release notes")
    context = builder.record_key_decision(context, "skip the web search")
    context = builder.set_user_preference(context, "language", "en")
    context = builder.attach_reflections(context, [reflection()])

    assert context.history[0].token_count == 5
    assert context.token_count == expected_tokens(builder, context)


def test_builder_never_mutates(builder):
    context = builder.create_context("goal")
    builder.add_message(context, ContextEntryType.USER, "hello")

    assert context.history == []


def test_attach_reflections_skips_known_ids(builder):
    context = builder.attach_reflections(builder.create_context("goal"), [reflection("r1")])
    again = builder.attach_reflections(context, [reflection("r1"), reflection("r2")])

    assert [r.id for r in again.reflections] == ["r1", "r2"]
    assert builder.attach_reflections(again, [reflection("r2")]) is again


def test_add_entry_compacts_oldest_but_keeps_newest(builder):
    context = builder.create_context("goal", max_tokens=60)
    context = builder.add_message(context, ContextEntryType.TOOL, "alpha " * 100)
    context = builder.add_message(context, ContextEntryType.ASSISTANT, "short reply")

    oldest, newest = context.history
    assert oldest.compacted
    assert oldest.token_count < 100
    assert not newest.compacted
    assert newest.token_count == 2
    assert context.token_count == expected_tokens(builder, context)
    assert "[tool - compacted]" in builder.render(context)


def test_resize_compacts_every_entry_if_needed(builder):
    context = builder.create_context("goal", max_tokens=10000)
    context = builder.add_message(context, ContextEntryType.USER, "beta " * 80)
    context = builder.add_message(context, ContextEntryType.TOOL, "gamma " * 80)

    resized = builder.resize(context, 20)

    assert resized.max_tokens == 20
    assert all(entry.compacted for entry in resized.history)
    assert resized.token_count < context.token_count
    assert resized.token_count == expected_tokens(builder, resized)


def test_resize_without_pressure_keeps_history(builder):
    context = builder.add_message(builder.create_context("goal"), ContextEntryType.USER, "hi")
    resized = builder.resize(context, 5000)

    assert resized.history == context.history


def test_render_includes_or_excludes_reflections(builder):
    context = builder.create_context("find python news")
    context = builder.add_message(context, ContextEntryType.USER, "what changed?")
    context = builder.attach_reflections(context, [reflection()])

    full = builder.render(context)
    assert full.startswith("<grounding>\n<goal>find python news</goal>")
    assert "<conversation_history>\n[user] what changed?\n</conversation_history>" in full
    assert "<previous_failures>" in full

    assert "<previous_failures>" not in builder.render(context, include_reflections=False)


def test_set_goal_regrounds(builder):
    context = builder.record_key_decision(builder.create_context("old goal"), "kept")
    updated = builder.set_goal(context, "a much longer new goal")

    assert updated.grounding.current_goal == "a much longer new goal"
    assert updated.grounding.key_decisions == ["kept"]
    assert updated.token_count == expected_tokens(builder, updated)
    assert updated.token_count > context.token_count


def test_context_summary(builder):
    context = builder.create_context("goal", max_tokens=10)
    summary = builder.get_context_summary(context)

    assert summary["goal"] == "goal"
    assert summary["history_entries"] == 0
    assert summary["max_tokens"] == 10
    assert summary["utilization"] == round(context.token_count / 10, 3)


def test_compact_preview():
    assert compact_preview("short") == "short"
    preview = compact_preview("x" * 500)
    assert preview == "x" * 160 + "..."


def test_serialize_grounding_sections():
    builder = ContextBuilder(word_count)
    context = builder.set_user_preference(builder.create_context("g"), "tone", "brief")
    context = builder.mark_subtask_complete(context, "step one")
    text = serialize_grounding(context.grounding)

    assert "<completed_subtasks>\n1. step one\n</completed_subtasks>" in text
    assert "<user_preferences>\n- tone: brief\n</user_preferences>" in text
    assert text.endswith("</grounding>")


class TestRanker:
    def test_relevance(self):
        ranker = ContextRanker()
        assert ranker.calculate_relevance("", "anything") == 0.0
        assert ranker.calculate_relevance("python release", "the python release notes") == 1.0
        assert ranker.calculate_relevance("python news", "python docs") == 0.5

    def test_order_tools(self):
        ordered = ContextRanker().order_tools("summarize this page", default_tool_schemas())
        assert ordered[0].name == SUMMARIZE_TOOL

        ordered = ContextRanker().order_tools("search the web", default_tool_schemas())
        assert ordered[0].name == SEARCH_TOOL
