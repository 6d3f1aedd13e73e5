import asyncio

import pytest

from ponder.domain.errors import RunCancelled, ToolRegistrationError
from ponder.domain.models.agent_state import ToolCall, ToolFailure, ToolSuccess
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.tool.tool_definitions import EXPLAIN_TEXT_SCHEMA, EXPLAIN_TOOL, default_tool_schemas
from ponder.domain.tool.tool_executor import ToolExecutor
from ponder.domain.tool.tool_registry import (
    ToolRegistry, ToolSchema, as_tool_result, format_tools_for_prompt, parse_tool_call, parse_tool_schema,
    serialize_tool_call, serialize_tool_schema
)


def echo_schema(name="echo"):
    return ToolSchema(
        name=name,
        description="Echo text back",
        parameters={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Text to echo"},
                "mode": {"type": "string", "enum": ["plain", "loud"]},
            },
            "required": ["text"],
        },
    )


async def echo(params, cancel_token):
    return {"echo": params["text"]}


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register_tool(echo_schema(), echo)
    registry.register_tool(EXPLAIN_TEXT_SCHEMA, echo)
    return registry


class TestRegistration:
    def test_rejects_missing_description(self):
        schema = echo_schema().model_copy(update={"description": "  "})
        with pytest.raises(ToolRegistrationError):
            ToolRegistry().register_tool(schema, echo)

    def test_rejects_non_object_parameters(self):
        schema = echo_schema().model_copy(update={"parameters": {"type": "string"}})
        with pytest.raises(ToolRegistrationError):
            ToolRegistry().register_tool(schema, echo)

    def test_rejects_malformed_schema(self):
        schema = echo_schema().model_copy(update={"parameters": {"type": "object", "required": "text"}})
        with pytest.raises(ToolRegistrationError):
            ToolRegistry().register_tool(schema, echo)

    def test_categories_and_lookup(self, registry):
        assert registry.get_tool_schema("echo").name == "echo"
        assert [s.name for s in registry.get_tools_by_category("explanation")] == [EXPLAIN_TOOL]
        assert [s.name for s in registry.search_tools("selected")] == [EXPLAIN_TOOL]

        assert registry.unregister_tool("echo")
        assert not registry.unregister_tool("echo")
        assert registry.get_tool("echo") is None
        assert registry.get_tools_by_category("general") == []

    def test_disabled_and_excluded_tools_are_hidden(self, registry):
        assert registry.tool_names() == ["echo", EXPLAIN_TOOL]
        assert registry.tool_names(exclude={"echo"}) == [EXPLAIN_TOOL]

        registry.disabled.add(EXPLAIN_TOOL)
        assert registry.tool_names() == ["echo"]

    def test_default_catalog_is_valid(self):
        registry = ToolRegistry()
        for schema in default_tool_schemas():
            registry.register_tool(schema, echo)
        assert len(registry.tools) == 3


class TestValidation:
    def test_unknown_tool_lists_available(self, registry):
        result = registry.validate_tool_call(ToolCall(name="nope"))
        assert not result.valid
        assert result.errors == [f"Unknown tool: nope. Available tools: echo, {EXPLAIN_TOOL}"]

    def test_excluded_tool(self, registry):
        result = registry.validate_tool_call(ToolCall(name="echo", parameters={"text": "a"}), exclude={"echo"})
        assert result.errors == ["Tool echo is disabled for this run"]

    def test_parameter_errors(self, registry):
        missing = registry.validate_tool_call(ToolCall(name="echo", parameters={}))
        assert missing.errors == ["Missing required parameter: text"]

        wrong_type = registry.validate_tool_call(ToolCall(name="echo", parameters={"text": 5}))
        assert wrong_type.errors == ["Parameter 'text' must be of type string"]

        bad_enum = registry.validate_tool_call(ToolCall(name="echo", parameters={"text": "a", "mode": "x"}))
        assert bad_enum.errors == ["Parameter 'mode' must be one of: plain, loud"]

        assert registry.validate_tool_call(ToolCall(name="echo", parameters={"text": "a"})).valid


class TestParsing:
    def test_parse_xml_tool_call(self):
        text = (
            "I should look it up.\n<tool_call>\n<name>echo</name>\n"
            '<parameters>{"text": "hi"}</parameters>\n<reasoning>Say hi</reasoning>\n</tool_call>'
        )
        assert parse_tool_call(text) == ToolCall(name="echo", parameters={"text": "hi"}, reasoning="Say hi")

    def test_parse_xml_with_bad_parameters(self):
        call = parse_tool_call("<tool_call><name>echo</name><parameters>{oops</parameters></tool_call>")
        assert call == ToolCall(name="echo")

    def test_parse_json_tool_call(self):
        text = 'Thinking {not json} then {"tool": "echo", "parameters": {"text": "x"}, "reasoning": "r"}'
        assert parse_tool_call(text) == ToolCall(name="echo", parameters={"text": "x"}, reasoning="r")

    def test_parse_json_inside_tool_call_block(self):
        call = parse_tool_call('<tool_call>{"tool": "echo", "parameters": {"text": "x"}}</tool_call>')
        assert call.name == "echo"

    def test_no_tool_call(self):
        assert parse_tool_call("") is None
        assert parse_tool_call("just prose") is None
        assert parse_tool_call('{"name": "echo"}') is None

    def test_serialize_tool_call_parses_back(self):
        call = ToolCall(name="echo", parameters={"text": "x"}, reasoning="r")
        assert parse_tool_call(serialize_tool_call(call)) == call

    def test_schema_serialization(self):
        assert parse_tool_schema(serialize_tool_schema(echo_schema())) == echo_schema()
        assert parse_tool_schema("{broken") is None


def test_format_tools_for_prompt():
    assert format_tools_for_prompt([]) == "No tools available."

    text = format_tools_for_prompt([echo_schema(), EXPLAIN_TEXT_SCHEMA])
    assert "### echo" in text
    assert "- text: string (required) - Text to echo" in text
    assert "- mode: string (optional)" in text
    assert "  Allowed values: plain, loud" in text
    assert f"### {EXPLAIN_TOOL}" in text
    assert "Examples:" in text


def test_as_tool_result():
    failure = ToolFailure(error="x")
    assert as_tool_result(failure) is failure
    assert as_tool_result({"a": 1}, token_count=4) == ToolSuccess(data={"a": 1}, token_count=4)


@pytest.mark.asyncio
class TestExecutor:
    async def test_success_wraps_raw_value(self, registry):
        result = await ToolExecutor(registry).execute_tool(
            ToolCall(name="echo", parameters={"text": "hi"}), CancellationToken()
        )
        assert result == ToolSuccess(data={"echo": "hi"})

    async def test_validation_failure(self, registry):
        result = await ToolExecutor(registry).execute_tool(ToolCall(name=EXPLAIN_TOOL), CancellationToken())
        assert isinstance(result, ToolFailure)
        assert result.error == "Validation failed: Missing required parameter: selectedText"

    async def test_unknown_tool(self, registry):
        result = await ToolExecutor(registry).execute_tool(ToolCall(name="nope"), CancellationToken())
        assert result.error.startswith("Validation failed: Unknown tool: nope")

    async def test_timeout_becomes_failure(self):
        async def slow(params, cancel_token):
            await asyncio.sleep(5)

        registry = ToolRegistry()
        registry.register_tool(echo_schema("slow"), slow, timeout_seconds=0.05)

        result = await ToolExecutor(registry).execute_tool(
            ToolCall(name="slow", parameters={"text": "x"}), CancellationToken()
        )
        assert result.error == "Tool execution timeout after 0.05s"

    async def test_handler_exception_becomes_failure(self):
        async def broken(params, cancel_token):
            raise ValueError("page not found")

        registry = ToolRegistry()
        registry.register_tool(echo_schema("broken"), broken)

        result = await ToolExecutor(registry).execute_tool(
            ToolCall(name="broken", parameters={"text": "x"}), CancellationToken()
        )
        assert result == ToolFailure(error="page not found")

    async def test_cancellation_propagates(self):
        started = asyncio.Event()

        async def slow(params, cancel_token):
            started.set()
            await asyncio.sleep(5)

        registry = ToolRegistry()
        registry.register_tool(echo_schema("slow"), slow)
        token = CancellationToken()

        task = asyncio.ensure_future(
            ToolExecutor(registry).execute_tool(ToolCall(name="slow", parameters={"text": "x"}), token)
        )
        await started.wait()
        token.cancel("user pressed stop")

        with pytest.raises(RunCancelled):
            await task

    async def test_already_cancelled_token(self):
        calls = []

        def counting(params, cancel_token):
            calls.append(params)
            return echo(params, cancel_token)

        registry = ToolRegistry()
        registry.register_tool(echo_schema("echo"), counting)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelled):
            await ToolExecutor(registry).execute_tool(ToolCall(name="echo", parameters={"text": "a"}), token)
        assert calls == []
