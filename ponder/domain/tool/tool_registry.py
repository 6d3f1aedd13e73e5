from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from pydantic import BaseModel, Field
import json
import re
import jsonschema
import structlog

from ponder.domain.errors import ToolRegistrationError
from ponder.domain.models.agent_state import ToolCall, ToolFailure, ToolSuccess
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.tool.tool_validator import ToolParameterValidator, ValidationResult, check_schema

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], CancellationToken], Awaitable[Any]]


class ToolSchema(BaseModel):
    """Declared interface of a tool"""
    name: str
    description: str
    parameters: Dict[str, Any] = Field(description="JSON Schema of the parameter object")
    examples: List[Dict[str, Any]] = Field(default_factory=list)
    category: str = "general"


@dataclass
class RegisteredTool:
    """Schema plus the handler that runs it"""
    schema: ToolSchema
    handler: ToolHandler
    timeout_seconds: Optional[float] = None


class ToolRegistry:
    """Registry for the tools available to the loop"""

    def __init__(self):
        self.tools: Dict[str, RegisteredTool] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        self.disabled: Set[str] = set()

    def register_tool(self, schema: ToolSchema, handler: ToolHandler, timeout_seconds: Optional[float] = None):
        """Register a tool; malformed definitions are rejected"""

        if not schema.name or not schema.name.strip():
            raise ToolRegistrationError("Tool name is required")
        if not schema.description or not schema.description.strip():
            raise ToolRegistrationError(f"Tool {schema.name} needs a description")
        if schema.parameters.get("type") != "object":
            raise ToolRegistrationError(f"Tool {schema.name} parameters must be an object schema")
        try:
            check_schema(schema.parameters)
        except jsonschema.SchemaError as e:
            raise ToolRegistrationError(f"Tool {schema.name} has an invalid schema: {e.message}") from e

        self.tools[schema.name] = RegisteredTool(schema=schema, handler=handler, timeout_seconds=timeout_seconds)
        self.tool_categories.setdefault(schema.category, [])
        if schema.name not in self.tool_categories[schema.category]:
            self.tool_categories[schema.category].append(schema.name)

        logger.debug("Tool registered", tool=schema.name, category=schema.category)

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool"""

        tool = self.tools.pop(name, None)
        if tool is None:
            return False
        category = self.tool_categories.get(tool.schema.category, [])
        if name in category:
            category.remove(name)
        return True

    def clear(self):
        self.tools.clear()
        self.tool_categories.clear()
        self.disabled.clear()

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        return self.tools.get(name)

    def get_tool_schema(self, name: str) -> Optional[ToolSchema]:
        tool = self.tools.get(name)
        return tool.schema if tool else None

    def get_tool_schemas(self, exclude: Optional[Set[str]] = None) -> List[ToolSchema]:
        """Schemas of every enabled tool"""

        skip = self.disabled | (exclude or set())
        return [t.schema for name, t in self.tools.items() if name not in skip]

    def get_tools_by_category(self, category: str) -> List[ToolSchema]:
        names = self.tool_categories.get(category, [])
        return [self.tools[name].schema for name in names if name in self.tools]

    def tool_names(self, exclude: Optional[Set[str]] = None) -> List[str]:
        return [schema.name for schema in self.get_tool_schemas(exclude)]

    def validate_tool_call(self, tool_call: ToolCall, exclude: Optional[Set[str]] = None) -> ValidationResult:
        """Check that the tool exists, is enabled and gets well-formed parameters"""

        available = self.tool_names(exclude)
        if tool_call.name not in self.tools:
            return ValidationResult(
                valid=False,
                errors=[f"Unknown tool: {tool_call.name}. Available tools: {', '.join(available)}"],
            )
        if tool_call.name not in available:
            return ValidationResult(valid=False, errors=[f"Tool {tool_call.name} is disabled for this run"])

        schema = self.tools[tool_call.name].schema
        return ToolParameterValidator.validate_parameters(schema.parameters, tool_call.parameters)

    def search_tools(self, query: str) -> List[ToolSchema]:
        """Search tools by name or description"""

        query_lower = query.lower()
        return [
            t.schema for t in self.tools.values()
            if query_lower in t.schema.name.lower() or query_lower in t.schema.description.lower()
        ]


def serialize_tool_call(tool_call: ToolCall) -> str:
    return json.dumps(
        {"tool": tool_call.name, "parameters": tool_call.parameters, "reasoning": tool_call.reasoning},
        indent=2,
    )


_TOOL_CALL_XML = re.compile(r"<tool_call>([\s\S]*?)</tool_call>", re.IGNORECASE)
_TAG = "<{tag}>([\\s\\S]*?)</{tag}>"


def _tag(text: str, tag: str) -> Optional[str]:
    match = re.search(_TAG.format(tag=tag), text, re.IGNORECASE)
    return match.group(1).strip() if match else None


def _parse_json_call(text: str) -> Optional[ToolCall]:
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = json.JSONDecoder().raw_decode(text[start:])
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and isinstance(parsed.get("tool"), str):
            parameters = parsed.get("parameters")
            return ToolCall(
                name=parsed["tool"],
                parameters=parameters if isinstance(parameters, dict) else {},
                reasoning=str(parsed.get("reasoning", "")),
            )
        start = text.find("{", start + 1)
    return None


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Extract a tool call from model output: <tool_call> XML first, then bare JSON"""

    if not text:
        return None

    block = _TOOL_CALL_XML.search(text)
    if block:
        body = block.group(1)
        name = _tag(body, "name")
        if name:
            raw_params = _tag(body, "parameters") or "{}"
            try:
                parameters = json.loads(raw_params)
            except json.JSONDecodeError:
                parameters = {}
            return ToolCall(
                name=name,
                parameters=parameters if isinstance(parameters, dict) else {},
                reasoning=_tag(body, "reasoning") or "",
            )
        return _parse_json_call(body)

    return _parse_json_call(text)


def format_tools_for_prompt(schemas: List[ToolSchema]) -> str:
    """Markdown description of the tools for the system prompt"""

    if not schemas:
        return "No tools available."

    sections = []
    for schema in schemas:
        lines = [f"### {schema.name}", schema.description, "", "Parameters:"]
        properties = schema.parameters.get("properties", {})
        required = set(schema.parameters.get("required", []))
        for name, prop in properties.items():
            flag = "required" if name in required else "optional"
            description = prop.get("description", "")
            lines.append(f"- {name}: {prop.get('type', 'any')} ({flag}) - {description}".rstrip(" -"))
            if "enum" in prop:
                lines.append(f"  Allowed values: {', '.join(str(v) for v in prop['enum'])}")
        if schema.examples:
            lines.append("")
            lines.append("Examples:")
            lines.extend(f"- {json.dumps(example)}" for example in schema.examples)
        sections.append("\n".join(lines))
    return "\n\n".join(sections)


def serialize_tool_schema(schema: ToolSchema) -> str:
    return schema.model_dump_json()


def parse_tool_schema(raw: str) -> Optional[ToolSchema]:
    """Parse a serialized schema; None when malformed"""

    try:
        return ToolSchema.model_validate_json(raw)
    except ValueError:
        return None


def as_tool_result(value: Any, token_count: int = 0):
    """Wrap a raw handler return value as a tool result"""

    if isinstance(value, (ToolSuccess, ToolFailure)):
        return value
    return ToolSuccess(data=value, token_count=token_count)
