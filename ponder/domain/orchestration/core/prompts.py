from typing import Any, Optional
import json
import re

from ponder.domain.models.agent_state import ToolCall, ToolFailure, ToolSuccess
from ponder.domain.tool.tool_registry import parse_tool_call

LANGUAGE_NAMES = {"en": "English", "zh": "Chinese", "ja": "Japanese", "de": "German", "fr": "French", "es": "Spanish"}

REASONING_SYSTEM_TEMPLATE = """You are an AI assistant using the ReAct (Reasoning + Acting) pattern.

IMPORTANT: You MUST respond in {language}. All your reasoning, thoughts, and synthesis MUST be in {language}.

<goal>
{goal}
</goal>

<available_tools>
{tools}
</available_tools>
{reflections}
<instructions>
For each step, you will:
1. THINK: Analyze what needs to be done and reason about the best approach
2. ACT: Select and invoke the appropriate tool
3. OBSERVE: Analyze the result to determine if the goal is achieved

To use a tool, output a tool call in this format:
<tool_call>
<name>tool_name</name>
<parameters>{{"param1": "value1"}}</parameters>
<reasoning>Why this tool is appropriate</reasoning>
</tool_call>

When the goal is achieved, output:
<synthesis>
Your final response synthesizing all gathered information
</synthesis>

Always explain your reasoning before taking action.
</instructions>"""

OBSERVATION_SYSTEM_PROMPT = "You are evaluating whether a tool result moves an agent toward its goal."

SYNTHESIS_SYSTEM_TEMPLATE = """You are writing the final answer for a completed task. Respond in {language}.
Use only the information gathered below and wrap the answer in <synthesis></synthesis>."""

_SYNTHESIS = re.compile(r"<synthesis>([\s\S]*?)(?:</synthesis>|$)", re.IGNORECASE)
_COMPLETE_STATUS = re.compile(r"<status>\s*(COMPLETED|ACHIEVED|DONE|SUCCESS)\s*</status>", re.IGNORECASE)
_INCOMPLETE_STATUS = re.compile(r"<status>\s*(INCOMPLETE|PENDING|CONTINUE|IN_PROGRESS)\s*</status>", re.IGNORECASE)

INCOMPLETE_SIGNALS = [
    "not yet achieved", "not achieved", "incomplete", "need more", "requires additional",
    "still need", "missing information", "insufficient", "continue searching", "try again", "retry",
]
COMPLETION_SIGNALS = [
    "goal achieved", "goal is achieved", "goal has been achieved", "task complete", "task completed",
    "successfully completed", "objective met", "objective achieved", "request fulfilled",
    "request has been fulfilled", "answer found", "information gathered", "sufficient information",
    "ready to synthesize", "can now provide", "have enough information", "all required information",
    "i have completed", "here is the answer", "the answer is", "based on the results",
]
POSITIVE_INDICATORS = ["found", "obtained", "retrieved", "gathered", "complete", "done"]


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, "English")


def build_system_prompt(goal: str, tools: str, reflections: str = "", language: str = "en") -> str:
    block = f"\n{reflections}\n" if reflections else ""
    return REASONING_SYSTEM_TEMPLATE.format(
        language=language_name(language),
        goal=goal,
        tools=tools,
        reflections=block,
    )


def render_tool_result(result: Any) -> str:
    if isinstance(result, ToolSuccess):
        return json.dumps(result.data, indent=2, default=str, ensure_ascii=False)
    if isinstance(result, ToolFailure):
        return f"Error: {result.error}"
    return ""


def build_reasoning_prompt(context: str, last_result: Optional[Any] = None, hint: Optional[str] = None) -> str:
    prompt = f"<context>\n{context}\n</context>\n\n"
    if isinstance(last_result, ToolSuccess):
        prompt += f"<last_tool_result>\n{render_tool_result(last_result)}\n</last_tool_result>\n\n"
    elif isinstance(last_result, ToolFailure):
        prompt += f"<last_tool_error>\n{last_result.error}\n</last_tool_error>\n\n"
    if hint:
        prompt += f"<suggested_alternative>\n{hint}\n</suggested_alternative>\n\n"
    prompt += (
        "What is your next step? Think through your reasoning, then either use a tool "
        "or provide your final synthesis."
    )
    return prompt


def build_observation_prompt(tool_call: ToolCall, result: Any, goal: str) -> str:
    return f"""You just executed the tool "{tool_call.name}" with reasoning: "{tool_call.reasoning}"

<tool_result>
{render_tool_result(result)}
</tool_result>

<goal>
{goal}
</goal>

Analyze this result:
1. Does this result help achieve the goal?
2. Is the goal now achieved, or do we need more steps?
3. What should we do next?

Provide your observation, then indicate the status using this exact format:
<status>COMPLETED</status> if the goal is achieved
<status>CONTINUE</status> if more steps are needed

Your observation:"""


def build_synthesis_prompt(context: str, goal: str) -> str:
    return f"<goal>\n{goal}\n</goal>\n\n<context>\n{context}\n</context>\n\nWrite the final answer."


def extract_synthesis(text: str) -> Optional[str]:
    match = _SYNTHESIS.search(text or "")
    if not match:
        return None
    content = match.group(1).strip()
    return content or None


class ParsedResponse:
    """Thought, tool call and synthesis extracted from one reasoning response"""

    def __init__(self, thought: str, tool_call: Optional[ToolCall], synthesis: Optional[str]):
        self.thought = thought
        self.tool_call = tool_call
        self.synthesis = synthesis


def parse_agent_response(text: str) -> ParsedResponse:
    """Synthesis wins over a tool call; the thought is whatever precedes the first tag"""

    synthesis = extract_synthesis(text)
    tool_call = None if synthesis else parse_tool_call(text)

    cut = len(text)
    for tag in ("<tool_call>", "<synthesis>"):
        index = text.lower().find(tag)
        if index != -1:
            cut = min(cut, index)
    thought = text[:cut].strip()
    if not thought and synthesis is None and tool_call is None:
        thought = text.strip()
    return ParsedResponse(thought, tool_call, synthesis)


def is_goal_achieved(observation: str, goal: str) -> bool:
    """Judge goal completion from an observation: status tags, then phrases, then goal keywords"""

    if _COMPLETE_STATUS.search(observation):
        return True
    if _INCOMPLETE_STATUS.search(observation):
        return False

    lower = observation.lower()
    if any(signal in lower for signal in INCOMPLETE_SIGNALS):
        return False
    if any(signal in lower for signal in COMPLETION_SIGNALS):
        return True

    keywords = [w for w in goal.lower().split() if len(w) > 3]
    matched = [k for k in keywords if k in lower]
    if keywords and len(matched) >= len(keywords) * 0.5:
        return any(indicator in lower for indicator in POSITIVE_INDICATORS)
    return False


class SynthesisStreamFilter:
    """Passes through only the text inside <synthesis> tags of a streamed response"""

    OPEN = "<synthesis>"
    CLOSE = "</synthesis>"

    def __init__(self):
        self._buffer = ""
        self._inside = False
        self._closed = False

    def feed(self, chunk: str) -> str:
        if self._closed:
            return ""
        self._buffer += chunk
        out = []
        while True:
            if not self._inside:
                index = self._buffer.lower().find(self.OPEN)
                if index == -1:
                    # keep a tail that could be the start of the opening tag
                    self._buffer = self._buffer[-(len(self.OPEN) - 1):]
                    break
                self._buffer = self._buffer[index + len(self.OPEN):]
                self._inside = True
            else:
                index = self._buffer.lower().find(self.CLOSE)
                if index == -1:
                    safe = len(self._buffer) - (len(self.CLOSE) - 1)
                    if safe > 0:
                        out.append(self._buffer[:safe])
                        self._buffer = self._buffer[safe:]
                    break
                out.append(self._buffer[:index])
                self._buffer = ""
                self._inside = False
                self._closed = True
                break
        return "".join(out)

    def flush(self) -> str:
        """Remaining text of an unterminated synthesis block"""

        if self._inside and not self._closed:
            rest, self._buffer = self._buffer, ""
            return rest
        return ""
