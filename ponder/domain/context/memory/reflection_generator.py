from typing import List, Optional, Tuple
from langchain_core.messages import HumanMessage, SystemMessage
import json
import re
import uuid
import structlog

from ponder.domain.context.memory.episodic_memory import extract_error_type
from ponder.domain.models.agent_state import AgentContext, EpisodicMemory, Reflection, TokenCounts, ToolCall
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.reasoning.reasoning_model import ReasoningModel, complete
from ponder.infrastructure.tokenizer import TokenCounter

logger = structlog.get_logger(__name__)

REFLECTION_SYSTEM_PROMPT = """You are a failure analysis assistant. Analyze why an action failed and suggest how to fix it.

Output format (use exactly these labels):
ANALYSIS: [1-2 sentences explaining why the action failed]
SUGGESTED_FIX: [1-2 sentences describing how to avoid this failure]

Be concise and actionable. Focus on what can be done differently."""

ALTERNATIVE_SYSTEM_PROMPT = """You are a problem-solving assistant. An action has been tried several times and it keeps failing. Suggest an alternative approach.

Available tools: {tools}

Output format (JSON):
{{
  "tool": "tool_name",
  "parameters": {{ ... }},
  "reasoning": "Why this alternative might work"
}}

Rules:
1. Try a DIFFERENT tool if possible
2. If using the same tool, significantly change the parameters
3. Be creative but realistic"""

_ANALYSIS = re.compile(r"ANALYSIS:\s*(.+?)(?=SUGGESTED_FIX:|$)", re.IGNORECASE | re.DOTALL)
_FIX = re.compile(r"SUGGESTED_FIX:\s*(.+?)$", re.IGNORECASE | re.DOTALL)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def new_reflection_id() -> str:
    return f"ref_{uuid.uuid4().hex[:12]}"


def parse_reflection_response(response: str, fallback_error: str) -> Tuple[str, str]:
    """Extract (analysis, suggested_fix) with fallbacks for unlabeled output"""

    analysis_match = _ANALYSIS.search(response or "")
    fix_match = _FIX.search(response or "")
    analysis = analysis_match.group(1).strip() if analysis_match else ""
    suggested_fix = fix_match.group(1).strip() if fix_match else ""
    return (
        analysis or f"Action failed with error: {fallback_error}",
        suggested_fix or "Try a different approach or parameters.",
    )


def parse_alternative_suggestion(response: str, fallback: ToolCall) -> ToolCall:
    """Read a JSON tool suggestion; fall back to the original call re-labelled"""

    match = _JSON_OBJECT.search(response or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            parameters = parsed.get("parameters")
            return ToolCall(
                name=parsed.get("tool") or fallback.name,
                parameters=parameters if isinstance(parameters, dict) else fallback.parameters,
                reasoning=parsed.get("reasoning") or "Alternative approach suggested by reflection",
            )
    return fallback.model_copy(update={"reasoning": f"Alternative attempt: {fallback.reasoning}"})


class ReflectionGenerator:
    """LLM-backed failure analysis"""

    def __init__(self, model: ReasoningModel, token_counter: Optional[TokenCounter] = None):
        self.model = model
        self.token_counter = token_counter

    async def generate_reflection(
        self,
        failed_action: ToolCall,
        error: str,
        context: AgentContext,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[Reflection, TokenCounts]:
        """Analyze a failure and return the reflection plus the tokens spent on it"""

        error_type = extract_error_type(error, failed_action)
        messages = [
            SystemMessage(content=REFLECTION_SYSTEM_PROMPT),
            HumanMessage(content=(
                f"Failed Action: {failed_action.name}\n"
                f"Parameters: {json.dumps(failed_action.parameters, indent=2, default=str)}\n"
                f"Reasoning: {failed_action.reasoning}\n"
                f"Error: {error}\n"
                f"Current Goal: {context.grounding.current_goal}\n\n"
                "Analyze this failure and suggest a fix:"
            )),
        ]

        response = await complete(self.model, messages, cancel_token, token_counter=self.token_counter)
        analysis, suggested_fix = parse_reflection_response(response.text, error)

        reflection = Reflection(
            id=new_reflection_id(),
            error_type=error_type,
            failed_action=failed_action,
            analysis=analysis,
            suggested_fix=suggested_fix,
        )
        logger.info("Reflection generated", error_type=error_type, tool=failed_action.name)
        return reflection, response.usage

    async def suggest_alternative(
        self,
        failed_action: ToolCall,
        memory: EpisodicMemory,
        available_tools: List[str],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[ToolCall, TokenCounts]:
        """Propose a different tool call after the same action keeps failing"""

        previous_attempts = "\n".join(
            f"- Parameters: {json.dumps(r.failed_action.parameters, default=str)}\n  Error: {r.analysis}"
            for r in memory.reflections
            if r.failed_action.name == failed_action.name
        )
        messages = [
            SystemMessage(content=ALTERNATIVE_SYSTEM_PROMPT.format(tools=", ".join(available_tools))),
            HumanMessage(content=(
                "Original action that keeps failing:\n"
                f"Tool: {failed_action.name}\n"
                f"Parameters: {json.dumps(failed_action.parameters, indent=2, default=str)}\n"
                f"Original reasoning: {failed_action.reasoning}\n\n"
                f"Previous failed attempts:\n{previous_attempts}\n\n"
                "Suggest an alternative approach:"
            )),
        ]

        response = await complete(self.model, messages, cancel_token, token_counter=self.token_counter)
        return parse_alternative_suggestion(response.text, failed_action), response.usage
