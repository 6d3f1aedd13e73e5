from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import asyncio

import pytest
from langchain_core.messages import BaseMessage

from ponder.config import AgentSettings
from ponder.domain.models.agent_state import TokenCounts
from ponder.domain.reasoning.reasoning_model import ReasoningChunk


@dataclass
class Hang:
    """Scripted response that blocks for a while before answering"""
    seconds: float
    text: str = ""


# (system prompt marker, response kind); first match wins
PROMPT_KINDS = [
    ("ReAct", "reason"),
    ("evaluating whether", "observe"),
    ("failure analysis", "reflect"),
    ("problem-solving", "alternative"),
    ("writing the final answer", "synthesize"),
    ("relevance evaluator", "grade"),
    ("query optimization", "rewrite"),
    ("research assistant", "rag_synthesis"),
    ("No retrieved sources", "knowledge_only"),
    ("You explain text", "explain"),
    ("You summarize", "summarize"),
]

DEFAULT_RESPONSES = {
    "reason": "<synthesis>Default answer</synthesis>",
    "observe": "The result answers the question. <status>COMPLETED</status>",
    "reflect": "ANALYSIS: The call did not finish in time.\nSUGGESTED_FIX: Use a smaller input.",
    "alternative": '{"tool": "echo", "parameters": {"text": "fallback"}, "reasoning": "Try echo instead"}',
    "synthesize": "<synthesis>Final answer</synthesis>",
    "grade": "",
    "rewrite": "<rewritten_query>broader query</rewritten_query>",
    "rag_synthesis": "Python 3.13 ships a free-threaded build [1].",
    "knowledge_only": "From what I know, it is experimental.",
    "explain": "It means replicas converge eventually.",
    "summarize": "Short summary.",
    "other": "ok",
}


class ScriptedModel:
    """Reasoning model that answers from per-kind queues.

    Each queue item is a string, an exception to raise, or a ``Hang``. The
    last item of a queue repeats once the others are used up.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, list]] = None,
        usage: Optional[TokenCounts] = None,
        chunk_size: int = 7,
    ):
        self.responses = {kind: list(items) for kind, items in (responses or {}).items()}
        self.usage = usage
        self.chunk_size = chunk_size
        self.calls: List[Tuple[str, List[BaseMessage]]] = []

    @staticmethod
    def kind_of(messages: Sequence[BaseMessage]) -> str:
        system = messages[0].content if messages else ""
        for marker, kind in PROMPT_KINDS:
            if marker in system:
                return kind
        return "other"

    def prompts(self, kind: str) -> List[List[BaseMessage]]:
        return [messages for call_kind, messages in self.calls if call_kind == kind]

    def count(self, kind: str) -> int:
        return len(self.prompts(kind))

    def _next(self, kind: str):
        queue = self.responses.get(kind)
        if not queue:
            return DEFAULT_RESPONSES.get(kind, DEFAULT_RESPONSES["other"])
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def stream(self, messages: Sequence[BaseMessage]):
        kind = self.kind_of(messages)
        self.calls.append((kind, list(messages)))
        item = self._next(kind)

        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Hang):
            await asyncio.sleep(item.seconds)
            item = item.text

        for start in range(0, len(item), self.chunk_size):
            yield ReasoningChunk(text=item[start:start + self.chunk_size])
        if self.usage is not None:
            yield ReasoningChunk(usage=self.usage)


def word_count(text: str) -> int:
    return len(text.split())


@pytest.fixture
def token_counter():
    return word_count


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def settings():
    return AgentSettings(run_timeout_seconds=5.0, tool_timeout_seconds=1.0)
