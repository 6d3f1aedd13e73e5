"""Reasoning capability boundary.

The loop never talks to a provider directly. A ``ReasoningModel`` yields
``ReasoningChunk`` objects from an async iterator; the final chunk may carry
provider-reported usage. When no usage is reported the tokens are counted
locally.
"""
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Sequence
from pydantic import BaseModel, Field
from langchain_core.messages import BaseMessage

from ponder.domain.models.agent_state import TokenCounts
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.infrastructure.tokenizer import TokenCounter, count_tokens


class ReasoningChunk(BaseModel):
    """A piece of streamed model output"""
    text: str = ""
    usage: Optional[TokenCounts] = None


class ReasoningResponse(BaseModel):
    """A fully collected model response"""
    text: str
    usage: TokenCounts = Field(default_factory=TokenCounts)


class ReasoningModel(Protocol):
    """Anything that can stream a chat completion"""

    def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[ReasoningChunk]:
        ...


TextSink = Callable[[str], Awaitable[None]]


def _message_text(messages: Sequence[BaseMessage]) -> str:
    return "\n".join(m.content if isinstance(m.content, str) else str(m.content) for m in messages)


async def collect_response(
    model: ReasoningModel,
    messages: Sequence[BaseMessage],
    on_text: Optional[TextSink] = None,
    token_counter: Optional[TokenCounter] = None,
) -> ReasoningResponse:
    """Drain a model stream, forwarding text pieces to on_text as they arrive"""

    parts: List[str] = []
    usage: Optional[TokenCounts] = None

    async for chunk in model.stream(messages):
        if chunk.text:
            parts.append(chunk.text)
            if on_text is not None:
                await on_text(chunk.text)
        if chunk.usage is not None:
            usage = chunk.usage

    text = "".join(parts)
    if usage is None:
        counter = token_counter or count_tokens
        usage = TokenCounts(input=counter(_message_text(messages)), output=counter(text))
    return ReasoningResponse(text=text, usage=usage)


async def complete(
    model: ReasoningModel,
    messages: Sequence[BaseMessage],
    cancel_token: Optional[CancellationToken] = None,
    on_text: Optional[TextSink] = None,
    token_counter: Optional[TokenCounter] = None,
) -> ReasoningResponse:
    """collect_response under an optional cancellation token"""

    call = collect_response(model, messages, on_text=on_text, token_counter=token_counter)
    if cancel_token is None:
        return await call
    return await cancel_token.guard(call)
