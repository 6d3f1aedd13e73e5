from typing import Any, AsyncIterator, Optional, Sequence
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
import structlog

from ponder.domain.models.agent_state import TokenCounts
from ponder.domain.reasoning.reasoning_model import ReasoningChunk

logger = structlog.get_logger(__name__)


class LangChainReasoningModel:
    """Adapts a langchain-core chat model to the reasoning capability"""

    def __init__(self, chat_model: BaseChatModel, **invoke_kwargs: Any):
        self.chat_model = chat_model
        self.invoke_kwargs = invoke_kwargs

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[ReasoningChunk]:
        """Stream text chunks; the last chunk carries aggregated usage when the provider reports it"""

        usage: Optional[TokenCounts] = None
        async for chunk in self.chat_model.astream(list(messages), **self.invoke_kwargs):
            metadata = getattr(chunk, "usage_metadata", None)
            if metadata:
                reported = TokenCounts(
                    input=metadata.get("input_tokens", 0),
                    output=metadata.get("output_tokens", 0),
                )
                usage = reported if usage is None else usage.plus(reported)

            text = chunk.content if isinstance(chunk.content, str) else _flatten_content(chunk.content)
            if text:
                yield ReasoningChunk(text=text)

        if usage is not None:
            logger.debug("Provider reported usage", input=usage.input, output=usage.output)
            yield ReasoningChunk(usage=usage)


def _flatten_content(content: Any) -> str:
    """Join the text parts of a multi-part message content"""

    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)
