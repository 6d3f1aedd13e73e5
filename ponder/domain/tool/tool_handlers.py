from typing import Any, Dict, Optional
from langchain_core.messages import HumanMessage, SystemMessage

from ponder.domain.models.agent_state import ToolSuccess
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.rag.agentic_rag import AgenticRAG
from ponder.domain.reasoning.reasoning_model import ReasoningModel, complete
from ponder.domain.tool.tool_definitions import (
    EXPLAIN_TEXT_SCHEMA, SEARCH_WEB_SCHEMA, SUMMARIZE_PAGE_SCHEMA
)
from ponder.domain.tool.tool_registry import ToolRegistry
from ponder.infrastructure.tokenizer import TokenCounter

EXPLAIN_SYSTEM_PROMPT = "You explain text clearly and concisely, using the surrounding context to resolve meaning."
SUMMARIZE_SYSTEM_PROMPT = "You summarize documents into accurate, well-organized key points."


class DefaultToolHandlers:
    """Handlers backing the default tool catalog"""

    def __init__(
        self,
        model: ReasoningModel,
        rag: Optional[AgenticRAG] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.model = model
        self.rag = rag
        self.token_counter = token_counter

    async def explain_text(self, params: Dict[str, Any], cancel_token: CancellationToken) -> ToolSuccess:
        parts = []
        if params.get("pageTitle"):
            parts.append(f"Page: {params['pageTitle']}")
        if params.get("contextBefore"):
            parts.append(f"Before: {params['contextBefore']}")
        parts.append(f"Selected: {params['selectedText']}")
        if params.get("contextAfter"):
            parts.append(f"After: {params['contextAfter']}")
        parts.append("Explain the selected text.")

        response = await complete(
            self.model,
            [SystemMessage(content=EXPLAIN_SYSTEM_PROMPT), HumanMessage(content="\n".join(parts))],
            cancel_token,
            token_counter=self.token_counter,
        )
        return ToolSuccess(data={"explanation": response.text.strip()}, token_count=response.usage.total)

    async def summarize_page(self, params: Dict[str, Any], cancel_token: CancellationToken) -> ToolSuccess:
        limit = params.get("maxLength")
        instructions = f"Summarize in at most {int(limit)} words." if limit else "Summarize the key points."
        header = f"Title: {params['pageTitle']}\n" if params.get("pageTitle") else ""
        if params.get("pageUrl"):
            header += f"URL: {params['pageUrl']}\n"

        response = await complete(
            self.model,
            [
                SystemMessage(content=SUMMARIZE_SYSTEM_PROMPT),
                HumanMessage(content=f"{header}\n{params['pageContent']}\n\n{instructions}"),
            ],
            cancel_token,
            token_counter=self.token_counter,
        )
        return ToolSuccess(data={"summary": response.text.strip()}, token_count=response.usage.total)

    async def search(self, params: Dict[str, Any], cancel_token: CancellationToken) -> ToolSuccess:
        answer = await self.rag.answer(params["query"], params.get("context", ""), cancel_token)
        return ToolSuccess(
            data={
                "synthesizedAnswer": answer.answer,
                "citations": [c.model_dump() for c in answer.citations],
                "conflictDisclaimer": answer.conflict_disclaimer,
                "degraded": answer.degraded,
                "disclaimer": answer.disclaimer,
                "searchUnavailable": answer.search_unavailable,
                "queries": answer.query_history,
            },
            token_count=answer.usage.total,
        )


def register_default_tools(
    registry: ToolRegistry,
    model: ReasoningModel,
    rag: Optional[AgenticRAG] = None,
    token_counter: Optional[TokenCounter] = None,
) -> DefaultToolHandlers:
    """Register the built-in catalog; search is only offered when retrieval is configured"""

    handlers = DefaultToolHandlers(model, rag, token_counter)
    registry.register_tool(EXPLAIN_TEXT_SCHEMA, handlers.explain_text)
    registry.register_tool(SUMMARIZE_PAGE_SCHEMA, handlers.summarize_page)
    if rag is not None:
        registry.register_tool(SEARCH_WEB_SCHEMA, handlers.search)
    return handlers
