from typing import List

from ponder.domain.tool.tool_registry import ToolSchema

EXPLAIN_TOOL = "explain_text_with_context"
SEARCH_TOOL = "search_web_for_info"
SUMMARIZE_TOOL = "summarize_page_content"

# Tools whose failures can carry a search-outage signature
SEARCH_TOOLS = {SEARCH_TOOL}


EXPLAIN_TEXT_SCHEMA = ToolSchema(
    name=EXPLAIN_TOOL,
    description=(
        "Explain selected text using the surrounding page content. Use this when the user "
        "wants a concept, term or passage clarified."
    ),
    category="explanation",
    parameters={
        "type": "object",
        "properties": {
            "selectedText": {"type": "string", "description": "The text the user selected"},
            "contextBefore": {"type": "string", "description": "Text preceding the selection"},
            "contextAfter": {"type": "string", "description": "Text following the selection"},
            "pageTitle": {"type": "string", "description": "Title of the page"},
        },
        "required": ["selectedText"],
    },
    examples=[
        {"selectedText": "eventual consistency", "pageTitle": "Distributed Systems Primer"},
    ],
)

SEARCH_WEB_SCHEMA = ToolSchema(
    name=SEARCH_TOOL,
    description=(
        "Search the user's knowledge base and the web for current or missing information. "
        "Results are graded for relevance and the answer cites its sources."
    ),
    category="search",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
            "context": {"type": "string", "description": "Why the information is needed"},
        },
        "required": ["query"],
    },
    examples=[
        {"query": "python 3.13 free-threaded build status", "context": "user reading release notes"},
    ],
)

SUMMARIZE_PAGE_SCHEMA = ToolSchema(
    name=SUMMARIZE_TOOL,
    description="Summarize the content of a page into its key points.",
    category="summarization",
    parameters={
        "type": "object",
        "properties": {
            "pageContent": {"type": "string", "description": "Full text of the page"},
            "pageTitle": {"type": "string", "description": "Title of the page"},
            "pageUrl": {"type": "string", "description": "URL of the page"},
            "maxLength": {"type": "number", "description": "Approximate maximum summary length in words"},
        },
        "required": ["pageContent"],
    },
    examples=[
        {"pageContent": "...", "pageTitle": "Release notes", "maxLength": 150},
    ],
)


def default_tool_schemas() -> List[ToolSchema]:
    return [EXPLAIN_TEXT_SCHEMA, SEARCH_WEB_SCHEMA, SUMMARIZE_PAGE_SCHEMA]
