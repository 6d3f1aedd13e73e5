"""Agentic retrieval: grade, rewrite and retry, then synthesize with citations.

Internal knowledge is consulted before external search and is cited first.
When retrieval fails entirely the answer comes from the model alone and is
marked degraded with a disclaimer.
"""
from typing import List, Optional, Protocol, Tuple
from pydantic import BaseModel, Field
from enum import Enum
from langchain_core.messages import HumanMessage, SystemMessage
import re
import structlog

from ponder.domain.context.memory.knowledge_store import KnowledgeMatch, KnowledgeStore
from ponder.domain.errors import RunCancelled
from ponder.domain.models.agent_state import TokenCounts
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.reasoning.reasoning_model import ReasoningModel, complete
from ponder.infrastructure.tokenizer import TokenCounter

logger = structlog.get_logger(__name__)

FALLBACK_DISCLAIMER = (
    "Search results were limited or not relevant. Response may rely on the AI's "
    "internal knowledge, which could be outdated or incomplete."
)
SEARCH_UNAVAILABLE_DISCLAIMER = "Search was unavailable. Response relies on AI knowledge which may be outdated."
NO_RESULTS_ANSWER = "No relevant information found from your knowledge base or web search."

GRADING_SYSTEM_PROMPT = "You are a search result relevance evaluator."
REWRITE_SYSTEM_PROMPT = "You are a search query optimization expert."
SYNTHESIS_SYSTEM_PROMPT = """You are a research assistant that synthesizes information from the user's knowledge base and web search results.

Your task:
1. Synthesize a comprehensive answer using both sources
2. Cite sources using [N] notation where N is the source number
3. If you notice any conflicts between sources, mention them briefly
4. Prioritize accuracy and cite specific sources for claims"""
KNOWLEDGE_ONLY_SYSTEM_PROMPT = """You are a helpful assistant. No retrieved sources are available, answer from your own knowledge.
Be explicit about uncertainty and do not invent citations."""

GRADING_TEMPLATE = """Evaluate whether each search result is relevant to the query.

Query: {query}
Context: {context}

Results:
{results}

For each result respond with:
<result index="N">
<relevance>RELEVANT or NOT_RELEVANT</relevance>
<confidence>0.0-1.0</confidence>
<reasoning>one sentence</reasoning>
</result>"""

REWRITE_TEMPLATE = """The search query below returned poor results. Rewrite it using a different strategy (broader terms, synonyms, related concepts).

Original query: {query}
Context: {context}

Results that were not relevant:
{failed}

Respond with the new query inside <rewritten_query></rewritten_query>."""

_RESULT_BLOCK = re.compile(r"<result[^>]*index\s*=\s*[\"']?(\d+)[\"']?[^>]*>([\s\S]*?)</result>", re.IGNORECASE)
_CONFLICT_PATTERNS = [
    re.compile(r"\b(?:however|note|importantly|discrepanc\w*|conflict\w*|differs?|contradict\w*)\b[^.]*\.", re.IGNORECASE),
    re.compile(r"\bthe sources? (?:disagree|differ|conflict)[^.]*\.", re.IGNORECASE),
]


class Relevance(str, Enum):
    RELEVANT = "relevant"
    NOT_RELEVANT = "not_relevant"


class SearchResult(BaseModel):
    """External search hit"""
    title: str
    snippet: str
    url: str


class GradedResult(BaseModel):
    result: SearchResult
    relevance: Relevance
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class SearchProvider(Protocol):
    """External search capability"""

    async def search(self, query: str, limit: int) -> List[SearchResult]:
        ...


class RAGConfig(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    relevance_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    max_results: int = Field(default=5, ge=1)


class RAGResult(BaseModel):
    """Outcome of the retrieval loop"""
    relevant_results: List[GradedResult] = Field(default_factory=list)
    knowledge_matches: List[KnowledgeMatch] = Field(default_factory=list)
    query_history: List[str] = Field(default_factory=list)
    fallback_used: bool = False
    search_unavailable: bool = False
    disclaimer: Optional[str] = None
    usage: TokenCounts = Field(default_factory=TokenCounts)


class Citation(BaseModel):
    index: int = Field(ge=1)
    title: str
    url: Optional[str] = None
    snippet: str = ""
    source: str = Field(description="knowledge_base or web")


class RAGAnswer(BaseModel):
    """Synthesized answer with numbered citations"""
    answer: str
    citations: List[Citation] = Field(default_factory=list)
    conflict_disclaimer: Optional[str] = None
    degraded: bool = False
    search_unavailable: bool = False
    disclaimer: Optional[str] = None
    query_history: List[str] = Field(default_factory=list)
    usage: TokenCounts = Field(default_factory=TokenCounts)


def extract_tag_content(text: str, tag: str) -> str:
    match = re.search(f"<{tag}>([\\s\\S]*?)</{tag}>", text or "", re.IGNORECASE)
    return match.group(1).strip() if match else ""


def parse_relevance(value: str) -> Relevance:
    return Relevance.NOT_RELEVANT if value.strip().upper() == "NOT_RELEVANT" else Relevance.RELEVANT


def parse_confidence(value: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.5
    if parsed != parsed:
        return 0.5
    return max(0.0, min(1.0, parsed))


def parse_grading_response(response: str, results: List[SearchResult]) -> List[GradedResult]:
    """Tolerant parse of grading output; unparseable output grades everything relevant"""

    graded = []
    for match in _RESULT_BLOCK.finditer(response or ""):
        index = int(match.group(1))
        if 0 <= index < len(results):
            body = match.group(2)
            graded.append(GradedResult(
                result=results[index],
                relevance=parse_relevance(extract_tag_content(body, "relevance")),
                confidence=parse_confidence(extract_tag_content(body, "confidence")),
                reasoning=extract_tag_content(body, "reasoning") or "No reasoning provided",
            ))

    if not graded:
        return [
            GradedResult(
                result=result,
                relevance=Relevance.RELEVANT,
                confidence=0.5,
                reasoning="Grading response could not be parsed; defaulting to relevant",
            )
            for result in results
        ]
    return graded


def parse_rewritten_query(response: str, original: str) -> str:
    rewritten = extract_tag_content(response, "rewritten_query")
    if rewritten:
        return rewritten
    lines = [line.strip() for line in (response or "").splitlines() if line.strip() and "<" not in line]
    if lines and len(lines[0]) < 200:
        return lines[0]
    return f"{original} explained"


def is_duplicate_query(query: str, history: List[str]) -> bool:
    normalized = query.strip().lower()
    return any(previous.strip().lower() == normalized for previous in history)


def calculate_relevance_ratio(graded: List[GradedResult]) -> float:
    if not graded:
        return 0.0
    return sum(1 for g in graded if g.relevance == Relevance.RELEVANT) / len(graded)


def filter_relevant_results(graded: List[GradedResult]) -> List[GradedResult]:
    return [g for g in graded if g.relevance == Relevance.RELEVANT]


def format_results_for_citation(relevant: List[GradedResult]) -> str:
    if not relevant:
        return "No relevant sources found."
    return "\n\n".join(
        f"[{i}] {g.result.title}\n{g.result.snippet}\nSource: {g.result.url}"
        for i, g in enumerate(relevant, start=1)
    )


def build_citations(knowledge: List[KnowledgeMatch], web: List[GradedResult]) -> List[Citation]:
    """Knowledge-base sources first, then web sources, numbered from 1"""

    citations = []
    for match in knowledge:
        citations.append(Citation(
            index=len(citations) + 1,
            title=match.document.title,
            url=match.document.source_url,
            snippet=match.document.content[:200],
            source="knowledge_base",
        ))
    for graded in web:
        citations.append(Citation(
            index=len(citations) + 1,
            title=graded.result.title,
            url=graded.result.url,
            snippet=graded.result.snippet,
            source="web",
        ))
    return citations


def extract_conflict_disclaimer(answer: str) -> Optional[str]:
    """First sentence that signals disagreement between sources, if any"""

    for pattern in _CONFLICT_PATTERNS:
        match = pattern.search(answer or "")
        if match:
            return match.group(0).strip()
    return None


def format_citations(citations: List[Citation]) -> str:
    lines = []
    for citation in citations:
        label = "[Knowledge Base]" if citation.source == "knowledge_base" else "[Web Source]"
        location = f" - {citation.url}" if citation.url else ""
        lines.append(f"[{citation.index}] {label} {citation.title}{location}")
    return "\n".join(lines)


class AgenticRAG:
    """Retrieval helper used by the search tool"""

    def __init__(
        self,
        model: ReasoningModel,
        search_provider: Optional[SearchProvider] = None,
        knowledge_store: Optional[KnowledgeStore] = None,
        config: Optional[RAGConfig] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.model = model
        self.search_provider = search_provider
        self.knowledge_store = knowledge_store
        self.config = config or RAGConfig()
        self.token_counter = token_counter

    async def _ask(self, system: str, prompt: str, cancel_token: Optional[CancellationToken]):
        return await complete(
            self.model,
            [SystemMessage(content=system), HumanMessage(content=prompt)],
            cancel_token,
            token_counter=self.token_counter,
        )

    async def grade_results(
        self,
        results: List[SearchResult],
        query: str,
        context: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[List[GradedResult], TokenCounts]:
        """Ask the model to judge each result's relevance"""

        if not results:
            return [], TokenCounts()

        formatted = "\n\n".join(
            f"[{i}] Title: {r.title}\nSnippet: {r.snippet}\nURL: {r.url}" for i, r in enumerate(results)
        )
        prompt = GRADING_TEMPLATE.format(
            query=query,
            context=context or "No additional context provided",
            results=formatted,
        )
        response = await self._ask(GRADING_SYSTEM_PROMPT, prompt, cancel_token)
        return parse_grading_response(response.text, results), response.usage

    async def rewrite_query(
        self,
        query: str,
        failed: List[GradedResult],
        context: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[str, TokenCounts]:
        """Reformulate a query that produced poor results"""

        formatted = "\n\n".join(
            f"[{i}] Title: {g.result.title}\nSnippet: {g.result.snippet}\nReason not relevant: {g.reasoning}"
            for i, g in enumerate(g for g in failed if g.relevance == Relevance.NOT_RELEVANT)
        )
        prompt = REWRITE_TEMPLATE.format(
            query=query,
            context=context or "No additional context",
            failed=formatted or "No specific failed results",
        )
        response = await self._ask(REWRITE_SYSTEM_PROMPT, prompt, cancel_token)
        return parse_rewritten_query(response.text, query), response.usage

    async def retrieve(
        self,
        query: str,
        context: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> RAGResult:
        """Knowledge lookup, then search/grade/rewrite until enough results are relevant"""

        usage = TokenCounts()
        knowledge: List[KnowledgeMatch] = []
        if self.knowledge_store is not None:
            knowledge = await self.knowledge_store.search(query, self.config.max_results)

        if self.search_provider is None:
            return RAGResult(
                knowledge_matches=knowledge,
                query_history=[query],
                fallback_used=True,
                search_unavailable=True,
                disclaimer=None if knowledge else SEARCH_UNAVAILABLE_DISCLAIMER,
            )

        history = [query]
        current = query
        attempts = 0
        last_graded: List[GradedResult] = []
        searched = False

        while attempts <= self.config.max_retries:
            try:
                results = await self._search(current, cancel_token)
                searched = True
                if results:
                    last_graded, spent = await self.grade_results(results, current, context, cancel_token)
                    usage = usage.plus(spent)
                    ratio = calculate_relevance_ratio(last_graded)
                    if ratio >= self.config.relevance_threshold:
                        return RAGResult(
                            relevant_results=filter_relevant_results(last_graded),
                            knowledge_matches=knowledge,
                            query_history=history,
                            usage=usage,
                        )
                    logger.info("Search results below relevance threshold", query=current, ratio=ratio)

                attempts += 1
                if attempts > self.config.max_retries:
                    break
                rewritten, spent = await self.rewrite_query(current, last_graded if results else [], context, cancel_token)
                usage = usage.plus(spent)
                if is_duplicate_query(rewritten, history):
                    break
                current = rewritten
                history.append(current)
            except RunCancelled:
                raise
            except Exception as e:
                logger.warning("Search attempt failed", query=current, error=str(e))
                attempts += 1

        return RAGResult(
            relevant_results=filter_relevant_results(last_graded),
            knowledge_matches=knowledge,
            query_history=history,
            fallback_used=True,
            search_unavailable=not searched,
            disclaimer=FALLBACK_DISCLAIMER if searched else SEARCH_UNAVAILABLE_DISCLAIMER,
            usage=usage,
        )

    async def _search(self, query: str, cancel_token: Optional[CancellationToken]) -> List[SearchResult]:
        call = self.search_provider.search(query, self.config.max_results)
        if cancel_token is None:
            return await call
        return await cancel_token.guard(call)

    async def synthesize(
        self,
        query: str,
        retrieved: RAGResult,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RAGAnswer:
        """Answer from retrieved sources with [n] citations, or from model knowledge when nothing was found"""

        citations = build_citations(retrieved.knowledge_matches, retrieved.relevant_results)

        if not citations:
            if not retrieved.fallback_used:
                return RAGAnswer(answer=NO_RESULTS_ANSWER, query_history=retrieved.query_history, usage=retrieved.usage)
            response = await self._ask(KNOWLEDGE_ONLY_SYSTEM_PROMPT, query, cancel_token)
            return RAGAnswer(
                answer=response.text.strip(),
                degraded=True,
                search_unavailable=retrieved.search_unavailable,
                disclaimer=retrieved.disclaimer or FALLBACK_DISCLAIMER,
                query_history=retrieved.query_history,
                usage=retrieved.usage.plus(response.usage),
            )

        response = await self._ask(
            SYNTHESIS_SYSTEM_PROMPT,
            self._synthesis_context(query, citations),
            cancel_token,
        )
        answer = response.text.strip()
        return RAGAnswer(
            answer=answer,
            citations=citations,
            conflict_disclaimer=extract_conflict_disclaimer(answer),
            degraded=retrieved.fallback_used,
            search_unavailable=retrieved.search_unavailable,
            disclaimer=retrieved.disclaimer,
            query_history=retrieved.query_history,
            usage=retrieved.usage.plus(response.usage),
        )

    @staticmethod
    def _synthesis_context(query: str, citations: List[Citation]) -> str:
        parts = [f"User Query: {query}", ""]
        knowledge = [c for c in citations if c.source == "knowledge_base"]
        web = [c for c in citations if c.source == "web"]
        if knowledge:
            parts.append("=== From Your Knowledge Base ===")
            for c in knowledge:
                parts.extend([f"[{c.index}] {c.title}", f"Source: {c.url or 'n/a'}", f"Content: {c.snippet}", ""])
        if web:
            parts.append("=== From Web Search ===")
            for c in web:
                parts.extend([f"[{c.index}] {c.title}", f"Source: {c.url}", f"Content: {c.snippet}", ""])
        return "\n".join(parts)

    async def answer(
        self,
        query: str,
        context: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> RAGAnswer:
        """retrieve then synthesize"""

        retrieved = await self.retrieve(query, context, cancel_token)
        return await self.synthesize(query, retrieved, cancel_token)
