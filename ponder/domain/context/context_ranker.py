from typing import Dict, List, Set
import re

from ponder.domain.tool.tool_registry import ToolSchema

_WORD = re.compile(r"\w+")


def _words(text: str) -> Set[str]:
    return set(_WORD.findall(text.lower()))


class ContextRanker:
    """Keyword-overlap relevance between a query and candidate text"""

    def calculate_relevance(self, query: str, content: str) -> float:
        """Fraction of query words present in content, boosted for a verbatim match"""

        query_words = _words(query)
        if not query_words:
            return 0.0

        score = len(query_words & _words(content)) / len(query_words)
        if query.strip().lower() in content.lower():
            score += 0.3
        return min(score, 1.0)

    def rank_tools(self, query: str, tools: List[ToolSchema]) -> Dict[str, float]:
        """Score tools by relevance to a query; name matches weigh double"""

        query_words = _words(query)
        scores = {}
        for tool in tools:
            name_overlap = len(query_words & _words(tool.name.replace("_", " ")))
            desc_overlap = len(query_words & _words(tool.description))
            score = (name_overlap * 2 + desc_overlap) / len(query_words) if query_words else 0.0
            scores[tool.name] = min(score, 1.0)
        return scores

    def order_tools(self, query: str, tools: List[ToolSchema]) -> List[ToolSchema]:
        """Tools sorted most relevant first; ties keep registration order"""

        scores = self.rank_tools(query, tools)
        return sorted(tools, key=lambda t: -scores.get(t.name, 0.0))
