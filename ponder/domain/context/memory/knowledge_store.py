from typing import Any, Dict, List, Optional, Protocol
from pydantic import BaseModel, Field
from datetime import datetime
import asyncio

from ponder.domain.context.context_ranker import ContextRanker
from ponder.domain.models.agent_state import utcnow

DEFAULT_TOP_K = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.3
MAX_DOCUMENTS = 1000


class KnowledgeDocument(BaseModel):
    """A note or page kept in the user's own knowledge base"""
    id: str
    title: str
    content: str
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class KnowledgeMatch(BaseModel):
    """Search hit with its relevance score"""
    document: KnowledgeDocument
    score: float = Field(ge=0.0, le=1.0)


class KnowledgeStore(Protocol):
    """Internal knowledge consulted before external search"""

    async def search(self, query: str, limit: int = DEFAULT_TOP_K) -> List[KnowledgeMatch]:
        ...


class InMemoryKnowledgeStore:
    """Keyword-ranked knowledge base held in memory"""

    def __init__(self, similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.documents: List[KnowledgeDocument] = []
        self.similarity_threshold = similarity_threshold
        self.ranker = ContextRanker()
        self._lock = asyncio.Lock()

    async def add(
        self,
        title: str,
        content: str,
        source_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Add a document; the oldest are dropped past the size cap"""

        async with self._lock:
            doc_id = f"kb_{len(self.documents)}_{int(utcnow().timestamp() * 1000)}"
            self.documents.append(KnowledgeDocument(
                id=doc_id,
                title=title,
                content=content,
                source_url=source_url,
                metadata=metadata or {},
            ))
            if len(self.documents) > MAX_DOCUMENTS:
                self.documents = self.documents[-MAX_DOCUMENTS:]
            return doc_id

    async def search(self, query: str, limit: int = DEFAULT_TOP_K) -> List[KnowledgeMatch]:
        """Documents above the similarity threshold, best first"""

        async with self._lock:
            documents = list(self.documents)

        matches = []
        for document in documents:
            score = self.ranker.calculate_relevance(query, f"{document.title}\n{document.content}")
            if score >= self.similarity_threshold:
                matches.append(KnowledgeMatch(document=document, score=score))

        matches.sort(key=lambda m: -m.score)
        return matches[:limit]
