"""
Retrieval Data Model

RetrievedChunk is the unit passed between pipeline stages. Its identity is
(corpus, id): two chunks with the same key found by different retrieval
methods are merged, never duplicated.
"""

from enum import Enum
from typing import Optional, TYPE_CHECKING
from dataclasses import dataclass, field

from .config import Corpus

if TYPE_CHECKING:
    from .citation import CitationSummary
    from .query_normalizer import NormalizedQuery


class RetrievalMethod(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    GRAPH_CITATION = "graph_citation"


def _max_or_none(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass
class ChunkScores:
    """Per-stage scores. A stage that did not score the chunk leaves None."""
    vector: Optional[float] = None
    keyword: Optional[float] = None
    graph_boost: Optional[float] = None
    rrf: Optional[float] = None
    mmr: Optional[float] = None
    confidence: Optional[float] = None

    def merged(self, other: "ChunkScores") -> "ChunkScores":
        """Combine scores of the same chunk from two methods (best of each)."""
        return ChunkScores(
            vector=_max_or_none(self.vector, other.vector),
            keyword=_max_or_none(self.keyword, other.keyword),
            graph_boost=_max_or_none(self.graph_boost, other.graph_boost),
            rrf=_max_or_none(self.rrf, other.rrf),
            mmr=_max_or_none(self.mmr, other.mmr),
            confidence=_max_or_none(self.confidence, other.confidence),
        )

    @property
    def retrieval(self) -> Optional[float]:
        """Best raw retrieval score across methods."""
        return _max_or_none(_max_or_none(self.vector, self.keyword), self.graph_boost)

    def to_dict(self) -> dict:
        return {
            "vector": self.vector,
            "keyword": self.keyword,
            "graph_boost": self.graph_boost,
            "rrf": self.rrf,
            "mmr": self.mmr,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class FusedSource:
    """One appearance of a document in a ranked list, recorded by the fuser."""
    method: RetrievalMethod
    rank: int
    original_score: Optional[float]
    rrf_contribution: float

    def to_dict(self) -> dict:
        return {
            "method": self.method.value,
            "rank": self.rank,
            "original_score": self.original_score,
            "rrf_contribution": self.rrf_contribution,
        }


@dataclass
class RetrievedChunk:
    """A candidate chunk from one of the three corpora."""
    id: str
    corpus: Corpus
    title: str
    content: str
    chunk_index: int = 0
    metadata: dict = field(default_factory=dict)
    scores: ChunkScores = field(default_factory=ChunkScores)
    retrieval_methods: set = field(default_factory=set)  # set[RetrievalMethod]
    sources: list = field(default_factory=list)  # list[FusedSource]

    @property
    def key(self) -> tuple[Corpus, str]:
        return (self.corpus, self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "corpus": self.corpus.value,
            "title": self.title,
            "content": self.content,
            "chunk_index": self.chunk_index,
            "metadata": self.metadata,
            "scores": self.scores.to_dict(),
            # Sorted for stable JSON output
            "retrieval_methods": sorted(m.value for m in self.retrieval_methods),
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass
class RetrievalStats:
    vector_count: int = 0
    keyword_count: int = 0
    graph_count: int = 0
    merged_count: int = 0
    final_count: int = 0
    failed_methods: list[str] = field(default_factory=list)
    all_branches_failed: bool = False
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "vector_count": self.vector_count,
            "keyword_count": self.keyword_count,
            "graph_count": self.graph_count,
            "merged_count": self.merged_count,
            "final_count": self.final_count,
            "failed_methods": list(self.failed_methods),
            "all_branches_failed": self.all_branches_failed,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@dataclass
class RetrievalResult:
    """Output of HybridRetriever.retrieve()."""
    normalized_query: "NormalizedQuery"
    citations_detected: "CitationSummary"
    chunks: list[RetrievedChunk]
    retrieval_stats: RetrievalStats

    def to_dict(self) -> dict:
        return {
            "normalized_query": self.normalized_query.to_dict(),
            "citations_detected": self.citations_detected.to_dict(),
            "chunks": [c.to_dict() for c in self.chunks],
            "retrieval_stats": self.retrieval_stats.to_dict(),
        }
