"""
Pydantic models for the Legal Retrieval FastAPI backend.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator

from .config import (
    CORPUS_ALIASES,
    DEFAULT_GRAPH_LIMIT,
    DEFAULT_KEYWORD_LIMIT,
    DEFAULT_MIN_CONFIDENCE,
    DEFAULT_MMR_LAMBDA,
    DEFAULT_RRF_K,
    DEFAULT_SIMILARITY_THRESHOLD,
    DEFAULT_TOP_K,
    DEFAULT_VECTOR_LIMIT,
)


def _check_corpus(name: str) -> str:
    if name.strip().lower() not in CORPUS_ALIASES:
        raise ValueError(f"Unknown corpus '{name}'. Expected one of: {', '.join(sorted(CORPUS_ALIASES))}")
    return name


class RetrieveRequest(BaseModel):
    """Request body for the retrieval endpoint. Omitted fields use the retriever defaults."""
    query: str = Field(..., max_length=2000)
    corpora: Optional[list[str]] = None
    weights: dict[str, float] = Field(default_factory=dict)
    filters: dict[str, Any] = Field(default_factory=dict)
    top_k: int = Field(default=DEFAULT_TOP_K, ge=1, le=100)
    mmr_lambda: float = Field(default=DEFAULT_MMR_LAMBDA, ge=0.0, le=1.0)
    rrf_k: int = Field(default=DEFAULT_RRF_K, ge=1, le=1000)
    corpus_caps: dict[str, int] = Field(default_factory=dict)
    min_confidence: float = Field(default=DEFAULT_MIN_CONFIDENCE, ge=0.0, le=1.0)
    similarity_threshold: float = Field(default=DEFAULT_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)
    vector_limit: int = Field(default=DEFAULT_VECTOR_LIMIT, ge=1, le=500)
    keyword_limit: int = Field(default=DEFAULT_KEYWORD_LIMIT, ge=1, le=500)
    graph_limit: int = Field(default=DEFAULT_GRAPH_LIMIT, ge=1, le=200)
    diversify: bool = True
    jurisdiction: Optional[str] = Field(None, max_length=8)
    date_from: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    date_to: Optional[str] = Field(None, pattern=r"^\d{4}-\d{2}-\d{2}$")

    @field_validator("corpora")
    @classmethod
    def _known_corpora(cls, value):
        if value is not None:
            for name in value:
                _check_corpus(name)
        return value

    @field_validator("weights", "corpus_caps")
    @classmethod
    def _known_corpus_keys(cls, value):
        for name, amount in value.items():
            _check_corpus(name)
            if amount < 0:
                raise ValueError(f"Value for corpus '{name}' must be non-negative")
        return value


class ChunkScoresInfo(BaseModel):
    vector: Optional[float] = None
    keyword: Optional[float] = None
    graph_boost: Optional[float] = None
    rrf: Optional[float] = None
    mmr: Optional[float] = None
    confidence: Optional[float] = None


class ChunkInfo(BaseModel):
    """One retrieved chunk in a retrieval response."""
    id: str
    corpus: str
    title: str
    content: str
    chunk_index: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    scores: ChunkScoresInfo
    retrieval_methods: list[str]
    sources: list[dict[str, Any]] = Field(default_factory=list)


class RetrievalStatsInfo(BaseModel):
    vector_count: int
    keyword_count: int
    graph_count: int
    merged_count: int
    final_count: int
    failed_methods: list[str] = Field(default_factory=list)
    all_branches_failed: bool = False
    elapsed_ms: float = 0.0


class RetrieveResponse(BaseModel):
    """Response body for the retrieval endpoint."""
    normalized_query: dict[str, Any]
    citations_detected: dict[str, Any]
    chunks: list[ChunkInfo]
    retrieval_stats: RetrievalStatsInfo


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
    embedding_provider: str
