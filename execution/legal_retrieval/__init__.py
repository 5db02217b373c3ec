"""
Legal Retrieval - Hybrid Retrieval for Croatian Legal Corpora

This module turns a free-text legal query into a ranked, deduplicated,
confidence-scored list of chunks drawn from three corpora:
- Laws (statutes, indexed by Narodne novine issue)
- Case filings (indexed by case number)
- Court decisions

Retrieval combines vector similarity, keyword matching and direct citation
lookup, fused with Reciprocal Rank Fusion and diversified with MMR.
"""

__version__ = "0.3.0"

from .config import Corpus, RetrievalOptions, RetrievalSettings
from .citation import CitationDetector
from .query_normalizer import QueryNormalizer, NormalizedQuery
from .models import RetrievedChunk, RetrievalResult, RetrievalStats
from .errors import CancellationToken, RetrievalCancelled, RetrievalError
from .vector_store import InMemoryCorpusStore, PostgresCorpusStore, StoredChunk
from .retriever import HybridRetriever, get_retriever

__all__ = [
    "Corpus",
    "RetrievalOptions",
    "RetrievalSettings",
    "CitationDetector",
    "QueryNormalizer",
    "NormalizedQuery",
    "RetrievedChunk",
    "RetrievalResult",
    "RetrievalStats",
    "CancellationToken",
    "RetrievalCancelled",
    "RetrievalError",
    "InMemoryCorpusStore",
    "PostgresCorpusStore",
    "StoredChunk",
    "HybridRetriever",
    "get_retriever",
]
