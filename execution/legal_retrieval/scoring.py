"""
Corpus Caps and Confidence Scoring

CorpusCapper drops tail entries once a corpus reaches its cap (never reorders).

ConfidenceScorer computes a bounded [0, 1] heuristic:
    confidence = 0.4 · primary
               + 0.3 · [retrieved via graph_citation]
               + 0.2 · keyword overlap with the query keywords
               + 0.1 · [found by more than one method]

primary is the MMR score when present, else min(rrf / 10, 1), else the raw
retrieval score.
"""

import logging
from dataclasses import replace as _replace
from typing import Optional

from .config import (
    CONFIDENCE_CORROBORATION_WEIGHT,
    CONFIDENCE_GRAPH_WEIGHT,
    CONFIDENCE_KEYWORD_WEIGHT,
    CONFIDENCE_PRIMARY_WEIGHT,
    Corpus,
    DEFAULT_MIN_CONFIDENCE,
    RRF_CONFIDENCE_DIVISOR,
)
from .models import RetrievalMethod, RetrievedChunk
from .searchers import keyword_overlap

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class CorpusCapper:
    """Per-corpus result cap. A corpus without a cap is unbounded."""

    def cap(self, chunks: list[RetrievedChunk], caps: Optional[dict] = None) -> list[RetrievedChunk]:
        if not caps:
            return list(chunks)

        counts: dict[Corpus, int] = {}
        kept = []
        for chunk in chunks:
            limit = caps.get(chunk.corpus)
            seen = counts.get(chunk.corpus, 0)
            if limit is not None and seen >= limit:
                continue
            counts[chunk.corpus] = seen + 1
            kept.append(chunk)

        if len(kept) < len(chunks):
            logger.debug(f"Corpus caps dropped {len(chunks) - len(kept)} results")
        return kept


class ConfidenceScorer:
    """Confidence model with the weights exposed as attributes for inspection."""

    primary_weight = CONFIDENCE_PRIMARY_WEIGHT
    graph_weight = CONFIDENCE_GRAPH_WEIGHT
    keyword_weight = CONFIDENCE_KEYWORD_WEIGHT
    corroboration_weight = CONFIDENCE_CORROBORATION_WEIGHT

    @staticmethod
    def primary_score(chunk: RetrievedChunk) -> float:
        """MMR score, else scaled RRF, else raw retrieval score (normalized to [0, 1])."""
        scores = chunk.scores
        if scores.mmr is not None:
            return _clamp(scores.mmr)
        if scores.rrf is not None:
            return min(scores.rrf / RRF_CONFIDENCE_DIVISOR, 1.0)
        return _clamp(scores.retrieval or 0.0)

    def confidence(self, chunk: RetrievedChunk, keywords: list[str]) -> float:
        methods = chunk.retrieval_methods
        value = (
            self.primary_weight * self.primary_score(chunk)
            + (self.graph_weight if RetrievalMethod.GRAPH_CITATION in methods else 0.0)
            + self.keyword_weight * keyword_overlap(chunk.content, keywords)
            + (self.corroboration_weight if len(methods) > 1 else 0.0)
        )
        return _clamp(value)

    def score(
        self,
        chunks: list[RetrievedChunk],
        keywords: list[str],
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        fused_rank: Optional[dict] = None,
    ) -> list[RetrievedChunk]:
        """
        Attach confidence, drop chunks below min_confidence and order by confidence.

        Args:
            chunks: Candidates in fused/diversified order
            keywords: Normalized query keywords
            min_confidence: Inclusive threshold
            fused_rank: Optional (corpus, id) -> fused position used to break ties;
                        input order breaks ties when omitted

        Returns:
            Surviving chunks, confidence descending; ties keep fused order
        """
        scored = []
        for chunk in chunks:
            value = self.confidence(chunk, keywords)
            if value < min_confidence:
                continue
            scored.append(_replace(chunk, scores=_replace(chunk.scores, confidence=value)))

        if fused_rank:
            fallback = len(fused_rank)
            scored.sort(key=lambda c: (-c.scores.confidence, fused_rank.get(c.key, fallback)))
        else:
            scored.sort(key=lambda c: c.scores.confidence, reverse=True)
        return scored
