"""
Reciprocal Rank Fusion

Merges the per-method ranked lists into one ranking:
    rrf(d) = sum over lists containing d of 1 / (k + rank + 1)

rank is zero-based. Documents are merged by (corpus, id); each fused chunk
records where it appeared (sources) and the union of its retrieval methods.
"""

import logging
from dataclasses import replace as _replace
from typing import Callable

from .config import Corpus, DEFAULT_RRF_K
from .models import FusedSource, RetrievalMethod, RetrievedChunk

logger = logging.getLogger(__name__)

__all__ = ["RankFuser", "FusedSource"]


class RankFuser:
    """Reciprocal Rank Fusion over named ranked lists."""

    def __init__(self, k: int = DEFAULT_RRF_K):
        self.k = k

    def contribution(self, rank: int) -> float:
        return 1.0 / (self.k + rank + 1)

    def fuse(self, ranked_lists: dict) -> list[RetrievedChunk]:
        """
        Fuse ranked lists.

        Args:
            ranked_lists: Map of RetrievalMethod -> chunks ordered best first.
                          Iteration order of the map breaks RRF ties.

        Returns:
            New chunk objects ordered by RRF score descending (stable on ties)
        """
        fused: dict[tuple, RetrievedChunk] = {}

        for method, chunks in ranked_lists.items():
            method = RetrievalMethod(method)
            for rank, chunk in enumerate(chunks):
                contribution = self.contribution(rank)
                source = FusedSource(
                    method=method,
                    rank=rank,
                    original_score=chunk.scores.retrieval,
                    rrf_contribution=contribution,
                )

                existing = fused.get(chunk.key)
                if existing is None:
                    fused[chunk.key] = _replace(
                        chunk,
                        metadata=dict(chunk.metadata),
                        scores=_replace(chunk.scores, rrf=contribution),
                        retrieval_methods=set(chunk.retrieval_methods) | {method},
                        sources=[source],
                    )
                    continue

                # Same document from another list (or twice in one list): merge
                rrf = (existing.scores.rrf or 0.0) + contribution
                existing.scores = existing.scores.merged(chunk.scores)
                existing.scores.rrf = rrf
                existing.retrieval_methods |= chunk.retrieval_methods | {method}
                existing.sources.append(source)
                for key, value in chunk.metadata.items():
                    existing.metadata.setdefault(key, value)

        results = list(fused.values())
        results.sort(key=lambda c: c.scores.rrf, reverse=True)
        logger.debug(f"RRF fused {sum(len(v) for v in ranked_lists.values())} hits into {len(results)} documents")
        return results

    @staticmethod
    def apply_weights(fused: list[RetrievedChunk], weight_for: Callable[[Corpus], float]) -> list[RetrievedChunk]:
        """
        Multiply each RRF score by its corpus weight and stably re-sort.

        A weight of 1.0 for every corpus leaves the ranking unchanged.
        """
        weighted = []
        for chunk in fused:
            weight = weight_for(chunk.corpus)
            if weight != 1.0:
                chunk = _replace(chunk, scores=_replace(chunk.scores, rrf=(chunk.scores.rrf or 0.0) * weight))
            weighted.append(chunk)
        weighted.sort(key=lambda c: c.scores.rrf, reverse=True)
        return weighted
