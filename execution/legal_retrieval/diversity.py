"""
Maximal Marginal Relevance Diversification

Greedy re-ranking of fused candidates:
    mmr(d) = λ·cos(d, query) − (1−λ)·max_{s ∈ selected} cos(d, s)

Embeddings come from the corpus store. Candidates without a retrievable
embedding cannot be scored and are skipped.
"""

import logging
from dataclasses import replace as _replace
from typing import Optional

import numpy as np

from .config import Corpus, DEFAULT_MMR_LAMBDA, DEFAULT_TOP_K
from .errors import CancellationToken, RetrievalError
from .models import RetrievedChunk
from .vector_store import BaseCorpusStore

logger = logging.getLogger(__name__)


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


class Diversifier:
    """MMR re-ranker backed by stored chunk embeddings."""

    def __init__(self, store: BaseCorpusStore):
        self.store = store

    def load_embeddings(self, candidates: list[RetrievedChunk],
                        cancel_token: Optional[CancellationToken] = None) -> dict[tuple, list[float]]:
        """Fetch embeddings for the candidates, one store call per corpus."""
        ids_by_corpus: dict[Corpus, list[str]] = {}
        for chunk in candidates:
            ids_by_corpus.setdefault(chunk.corpus, []).append(chunk.id)

        embeddings = {}
        for corpus, ids in ids_by_corpus.items():
            try:
                found = self.store.get_embeddings(corpus, ids, cancel_token=cancel_token)
            except RetrievalError as e:
                logger.warning(f"MMR embeddings unavailable: corpus={corpus.value} error={e}")
                continue
            for chunk_id, vector in found.items():
                embeddings[(corpus, chunk_id)] = vector
        return embeddings

    def diversify(
        self,
        candidates: list[RetrievedChunk],
        query_embedding: Optional[list[float]],
        top_k: int = DEFAULT_TOP_K,
        mmr_lambda: float = DEFAULT_MMR_LAMBDA,
        embeddings: Optional[dict[tuple, list[float]]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RetrievedChunk]:
        """
        Select up to top_k candidates by MMR.

        Args:
            candidates: Fused candidates, best first (input order breaks ties)
            query_embedding: Embedding of the query; nothing is scorable without it
            top_k: Maximum number of selections
            mmr_lambda: Relevance/diversity trade-off (1.0 = pure relevance)
            embeddings: Pre-loaded (corpus, id) -> vector map; loaded from the store when None
            cancel_token: Passed to the store while loading embeddings

        Returns:
            Selected chunks in selection order with scores.mmr set
        """
        if not candidates or top_k <= 0 or not query_embedding:
            return []

        if embeddings is None:
            embeddings = self.load_embeddings(candidates, cancel_token)

        query_vec = np.asarray(query_embedding, dtype=float)
        pool = []
        skipped = 0
        for chunk in candidates:
            vector = embeddings.get(chunk.key)
            if vector is None:
                skipped += 1
                continue
            vec = np.asarray(vector, dtype=float)
            pool.append((chunk, vec, cosine_similarity(vec, query_vec)))

        if skipped:
            logger.debug(f"MMR skipped {skipped} candidates without embeddings")

        selected: list[RetrievedChunk] = []
        selected_vecs: list[np.ndarray] = []

        while pool and len(selected) < top_k:
            best_pos = None
            best_score = None
            for pos, (_, vec, relevance) in enumerate(pool):
                redundancy = max((cosine_similarity(vec, s) for s in selected_vecs), default=0.0)
                score = mmr_lambda * relevance - (1 - mmr_lambda) * redundancy
                # Strict > keeps the earlier candidate on ties
                if best_score is None or score > best_score:
                    best_pos, best_score = pos, score

            if best_pos is None:
                break

            chunk, vec, _ = pool.pop(best_pos)
            selected.append(_replace(chunk, scores=_replace(chunk.scores, mmr=best_score)))
            selected_vecs.append(vec)

        return selected
