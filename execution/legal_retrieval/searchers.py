"""
Corpus Searchers for Hybrid Legal Retrieval

Three independent retrieval methods with the same contract:
    search(query, citations, corpora, limit, filters) -> ranked list (best first)

- VectorSearcher: cosine similarity over stored embeddings
- KeywordSearcher: ILIKE keyword match, score = matched / total keywords
- CitationGraphSearcher: direct lookup of cited gazette issues and case numbers

A failing corpus is logged and skipped; the searcher only raises when every
corpus it queried failed, so the orchestrator can count the branch as failed.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from .citation import CitationSummary
from .config import (
    Corpus,
    DEFAULT_GRAPH_LIMIT,
    DEFAULT_KEYWORD_LIMIT,
    DEFAULT_SIMILARITY_THRESHOLD,
    DEFAULT_VECTOR_LIMIT,
    GRAPH_CITATION_SCORE,
)
from .errors import CancellationToken, RetrievalCancelled, RetrievalError, StoreQueryError
from .models import ChunkScores, RetrievalMethod, RetrievedChunk
from .query_normalizer import NormalizedQuery
from .vector_store import BaseCorpusStore, StoredChunk

logger = logging.getLogger(__name__)


def keyword_overlap(text: str, keywords: list[str]) -> float:
    """Fraction of keywords found (case-insensitive substring) in text. 0 when no keywords."""
    if not keywords:
        return 0.0
    haystack = (text or "").lower()
    matched = sum(1 for kw in keywords if kw.lower() in haystack)
    return matched / len(keywords)


def to_retrieved(stored: StoredChunk, method: RetrievalMethod, scores: ChunkScores) -> RetrievedChunk:
    return RetrievedChunk(
        id=stored.id,
        corpus=stored.corpus,
        title=stored.title,
        content=stored.content,
        chunk_index=stored.chunk_index,
        metadata={**stored.metadata, "doc_id": stored.doc_id} if stored.doc_id else dict(stored.metadata),
        scores=scores,
        retrieval_methods={method},
    )


class BaseSearcher:
    """Per-corpus fan-out, failure isolation and degrade logging shared by the vector and keyword searchers."""

    method: RetrievalMethod

    def __init__(self, store: BaseCorpusStore, max_workers: int = 3):
        self.store = store
        self.max_workers = max_workers

    def _search_corpus(self, query: NormalizedQuery, corpus: Corpus, limit: int,
                       filters: Optional[dict], cancel_token: Optional[CancellationToken] = None,
                       **kwargs) -> list[RetrievedChunk]:
        raise NotImplementedError("Subclasses must implement _search_corpus()")

    def _fan_out(
        self,
        query: NormalizedQuery,
        corpora: list[Corpus],
        limit: int,
        filters: Optional[dict],
        cancel_token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> list[RetrievedChunk]:
        """Query every corpus concurrently, merge in canonical corpus order, sort by score."""
        if not corpora:
            return []

        per_corpus: dict[Corpus, list[RetrievedChunk]] = {}
        failures: list[Exception] = []

        with ThreadPoolExecutor(max_workers=min(len(corpora), self.max_workers)) as executor:
            futures = {
                corpus: executor.submit(self._search_corpus, query, corpus, limit, filters, cancel_token, **kwargs)
                for corpus in corpora
            }
            for corpus, future in futures.items():
                try:
                    per_corpus[corpus] = future.result()
                except RetrievalCancelled:
                    raise
                except Exception as e:
                    failures.append(e)
                    logger.warning(
                        f"{self.method.value} search degraded: corpus={corpus.value} "
                        f"query_hash={query.query_hash} error={e}"
                    )
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

        if failures and len(failures) == len(corpora):
            last = failures[-1]
            if isinstance(last, RetrievalError):
                raise last
            raise StoreQueryError(str(last), method=self.method.value) from last

        merged = []
        for corpus in corpora:
            merged.extend(per_corpus.get(corpus, []))
        # Stable: equal scores keep canonical corpus order
        merged.sort(key=self._score_of, reverse=True)
        return merged

    @staticmethod
    def _score_of(chunk: RetrievedChunk) -> float:
        return chunk.scores.retrieval or 0.0


class VectorSearcher(BaseSearcher):
    """
    Cosine-similarity search across enabled corpora.

    The query is embedded once per call (or the caller passes the embedding
    it already computed); each corpus returns hits with similarity >=
    threshold, best first, capped at limit per corpus.
    """

    method = RetrievalMethod.VECTOR

    def __init__(self, store: BaseCorpusStore, embedder, max_workers: int = 3):
        super().__init__(store, max_workers)
        self.embedder = embedder

    def search(
        self,
        query: NormalizedQuery,
        citations: Optional[CitationSummary],
        corpora: list[Corpus],
        limit: int = DEFAULT_VECTOR_LIMIT,
        filters: Optional[dict] = None,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        query_embedding: Optional[list[float]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RetrievedChunk]:
        """
        Vector search.

        Args:
            query: Normalized query (cleaned text is embedded)
            citations: Unused by this method, accepted for the common contract
            corpora: Corpora to search
            limit: Maximum hits per corpus
            filters: Optional metadata filters
            threshold: Minimum cosine similarity
            query_embedding: Pre-computed query embedding, embedded here when None
            cancel_token: Optional caller cancellation

        Returns:
            Chunks ordered by similarity descending

        Raises:
            EmbeddingFailure: the query could not be embedded
        """
        if query.is_empty or not corpora:
            return []

        if query_embedding is None:
            query_embedding = self.embedder.embed_query(query.cleaned_text)

        return self._fan_out(
            query, corpora, limit, filters, cancel_token,
            vector=query_embedding, threshold=threshold,
        )

    def _search_corpus(self, query, corpus, limit, filters, cancel_token=None,
                       vector=None, threshold=DEFAULT_SIMILARITY_THRESHOLD):
        hits = self.store.top_k_similar(
            corpus, vector, limit, threshold, filters=filters, cancel_token=cancel_token,
        )
        return [
            to_retrieved(hit.chunk, self.method, ChunkScores(vector=hit.score))
            for hit in hits
        ]


class KeywordSearcher(BaseSearcher):
    """
    Keyword match over title + content.

    score = matched keywords / total keywords; chunks with score 0 are dropped.
    """

    method = RetrievalMethod.KEYWORD

    def search(
        self,
        query: NormalizedQuery,
        citations: Optional[CitationSummary],
        corpora: list[Corpus],
        limit: int = DEFAULT_KEYWORD_LIMIT,
        filters: Optional[dict] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RetrievedChunk]:
        if not query.keywords or not corpora:
            return []
        return self._fan_out(query, corpora, limit, filters, cancel_token)

    def _search_corpus(self, query, corpus, limit, filters, cancel_token=None):
        keywords = list(query.keywords)
        results = []
        for stored in self.store.match(corpus, keywords, limit, filters=filters, cancel_token=cancel_token):
            score = keyword_overlap(f"{stored.title} {stored.content}", keywords)
            if score > 0:
                results.append(to_retrieved(stored, self.method, ChunkScores(keyword=score)))
        results.sort(key=lambda c: c.scores.keyword, reverse=True)
        return results[:limit]


class CitationGraphSearcher:
    """
    Direct citation lookup.

    Gazette references resolve against laws.law_number, case numbers against
    cases_documents.doc_id. Every hit gets GRAPH_CITATION_SCORE; the combined
    list is capped at limit across corpora.
    """

    method = RetrievalMethod.GRAPH_CITATION

    def __init__(self, store: BaseCorpusStore):
        self.store = store

    def search(
        self,
        query: NormalizedQuery,
        citations: Optional[CitationSummary],
        corpora: list[Corpus],
        limit: int = DEFAULT_GRAPH_LIMIT,
        filters: Optional[dict] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RetrievedChunk]:
        if citations is None or not corpora:
            return []

        lookups = []
        if Corpus.LAWS in corpora:
            for ref in citations.nn_references:
                lookups.append((Corpus.LAWS, ref.canonical, self.store.lookup_by_law_number, ref.issue))
        if Corpus.CASE_DOCUMENTS in corpora:
            for case in citations.case_numbers:
                lookups.append((Corpus.CASE_DOCUMENTS, case.canonical, self.store.lookup_by_case_number,
                                case.lookup_pattern))
        if not lookups:
            return []

        results: list[RetrievedChunk] = []
        seen = set()
        failures = 0

        for corpus, label, lookup, argument in lookups:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                rows = lookup(argument, filters=filters, cancel_token=cancel_token)
            except RetrievalError as e:
                failures += 1
                logger.warning(
                    f"graph_citation lookup degraded: corpus={corpus.value} citation={label} "
                    f"query_hash={query.query_hash} error={e}"
                )
                if failures == len(lookups):
                    raise
                continue

            for stored in rows:
                chunk = to_retrieved(stored, self.method, ChunkScores(graph_boost=GRAPH_CITATION_SCORE))
                if chunk.key in seen:
                    continue
                seen.add(chunk.key)
                chunk.metadata["matched_citation"] = label
                results.append(chunk)

        return results[:limit]
