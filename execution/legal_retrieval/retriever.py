"""
Hybrid Retriever for Croatian Legal Corpora

Turns a free-text legal query into a ranked, deduplicated,
confidence-scored list of chunks from three corpora (laws, case filings,
court decisions):

    normalize -> detect citations
              -> vector | keyword | citation-graph search (concurrent)
              -> RRF fusion -> corpus weights -> MMR diversification
              -> corpus caps -> confidence scoring -> metadata enrichment

A failing or slow branch degrades to an empty list for that method; only
caller cancellation escapes retrieve().
"""

import time
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import replace as _replace
from typing import Optional

from .citation import CitationDetector, CitationSummary
from .config import CORPUS_TYPES, RetrievalOptions, RetrievalSettings
from .diversity import Diversifier
from .embeddings import get_embedding_service
from .errors import (
    CancellationToken,
    EmbeddingFailure,
    RetrievalCancelled,
    RetrievalError,
)
from .fusion import RankFuser
from .metrics import MetricsCollector, get_metrics_collector
from .models import RetrievalMethod, RetrievalResult, RetrievalStats, RetrievedChunk
from .query_normalizer import NormalizedQuery, QueryNormalizer, QueryOptions
from .scoring import ConfidenceScorer, CorpusCapper
from .searchers import CitationGraphSearcher, KeywordSearcher, VectorSearcher
from .vector_store import BaseCorpusStore, PostgresCorpusStore

logger = logging.getLogger(__name__)

# How often the branch wait loop checks the cancellation token
CANCEL_POLL_INTERVAL_S = 0.05

BRANCH_ORDER = (RetrievalMethod.VECTOR, RetrievalMethod.KEYWORD, RetrievalMethod.GRAPH_CITATION)


class MetadataEnricher:
    """Annotates surviving chunks with query-relative metadata. Never drops or reorders."""

    def enrich(self, chunks: list[RetrievedChunk], query: NormalizedQuery) -> list[RetrievedChunk]:
        enriched = []
        for chunk in chunks:
            metadata = {
                **chunk.metadata,
                "query_jurisdiction": query.jurisdiction,
                "query_case_id": query.case_id,
                "chunk_length": len(chunk.content),
                "corpus_type": CORPUS_TYPES[chunk.corpus],
            }
            if "jurisdiction" in chunk.metadata:
                metadata["jurisdiction_match"] = chunk.metadata["jurisdiction"] == query.jurisdiction
            enriched.append(_replace(chunk, metadata=metadata))
        return enriched


class _QueryEmbedding:
    """Embeds the query at most once per retrieve() call, shared by vector search and MMR."""

    def __init__(self, embedder, text: str):
        self._embedder = embedder
        self._text = text
        self._lock = threading.Lock()
        self._done = False
        self._value: Optional[list[float]] = None
        self._error: Optional[RetrievalError] = None

    def get(self) -> list[float]:
        with self._lock:
            if not self._done:
                try:
                    self._value = self._embedder.embed_query(self._text)
                except RetrievalError as e:
                    self._error = e
                except Exception as e:
                    self._error = EmbeddingFailure(f"Embedding failed: {e}", method="vector")
                self._done = True
            if self._error is not None:
                raise self._error
            return self._value

    @property
    def resolved(self) -> bool:
        """Whether embedding has finished, successfully or not. Never blocks."""
        return self._done


class HybridRetriever:
    """
    Orchestrates hybrid retrieval over the legal corpora.

    Stateless between calls: every retrieve() builds its own normalized
    query, candidate lists and result. Safe to share across threads.
    """

    def __init__(
        self,
        store: BaseCorpusStore,
        embedder,
        settings: Optional[RetrievalSettings] = None,
        detector: Optional[CitationDetector] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            store: Corpus store (PostgresCorpusStore or InMemoryCorpusStore)
            embedder: Object with embed_query(text) -> list[float]
            settings: Process-level settings (timeouts, worker caps)
            detector: Citation detector, shared with the normalizer
            metrics: Metrics collector, defaults to the global one
        """
        self.store = store
        self.embedder = embedder
        self.settings = settings or RetrievalSettings()
        self.detector = detector or CitationDetector()
        self.normalizer = QueryNormalizer(self.detector, self.settings.default_jurisdiction)
        self.metrics = metrics or get_metrics_collector()

        per_branch_workers = max(1, min(3, self.settings.max_workers))
        self.vector_searcher = VectorSearcher(store, embedder, max_workers=per_branch_workers)
        self.keyword_searcher = KeywordSearcher(store, max_workers=per_branch_workers)
        self.graph_searcher = CitationGraphSearcher(store)
        self.diversifier = Diversifier(store)
        self.capper = CorpusCapper()
        self.scorer = ConfidenceScorer()
        self.enricher = MetadataEnricher()

    def retrieve(
        self,
        query: Optional[str],
        options: Optional[RetrievalOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """
        Retrieve ranked chunks for a query.

        Args:
            query: Free-text legal query
            options: Per-call options; defaults when omitted
            cancel_token: Optional caller cancellation (explicit cancel or deadline)

        Returns:
            RetrievalResult. When every branch fails the result is empty and
            retrieval_stats.all_branches_failed is True.

        Raises:
            RetrievalCancelled: the caller cancelled; partial results are discarded
        """
        options = options or RetrievalOptions()
        start_time = time.time()
        self._check_cancelled(cancel_token)

        normalized = self.normalizer.normalize(
            query,
            QueryOptions(
                jurisdiction=options.jurisdiction,
                date_from=options.date_from,
                date_to=options.date_to,
            ),
        )
        citations = self.detector.extract(normalized.cleaned_text)

        with self.metrics.track_retrieval(normalized.query_hash) as tracker:
            result = self._run_pipeline(normalized, citations, options, cancel_token, start_time)
            tracker.set_result(result.retrieval_stats)
        return result

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_pipeline(
        self,
        normalized: NormalizedQuery,
        citations: CitationSummary,
        options: RetrievalOptions,
        cancel_token: Optional[CancellationToken],
        start_time: float,
    ) -> RetrievalResult:
        stats = RetrievalStats()
        corpora = options.enabled_corpora()
        filters = dict(options.filters)
        query_embedding = _QueryEmbedding(self.embedder, normalized.cleaned_text)

        def vector_branch():
            if normalized.is_empty or not corpora:
                return []
            return self.vector_searcher.search(
                normalized, citations, corpora,
                limit=options.vector_limit,
                filters=filters,
                threshold=options.similarity_threshold,
                query_embedding=query_embedding.get(),
                cancel_token=cancel_token,
            )

        def keyword_branch():
            return self.keyword_searcher.search(
                normalized, citations, corpora,
                limit=options.keyword_limit, filters=filters, cancel_token=cancel_token,
            )

        def graph_branch():
            return self.graph_searcher.search(
                normalized, citations, corpora,
                limit=options.graph_limit, filters=filters, cancel_token=cancel_token,
            )

        ranked, failed = self._run_branches(
            {
                RetrievalMethod.VECTOR: vector_branch,
                RetrievalMethod.KEYWORD: keyword_branch,
                RetrievalMethod.GRAPH_CITATION: graph_branch,
            },
            normalized,
            cancel_token,
        )
        self._check_cancelled(cancel_token)

        stats.vector_count = len(ranked[RetrievalMethod.VECTOR])
        stats.keyword_count = len(ranked[RetrievalMethod.KEYWORD])
        stats.graph_count = len(ranked[RetrievalMethod.GRAPH_CITATION])
        stats.failed_methods = [m.value for m in BRANCH_ORDER if m in failed]

        if len(failed) == len(BRANCH_ORDER):
            stats.all_branches_failed = True
            stats.elapsed_ms = (time.time() - start_time) * 1000
            logger.warning(f"All retrieval branches failed: query_hash={normalized.query_hash}")
            return RetrievalResult(normalized, citations, [], stats)

        # Stage 1: Reciprocal Rank Fusion, then corpus weights
        fused = RankFuser(options.rrf_k).fuse(ranked)
        stats.merged_count = len(fused)
        weighted = RankFuser.apply_weights(fused, options.weight_for)
        fused_rank = {chunk.key: position for position, chunk in enumerate(weighted)}

        # Stage 2: MMR diversification
        candidates = self._diversify(weighted, options, query_embedding, failed, normalized, cancel_token)
        self._check_cancelled(cancel_token)

        # Stage 3: corpus caps, confidence, enrichment
        capped = self.capper.cap(candidates, options.corpus_caps)
        scored = self.scorer.score(capped, normalized.keywords, options.min_confidence, fused_rank)
        final = self.enricher.enrich(scored, normalized)

        stats.final_count = len(final)
        stats.elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Retrieved {stats.final_count} chunks for query_hash={normalized.query_hash} "
            f"(vector={stats.vector_count}, keyword={stats.keyword_count}, graph={stats.graph_count}, "
            f"merged={stats.merged_count}, diversified={len(candidates)}, capped={len(capped)}) "
            f"in {stats.elapsed_ms:.0f}ms"
        )
        return RetrievalResult(normalized, citations, final, stats)

    def _run_branches(
        self,
        branches: dict,
        normalized: NormalizedQuery,
        cancel_token: Optional[CancellationToken],
    ) -> tuple[dict, set]:
        """
        Run the retrieval branches concurrently with a shared deadline.

        Returns:
            (method -> ranked chunks, set of failed methods). Failed and timed-out
            branches map to an empty list.
        """
        ranked = {method: [] for method in branches}
        failed = set()
        deadline = time.monotonic() + self.settings.branch_timeout_s

        # Cap workers to stay within hosted Postgres connection limits
        executor = ThreadPoolExecutor(
            max_workers=max(1, min(len(branches), self.settings.max_workers)),
            thread_name_prefix="retrieval-branch",
        )
        try:
            futures = {executor.submit(fn): method for method, fn in branches.items()}
            pending = set(futures)

            while pending:
                self._check_cancelled(cancel_token)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(
                    pending,
                    timeout=min(remaining, CANCEL_POLL_INTERVAL_S),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    method = futures[future]
                    try:
                        ranked[method] = future.result()
                    except RetrievalCancelled:
                        raise
                    except Exception as e:
                        failed.add(method)
                        logger.warning(
                            f"Retrieval branch failed, degrading to empty: method={method.value} "
                            f"corpus={getattr(e, 'corpus', None) or 'all'} "
                            f"query_hash={normalized.query_hash} error={type(e).__name__}: {e}"
                        )

            for future in pending:
                method = futures[future]
                future.cancel()
                failed.add(method)
                self.metrics.record_branch_timeout(method.value)
                logger.warning(
                    f"Retrieval branch timed out after {self.settings.branch_timeout_s}s, degrading to empty: "
                    f"method={method.value} corpus=all query_hash={normalized.query_hash}"
                )
        finally:
            # Do not block on stragglers; their results are discarded
            executor.shutdown(wait=False, cancel_futures=True)

        return ranked, failed

    def _diversify(
        self,
        weighted: list[RetrievedChunk],
        options: RetrievalOptions,
        query_embedding: _QueryEmbedding,
        failed: set,
        normalized: NormalizedQuery,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[RetrievedChunk]:
        if not options.diversify or not weighted:
            return weighted[:options.top_k]

        # Embedding still running after a branch timeout; get() would block past the deadline
        if RetrievalMethod.VECTOR in failed and not query_embedding.resolved:
            logger.warning(
                f"MMR skipped, using fused ranking: method=vector corpus=all "
                f"query_hash={normalized.query_hash} reason=query embedding unavailable"
            )
            return weighted[:options.top_k]

        try:
            embedding = query_embedding.get()
        except RetrievalError as e:
            logger.warning(
                f"MMR skipped, using fused ranking: method=vector corpus=all "
                f"query_hash={normalized.query_hash} error={e}"
            )
            return weighted[:options.top_k]

        return self.diversifier.diversify(
            weighted,
            embedding,
            top_k=options.top_k,
            mmr_lambda=options.mmr_lambda,
            cancel_token=cancel_token,
        )

    @staticmethod
    def _check_cancelled(cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()


# Factory function
def get_retriever(
    settings: Optional[RetrievalSettings] = None,
    store: Optional[BaseCorpusStore] = None,
    embedder=None,
) -> HybridRetriever:
    """
    Get configured retriever instance.

    Args:
        settings: Process settings, read from the environment when None
        store: Corpus store, a PostgresCorpusStore on settings.connection_string when None
        embedder: Embedding service, chosen by settings.embedding_provider when None

    Returns:
        Configured HybridRetriever instance
    """
    settings = settings or RetrievalSettings.from_env()
    if store is None:
        store = PostgresCorpusStore(
            connection_string=settings.connection_string,
            statement_timeout_ms=settings.store_timeout_ms,
            pool_max_connections=max(settings.max_workers * 2, 2),
        )
    if embedder is None:
        embedder = get_embedding_service(provider=settings.embedding_provider)
    return HybridRetriever(store, embedder, settings=settings)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    retriever = get_retriever()

    query = " ".join(sys.argv[1:]) if len(sys.argv) > 1 else "Pp-2343/2025 mobitel IMEI 356789101234567"

    print(f"\nSearching for: {query}")
    print("-" * 50)

    result = retriever.retrieve(query, RetrievalOptions(top_k=5))

    print(f"Case id: {result.normalized_query.case_id}")
    print(f"Specific references: {result.citations_detected.has_specific_refs}")
    print(f"Stats: {result.retrieval_stats.to_dict()}")

    for i, chunk in enumerate(result.chunks, 1):
        methods = ", ".join(sorted(m.value for m in chunk.retrieval_methods))
        print(f"\n{i}. [{chunk.corpus.value}] {chunk.title} (confidence: {chunk.scores.confidence:.3f}; {methods})")
        print(f"   Preview: {chunk.content[:200]}...")
