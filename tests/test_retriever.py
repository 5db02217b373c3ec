"""
Tests for execution/legal_retrieval/retriever.py

Covers: end-to-end retrieval over the seeded corpus, determinism,
        deduplication, graph-citation priority, corpus caps and filters,
        metadata enrichment, branch degradation, timeouts and cancellation.
"""

import time
import threading

import pytest

from tests.conftest import (
    SCENARIO_QUERY,
    FailingEmbeddingService,
    SlowEmbeddingService,
)


def ids(result):
    return [c.id for c in result.chunks]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestRetrieve:
    """End-to-end retrieval over the seeded corpus."""

    def test_scenario_case_filing_ranks_first(self, retriever):
        from execution.legal_retrieval.models import RetrievalMethod

        result = retriever.retrieve(SCENARIO_QUERY)

        assert result.normalized_query.case_id == "Pp-2343/2025"
        assert result.citations_detected.has_specific_refs is True
        top = result.chunks[0]
        assert top.id == "pp-2343-zapisnik"
        assert top.retrieval_methods == {
            RetrievalMethod.VECTOR, RetrievalMethod.KEYWORD, RetrievalMethod.GRAPH_CITATION,
        }
        assert all(c.scores.confidence >= 0.3 for c in result.chunks)

    def test_graph_hits_rank_above_other_hits(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions
        from execution.legal_retrieval.models import RetrievalMethod

        result = retriever.retrieve(SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0))
        is_graph = [RetrievalMethod.GRAPH_CITATION in c.retrieval_methods for c in result.chunks]
        assert any(is_graph)
        # Every graph hit precedes every non-graph hit
        assert is_graph == sorted(is_graph, reverse=True)

    def test_stats(self, retriever):
        result = retriever.retrieve(SCENARIO_QUERY)
        stats = result.retrieval_stats
        assert stats.vector_count == 2
        assert stats.keyword_count == 5
        assert stats.graph_count == 1
        assert stats.merged_count == 5
        assert stats.final_count == len(result.chunks)
        assert stats.failed_methods == []
        assert stats.all_branches_failed is False

    def test_no_duplicate_chunks(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions

        result = retriever.retrieve(SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0))
        keys = [c.key for c in result.chunks]
        assert len(keys) == len(set(keys))

    def test_deterministic(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions

        options = RetrievalOptions(min_confidence=0.0)
        first = retriever.retrieve(SCENARIO_QUERY, options)
        second = retriever.retrieve(SCENARIO_QUERY, options)
        assert [(c.key, c.scores.confidence) for c in first.chunks] == [
            (c.key, c.scores.confidence) for c in second.chunks
        ]

    def test_sorted_by_confidence(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions

        result = retriever.retrieve(SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0))
        confidences = [c.scores.confidence for c in result.chunks]
        assert confidences == sorted(confidences, reverse=True)

    def test_top_k(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions

        result = retriever.retrieve(SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0, top_k=2))
        assert len(result.chunks) <= 2

    def test_embedding_computed_once(self, retriever, mock_embedding_service):
        retriever.retrieve(SCENARIO_QUERY)
        assert mock_embedding_service._call_count == 1

    def test_empty_query(self, retriever, mock_embedding_service):
        result = retriever.retrieve("")
        assert result.chunks == []
        assert result.retrieval_stats.all_branches_failed is False
        assert result.normalized_query.is_empty
        assert mock_embedding_service._call_count == 0


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

class TestOptions:
    """Corpora, caps, filters and the MMR toggle."""

    def test_corpus_cap(self, retriever):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        result = retriever.retrieve(
            SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0, corpus_caps={"cases": 1})
        )
        cases = [c for c in result.chunks if c.corpus is Corpus.CASE_DOCUMENTS]
        assert [c.id for c in cases] == ["pp-2343-zapisnik"]

    def test_corpora_restriction(self, retriever):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        result = retriever.retrieve(
            SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0, corpora=frozenset({"decisions"}))
        )
        assert result.chunks
        assert {c.corpus for c in result.chunks} == {Corpus.COURT_DECISIONS}
        assert result.retrieval_stats.graph_count == 0

    def test_date_filter(self, retriever):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        result = retriever.retrieve(
            SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0, filters={"date_from": "2020-01-01"})
        )
        assert result.chunks
        assert all(c.corpus is not Corpus.LAWS for c in result.chunks)
        assert all(c.metadata["date"] >= "2020-01-01" for c in result.chunks)

    def test_without_diversification(self, retriever):
        from execution.legal_retrieval.config import RetrievalOptions

        result = retriever.retrieve(SCENARIO_QUERY, RetrievalOptions(min_confidence=0.0, diversify=False))
        assert result.chunks[0].id == "pp-2343-zapisnik"
        assert all(c.scores.mmr is None for c in result.chunks)

    def test_metadata_enrichment(self, retriever):
        result = retriever.retrieve(SCENARIO_QUERY)
        meta = result.chunks[0].metadata
        assert meta["query_case_id"] == "Pp-2343/2025"
        assert meta["query_jurisdiction"] == "HR"
        assert meta["corpus_type"] == "case_law"
        assert meta["jurisdiction_match"] is True
        assert meta["chunk_length"] == len(result.chunks[0].content)

    def test_to_dict_is_json_ready(self, retriever):
        import json

        data = retriever.retrieve(SCENARIO_QUERY).to_dict()
        json.dumps(data)
        assert data["chunks"][0]["retrieval_methods"] == ["graph_citation", "keyword", "vector"]


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------

class TestDegradation:
    """Branch failures degrade to empty lists; only cancellation escapes."""

    def test_vector_failure_degrades(self, seeded_store, retrieval_settings):
        from execution.legal_retrieval.retriever import HybridRetriever

        retriever = HybridRetriever(seeded_store, FailingEmbeddingService(), settings=retrieval_settings)
        result = retriever.retrieve(SCENARIO_QUERY)

        assert result.retrieval_stats.failed_methods == ["vector"]
        assert result.retrieval_stats.vector_count == 0
        assert result.chunks[0].id == "pp-2343-zapisnik"
        # MMR needs the query embedding; the fused ranking is used instead
        assert all(c.scores.mmr is None for c in result.chunks)

    def test_vector_store_failure_keeps_mmr(self, corpus_chunks, mock_embedding_service, retrieval_settings):
        from execution.legal_retrieval.errors import StoreQueryError
        from execution.legal_retrieval.retriever import HybridRetriever
        from execution.legal_retrieval.vector_store import InMemoryCorpusStore

        class NoVectorIndexStore(InMemoryCorpusStore):
            def top_k_similar(self, corpus, vector, k, threshold, filters=None, cancel_token=None):
                raise StoreQueryError("vector index unavailable", corpus=corpus.value)

        retriever = HybridRetriever(
            NoVectorIndexStore(corpus_chunks), mock_embedding_service, settings=retrieval_settings,
        )
        result = retriever.retrieve(SCENARIO_QUERY)

        assert result.retrieval_stats.failed_methods == ["vector"]
        assert result.chunks[0].id == "pp-2343-zapisnik"
        # The query embedding resolved, so keyword and graph hits are still diversified
        assert all(c.scores.mmr is not None for c in result.chunks)
        assert mock_embedding_service._call_count == 1

    def test_all_branches_failing(self, corpus_chunks, retrieval_settings):
        from execution.legal_retrieval.errors import StoreQueryError
        from execution.legal_retrieval.retriever import HybridRetriever
        from execution.legal_retrieval.vector_store import InMemoryCorpusStore

        class BrokenStore(InMemoryCorpusStore):
            def match(self, corpus, keywords, limit, filters=None, cancel_token=None):
                raise StoreQueryError("connection refused", corpus=corpus.value)

            def lookup_by_case_number(self, pattern, filters=None, cancel_token=None):
                raise StoreQueryError("connection refused", corpus="cases_documents")

        retriever = HybridRetriever(BrokenStore(corpus_chunks), FailingEmbeddingService(), settings=retrieval_settings)
        result = retriever.retrieve(SCENARIO_QUERY)

        assert result.chunks == []
        assert result.retrieval_stats.all_branches_failed is True
        assert result.retrieval_stats.failed_methods == ["vector", "keyword", "graph_citation"]

    def test_branch_timeout(self, seeded_store):
        from execution.legal_retrieval.config import RetrievalSettings
        from execution.legal_retrieval.metrics import get_metrics_collector
        from execution.legal_retrieval.retriever import HybridRetriever

        settings = RetrievalSettings(branch_timeout_s=0.3, max_workers=3)
        retriever = HybridRetriever(seeded_store, SlowEmbeddingService(delay_s=1.5), settings=settings)

        start = time.monotonic()
        result = retriever.retrieve(SCENARIO_QUERY)
        elapsed = time.monotonic() - start

        assert elapsed < 1.2
        assert result.retrieval_stats.failed_methods == ["vector"]
        assert result.chunks[0].id == "pp-2343-zapisnik"
        assert get_metrics_collector().get_metrics().branch_timeouts["vector"] == 1

    def test_metrics_recorded(self, retriever):
        from execution.legal_retrieval.metrics import get_metrics_collector

        retriever.retrieve(SCENARIO_QUERY)
        retriever.retrieve("")
        metrics = get_metrics_collector().get_metrics()
        assert metrics.total_retrievals == 2
        assert metrics.successful_retrievals == 2
        assert metrics.empty_retrievals == 1


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    """Caller cancellation aborts the call and discards partial results."""

    def test_already_cancelled(self, retriever, mock_embedding_service):
        from execution.legal_retrieval.errors import CancellationToken, RetrievalCancelled

        token = CancellationToken()
        token.cancel()
        with pytest.raises(RetrievalCancelled):
            retriever.retrieve(SCENARIO_QUERY, cancel_token=token)
        assert mock_embedding_service._call_count == 0

    def test_cancel_during_branches(self, seeded_store, retrieval_settings):
        from execution.legal_retrieval.errors import CancellationToken, RetrievalCancelled
        from execution.legal_retrieval.metrics import get_metrics_collector
        from execution.legal_retrieval.retriever import HybridRetriever

        retriever = HybridRetriever(seeded_store, SlowEmbeddingService(delay_s=1.5), settings=retrieval_settings)
        token = CancellationToken()
        timer = threading.Timer(0.1, token.cancel)
        timer.start()

        start = time.monotonic()
        with pytest.raises(RetrievalCancelled):
            retriever.retrieve(SCENARIO_QUERY, cancel_token=token)
        timer.cancel()

        assert time.monotonic() - start < 1.2
        assert get_metrics_collector().get_metrics().cancelled_retrievals == 1

    def test_deadline_token(self, seeded_store, retrieval_settings):
        from execution.legal_retrieval.errors import CancellationToken, RetrievalCancelled
        from execution.legal_retrieval.retriever import HybridRetriever

        retriever = HybridRetriever(seeded_store, SlowEmbeddingService(delay_s=1.5), settings=retrieval_settings)
        with pytest.raises(RetrievalCancelled):
            retriever.retrieve(SCENARIO_QUERY, cancel_token=CancellationToken(timeout_s=0.2))

    def test_token_remaining(self):
        from execution.legal_retrieval.errors import CancellationToken

        assert CancellationToken().remaining() is None
        token = CancellationToken(timeout_s=60)
        assert 0 < token.remaining() <= 60
        assert token.cancelled is False

    def test_token_callbacks(self):
        from execution.legal_retrieval.errors import CancellationToken

        token = CancellationToken()
        calls = []
        kept, removed = (lambda: calls.append("kept")), (lambda: calls.append("removed"))
        token.add_callback(kept)
        token.add_callback(removed)
        token.remove_callback(removed)

        token.cancel()
        token.cancel()
        assert calls == ["kept"]

        # Registered after cancellation: runs immediately
        token.add_callback(lambda: calls.append("late"))
        assert calls == ["kept", "late"]

    def test_token_deadline_runs_callbacks(self):
        from execution.legal_retrieval.errors import CancellationToken

        token = CancellationToken(timeout_s=0.05)
        fired = threading.Event()
        token.add_callback(fired.set)

        assert fired.wait(timeout=2)
        assert token.cancelled is True

    def test_failing_callback_does_not_stop_others(self):
        from execution.legal_retrieval.errors import CancellationToken

        def broken():
            raise RuntimeError("connection already closed")

        token = CancellationToken()
        fired = []
        token.add_callback(broken)
        token.add_callback(lambda: fired.append(True))
        token.cancel()
        assert fired == [True]
