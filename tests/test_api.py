"""Tests for the FastAPI retrieval endpoints."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from tests.conftest import SCENARIO_QUERY


# ---------------------------------------------------------------------------
# Wire the app to the seeded in-memory corpus so no real DB or API is needed
# ---------------------------------------------------------------------------

@pytest.fixture
def api_module(seeded_store):
    from execution.legal_retrieval import api
    from execution.legal_retrieval.config import RetrievalSettings

    api._container._settings = RetrievalSettings(embedding_provider="voyage")
    api._container._store = seeded_store
    yield api
    api._container._settings = None
    api._container._store = None
    api._container._retriever = None
    api.app.dependency_overrides.clear()


@pytest.fixture
def client(api_module, retriever):
    api_module.app.dependency_overrides[api_module.get_retriever_service] = lambda: retriever
    return TestClient(api_module.app)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    """Tests for GET /api/v1/health."""

    def test_connected(self, client):
        from execution.legal_retrieval import __version__

        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__ == "0.3.0"
        assert data["database"] == "connected"
        assert data["embedding_provider"] == "voyage"

    def test_disconnected(self, api_module, client, monkeypatch):
        from execution.legal_retrieval.errors import StoreQueryError

        def _fail():
            raise StoreQueryError("Database connection failed: connection refused")

        monkeypatch.setattr(api_module._container, "get_store", _fail)
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["database"] == "disconnected"


# ---------------------------------------------------------------------------
# Retrieve
# ---------------------------------------------------------------------------

class TestRetrieveEndpoint:
    """Tests for POST /api/v1/retrieve."""

    def test_scenario(self, client):
        resp = client.post("/api/v1/retrieve", json={"query": SCENARIO_QUERY})
        assert resp.status_code == 200
        data = resp.json()

        assert data["normalized_query"]["case_id"] == "Pp-2343/2025"
        assert data["chunks"][0]["id"] == "pp-2343-zapisnik"
        assert data["chunks"][0]["corpus"] == "cases_documents"
        assert data["chunks"][0]["retrieval_methods"] == ["graph_citation", "keyword", "vector"]
        assert data["retrieval_stats"]["final_count"] == len(data["chunks"])
        assert data["retrieval_stats"]["failed_methods"] == []

    def test_options_forwarded(self, client):
        resp = client.post("/api/v1/retrieve", json={
            "query": SCENARIO_QUERY,
            "corpora": ["decisions"],
            "min_confidence": 0.0,
        })
        assert resp.status_code == 200
        chunks = resp.json()["chunks"]
        assert chunks
        assert {c["corpus"] for c in chunks} == {"court_decision_documents"}

    def test_top_k(self, client):
        resp = client.post("/api/v1/retrieve", json={"query": SCENARIO_QUERY, "top_k": 1, "min_confidence": 0.0})
        assert resp.status_code == 200
        assert len(resp.json()["chunks"]) == 1

    def test_empty_query(self, client):
        resp = client.post("/api/v1/retrieve", json={"query": "   "})
        assert resp.status_code == 200
        assert resp.json()["chunks"] == []

    def test_cancelled_returns_504(self, api_module):
        from execution.legal_retrieval.errors import RetrievalCancelled

        slow = MagicMock()
        slow.retrieve.side_effect = RetrievalCancelled("Retrieval cancelled by caller")
        api_module.app.dependency_overrides[api_module.get_retriever_service] = lambda: slow

        resp = TestClient(api_module.app).post("/api/v1/retrieve", json={"query": "pretraga mobitela"})
        assert resp.status_code == 504
        assert slow.retrieve.call_args.kwargs["cancel_token"] is not None


class TestRetrieveValidation:
    """Request validation returns 422 before the retriever runs."""

    @pytest.mark.parametrize("body", [
        {},
        {"query": "x", "corpora": ["regulations"]},
        {"query": "x", "weights": {"regulations": 1.0}},
        {"query": "x", "corpus_caps": {"laws": -1}},
        {"query": "x", "top_k": 0},
        {"query": "x", "mmr_lambda": 1.5},
        {"query": "x", "date_from": "14.03.2025"},
    ])
    def test_invalid_body(self, client, body):
        assert client.post("/api/v1/retrieve", json=body).status_code == 422


class TestBuildOptions:
    """Tests for build_options()."""

    def test_defaults_match_retrieval_options(self):
        from execution.legal_retrieval.api import build_options
        from execution.legal_retrieval.api_models import RetrieveRequest
        from execution.legal_retrieval.config import RetrievalOptions

        assert build_options(RetrieveRequest(query="x")) == RetrievalOptions()

    def test_aliases_resolved(self):
        from execution.legal_retrieval.api import build_options
        from execution.legal_retrieval.api_models import RetrieveRequest
        from execution.legal_retrieval.config import Corpus

        options = build_options(RetrieveRequest(query="x", corpora=["cases"], corpus_caps={"laws": 2}))
        assert options.corpora == frozenset({Corpus.CASE_DOCUMENTS})
        assert options.corpus_caps == {Corpus.LAWS: 2}


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

class TestMetricsEndpoint:
    """Tests for GET /api/v1/metrics."""

    def test_counts_retrievals(self, client):
        client.post("/api/v1/retrieve", json={"query": SCENARIO_QUERY})
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["retrievals"]["total"] == 1
        assert data["retrievals"]["successful"] == 1
