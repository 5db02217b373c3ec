"""
Tests for execution/legal_retrieval/config.py

Covers: corpus alias resolution, RetrievalOptions defaults and
        normalization, and RetrievalSettings.from_env().
"""

import pytest


# ---------------------------------------------------------------------------
# Corpus resolution
# ---------------------------------------------------------------------------

class TestResolveCorpus:
    """Tests for resolve_corpus()."""

    @pytest.mark.parametrize("value,expected", [
        ("laws", "laws"),
        ("statutes", "laws"),
        ("Cases", "cases_documents"),
        ("decisions", "court_decision_documents"),
        (" court_decision_documents ", "court_decision_documents"),
    ])
    def test_aliases(self, value, expected):
        from execution.legal_retrieval.config import resolve_corpus
        assert resolve_corpus(value).value == expected

    def test_enum_passthrough(self):
        from execution.legal_retrieval.config import Corpus, resolve_corpus
        assert resolve_corpus(Corpus.LAWS) is Corpus.LAWS

    def test_unknown(self):
        from execution.legal_retrieval.config import resolve_corpus
        with pytest.raises(ValueError, match="Unknown corpus"):
            resolve_corpus("regulations")


# ---------------------------------------------------------------------------
# RetrievalOptions
# ---------------------------------------------------------------------------

class TestRetrievalOptions:
    """Tests for per-call options."""

    def test_defaults(self):
        from execution.legal_retrieval.config import ALL_CORPORA, RetrievalOptions

        options = RetrievalOptions()
        assert options.corpora == frozenset(ALL_CORPORA)
        assert options.top_k == 20
        assert options.mmr_lambda == 0.5
        assert options.rrf_k == 60
        assert options.min_confidence == 0.3
        assert options.similarity_threshold == 0.7
        assert (options.vector_limit, options.keyword_limit, options.graph_limit) == (50, 30, 20)
        assert options.diversify is True

    def test_aliases_normalized(self):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        options = RetrievalOptions(
            corpora=frozenset({"cases", "laws"}), weights={"decisions": 2}, corpus_caps={"statutes": "3"},
        )
        assert options.corpora == frozenset({Corpus.CASE_DOCUMENTS, Corpus.LAWS})
        assert options.weights == {Corpus.COURT_DECISIONS: 2.0}
        assert options.corpus_caps == {Corpus.LAWS: 3}

    def test_unknown_corpus_rejected(self):
        from execution.legal_retrieval.config import RetrievalOptions
        with pytest.raises(ValueError):
            RetrievalOptions(weights={"regulations": 1.0})

    def test_weight_for_defaults_to_one(self):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        options = RetrievalOptions(weights={"laws": 0.5})
        assert options.weight_for(Corpus.LAWS) == 0.5
        assert options.weight_for(Corpus.CASE_DOCUMENTS) == 1.0

    def test_enabled_corpora_canonical_order(self):
        from execution.legal_retrieval.config import Corpus, RetrievalOptions

        options = RetrievalOptions(corpora=frozenset({"decisions", "laws"}))
        assert options.enabled_corpora() == [Corpus.LAWS, Corpus.COURT_DECISIONS]


# ---------------------------------------------------------------------------
# RetrievalSettings
# ---------------------------------------------------------------------------

class TestRetrievalSettings:
    """Tests for RetrievalSettings.from_env()."""

    def test_from_env(self, monkeypatch):
        from execution.legal_retrieval.config import RetrievalSettings

        monkeypatch.setenv("POSTGRES_URL", "postgresql://env/db")
        monkeypatch.setenv("RETRIEVAL_BRANCH_TIMEOUT_S", "2.5")
        monkeypatch.setenv("RETRIEVAL_STORE_TIMEOUT_MS", "1500")
        monkeypatch.setenv("RETRIEVAL_MAX_WORKERS", "4")
        monkeypatch.setenv("EMBEDDING_PROVIDER", "Cohere")
        monkeypatch.setenv("RETRIEVAL_JURISDICTION", "SI")

        settings = RetrievalSettings.from_env()
        assert settings.connection_string == "postgresql://env/db"
        assert settings.branch_timeout_s == 2.5
        assert settings.store_timeout_ms == 1500
        assert settings.max_workers == 4
        assert settings.embedding_provider == "cohere"
        assert settings.default_jurisdiction == "SI"

    def test_from_env_defaults(self, monkeypatch):
        from execution.legal_retrieval.config import RetrievalSettings

        for var in (
            "POSTGRES_URL", "DATABASE_URL", "RETRIEVAL_BRANCH_TIMEOUT_S", "RETRIEVAL_STORE_TIMEOUT_MS",
            "RETRIEVAL_MAX_WORKERS", "EMBEDDING_PROVIDER", "RETRIEVAL_JURISDICTION",
        ):
            monkeypatch.delenv(var, raising=False)

        settings = RetrievalSettings.from_env()
        assert settings.connection_string is None
        assert settings.branch_timeout_s == 10.0
        assert settings.max_workers == 6
        assert settings.embedding_provider == "voyage"
        assert settings.default_jurisdiction == "HR"
