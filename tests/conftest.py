"""
Shared fixtures and test utilities for Legal Retrieval tests.

Provides a deterministic embedder, a small seeded Croatian corpus and
reusable retriever fixtures so that all tests run without API keys,
databases or external network access.
"""

import sys
import time
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

SCENARIO_QUERY = "Pp-2343/2025 mobitel IMEI 356789101234567"


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

# One dimension per topic; a text scores 1.0 on a topic if it contains any stem
TOPIC_STEMS = (
    ("pretra", "pretre"),
    ("mobitel", "telefon", "uređaj"),
    ("nalog",),
    ("ugovor",),
    ("otkaz", "poslodav"),
    ("stečaj",),
    ("kazn",),
    ("imei",),
)
BIAS = 0.5


class MockEmbeddingService:
    """Deterministic topic-vector embedder -- never calls external APIs."""

    def __init__(self):
        self._call_count = 0

    def embed_query(self, query):
        self._call_count += 1
        return self.embed_text(query)

    @staticmethod
    def embed_text(text):
        lowered = (text or "").lower()
        vector = [1.0 if any(stem in lowered for stem in stems) else 0.0 for stems in TOPIC_STEMS]
        vector.append(BIAS)
        return vector

    @property
    def dimensions(self):
        return len(TOPIC_STEMS) + 1


class FailingEmbeddingService:
    """Embedder whose provider is always down."""

    def embed_query(self, query):
        from execution.legal_retrieval.errors import EmbeddingFailure
        raise EmbeddingFailure("provider unreachable", method="vector")


class SlowEmbeddingService(MockEmbeddingService):
    """Embedder that blocks long enough to trip the branch timeout."""

    def __init__(self, delay_s=1.5):
        super().__init__()
        self.delay_s = delay_s

    def embed_query(self, query):
        time.sleep(self.delay_s)
        return super().embed_query(query)


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Seeded corpus (laws, case filings, court decisions)
# ---------------------------------------------------------------------------

CORPUS_ROWS = [
    # (corpus, id, doc_id, title, content, metadata, law_number)
    ("laws", "zkp-261", "ZKP", "Zakon o kaznenom postupku, članak 261.",
     "Pretraga pokretnih stvari obuhvaća i pretragu mobitela i drugih uređaja. "
     "Pretraga se provodi na temelju pisanog naloga suda.",
     {"date": "2008-12-18", "jurisdiction": "HR"}, "152/08"),
    ("laws", "zoo-1045", "ZOO", "Zakon o obveznim odnosima, članak 1045.",
     "Tko drugome prouzroči štetu, dužan ju je naknaditi. Odgovornost za štetu iz ugovora.",
     {"date": "2005-03-17", "jurisdiction": "HR"}, "35/05"),
    ("laws", "zr-115", "ZR", "Zakon o radu, članak 115.",
     "Poslodavac može otkazati ugovor o radu ako za to ima opravdani razlog.",
     {"date": "2014-07-25", "jurisdiction": "HR"}, "93/14"),
    ("cases_documents", "pp-2343-zapisnik", "Pp-2343/2025", "Pp-2343/2025 Zapisnik o pretrazi",
     "Zapisnik o pretrazi mobitela Samsung Galaxy S21, IMEI 356789101234567, "
     "oduzetog uz potvrdu o privremenom oduzimanju.",
     {"date": "2025-03-14", "jurisdiction": "HR"}, None),
    ("cases_documents", "k-118-optuznica", "K-118/2024", "K-118/2024 Optužnica",
     "Optužnica za kazneno djelo prijevare počinjeno putem mobitela.",
     {"date": "2024-06-02", "jurisdiction": "HR"}, None),
    ("cases_documents", "p-77-tuzba", "P-77/2023", "P-77/2023 Tužba",
     "Tužba radi raskida ugovora o kupoprodaji nekretnine.",
     {"date": "2023-01-20", "jurisdiction": "HR"}, None),
    ("court_decision_documents", "vsrh-kz-12", "Kž-12/2020", "VSRH Kž-12/2020",
     "Dokazi pribavljeni pretragom mobitela nezakoniti su jer IMEI uređaja nije naveden u nalogu.",
     {"date": "2020-09-30", "jurisdiction": "HR"}, None),
    ("court_decision_documents", "usrh-u-iii-100", "U-III-100/2019", "Ustavni sud U-III-100/2019",
     "Pravo na privatnost pri pretrazi mobitela i elektroničkih komunikacija.",
     {"date": "2019-11-05", "jurisdiction": "HR"}, None),
    ("court_decision_documents", "vts-stecaj-5", "Pž-5/2021", "Visoki trgovački sud Pž-5/2021",
     "Stečaj trgovačkog društva i prijava tražbina vjerovnika.",
     {"date": "2021-04-12", "jurisdiction": "HR"}, None),
]


def build_corpus_chunks(embedder=None):
    """StoredChunk rows for the seeded corpus, embedded with the topic embedder."""
    from execution.legal_retrieval.config import Corpus
    from execution.legal_retrieval.vector_store import StoredChunk

    embedder = embedder or MockEmbeddingService()
    chunks = []
    for corpus, chunk_id, doc_id, title, content, metadata, law_number in CORPUS_ROWS:
        chunks.append(StoredChunk(
            id=chunk_id,
            corpus=Corpus(corpus),
            title=title,
            content=content,
            doc_id=doc_id,
            metadata=dict(metadata),
            embedding=embedder.embed_text(f"{title} {content}"),
            law_number=law_number,
        ))
    return chunks


@pytest.fixture
def corpus_chunks():
    return build_corpus_chunks()


@pytest.fixture
def seeded_store(corpus_chunks):
    """InMemoryCorpusStore holding the seeded corpus."""
    from execution.legal_retrieval.vector_store import InMemoryCorpusStore
    return InMemoryCorpusStore(corpus_chunks)


@pytest.fixture
def retrieval_settings():
    from execution.legal_retrieval.config import RetrievalSettings
    return RetrievalSettings(branch_timeout_s=5.0, max_workers=3)


@pytest.fixture
def retriever(seeded_store, mock_embedding_service, retrieval_settings):
    """HybridRetriever over the seeded corpus with the topic embedder."""
    from execution.legal_retrieval.retriever import HybridRetriever
    return HybridRetriever(seeded_store, mock_embedding_service, settings=retrieval_settings)


@pytest.fixture
def normalizer():
    from execution.legal_retrieval.query_normalizer import QueryNormalizer
    return QueryNormalizer()


@pytest.fixture
def detector():
    from execution.legal_retrieval.citation import CitationDetector
    return CitationDetector()


def make_chunk(chunk_id, corpus="laws", content="", **scores):
    """Build a RetrievedChunk with the given scores and the methods they imply."""
    from execution.legal_retrieval.config import Corpus
    from execution.legal_retrieval.models import ChunkScores, RetrievalMethod, RetrievedChunk

    methods = set()
    if scores.get("vector") is not None:
        methods.add(RetrievalMethod.VECTOR)
    if scores.get("keyword") is not None:
        methods.add(RetrievalMethod.KEYWORD)
    if scores.get("graph_boost") is not None:
        methods.add(RetrievalMethod.GRAPH_CITATION)
    return RetrievedChunk(
        id=chunk_id,
        corpus=Corpus(corpus),
        title=chunk_id,
        content=content,
        scores=ChunkScores(**scores),
        retrieval_methods=methods,
    )


# ---------------------------------------------------------------------------
# Singleton resets between tests
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_metrics_singleton():
    """Reset the MetricsCollector singleton between tests."""
    import execution.legal_retrieval.metrics as metrics_mod
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
    yield
    metrics_mod.MetricsCollector._instance = None
    metrics_mod._collector = None
