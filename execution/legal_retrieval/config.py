"""
Retrieval Configuration for the Hybrid Legal Retriever

Two layers of configuration:
- RetrievalOptions: per-call knobs (corpora, weights, top_k, MMR lambda, ...)
  with documented defaults. Built fresh for every retrieve() call.
- RetrievalSettings: process-level settings (DSN, timeouts, worker caps)
  read once from the environment.

Scoring weights and defaults are module constants so tests can assert on them.
"""

import os
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field


class Corpus(str, Enum):
    """The three document collections. Values are the storage table names."""
    LAWS = "laws"
    CASE_DOCUMENTS = "cases_documents"
    COURT_DECISIONS = "court_decision_documents"


ALL_CORPORA = (Corpus.LAWS, Corpus.CASE_DOCUMENTS, Corpus.COURT_DECISIONS)

# Short aliases accepted from callers (API, CLI) in addition to the enum values
CORPUS_ALIASES = {
    "laws": Corpus.LAWS,
    "statutes": Corpus.LAWS,
    "cases": Corpus.CASE_DOCUMENTS,
    "cases_documents": Corpus.CASE_DOCUMENTS,
    "decisions": Corpus.COURT_DECISIONS,
    "court_decision_documents": Corpus.COURT_DECISIONS,
}

CORPUS_TYPES = {
    Corpus.LAWS: "legislation",
    Corpus.CASE_DOCUMENTS: "case_law",
    Corpus.COURT_DECISIONS: "court_decisions",
}

# ============================================================================
# Retrieval defaults
# ============================================================================

DEFAULT_TOP_K = 20
DEFAULT_MMR_LAMBDA = 0.5
DEFAULT_RRF_K = 60
DEFAULT_MIN_CONFIDENCE = 0.3
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_VECTOR_LIMIT = 50    # per corpus
DEFAULT_KEYWORD_LIMIT = 30   # per corpus
DEFAULT_GRAPH_LIMIT = 20     # total across corpora
DEFAULT_JURISDICTION = "HR"

# Score assigned to a direct citation hit (gazette number / case number lookup)
GRAPH_CITATION_SCORE = 0.95

# ============================================================================
# Confidence weights
# ============================================================================

CONFIDENCE_PRIMARY_WEIGHT = 0.4
CONFIDENCE_GRAPH_WEIGHT = 0.3
CONFIDENCE_KEYWORD_WEIGHT = 0.2
CONFIDENCE_CORROBORATION_WEIGHT = 0.1
# RRF scores are tiny (~0.016 at rank 0); divide before using as a primary score
RRF_CONFIDENCE_DIVISOR = 10.0


def resolve_corpus(value) -> Corpus:
    """Map an enum, table name or alias to a Corpus. Raises ValueError if unknown."""
    if isinstance(value, Corpus):
        return value
    key = str(value).strip().lower()
    if key in CORPUS_ALIASES:
        return CORPUS_ALIASES[key]
    raise ValueError(f"Unknown corpus: {value!r}")


@dataclass
class RetrievalOptions:
    """Per-call retrieval options. Every field has the documented default."""
    corpora: frozenset = frozenset(ALL_CORPORA)
    weights: dict = field(default_factory=dict)  # Corpus -> float, missing = 1.0
    filters: dict = field(default_factory=dict)
    top_k: int = DEFAULT_TOP_K
    mmr_lambda: float = DEFAULT_MMR_LAMBDA
    rrf_k: int = DEFAULT_RRF_K
    corpus_caps: dict = field(default_factory=dict)  # Corpus -> int, missing = unbounded
    min_confidence: float = DEFAULT_MIN_CONFIDENCE

    # Per-searcher limits
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    vector_limit: int = DEFAULT_VECTOR_LIMIT
    keyword_limit: int = DEFAULT_KEYWORD_LIMIT
    graph_limit: int = DEFAULT_GRAPH_LIMIT

    # MMR stage toggle; when off the weighted RRF ranking is used directly
    diversify: bool = True

    # Query-normalizer hints
    jurisdiction: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    def __post_init__(self):
        self.corpora = frozenset(resolve_corpus(c) for c in self.corpora)
        self.weights = {resolve_corpus(k): float(v) for k, v in self.weights.items()}
        self.corpus_caps = {resolve_corpus(k): int(v) for k, v in self.corpus_caps.items()}

    def weight_for(self, corpus: Corpus) -> float:
        return self.weights.get(corpus, 1.0)

    def enabled_corpora(self) -> list[Corpus]:
        """Enabled corpora in canonical order (laws, cases, decisions)."""
        return [c for c in ALL_CORPORA if c in self.corpora]


@dataclass
class RetrievalSettings:
    """Process-level settings. Use from_env() in entry points after load_dotenv()."""
    connection_string: Optional[str] = None
    # Bounded wait for each retrieval branch (vector / keyword / graph)
    branch_timeout_s: float = 10.0
    # Postgres statement_timeout applied to every store query
    store_timeout_ms: int = 8000
    # Cap workers to stay within hosted Postgres connection limits
    max_workers: int = 6
    embedding_provider: str = "voyage"
    default_jurisdiction: str = DEFAULT_JURISDICTION

    @classmethod
    def from_env(cls) -> "RetrievalSettings":
        """Build settings from environment variables."""
        return cls(
            connection_string=os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL"),
            branch_timeout_s=float(os.getenv("RETRIEVAL_BRANCH_TIMEOUT_S", "10.0")),
            store_timeout_ms=int(os.getenv("RETRIEVAL_STORE_TIMEOUT_MS", "8000")),
            max_workers=int(os.getenv("RETRIEVAL_MAX_WORKERS", "6")),
            embedding_provider=os.getenv("EMBEDDING_PROVIDER", "voyage").lower(),
            default_jurisdiction=os.getenv("RETRIEVAL_JURISDICTION", DEFAULT_JURISDICTION),
        )
