"""
FastAPI Backend for Hybrid Legal Retrieval

Exposes the retriever over HTTP for the answer-generation layer.

Run with: uvicorn execution.legal_retrieval.api:app --host 0.0.0.0 --port 8000
     or: python -m execution.legal_retrieval.api
"""

import os
import logging

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import HealthResponse, RetrieveRequest, RetrieveResponse
from .config import RetrievalOptions, RetrievalSettings
from .errors import CancellationToken, RetrievalCancelled, RetrievalError
from .metrics import get_metrics_collector

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

# Whole-request deadline; cancels in-flight retrieval when exceeded
REQUEST_TIMEOUT_S = float(os.getenv("RETRIEVAL_REQUEST_TIMEOUT_S", "30"))

app = FastAPI(
    title="Legal Retrieval API",
    description="Hybrid retrieval over Croatian laws, case filings and court decisions",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container - builds store and retriever lazily
# =============================================================================

class ServiceContainer:
    """Caches the settings, corpus store and retriever for the process."""

    def __init__(self):
        self._settings = None
        self._store = None
        self._retriever = None

    def get_settings(self) -> RetrievalSettings:
        if self._settings is None:
            self._settings = RetrievalSettings.from_env()
        return self._settings

    def get_store(self):
        if self._store is None:
            from .vector_store import PostgresCorpusStore
            settings = self.get_settings()
            store = PostgresCorpusStore(
                connection_string=settings.connection_string,
                statement_timeout_ms=settings.store_timeout_ms,
                pool_max_connections=max(settings.max_workers * 2, 2),
            )
            store.connect()
            self._store = store
        return self._store

    def get_retriever(self):
        if self._retriever is None:
            from .retriever import get_retriever
            self._retriever = get_retriever(settings=self.get_settings(), store=self.get_store())
        return self._retriever


_container = ServiceContainer()


def get_retriever_service():
    """FastAPI dependency returning the shared retriever."""
    return _container.get_retriever()


def build_options(request: RetrieveRequest) -> RetrievalOptions:
    """Map a request body onto RetrievalOptions."""
    fields = dict(
        weights=request.weights,
        filters=request.filters,
        top_k=request.top_k,
        mmr_lambda=request.mmr_lambda,
        rrf_k=request.rrf_k,
        corpus_caps=request.corpus_caps,
        min_confidence=request.min_confidence,
        similarity_threshold=request.similarity_threshold,
        vector_limit=request.vector_limit,
        keyword_limit=request.keyword_limit,
        graph_limit=request.graph_limit,
        diversify=request.diversify,
        jurisdiction=request.jurisdiction,
        date_from=request.date_from,
        date_to=request.date_to,
    )
    if request.corpora is not None:
        fields["corpora"] = frozenset(request.corpora)
    return RetrievalOptions(**fields)


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    settings = _container.get_settings()
    try:
        _container.get_store()
        db_status = "connected"
    except RetrievalError as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(
        status="ok",
        version=__version__,
        database=db_status,
        embedding_provider=settings.embedding_provider,
    )


@app.post("/api/v1/retrieve", response_model=RetrieveResponse)
def retrieve(request: RetrieveRequest, retriever=Depends(get_retriever_service)):
    """Hybrid retrieval: ranked, deduplicated, confidence-scored chunks."""
    options = build_options(request)
    token = CancellationToken(timeout_s=REQUEST_TIMEOUT_S)

    try:
        result = retriever.retrieve(request.query, options, cancel_token=token)
    except RetrievalCancelled:
        logger.warning(f"Retrieval cancelled after {REQUEST_TIMEOUT_S}s deadline")
        raise HTTPException(status_code=504, detail="Retrieval deadline exceeded")

    return RetrieveResponse(**result.to_dict())


@app.get("/api/v1/metrics")
def metrics():
    """Aggregated retrieval metrics."""
    return get_metrics_collector().get_metrics_dict()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=os.getenv("API_HOST", "0.0.0.0"), port=int(os.getenv("API_PORT", "8000")))
