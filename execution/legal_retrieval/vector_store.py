"""
Corpus Stores for Hybrid Legal Retrieval

Storage collaborators consumed by the searchers:
- top_k_similar: vector similarity (pgvector when installed, JSON fallback otherwise)
- match: keyword ILIKE match over title + content
- lookup_by_law_number / lookup_by_case_number: direct citation lookups
- get_embeddings: stored chunk embeddings for MMR diversification

PostgresCorpusStore talks to the three corpus tables (laws, cases_documents,
court_decision_documents). InMemoryCorpusStore implements the same contract
with numpy for tests and local runs.
"""

import os
import re
import json
import logging
import threading
from typing import Optional
from dataclasses import dataclass, field

import numpy as np
import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool

from .config import Corpus
from .errors import CancellationToken, RetrievalCancelled, StoreQueryError, StoreTimeout

logger = logging.getLogger(__name__)

# Direct citation lookups return at most this many rows per citation
LOOKUP_LIMIT = 10


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so a keyword matches literally (used with ESCAPE '\\')."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _check(cancel_token: Optional[CancellationToken]) -> None:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()


@dataclass
class StoredChunk:
    """A chunk row as stored in one of the corpus tables."""
    id: str
    corpus: Corpus
    title: str
    content: str
    doc_id: str = ""
    chunk_index: int = 0
    metadata: dict = field(default_factory=dict)
    embedding: Optional[list[float]] = None
    law_number: Optional[str] = None  # laws only, e.g. "123/20"


@dataclass
class StoreHit:
    """A stored chunk with the similarity the store computed for it."""
    chunk: StoredChunk
    score: float


def matches_filters(metadata: Optional[dict], filters: Optional[dict]) -> bool:
    """
    Apply retrieval filters to chunk metadata.

    date_from / date_to compare against the ISO "date" metadata value; every
    other key is a text equality filter (same as metadata->>key = value in SQL).
    """
    if not filters:
        return True
    metadata = metadata or {}
    for key, value in filters.items():
        if value is None:
            continue
        if key == "date_from":
            if not metadata.get("date") or str(metadata["date"]) < str(value):
                return False
        elif key == "date_to":
            if not metadata.get("date") or str(metadata["date"]) > str(value):
                return False
        elif key not in metadata or str(metadata[key]) != str(value):
            return False
    return True


def cosine_scores(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row in matrix against vector (0 for zero-norm rows)."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    return np.divide(dots, norms, out=np.zeros_like(dots, dtype=float), where=norms > 0)


def _rank_by_similarity(chunks: list[StoredChunk], vector: list[float], k: int, threshold: float) -> list[StoreHit]:
    """Brute-force cosine ranking shared by the JSON fallback and the in-memory store."""
    candidates = [c for c in chunks if c.embedding]
    if not candidates or not vector:
        return []
    matrix = np.asarray([c.embedding for c in candidates], dtype=float)
    scores = cosine_scores(matrix, np.asarray(vector, dtype=float))

    hits = [StoreHit(chunk=c, score=float(s)) for c, s in zip(candidates, scores) if s >= threshold]
    # Stable sort keeps storage order among equal scores
    hits.sort(key=lambda h: h.score, reverse=True)
    return hits[:k]


class BaseCorpusStore:
    """Contract shared by every corpus store."""

    def top_k_similar(
        self,
        corpus: Corpus,
        vector: list[float],
        k: int,
        threshold: float,
        filters: Optional[dict] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[StoreHit]:
        raise NotImplementedError("Subclasses must implement top_k_similar()")

    def match(
        self,
        corpus: Corpus,
        keywords: list[str],
        limit: int,
        filters: Optional[dict] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[StoredChunk]:
        raise NotImplementedError("Subclasses must implement match()")

    def lookup_by_law_number(self, number: str, filters: Optional[dict] = None,
                             cancel_token: Optional[CancellationToken] = None) -> list[StoredChunk]:
        raise NotImplementedError("Subclasses must implement lookup_by_law_number()")

    def lookup_by_case_number(self, pattern: str, filters: Optional[dict] = None,
                              cancel_token: Optional[CancellationToken] = None) -> list[StoredChunk]:
        """pattern is a case-insensitive regular expression matched against doc_id."""
        raise NotImplementedError("Subclasses must implement lookup_by_case_number()")

    def get_embeddings(self, corpus: Corpus, ids: list[str],
                       cancel_token: Optional[CancellationToken] = None) -> dict[str, list[float]]:
        raise NotImplementedError("Subclasses must implement get_embeddings()")

    def get_embedding(self, corpus: Corpus, chunk_id: str) -> Optional[list[float]]:
        return self.get_embeddings(corpus, [chunk_id]).get(chunk_id)


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryCorpusStore(BaseCorpusStore):
    """
    Corpus store backed by Python lists.

    Same ordering and threshold semantics as PostgresCorpusStore; used by
    tests and for local experiments without a database.
    """

    def __init__(self, chunks: Optional[list[StoredChunk]] = None):
        self._chunks: dict[Corpus, list[StoredChunk]] = {c: [] for c in Corpus}
        self._lock = threading.Lock()
        for chunk in chunks or []:
            self.add(chunk)

    def add(self, chunk: StoredChunk) -> None:
        with self._lock:
            self._chunks[chunk.corpus].append(chunk)

    def count(self, corpus: Optional[Corpus] = None) -> int:
        if corpus is not None:
            return len(self._chunks[corpus])
        return sum(len(v) for v in self._chunks.values())

    def _rows(self, corpus: Corpus, filters: Optional[dict]) -> list[StoredChunk]:
        with self._lock:
            rows = list(self._chunks[corpus])
        return [c for c in rows if matches_filters(c.metadata, filters)]

    def top_k_similar(self, corpus, vector, k, threshold, filters=None, cancel_token=None):
        _check(cancel_token)
        return _rank_by_similarity(self._rows(corpus, filters), vector, k, threshold)

    def match(self, corpus, keywords, limit, filters=None, cancel_token=None):
        _check(cancel_token)
        if not keywords:
            return []
        terms = [kw.lower() for kw in keywords]
        scored = []
        for chunk in self._rows(corpus, filters):
            haystack = f"{chunk.title} {chunk.content}".lower()
            matched = sum(1 for t in terms if t in haystack)
            if matched:
                scored.append((matched, chunk))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [chunk for _, chunk in scored[:limit]]

    def lookup_by_law_number(self, number, filters=None, cancel_token=None):
        _check(cancel_token)
        return [c for c in self._rows(Corpus.LAWS, filters) if c.law_number == number][:LOOKUP_LIMIT]

    def lookup_by_case_number(self, pattern, filters=None, cancel_token=None):
        _check(cancel_token)
        regex = re.compile(pattern, re.IGNORECASE)
        return [
            c for c in self._rows(Corpus.CASE_DOCUMENTS, filters)
            if regex.search(c.doc_id or "")
        ][:LOOKUP_LIMIT]

    def get_embeddings(self, corpus, ids, cancel_token=None):
        _check(cancel_token)
        wanted = set(ids)
        with self._lock:
            return {c.id: c.embedding for c in self._chunks[corpus] if c.id in wanted and c.embedding}


# =============================================================================
# PostgreSQL store
# =============================================================================

class PostgresCorpusStore(BaseCorpusStore):
    """
    PostgreSQL corpus store.

    Features:
    - Threaded connection pool with one retry on a stale connection
    - statement_timeout on every query (surfaces as StoreTimeout)
    - pgvector cosine distance when the extension is installed, in-process
      cosine over the JSON embedding_vector column otherwise
    """

    COLUMNS = "id, doc_id, title, content, metadata, chunk_index"

    def __init__(
        self,
        connection_string: Optional[str] = None,
        statement_timeout_ms: int = 8000,
        pool_min_connections: int = 1,
        pool_max_connections: int = 10,
    ):
        self._connection_string = (
            connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/legal_db"
        )
        self.statement_timeout_ms = statement_timeout_ms
        self.pool_min_connections = pool_min_connections
        self.pool_max_connections = pool_max_connections
        self._pool = None
        self._pool_lock = threading.Lock()
        self._has_pgvector: Optional[bool] = None

    def connect(self) -> None:
        """Create (or recreate) the connection pool."""
        with self._pool_lock:
            if self._pool:
                self._pool.closeall()
            try:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.pool_min_connections,
                    maxconn=self.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=psycopg2.extras.RealDictCursor,
                )
            except psycopg2.Error as e:
                logger.error(f"Database connection failed: {e}")
                raise StoreQueryError(f"Database connection failed: {e}") from e
        logger.info(
            f"Connection pool initialized (min={self.pool_min_connections}, "
            f"max={self.pool_max_connections})"
        )

    def close(self) -> None:
        with self._pool_lock:
            if self._pool:
                self._pool.closeall()
                self._pool = None
                logger.info("Connection pool closed")

    def _get_connection(self):
        if not self._pool:
            self.connect()
        return self._pool.getconn()

    def _release_connection(self, conn, close: bool = False) -> None:
        if self._pool and conn:
            try:
                self._pool.putconn(conn, close=close)
            except psycopg2.pool.PoolError as e:
                logger.debug(f"Could not return connection to pool: {e}")

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label: str, corpus: Optional[Corpus] = None,
                            cancel_token: Optional[CancellationToken] = None):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(cursor) that performs the DB work and returns a result.
            label: Human-readable name for logging and error context.
            corpus: Corpus the operation targets, for error context.
            cancel_token: Cancelling it while the statement runs sends a
                          cancel request for the connection.

        Returns:
            Whatever ``operation`` returns.

        Raises:
            RetrievalCancelled: the token was cancelled before or during the query
            StoreTimeout: statement_timeout cancelled the query
            StoreQueryError: any other database error
        """
        corpus_name = corpus.value if corpus else None
        for attempt in range(2):
            _check(cancel_token)
            try:
                conn = self._get_connection()
            except psycopg2.Error as e:
                raise StoreQueryError(f"{label}: no connection: {e}", method=label, corpus=corpus_name) from e

            def _cancel_statement(conn=conn):
                try:
                    conn.cancel()
                except psycopg2.Error as e:
                    logger.debug(f"{label}: cancel request failed: {e}")

            if cancel_token is not None:
                cancel_token.add_callback(_cancel_statement)
            try:
                try:
                    with conn.cursor() as cur:
                        cur.execute("SET LOCAL statement_timeout = %s", (int(self.statement_timeout_ms),))
                        result = operation(cur)
                finally:
                    # Detach before the connection can go back to the pool
                    if cancel_token is not None:
                        cancel_token.remove_callback(_cancel_statement)
                conn.commit()
                self._release_connection(conn)
                return result
            except psycopg2.extensions.QueryCanceledError as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if cancel_token is not None and cancel_token.cancelled:
                    raise RetrievalCancelled(f"{label}: cancelled by caller") from e
                raise StoreTimeout(
                    f"{label}: exceeded {self.statement_timeout_ms}ms", method=label, corpus=corpus_name
                ) from e
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn, close=True)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    continue
                raise StoreQueryError(f"{label}: {e}", method=label, corpus=corpus_name) from e
            except psycopg2.Error as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise StoreQueryError(f"{label}: {e}", method=label, corpus=corpus_name) from e

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _filter_sql(filters: Optional[dict]) -> tuple[str, list]:
        """Translate retrieval filters into AND-ed SQL conditions on the metadata JSONB."""
        clauses = []
        params = []
        for key, value in (filters or {}).items():
            if value is None:
                continue
            if key == "date_from":
                clauses.append("metadata->>'date' >= %s")
            elif key == "date_to":
                clauses.append("metadata->>'date' <= %s")
            else:
                clauses.append("metadata->>%s = %s")
                params.append(key)
            params.append(str(value))
        return "".join(f" AND {c}" for c in clauses), params

    @staticmethod
    def _row_to_chunk(row: dict, corpus: Corpus) -> StoredChunk:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return StoredChunk(
            id=str(row["id"]),
            corpus=corpus,
            title=row.get("title") or "",
            content=row.get("content") or "",
            doc_id=row.get("doc_id") or "",
            chunk_index=row.get("chunk_index") or 0,
            metadata=metadata,
            law_number=row.get("law_number"),
        )

    @staticmethod
    def _parse_vector(value) -> Optional[list[float]]:
        """Parse a pgvector text literal or JSON array into a list of floats."""
        if value is None:
            return None
        if isinstance(value, (list, tuple)):
            return [float(v) for v in value]
        parsed = json.loads(value)
        return [float(v) for v in parsed] if isinstance(parsed, list) and parsed else None

    def has_pgvector(self) -> bool:
        """Whether the vector extension is installed (checked once, then cached)."""
        if self._has_pgvector is None:
            def _op(cur):
                cur.execute("SELECT 1 FROM pg_extension WHERE extname = 'vector'")
                return cur.fetchone() is not None

            self._has_pgvector = self._execute_with_retry(_op, "pgvector_check")
            if not self._has_pgvector:
                logger.warning("pgvector extension not installed, using JSON embedding fallback")
        return self._has_pgvector

    # -------------------------------------------------------------------------
    # Collaborator operations
    # -------------------------------------------------------------------------

    def top_k_similar(self, corpus, vector, k, threshold, filters=None, cancel_token=None):
        """
        Chunks with cosine similarity >= threshold, best first, at most k.

        Args:
            corpus: Corpus table to search
            vector: Query embedding
            k: Maximum number of hits
            threshold: Minimum cosine similarity
            filters: Optional metadata filters
            cancel_token: Cancelling it aborts the running statement

        Returns:
            List of StoreHit ordered by similarity descending
        """
        where_extra, filter_params = self._filter_sql(filters)
        table = corpus.value

        if self.has_pgvector():
            embedding_literal = json.dumps([float(v) for v in vector])
            sql = f"""
            SELECT {self.COLUMNS}{', law_number' if corpus is Corpus.LAWS else ''},
                1 - (embedding <=> %s::vector) AS similarity
            FROM {table}
            WHERE embedding IS NOT NULL
              AND 1 - (embedding <=> %s::vector) >= %s
              {where_extra}
            ORDER BY embedding <=> %s::vector, id
            LIMIT %s
            """
            params = [embedding_literal, embedding_literal, threshold] + filter_params + [embedding_literal, k]

            def _op(cur):
                cur.execute(sql, params)
                return [
                    StoreHit(chunk=self._row_to_chunk(row, corpus), score=float(row["similarity"]))
                    for row in cur.fetchall()
                ]

            return self._execute_with_retry(_op, "vector_search", corpus, cancel_token)

        sql = f"""
        SELECT {self.COLUMNS}{', law_number' if corpus is Corpus.LAWS else ''}, embedding_vector
        FROM {table}
        WHERE embedding_vector IS NOT NULL
        {where_extra}
        ORDER BY id
        """

        def _fallback(cur):
            cur.execute(sql, filter_params)
            chunks = []
            for row in cur.fetchall():
                chunk = self._row_to_chunk(row, corpus)
                chunk.embedding = self._parse_vector(row["embedding_vector"])
                chunks.append(chunk)
            return chunks

        chunks = self._execute_with_retry(_fallback, "vector_search_json", corpus, cancel_token)
        return _rank_by_similarity(chunks, vector, k, threshold)

    def match(self, corpus, keywords, limit, filters=None, cancel_token=None):
        """Chunks whose title or content contains any keyword (ILIKE), most keywords matched first.

        Keywords match literally: % and _ inside a keyword are escaped.
        """
        if not keywords:
            return []
        where_extra, filter_params = self._filter_sql(filters)
        patterns = [f"%{escape_like(kw)}%" for kw in keywords]

        like = "ILIKE %s ESCAPE '\\'"
        matched_expr = " + ".join(
            [f"(CASE WHEN title {like} OR content {like} THEN 1 ELSE 0 END)"] * len(patterns)
        )
        any_expr = " OR ".join([f"title {like} OR content {like}"] * len(patterns))
        doubled = [p for p in patterns for _ in range(2)]

        sql = f"""
        SELECT {self.COLUMNS}{', law_number' if corpus is Corpus.LAWS else ''},
            ({matched_expr}) AS matched
        FROM {corpus.value}
        WHERE ({any_expr})
        {where_extra}
        ORDER BY matched DESC, id
        LIMIT %s
        """
        params = doubled + doubled + filter_params + [limit]

        def _op(cur):
            cur.execute(sql, params)
            return [self._row_to_chunk(row, corpus) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "keyword_search", corpus, cancel_token)

    def lookup_by_law_number(self, number, filters=None, cancel_token=None):
        where_extra, filter_params = self._filter_sql(filters)
        sql = f"""
        SELECT {self.COLUMNS}, law_number
        FROM {Corpus.LAWS.value}
        WHERE law_number = %s
        {where_extra}
        ORDER BY id
        LIMIT %s
        """

        def _op(cur):
            cur.execute(sql, [number] + filter_params + [LOOKUP_LIMIT])
            return [self._row_to_chunk(row, Corpus.LAWS) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "law_number_lookup", Corpus.LAWS, cancel_token)

    def lookup_by_case_number(self, pattern, filters=None, cancel_token=None):
        where_extra, filter_params = self._filter_sql(filters)
        sql = f"""
        SELECT {self.COLUMNS}
        FROM {Corpus.CASE_DOCUMENTS.value}
        WHERE doc_id ~* %s
        {where_extra}
        ORDER BY id
        LIMIT %s
        """

        def _op(cur):
            cur.execute(sql, [pattern] + filter_params + [LOOKUP_LIMIT])
            return [self._row_to_chunk(row, Corpus.CASE_DOCUMENTS) for row in cur.fetchall()]

        return self._execute_with_retry(_op, "case_number_lookup", Corpus.CASE_DOCUMENTS, cancel_token)

    def get_embeddings(self, corpus, ids, cancel_token=None):
        if not ids:
            return {}
        column = "embedding::text" if self.has_pgvector() else "embedding_vector"
        placeholders = ",".join(["%s"] * len(ids))
        sql = f"SELECT id, {column} AS vec FROM {corpus.value} WHERE id::text IN ({placeholders})"

        def _op(cur):
            cur.execute(sql, [str(i) for i in ids])
            result = {}
            for row in cur.fetchall():
                vec = self._parse_vector(row["vec"])
                if vec:
                    result[str(row["id"])] = vec
            return result

        return self._execute_with_retry(_op, "get_embeddings", corpus, cancel_token)
