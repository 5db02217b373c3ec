"""
Query Embedding Providers for Hybrid Legal Retrieval

Embeds retrieval queries via Voyage AI, Cohere or a local
sentence-transformers model. The vector searcher and the MMR diversifier
share one query embedding per retrieve() call.

Architecture:
    BaseEmbeddingService  -- shared caching and error translation, embed_query
        EmbeddingService          -- Cohere embed-v3 provider
        VoyageEmbeddingService    -- Voyage AI provider
    LocalEmbeddingService -- local sentence-transformers (no caching needed)

Every provider error surfaces as EmbeddingFailure so the vector branch can
degrade without failing the whole retrieval.
"""

import os
import json
import hashlib
import logging
import threading
from typing import Optional, Union
from dataclasses import dataclass
from pathlib import Path

from .errors import EmbeddingFailure

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "voyage"  # "voyage", "cohere" or "local"
    # Croatian corpus: multilingual models by default
    model: str = "voyage-multilingual-2"
    dimensions: int = 1024
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for API-based query embedding services.

    Provides shared functionality:
    - Memory and file-based caching keyed by model:input_type:text
    - Translation of provider errors into EmbeddingFailure

    Subclasses only need to implement:
    - _init_client(): Initialize the provider-specific API client
    - _call_provider(): Embed a list of texts
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}
        self._cache_lock = threading.Lock()

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _call_provider(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _call_provider()")

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Args:
            query: Search query string

        Returns:
            Embedding vector

        Raises:
            EmbeddingFailure: client missing or provider call failed
        """
        if not self._client:
            raise EmbeddingFailure(
                f"{self._provider_name} client not initialized. Check {self._env_var_name}.",
                method="vector",
            )

        cache_key = self._get_cache_key(query, self._query_input_type)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        try:
            result = self._call_provider([query], input_type=self._query_input_type)
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise EmbeddingFailure(f"{self._provider_name} embedding failed: {e}", method="vector") from e

        if not result or not result[0]:
            raise EmbeddingFailure(f"{self._provider_name} returned no embedding", method="vector")

        embedding = [float(v) for v in result[0]]
        self._set_cached(cache_key, embedding)
        return embedding

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")
                    return None
                with self._cache_lock:
                    self._cache[key] = embedding
                return embedding

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        with self._cache_lock:
            self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class EmbeddingService(BaseEmbeddingService):
    """
    Generates query embeddings using Cohere's embed-v3 models.

    embed-multilingual-v3.0 covers Croatian; search_query is used as the
    input type so queries match documents embedded as search_document.
    """

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"
    _query_input_type = "search_query"

    def _init_client(self):
        """Initialize the Cohere client."""
        api_key = os.getenv("COHERE_API_KEY")

        if not api_key:
            logger.warning(
                "COHERE_API_KEY not found. Embeddings will fail. "
                "Set the environment variable or use a different provider."
            )
            return

        try:
            import cohere
            self._client = cohere.Client(api_key)
            logger.info(f"Cohere client initialized with model {self.config.model}")
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise

    def _call_provider(self, texts, input_type):
        response = self._client.embed(texts=texts, model=self.config.model, input_type=input_type)
        return response.embeddings


class VoyageEmbeddingService(BaseEmbeddingService):
    """
    Query embeddings using Voyage AI.

    voyage-multilingual-2 for Croatian text, voyage-law-2 for English legal
    corpora. Both are 1024-dimensional.
    """

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _query_input_type = "query"

    def _init_client(self):
        """Initialize the Voyage AI client."""
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your free API key at https://dash.voyageai.com/"
            )
            return

        try:
            import voyageai
            self._client = voyageai.Client(api_key=api_key)
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise

    def _call_provider(self, texts, input_type):
        response = self._client.embed(texts=texts, model=self.config.model, input_type=input_type)
        return response.embeddings


class LocalEmbeddingService:
    """
    Query embeddings from a local sentence-transformers model.

    BGE-M3 handles Croatian; useful for development without API keys.
    """

    def __init__(self, model_name: str = "BAAI/bge-m3"):
        """Initialize with a local model."""
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers not installed. "
                "Run: pip install sentence-transformers"
            )
        self._model = SentenceTransformer(model_name)
        self._dimensions = self._model.get_sentence_embedding_dimension()
        logger.info(f"Local embedding model loaded: {model_name}")

    def embed_query(self, query: str) -> list[float]:
        """Embed a query using local model."""
        try:
            embedding = self._model.encode([query])
        except Exception as e:
            raise EmbeddingFailure(f"Local embedding failed: {e}", method="vector") from e
        return embedding[0].tolist()

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self._dimensions


def get_embedding_service(
    provider: str = "voyage",
    model: Optional[str] = None,
    cache_dir: Optional[str] = None,
) -> Union[VoyageEmbeddingService, EmbeddingService, LocalEmbeddingService]:
    """
    Factory function to get the configured embedding service.

    Args:
        provider: "voyage" (default), "cohere" or "local"
        model: Optional model override
        cache_dir: Optional directory for the file embedding cache

    Returns:
        Configured embedding service
    """
    if provider == "local":
        return LocalEmbeddingService(model or "BAAI/bge-m3")

    if provider == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=model or "voyage-multilingual-2",
            dimensions=1024,
            cache_dir=cache_dir,
        )
        return VoyageEmbeddingService(config)

    if provider != "cohere":
        logger.warning(f"Unknown embedding provider '{provider}', falling back to Cohere")

    config = EmbeddingConfig(
        provider="cohere",
        model=model or "embed-multilingual-v3.0",
        dimensions=1024,
        cache_dir=cache_dir,
    )
    return EmbeddingService(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    provider = os.getenv("EMBEDDING_PROVIDER", "voyage")
    print(f"Using embedding provider: {provider}")

    service = get_embedding_service(provider=provider)

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "Zakonitost pretrage mobitela bez naloga"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
