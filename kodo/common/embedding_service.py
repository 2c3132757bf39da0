"""
Embedding Service

On-device embedding generation using fastembed. Embeddings are an
enhancement for ranking: when fastembed is not installed or the model cannot
be loaded, the service reports itself unavailable and the relevance index
ranks lexically.
"""

import logging
from typing import List, Optional

import numpy as np

from .config import DEFAULT_EMBEDDING_MODEL

logger = logging.getLogger("kodo.common.embedding")


class EmbeddingService:
    """
    Embedding service for the relevance index.

    Uses fastembed for on-device embedding generation.
    This avoids external API calls and keeps data local.
    """

    def __init__(self, model: str = DEFAULT_EMBEDDING_MODEL):
        self._model_name = model
        self._model = None
        self._init_model(model)

    def _init_model(self, model: str) -> None:
        """Initialize the underlying fastembed model"""
        try:
            from fastembed import TextEmbedding
        except ImportError as e:
            logger.warning("fastembed not installed, embeddings disabled: %s", e)
            return

        try:
            self._model = TextEmbedding(model_name=model)
            logger.info("Initialized embedding model %s", model)
        except Exception as e:
            logger.warning("Could not load embedding model %s: %s", model, e)
            self._model = None

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._model is not None

    @property
    def model_name(self) -> str:
        return self._model_name

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors (L2 normalized)
        """
        if not self._model:
            raise RuntimeError("Embedding model not initialized")

        if not texts:
            return []

        vectors = np.array(list(self._model.embed(texts)), dtype=np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return (vectors / norms).tolist()

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector (L2 normalized)
        """
        if not text:
            raise ValueError("Cannot embed empty text")

        return self.embed([text])[0]

    @staticmethod
    def cosine_similarity(vec1: List[float], vec2: List[float]) -> float:
        """
        Compute cosine similarity between two vectors.

        Vectors are normalized here as well, so callers may pass raw
        vectors loaded from an older snapshot.

        Returns:
            Cosine similarity score clamped to (0.0 to 1.0)
        """
        v1 = np.asarray(vec1, dtype=np.float32)
        v2 = np.asarray(vec2, dtype=np.float32)

        # Handle potential dimension mismatch
        if v1.shape != v2.shape:
            raise ValueError(f"Vector dimension mismatch: {v1.shape} vs {v2.shape}")

        denom = float(np.linalg.norm(v1) * np.linalg.norm(v2))
        if denom == 0.0:
            return 0.0
        similarity = float(np.dot(v1, v2)) / denom

        # Clamp to valid range (numerical precision issues)
        return max(0.0, min(1.0, similarity))


# Module-level cache keyed by model name
_service_instances = {}


def get_embedding_service(model: str = DEFAULT_EMBEDDING_MODEL) -> Optional[EmbeddingService]:
    """
    Get the shared EmbeddingService for a model.

    Returns:
        EmbeddingService instance, or None if embeddings are unavailable
    """
    if model not in _service_instances:
        _service_instances[model] = EmbeddingService(model=model)

    service = _service_instances[model]
    return service if service.is_available else None
