"""
Query embedding service using Sentence Transformers
"""

import asyncio
import hashlib
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import List, Optional, Tuple

from lessonchat.core.config import settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Embeds learner questions with the same model used to embed transcript chunks.

    The model is loaded on first use. Recent query embeddings are memoised
    because learners often re-ask or rephrase the same question. Queries are
    embedded in worker threads, so the cache and the model load are locked.
    """

    def __init__(self, model_name: Optional[str] = None, cache_size: int = 1024, cache_ttl: int = 3600):
        self.model_name = model_name or settings.embedding_model
        self.embed_dim = settings.embed_dim
        self.st_model = None
        self._cache: "OrderedDict[str, Tuple[float, List[float]]]" = OrderedDict()
        self._cache_size = cache_size
        self._cache_ttl = cache_ttl
        self._cache_lock = threading.Lock()
        self._model_lock = threading.Lock()

    def _load_model(self):
        """Load the Sentence Transformers model on CPU"""
        if self.st_model is not None:
            return self.st_model

        with self._model_lock:
            if self.st_model is not None:
                return self.st_model

            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
            model = SentenceTransformer(self.model_name, device="cpu")

            dimension = model.get_sentence_embedding_dimension()
            if dimension != self.embed_dim:
                logger.warning(f"Embedding model dimension {dimension} does not match EMBED_DIM={self.embed_dim}")
            logger.info(f"Embedding model loaded (dimension {dimension})")
            self.st_model = model
        return self.st_model

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def generate_single_embedding(self, text: str) -> List[float]:
        """
        Generate embedding for a single text with caching

        Raises:
            RuntimeError: If the model cannot be loaded or encoding fails
        """
        key = self._cache_key(text)
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached and time.time() - cached[0] < self._cache_ttl:
                self._cache.move_to_end(key)
                logger.debug(f"Cache hit for embedding: {text[:50]}...")
                return cached[1]

        try:
            model = self._load_model()
            vector = model.encode([text], convert_to_tensor=False, normalize_embeddings=True)[0].tolist()
        except Exception as e:
            raise RuntimeError(f"Failed to generate embedding: {str(e)}") from e

        with self._cache_lock:
            self._cache[key] = (time.time(), vector)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return vector

    async def embed_query(self, text: str) -> List[float]:
        """Embed off the event loop; encoding is CPU bound"""
        return await asyncio.to_thread(self.generate_single_embedding, text)

    def health_check(self) -> bool:
        try:
            vector = self.generate_single_embedding("health check")
            if not vector:
                raise RuntimeError("Embedding generation returned empty result")
            return True
        except Exception as e:
            raise RuntimeError(f"Embedding service health check failed: {str(e)}") from e

    def clear_cache(self):
        with self._cache_lock:
            self._cache.clear()


_embedding_service: Optional[EmbeddingService] = None


def get_embedding_service() -> EmbeddingService:
    """Get or create the process-wide EmbeddingService (the model is loaded once)"""
    global _embedding_service
    if _embedding_service is None:
        _embedding_service = EmbeddingService()
    return _embedding_service
