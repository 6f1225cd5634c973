"""
Qdrant vector storage service for transcript chunks
"""

import logging
from typing import List, Dict, Any, Optional, Sequence
from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    PayloadSchemaType,
    VectorParams,
)
from lessonchat.core.config import settings
from lessonchat.services.retry_service import retry_with_backoff, circuit_breaker

logger = logging.getLogger(__name__)

class QdrantService:
    """
    Searches chunk embeddings stored in Qdrant.

    Points carry ``chunk_id`` and ``video_id`` in their payload; ``video_id``
    is indexed so video restrictions run inside the query.
    """

    def __init__(self, client: Optional[QdrantClient] = None):
        self.client = client
        self.collection_name = settings.qdrant_collection
        self._is_available = False

        try:
            if self.client is None:
                if settings.qdrant_api_key:
                    self.client = QdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
                else:
                    self.client = QdrantClient(url=settings.qdrant_url)
            self._is_available = True
            self._ensure_collection_exists()
        except Exception as e:
            # Log the error but don't fail initialization
            logger.warning(f"Failed to initialize Qdrant client: {str(e)}")
            self._is_available = False

    def _ensure_collection_exists(self):
        """Create collection and its payload index if they don't exist"""
        collections = self.client.get_collections()
        collection_names = [col.name for col in collections.collections]

        if self.collection_name not in collection_names:
            self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(
                    size=settings.embed_dim,
                    distance=Distance.COSINE
                )
            )
            try:
                self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name="video_id",
                    field_schema=PayloadSchemaType.KEYWORD,
                )
            except Exception as e:
                # Index might already exist, which is fine
                if "already exists" not in str(e).lower():
                    logger.warning(f"Failed to create index for video_id: {e}")

    def is_available(self) -> bool:
        return self._is_available and self.client is not None

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=4.0)
    @circuit_breaker(failure_threshold=5, timeout=60)
    def search_vectors(
        self,
        query_vector: List[float],
        limit: int = 5,
        score_threshold: float = 0.0,
        video_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search for similar chunk vectors

        Args:
            query_vector: Query embedding vector
            limit: Maximum number of results
            score_threshold: Minimum cosine similarity
            video_ids: Restrict the search to these videos

        Returns:
            List of {"chunk_id", "video_id", "score"} ordered by score descending
        """
        if not self.is_available():
            raise RuntimeError("Qdrant service is not available")

        query_filter = None
        if video_ids is not None:
            query_filter = Filter(must=[FieldCondition(key="video_id", match=MatchAny(any=list(video_ids)))])

        response = self.client.query_points(
            collection_name=self.collection_name,
            query=query_vector,
            query_filter=query_filter,
            limit=limit,
            score_threshold=score_threshold,
            with_payload=True,
        )

        return [
            {
                "chunk_id": str(point.payload.get("chunk_id", point.id)),
                "video_id": str(point.payload.get("video_id", "")),
                "score": float(point.score),
            }
            for point in response.points
        ]

    def circuit_status(self) -> Dict[str, Any]:
        """State of the breaker guarding ``search_vectors``, shared by every instance"""
        return QdrantService.search_vectors.circuit.status()

    def health_check(self) -> bool:
        """
        Check if Qdrant service is healthy

        Returns:
            True if healthy, raises exception if not
        """
        if not self.is_available():
            raise RuntimeError("Qdrant service is not available")

        try:
            self.client.get_collections()
            return True
        except Exception as e:
            self._is_available = False
            raise RuntimeError(f"Qdrant health check failed: {str(e)}")
