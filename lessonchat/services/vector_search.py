"""
Vector search over transcript chunks (pgvector or Qdrant)
"""

import json
import math
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import select, text

from lessonchat.core.config import settings
from lessonchat.core.database import SessionLocal
from lessonchat.models.course import Video, VideoChunk

logger = logging.getLogger(__name__)


@dataclass
class RetrievedChunk:
    chunk_id: str
    video_id: str
    video_title: str
    text: str
    start_seconds: float
    end_seconds: float
    similarity: float
    video_duration: Optional[float] = None


def vector_to_literal(vec: Iterable[float]) -> Optional[str]:
    """pgvector textual input format: [1,2,3]"""
    values = [float(x) for x in vec]
    if not values:
        return None
    return json.dumps(values, separators=(",", ":"))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class ChunkIndex(ABC):
    """A similarity index over chunk embeddings"""

    @abstractmethod
    def search(self, query_embedding: List[float], top_k: int, similarity_floor: float,
               video_ids: Optional[Sequence[str]] = None) -> List[RetrievedChunk]:
        ...

    def health_check(self) -> bool:
        return True

    def circuit_status(self) -> Optional[Dict[str, Any]]:
        """State of the circuit breaker guarding the index, if it has one"""
        return None


_PGVECTOR_SEARCH = """
SELECT
    c.id AS chunk_id,
    c.video_id AS video_id,
    v.title AS video_title,
    v.duration_seconds AS video_duration,
    c.text AS text,
    c.start_seconds AS start_seconds,
    c.end_seconds AS end_seconds,
    1 - (c.embedding_vec <=> CAST(:qvec AS vector)) AS similarity
FROM video_chunks c
JOIN videos v ON v.id = c.video_id
WHERE
    c.embedding_vec IS NOT NULL
    AND 1 - (c.embedding_vec <=> CAST(:qvec AS vector)) >= :floor
    {video_clause}
ORDER BY c.embedding_vec <=> CAST(:qvec AS vector)
LIMIT :lim
"""


class PgVectorChunkIndex(ChunkIndex):
    """
    Similarity search in the relational store.

    PostgreSQL uses the pgvector ``<=>`` cosine-distance operator. Other
    dialects (SQLite in development and tests) rank the JSON embeddings of
    the filtered rows in-process.
    """

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    def search(self, query_embedding, top_k, similarity_floor, video_ids=None):
        db = self.session_factory()
        try:
            if db.get_bind().dialect.name == "postgresql":
                return self._search_pgvector(db, query_embedding, top_k, similarity_floor, video_ids)
            return self._search_scan(db, query_embedding, top_k, similarity_floor, video_ids)
        finally:
            db.close()

    def _search_pgvector(self, db, query_embedding, top_k, similarity_floor, video_ids):
        params: Dict[str, Any] = {
            "qvec": vector_to_literal(query_embedding),
            "floor": float(similarity_floor),
            "lim": int(top_k),
        }
        video_clause = ""
        if video_ids is not None:
            video_clause = "AND c.video_id = ANY(:video_ids)"
            params["video_ids"] = list(video_ids)

        rows = db.execute(text(_PGVECTOR_SEARCH.format(video_clause=video_clause)), params).mappings().all()
        return [
            RetrievedChunk(
                chunk_id=str(row["chunk_id"]),
                video_id=str(row["video_id"]),
                video_title=row["video_title"],
                video_duration=row["video_duration"],
                text=row["text"],
                start_seconds=float(row["start_seconds"]),
                end_seconds=float(row["end_seconds"]),
                similarity=float(row["similarity"]),
            )
            for row in rows
        ]

    def _search_scan(self, db, query_embedding, top_k, similarity_floor, video_ids):
        query = (
            select(VideoChunk, Video)
            .join(Video, Video.id == VideoChunk.video_id)
            .where(VideoChunk.embedding.isnot(None))
        )
        if video_ids is not None:
            query = query.where(VideoChunk.video_id.in_(list(video_ids)))

        scored = []
        for chunk, video in db.execute(query).all():
            similarity = cosine_similarity(query_embedding, chunk.embedding)
            if similarity >= similarity_floor:
                scored.append(RetrievedChunk(
                    chunk_id=chunk.id,
                    video_id=chunk.video_id,
                    video_title=video.title,
                    video_duration=video.duration_seconds,
                    text=chunk.text,
                    start_seconds=chunk.start_seconds,
                    end_seconds=chunk.end_seconds,
                    similarity=similarity,
                ))

        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored[:top_k]

    def health_check(self) -> bool:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        finally:
            db.close()


class QdrantChunkIndex(ChunkIndex):
    """Similarity search in Qdrant; chunk text and video metadata come from the relational store"""

    def __init__(self, qdrant=None, session_factory: Callable = SessionLocal):
        self._qdrant = qdrant
        self.session_factory = session_factory

    @property
    def qdrant(self):
        if self._qdrant is None:
            from lessonchat.services.qdrant import QdrantService
            self._qdrant = QdrantService()
        return self._qdrant

    def circuit_status(self):
        return self.qdrant.circuit_status()

    def search(self, query_embedding, top_k, similarity_floor, video_ids=None):
        hits = self.qdrant.search_vectors(
            query_vector=query_embedding,
            limit=top_k,
            score_threshold=similarity_floor,
            video_ids=video_ids,
        )
        if not hits:
            return []

        db = self.session_factory()
        try:
            rows = db.execute(
                select(VideoChunk, Video)
                .join(Video, Video.id == VideoChunk.video_id)
                .where(VideoChunk.id.in_([hit["chunk_id"] for hit in hits]))
            ).all()
        finally:
            db.close()

        by_id = {chunk.id: (chunk, video) for chunk, video in rows}
        results = []
        for hit in hits:
            if hit["chunk_id"] not in by_id:
                logger.warning(f"Qdrant returned chunk {hit['chunk_id']} missing from the database")
                continue
            chunk, video = by_id[hit["chunk_id"]]
            results.append(RetrievedChunk(
                chunk_id=chunk.id,
                video_id=chunk.video_id,
                video_title=video.title,
                video_duration=video.duration_seconds,
                text=chunk.text,
                start_seconds=chunk.start_seconds,
                end_seconds=chunk.end_seconds,
                similarity=hit["score"],
            ))
        return results

    def health_check(self) -> bool:
        return self.qdrant.health_check()


def diversify(ranked: Sequence[RetrievedChunk], top_k: int, max_per_video: int) -> List[RetrievedChunk]:
    """
    Keep the best-first order while dropping duplicate chunks and anything
    past ``max_per_video`` chunks of the same video.
    """
    selected: List[RetrievedChunk] = []
    seen: Set[str] = set()
    per_video: Dict[str, int] = {}

    for chunk in ranked:
        if len(selected) >= top_k:
            break
        if chunk.chunk_id in seen:
            continue
        if max_per_video > 0 and per_video.get(chunk.video_id, 0) >= max_per_video:
            continue
        seen.add(chunk.chunk_id)
        per_video[chunk.video_id] = per_video.get(chunk.video_id, 0) + 1
        selected.append(chunk)

    return selected


class VectorSearchService:
    """
    Returns the top-K chunks above the similarity floor, best first, with at
    most ``max_per_video`` chunks from any one video.

    An empty result is valid: nothing in the course is close enough to the question.
    """

    def __init__(self, index: Optional[ChunkIndex] = None):
        self._index = index

    @property
    def index(self) -> ChunkIndex:
        if self._index is None:
            if settings.vector_backend == "qdrant":
                self._index = QdrantChunkIndex()
            else:
                self._index = PgVectorChunkIndex()
        return self._index

    def search(
        self,
        query_embedding: List[float],
        top_k: Optional[int] = None,
        similarity_floor: Optional[float] = None,
        video_ids: Optional[Sequence[str]] = None,
        max_per_video: Optional[int] = None,
    ) -> List[RetrievedChunk]:
        """
        Args:
            query_embedding: Embedding of the learner's question
            top_k: Maximum number of chunks
            similarity_floor: Minimum cosine similarity (1 - cosine distance)
            video_ids: Restrict to these videos; ``None`` searches everything
            max_per_video: Cap on chunks from one video; 0 turns the cap off

        Returns:
            Chunks ordered by similarity descending
        """
        top_k = top_k or settings.retrieval_top_k
        similarity_floor = settings.retrieval_similarity_floor if similarity_floor is None else similarity_floor

        if video_ids is not None and len(video_ids) == 0:
            return []

        max_per_video = settings.retrieval_max_per_video if max_per_video is None else max_per_video

        # Over-fetch so capped videos leave room for the next best ones
        fetch_k = top_k * 2 if max_per_video > 0 else top_k
        results = self.index.search(query_embedding, fetch_k, similarity_floor, video_ids)
        ranked = sorted(
            (chunk for chunk in results if chunk.similarity >= similarity_floor),
            key=lambda c: c.similarity,
            reverse=True,
        )
        results = diversify(ranked, top_k, max_per_video)

        logger.info(f"Vector search returned {len(results)} chunks (floor {similarity_floor}, top_k {top_k})")
        return results

    async def asearch(self, query_embedding, top_k=None, similarity_floor=None, video_ids=None) -> List[RetrievedChunk]:
        """Run ``search`` in a worker thread"""
        return await asyncio.to_thread(self.search, query_embedding, top_k, similarity_floor, video_ids)
