"""
Health and readiness check service
"""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text

from lessonchat.core.config import settings
from lessonchat.core.database import SessionLocal
from lessonchat.deps.kv_store import KeyValueStore, get_kv_store
from lessonchat.deps.utils import redact_url
from lessonchat.services.vector_search import VectorSearchService

logger = logging.getLogger(__name__)

SERVICE_NAME = "lessonchat-api"
SERVICE_VERSION = "1.0.0"


class HealthService:
    """
    Service for health and readiness checks.

    The database and the key-value store are required: without the store every
    chat request is refused by admission control. The vector index and the
    LLM key are reported but do not fail readiness.
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        kv_store: Optional[KeyValueStore] = None,
        retriever: Optional[VectorSearchService] = None,
        cache_ttl: int = 30,
    ):
        self.session_factory = session_factory
        self._kv_store = kv_store
        self.retriever = retriever or VectorSearchService()
        self._last_health_check = 0.0
        self._cached_health_status: Optional[Dict[str, Any]] = None
        self._health_cache_ttl = cache_ttl

    @property
    def kv_store(self) -> KeyValueStore:
        if self._kv_store is None:
            self._kv_store = get_kv_store()
        return self._kv_store

    def liveness_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": self._get_timestamp(),
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
        }

    def _check_database(self) -> None:
        db = self.session_factory()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

    async def readiness_check(self) -> Dict[str, Any]:
        """
        Readiness check - component dependency validation with caching

        Returns:
            Dictionary with readiness status and component health
        """
        current_time = time.time()
        if self._cached_health_status and current_time - self._last_health_check < self._health_cache_ttl:
            return self._cached_health_status

        components: Dict[str, Dict[str, Any]] = {}
        overall_healthy = True

        try:
            await asyncio.to_thread(self._check_database)
            components["database"] = {
                "status": "healthy",
                "url": settings.database_url.split("@")[-1] if "@" in settings.database_url else "local",
            }
        except Exception as e:
            logger.error(f"Database health check failed: {str(e)}")
            components["database"] = {"status": "unhealthy", "error": str(e)}
            overall_healthy = False

        try:
            await self.kv_store.ping()
            components["key_value_store"] = {"status": "healthy", "url": redact_url(settings.redis_url)}
        except Exception as e:
            logger.error(f"Key-value store health check failed: {str(e)}")
            components["key_value_store"] = {"status": "unhealthy", "error": str(e)}
            overall_healthy = False

        try:
            await asyncio.to_thread(self.retriever.index.health_check)
            components["vector_index"] = {"status": "healthy", "backend": settings.vector_backend}
        except Exception as e:
            # Retrieval degrades to answering without context, so this does not fail readiness
            logger.error(f"Vector index health check failed: {str(e)}")
            components["vector_index"] = {"status": "unhealthy", "backend": settings.vector_backend, "error": str(e)}

        circuit = self.retriever.index.circuit_status()
        if circuit is not None:
            components["vector_index"]["circuit"] = circuit

        # Only configuration presence; a real completion call would be billed
        api_key = settings.llm_api_key or os.getenv("DEEPSEEK_API_KEY")
        if api_key and api_key.strip():
            components["llm"] = {"status": "configured", "model": settings.llm_model, "base_url": settings.llm_base_url}
        else:
            components["llm"] = {
                "status": "not_configured",
                "model": settings.llm_model,
                "message": "LLM API key is not configured. Set LLM_API_KEY",
            }

        result = {
            "status": "ready" if overall_healthy else "not_ready",
            "timestamp": self._get_timestamp(),
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "components": components,
        }

        self._cached_health_status = result
        self._last_health_check = current_time
        return result

    def _get_timestamp(self) -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
