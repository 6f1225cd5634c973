"""
Application configuration
"""

from typing import Dict, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    database_url: str = "sqlite:///./lessonchat.db"  # Will be overridden by env var

    # Key-value store (rate-limit counters and response cache)
    redis_url: str = "redis://localhost:6379/0"
    kv_prefix: str = "lessonchat:"

    # Vector search
    vector_backend: str = "pgvector"  # pgvector, qdrant
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str = ""
    qdrant_collection: str = "video_chunks"
    retrieval_top_k: int = 5
    retrieval_similarity_floor: float = 0.7
    retrieval_max_per_video: int = 3  # 0 disables the per-video cap
    no_context_behavior: str = "general"  # general, decline

    # Embeddings
    embedding_model: str = "all-mpnet-base-v2"
    embed_dim: int = 768

    # LLM provider (OpenAI-compatible)
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.deepseek.com/v1"
    llm_model: str = "deepseek-chat"
    llm_temperature: float = 0.7
    llm_max_output_tokens: int = 1024
    llm_first_byte_timeout: float = 30.0  # seconds to first streamed chunk
    llm_total_timeout: float = 120.0  # seconds for the whole completion
    llm_max_attempts: int = 3
    llm_retry_base_delay: float = 1.0
    llm_retry_max_delay: float = 8.0

    # Prompt
    max_history_messages: int = 10

    # Response cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 7 * 24 * 60 * 60  # 7 days

    # Rate limiting
    rate_limit_enabled: bool = True
    learner_requests_per_minute: int = 10
    learner_requests_per_hour: int = 100
    tenant_daily_limits: Dict[str, int] = {"basic": 500, "pro": 2000, "enterprise": 10000}

    # Monthly budgets per tier, negative means unlimited
    tier_monthly_budgets_usd: Dict[str, float] = {"basic": 10.0, "pro": 50.0, "enterprise": -1.0}
    tier_monthly_messages: Dict[str, int] = {"basic": 1000, "pro": 5000, "enterprise": -1}

    # Logging Configuration
    log_level: str = "INFO"
    debug: bool = False

settings = Settings()
