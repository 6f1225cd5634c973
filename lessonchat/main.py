"""
LessonChat Backend API
Retrieval-augmented chat over video course transcripts
"""

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from lessonchat.api.routes import admin, chat, health, usage
from lessonchat.core.config import settings
from lessonchat.core.database import engine
# Import all models to ensure they're registered with Base
from lessonchat.models import Base
from lessonchat.deps.exceptions import ChatPipelineError
from lessonchat.middleware.error_handling import (
    ErrorHandlingMiddleware,
    chat_pipeline_error_handler,
    validation_error_handler,
)
from lessonchat.middleware.logging import StructuredLoggingMiddleware
from lessonchat.services.cost_tracker import MODEL_PRICING
import logging
import os

app = FastAPI(
    title="LessonChat API",
    description="Retrieval-augmented chat over video course transcripts",
    version="1.0.0"
)

# Configure logging
logging.basicConfig(
    level=getattr(settings, 'log_level', 'INFO'),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

PGVECTOR_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS vector",
    "ALTER TABLE video_chunks ADD COLUMN IF NOT EXISTS embedding_vec vector({dim})",
    "CREATE INDEX IF NOT EXISTS idx_video_chunks_embedding_vec ON video_chunks "
    "USING hnsw (embedding_vec vector_cosine_ops)",
]


def init_pgvector() -> None:
    """Vector column and indexes on PostgreSQL; each statement is idempotent"""
    with engine.connect() as conn:
        for statement in PGVECTOR_STATEMENTS:
            try:
                conn.execute(text(statement.format(dim=settings.embed_dim)))
                conn.commit()
            except Exception as e:
                conn.rollback()
                logging.warning(f"Could not apply '{statement.split('(')[0].strip()}': {e}")
    logging.info("pgvector search infrastructure ready")


@app.on_event("startup")
async def startup_event():
    """Create database tables and the vector search infrastructure on startup"""
    try:
        logging.info("Starting database initialization...")

        # Validate LLM API key configuration (non-blocking warning)
        llm_key = settings.llm_api_key or os.getenv("DEEPSEEK_API_KEY")
        if not llm_key or llm_key.strip() == "":
            logging.warning(
                "LLM API key is not configured. "
                "Please configure LLM_API_KEY environment variable or Settings.llm_api_key. "
                "Chat requests will fail until a valid API key is set."
            )
        else:
            logging.info("LLM API key configuration validated")

        if settings.llm_model not in MODEL_PRICING:
            logging.warning(
                f"No pricing configured for LLM model {settings.llm_model}; completions will be charged 0 USD "
                f"and only the monthly message ceiling will limit spend."
            )

        # Create all tables
        Base.metadata.create_all(bind=engine)
        logging.info("Database tables created successfully")

        if engine.dialect.name == "postgresql" and settings.vector_backend == "pgvector":
            init_pgvector()

        logging.info("Database initialization completed successfully")
    except Exception as e:
        logging.error(f"Database initialization failed: {str(e)}")
        raise RuntimeError(f"Failed to initialize database: {str(e)}")


@app.on_event("shutdown")
async def shutdown_event():
    from lessonchat.deps.kv_store import get_kv_store
    from lessonchat.deps.llm_client import llm_client

    await llm_client.aclose()
    store = get_kv_store()
    close = getattr(store, "close", None)
    if close is not None:
        await close()
    logging.info("Closed provider and key-value store connections")


# Add middleware (order matters - last added is first executed)
# Error handling middleware (should be first to catch all errors)
app.add_middleware(ErrorHandlingMiddleware)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-Correlation-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
)

app.add_exception_handler(ChatPipelineError, chat_pipeline_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)

# Include routers
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(usage.router, prefix="/api", tags=["usage"])
app.include_router(admin.router, prefix="/api", tags=["admin"])
app.include_router(health.router, tags=["health"])


@app.get("/")
async def root():
    return {"message": "LessonChat API is running"}
