"""
Pydantic schemas for chat functionality
"""

from datetime import datetime
from typing import List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serialises to camelCase JSON, accepts either case on input"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageMetadata(CamelModel):
    """Recognised per-message metadata keys; anything else is rejected"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    truncated: Optional[bool] = None
    no_context: Optional[bool] = None
    retrieval_degraded: Optional[bool] = None
    trimmed_history: Optional[int] = None
    trimmed_chunks: Optional[int] = None
    cache_key: Optional[str] = None
    finish_reason: Optional[str] = None

    def to_storage(self) -> dict:
        return self.model_dump(exclude_none=True)


class VideoReferenceSchema(CamelModel):
    video_id: str
    timestamp: int = Field(..., ge=0, description="Seconds from the start of the video")
    title: str
    chunk_id: Optional[str] = None


class UsageSchema(CamelModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = Field(0.0, alias="costUSD")


class ChatRequest(CamelModel):
    """Chat request schema"""
    session_id: str = Field(
        ...,
        validation_alias=AliasChoices("sessionID", "sessionId", "session_id"),
        description="Chat session identifier",
    )
    message: str = Field(..., min_length=1, max_length=4000, description="Learner question")
    stream: bool = Field(False, description="Stream the answer as server-sent events")
    video_ids: Optional[List[str]] = Field(None, description="Restrict retrieval to these videos")

    @field_validator('message')
    @classmethod
    def validate_message(cls, v):
        if not v.strip():
            raise ValueError('Message cannot be empty or only whitespace')
        return v.strip()


class ChatResponse(CamelModel):
    """Chat response schema (stream=false)"""
    message: str
    video_references: List[VideoReferenceSchema] = Field(default_factory=list)
    usage: UsageSchema
    cached: bool = False
    session_id: str
    latency_ms: int = 0


class CreateSessionRequest(CamelModel):
    learner_id: int
    title: Optional[str] = Field(None, max_length=255)
    video_ids: Optional[List[str]] = None


class ChatMessageSchema(CamelModel):
    seq: int
    role: str
    content: str
    video_references: List[VideoReferenceSchema] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: Optional[str] = None
    latency_ms: Optional[int] = None
    cost_usd: float = Field(0.0, alias="costUSD")
    cached: bool = False
    metadata: Optional[MessageMetadata] = None
    created_at: Optional[datetime] = None


class ChatSessionSchema(CamelModel):
    id: str
    learner_id: int
    tenant_id: int
    title: Optional[str] = None
    video_ids: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    messages: List[ChatMessageSchema] = Field(default_factory=list)



class ReferencedVideoSchema(CamelModel):
    video_id: str
    title: Optional[str] = None
    references: int


class SessionAnalyticsSchema(CamelModel):
    session_id: str
    message_count: int
    user_messages: int
    assistant_messages: int
    cached_answers: int
    input_tokens: int
    output_tokens: int
    cost_usd: float = Field(..., alias="costUSD")
    duration_minutes: float
    average_latency_ms: Optional[float] = None
    top_videos: List[ReferencedVideoSchema] = Field(default_factory=list)


class ChatError(BaseModel):
    """Error response envelope"""
    error: dict = Field(..., description="Error details")

    @classmethod
    def create(cls, code: str, message: str, details: Optional[dict] = None,
               request_id: Optional[str] = None, retry_after_seconds: Optional[int] = None):
        error = {
            "code": code,
            "message": message,
            "details": details or {},
            "requestId": request_id,
        }
        if retry_after_seconds is not None:
            error["retryAfterSeconds"] = retry_after_seconds
        return cls(error=error)
