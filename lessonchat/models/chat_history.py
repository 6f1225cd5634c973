"""
Chat history database models
"""

import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Index, JSON, Float, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from lessonchat.core.database import Base


def _new_session_id() -> str:
    return str(uuid.uuid4())


class ChatSession(Base):
    """Chat session model for tracking conversations"""
    __tablename__ = "chat_sessions"

    id = Column(String(36), primary_key=True, default=_new_session_id)
    learner_id = Column(Integer, ForeignKey("learners.id"), nullable=False, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    context_video_ids = Column(JSON, nullable=True)  # Videos eligible as retrieval context
    message_seq = Column(Integer, nullable=False, default=0)  # Last assigned message sequence number
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    learner = relationship("Learner")
    tenant = relationship("Tenant")
    messages = relationship("ChatMessage", back_populates="session", order_by="ChatMessage.seq")


class ChatMessage(Base):
    """Chat message model for storing conversation turns"""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)  # Append order within the session
    role = Column(String(20), nullable=False)  # "user", "assistant" or "system"
    content = Column(Text, nullable=False)
    video_references = Column(JSON, nullable=False, default=list)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    model = Column(String(100), nullable=True)
    latency_ms = Column(Integer, nullable=True)
    cost_usd = Column(Float, nullable=False, default=0.0)
    cached = Column(Boolean, nullable=False, default=False)
    message_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    session = relationship("ChatSession", back_populates="messages")

    # Indexes for efficient querying
    __table_args__ = (
        UniqueConstraint('session_id', 'seq', name='uq_chat_messages_session_seq'),
        Index('idx_chat_messages_session_id', 'session_id'),
    )
