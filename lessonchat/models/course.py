"""
Tenant, learner and video content models
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, ForeignKey, JSON, Float, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from lessonchat.core.database import Base

class Tenant(Base):
    """Course creator account; rate and budget ceilings depend on its tier"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    tier = Column(String(20), nullable=False, default="basic")  # basic, pro, enterprise
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    learners = relationship("Learner", back_populates="tenant")
    videos = relationship("Video", back_populates="tenant")

class Learner(Base):
    __tablename__ = "learners"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tenant = relationship("Tenant", back_populates="learners")

class Video(Base):
    __tablename__ = "videos"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    duration_seconds = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tenant = relationship("Tenant", back_populates="videos")
    chunks = relationship("VideoChunk", back_populates="video")

class VideoChunk(Base):
    """
    Transcript span with its embedding. Populated by the video-processing
    pipeline; on PostgreSQL an extra ``embedding_vec vector`` column is added
    at startup for similarity search.
    """
    __tablename__ = "video_chunks"

    id = Column(String(64), primary_key=True)
    video_id = Column(String(64), ForeignKey("videos.id"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    start_seconds = Column(Float, nullable=False)
    end_seconds = Column(Float, nullable=False)
    embedding = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    video = relationship("Video", back_populates="chunks")

    __table_args__ = (
        Index('idx_video_chunks_video_id', 'video_id'),
    )
