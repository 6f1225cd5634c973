# Database models
from lessonchat.core.database import Base
from .course import Tenant, Learner, Video, VideoChunk
from .chat_history import ChatSession, ChatMessage
from .usage import UsageLedgerEntry

__all__ = ["Base", "Tenant", "Learner", "Video", "VideoChunk", "ChatSession", "ChatMessage", "UsageLedgerEntry"]
