"""
Chat history persistence
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update

from lessonchat.core.database import SessionLocal
from lessonchat.deps.exceptions import PersistenceError, SessionInvalidError
from lessonchat.models.chat_history import ChatMessage, ChatSession
from lessonchat.models.course import Learner, Tenant
from lessonchat.schemas.chat import MessageMetadata

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 60


@dataclass
class SessionContext:
    """What the orchestrator needs to know about a session, detached from the ORM"""
    session_id: str
    learner_id: int
    tenant_id: int
    tier: str
    learner_active: bool
    tenant_active: bool
    context_video_ids: Optional[List[str]] = None
    title: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        return self.learner_active and self.tenant_active


@dataclass
class AssistantMessage:
    content: str
    model: Optional[str]
    video_references: List[Dict[str, object]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: Optional[int] = None
    cost_usd: float = 0.0
    cached: bool = False
    metadata: MessageMetadata = field(default_factory=MessageMetadata)


def make_title(message: str) -> str:
    """First line of the question, cut at a word boundary"""
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    if len(first_line) <= TITLE_MAX_LENGTH:
        return first_line
    cut = first_line[:TITLE_MAX_LENGTH].rsplit(" ", 1)[0]
    return (cut or first_line[:TITLE_MAX_LENGTH]).rstrip(" ,.;:") + "..."


class ChatHistoryStore:
    """
    Sessions and their append-only message log.

    Messages are ordered by ``seq``, which is handed out from the session's
    ``message_seq`` counter inside the same transaction as the inserts.
    """

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    def create_session(self, learner_id: int, title: Optional[str] = None,
                       video_ids: Optional[Sequence[str]] = None) -> ChatSession:
        db = self.session_factory()
        try:
            learner = db.get(Learner, learner_id)
            if learner is None or not learner.is_active:
                raise SessionInvalidError(f"Learner {learner_id} not found or inactive")

            session = ChatSession(
                learner_id=learner.id,
                tenant_id=learner.tenant_id,
                title=title,
                context_video_ids=list(video_ids) if video_ids is not None else None,
            )
            db.add(session)
            db.commit()
            db.refresh(session)

            logger.info(f"Created chat session {session.id} for learner {learner_id}")
            return session
        except SessionInvalidError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            logger.error(f"Error creating session for learner {learner_id}: {str(e)}")
            raise PersistenceError() from e
        finally:
            db.close()

    def fetch_session(self, session_id: str) -> Optional[SessionContext]:
        db = self.session_factory()
        try:
            row = db.execute(
                select(ChatSession, Learner, Tenant)
                .join(Learner, Learner.id == ChatSession.learner_id)
                .join(Tenant, Tenant.id == ChatSession.tenant_id)
                .where(ChatSession.id == session_id)
            ).one_or_none()

            if row is None:
                return None

            session, learner, tenant = row
            return SessionContext(
                session_id=session.id,
                learner_id=learner.id,
                tenant_id=tenant.id,
                tier=tenant.tier,
                learner_active=bool(learner.is_active),
                tenant_active=bool(tenant.is_active),
                context_video_ids=session.context_video_ids,
                title=session.title,
            )
        finally:
            db.close()

    def fetch_history(self, session_id: str, limit: int = 10) -> List[Dict[str, str]]:
        """
        Load the most recent ``limit`` user/assistant messages, oldest first
        """
        if limit <= 0:
            return []

        db = self.session_factory()
        try:
            messages = db.execute(
                select(ChatMessage.role, ChatMessage.content)
                .where(ChatMessage.session_id == session_id)
                .where(ChatMessage.role.in_(("user", "assistant")))
                .order_by(ChatMessage.seq.desc())
                .limit(limit)
            ).all()

            history = [{"role": role, "content": content} for role, content in reversed(messages)]
            logger.debug(f"Loaded {len(history)} messages from history for session {session_id}")
            return history
        finally:
            db.close()

    def fetch_messages(self, session_id: str) -> Tuple[ChatSession, List[ChatMessage]]:
        """
        Session plus its full message log in append order

        Raises:
            SessionInvalidError: If the session does not exist
        """
        db = self.session_factory()
        try:
            session = db.get(ChatSession, session_id)
            if session is None:
                raise SessionInvalidError()
            messages = list(db.execute(
                select(ChatMessage).where(ChatMessage.session_id == session_id).order_by(ChatMessage.seq.asc())
            ).scalars())
            return session, messages
        finally:
            db.close()

    def session_analytics(self, session_id: str, top_videos: int = 10) -> Dict[str, object]:
        """
        Message, token and cost totals for one session, plus the videos its
        answers cited most often.

        Raises:
            SessionInvalidError: If the session does not exist
        """
        _, messages = self.fetch_messages(session_id)
        answers = [m for m in messages if m.role == "assistant"]

        cited = Counter()
        titles: Dict[str, Optional[str]] = {}
        for message in answers:
            for ref in message.video_references or []:
                cited[ref["video_id"]] += 1
                titles.setdefault(ref["video_id"], ref.get("title"))

        latencies = [m.latency_ms for m in answers if m.latency_ms is not None]
        stamps = [m.created_at for m in messages if m.created_at is not None]
        duration = (max(stamps) - min(stamps)).total_seconds() / 60 if stamps else 0.0

        return {
            "session_id": session_id,
            "message_count": len(messages),
            "user_messages": sum(1 for m in messages if m.role == "user"),
            "assistant_messages": len(answers),
            "cached_answers": sum(1 for m in answers if m.cached),
            "input_tokens": sum(m.input_tokens for m in answers),
            "output_tokens": sum(m.output_tokens for m in answers),
            "cost_usd": sum(m.cost_usd for m in answers),
            "duration_minutes": round(duration, 2),
            "average_latency_ms": sum(latencies) / len(latencies) if latencies else None,
            "top_videos": [
                {"video_id": video_id, "title": titles[video_id], "references": count}
                for video_id, count in cited.most_common(top_videos)
            ],
        }

    def append_turn(self, session_id: str, user_content: str, assistant: AssistantMessage) -> Tuple[int, int]:
        """
        Persist the user question and the assistant answer as one unit.

        Returns:
            (user seq, assistant seq)

        Raises:
            SessionInvalidError: If the session disappeared
            PersistenceError: If the write fails; nothing is stored
        """
        db = self.session_factory()
        try:
            now = datetime.now(timezone.utc)
            # Takes the row lock on PostgreSQL, so concurrent turns get distinct seq pairs
            db.execute(
                update(ChatSession)
                .where(ChatSession.id == session_id)
                .values(message_seq=ChatSession.message_seq + 2, last_message_at=now)
            )
            row = db.execute(
                select(ChatSession.message_seq, ChatSession.title).where(ChatSession.id == session_id)
            ).one_or_none()
            if row is None:
                raise SessionInvalidError()

            assistant_seq, title = row
            user_seq = assistant_seq - 1

            if not title:
                db.execute(
                    update(ChatSession).where(ChatSession.id == session_id).values(title=make_title(user_content))
                )

            db.add_all([
                ChatMessage(
                    session_id=session_id,
                    seq=user_seq,
                    role="user",
                    content=user_content,
                    video_references=[],
                ),
                ChatMessage(
                    session_id=session_id,
                    seq=assistant_seq,
                    role="assistant",
                    content=assistant.content,
                    video_references=list(assistant.video_references),
                    input_tokens=assistant.input_tokens,
                    output_tokens=assistant.output_tokens,
                    model=assistant.model,
                    latency_ms=assistant.latency_ms,
                    cost_usd=assistant.cost_usd,
                    cached=assistant.cached,
                    message_metadata=assistant.metadata.to_storage() or None,
                ),
            ])
            db.commit()

            logger.info(f"Saved turn for session {session_id} (seq {user_seq}-{assistant_seq})")
            return user_seq, assistant_seq

        except SessionInvalidError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            logger.error(f"Error saving turn for session {session_id}: {str(e)}")
            raise PersistenceError() from e
        finally:
            db.close()


# Global chat history store instance
chat_store = ChatHistoryStore()
