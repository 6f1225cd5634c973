"""
Chat API endpoints
"""

from fastapi import APIRouter, Request, Response
from sse_starlette.sse import EventSourceResponse
import asyncio
import contextlib
import logging

from lessonchat.middleware.logging import get_correlation_id
from lessonchat.services.chat_orchestrator import ChatOrchestrator, ChatTurn
from lessonchat.services.chat_store import chat_store
from lessonchat.schemas.chat import (
    ChatMessageSchema,
    ChatRequest,
    ChatResponse,
    ChatSessionSchema,
    CreateSessionRequest,
    MessageMetadata,
    ReferencedVideoSchema,
    SessionAnalyticsSchema,
    UsageSchema,
    VideoReferenceSchema,
)

router = APIRouter()
logger = logging.getLogger(__name__)

# Initialize chat orchestrator service
chat_orchestrator = ChatOrchestrator()


async def _sse_events(turn: ChatTurn):
    # Closing the orchestrator stream on disconnect is what saves the partial answer
    async with contextlib.aclosing(chat_orchestrator.stream_turn(turn)) as events:
        async for event in events:
            yield event.to_sse()


@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(request: Request, response: Response, chat_request: ChatRequest):
    """
    Answer a learner question, as JSON or as a server-sent event stream

    Admission errors (rate limit, budget, invalid session) are returned as
    regular HTTP errors before any stream starts.
    """
    request_id = get_correlation_id(request)
    logger.info(
        f"Chat request received: request_id={request_id}, session_id={chat_request.session_id}, "
        f"message_length={len(chat_request.message)}, stream={chat_request.stream}"
    )

    turn = await chat_orchestrator.admit_turn(
        chat_request.session_id,
        chat_request.message,
        stream=chat_request.stream,
        video_ids=chat_request.video_ids,
    )
    rate_headers = turn.rate_limit.headers() if turn.rate_limit else {}

    if chat_request.stream:
        return EventSourceResponse(_sse_events(turn), headers=rate_headers)

    result = await chat_orchestrator.complete_turn(turn)
    response.headers.update(rate_headers)

    logger.info(
        f"Chat request completed: session_id={result.session_id}, latency_ms={result.latency_ms}, "
        f"cached={result.cached}, references={len(result.video_references)}"
    )
    return ChatResponse(
        message=result.message,
        video_references=[VideoReferenceSchema(**ref) for ref in result.video_references],
        usage=UsageSchema(
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=round(result.cost_usd, 6),
        ),
        cached=result.cached,
        session_id=result.session_id,
        latency_ms=result.latency_ms,
    )


@router.post("/chat/sessions", response_model=ChatSessionSchema, status_code=201)
async def create_session(session_request: CreateSessionRequest):
    """Open a chat session for a learner, optionally scoped to a set of videos"""
    session = await asyncio.to_thread(
        chat_store.create_session,
        session_request.learner_id,
        session_request.title,
        session_request.video_ids,
    )
    return ChatSessionSchema(
        id=session.id,
        learner_id=session.learner_id,
        tenant_id=session.tenant_id,
        title=session.title,
        video_ids=session.context_video_ids,
        created_at=session.created_at,
        last_message_at=session.last_message_at,
    )


@router.get("/chat/sessions/{session_id}", response_model=ChatSessionSchema)
async def get_session(session_id: str):
    """Session details with its messages in append order"""
    session, messages = await asyncio.to_thread(chat_store.fetch_messages, session_id)
    return ChatSessionSchema(
        id=session.id,
        learner_id=session.learner_id,
        tenant_id=session.tenant_id,
        title=session.title,
        video_ids=session.context_video_ids,
        created_at=session.created_at,
        last_message_at=session.last_message_at,
        messages=[
            ChatMessageSchema(
                seq=message.seq,
                role=message.role,
                content=message.content,
                video_references=[VideoReferenceSchema(**ref) for ref in (message.video_references or [])],
                input_tokens=message.input_tokens,
                output_tokens=message.output_tokens,
                model=message.model,
                latency_ms=message.latency_ms,
                cost_usd=message.cost_usd,
                cached=message.cached,
                metadata=MessageMetadata(**message.message_metadata) if message.message_metadata else None,
                created_at=message.created_at,
            )
            for message in messages
        ],
    )


@router.get("/chat/sessions/{session_id}/analytics", response_model=SessionAnalyticsSchema)
async def get_session_analytics(session_id: str):
    """Message, token and cost totals for a session and the videos it cited most"""
    analytics = await asyncio.to_thread(chat_store.session_analytics, session_id)
    top_videos = [ReferencedVideoSchema(**video) for video in analytics.pop("top_videos")]
    return SessionAnalyticsSchema(top_videos=top_videos, **analytics)
