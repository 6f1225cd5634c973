"""
Chat orchestrator: admission, cache, retrieval, prompt, provider call, persistence and cost accounting
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from lessonchat.core.config import settings
from lessonchat.deps.exceptions import (
    BudgetExceededError,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    RetrievalError,
    SessionInvalidError,
)
from lessonchat.deps.llm_client import LLMClient, StreamChunk, llm_client as default_llm_client
from lessonchat.schemas.chat import MessageMetadata, VideoReferenceSchema
from lessonchat.services.chat_store import AssistantMessage, ChatHistoryStore, SessionContext, chat_store
from lessonchat.services.cost_tracker import BudgetStatus, CostResult, CostTracker, cost_tracker as default_cost_tracker
from lessonchat.services.embeddings import get_embedding_service
from lessonchat.services.prompt_builder import (
    DECLINE_MESSAGE,
    PromptBuilder,
    PromptPayload,
    extract_video_references,
    prompt_builder as default_prompt_builder,
)
from lessonchat.services.rate_limiter import RateLimitDecision, RateLimiter, rate_limiter as default_rate_limiter
from lessonchat.services.response_cache import CachedResponse, ResponseCache, response_cache as default_response_cache
from lessonchat.services.retry_service import RetryService
from lessonchat.services.token_counter import token_counter
from lessonchat.services.vector_search import RetrievedChunk, VectorSearchService

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    ADMITTED = "admitted"
    CACHE_CHECKED = "cache_checked"
    RETRIEVED = "retrieved"
    PROMPT_BUILT = "prompt_built"
    PROVIDER_CALLED = "provider_called"
    PERSISTED = "persisted"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


# Edges into DONE from before PERSISTED are taken only when the write failed
ALLOWED_TRANSITIONS: Dict[TurnState, Set[TurnState]] = {
    TurnState.ADMITTED: {TurnState.CACHE_CHECKED, TurnState.RETRIEVED, TurnState.REJECTED},
    TurnState.CACHE_CHECKED: {TurnState.RETRIEVED, TurnState.PERSISTED, TurnState.DONE},
    TurnState.RETRIEVED: {TurnState.PROMPT_BUILT},
    TurnState.PROMPT_BUILT: {TurnState.PROVIDER_CALLED, TurnState.PERSISTED, TurnState.DONE},
    TurnState.PROVIDER_CALLED: {TurnState.PERSISTED, TurnState.FAILED, TurnState.DONE},
    TurnState.PERSISTED: {TurnState.DONE},
    TurnState.DONE: set(),
    TurnState.REJECTED: set(),
    TurnState.FAILED: set(),
}


@dataclass
class ChatTurn:
    """One learner question moving through the pipeline"""
    session: SessionContext
    message: str
    stream: bool
    video_ids: Optional[List[str]] = None
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: TurnState = TurnState.ADMITTED
    started_at: float = field(default_factory=time.monotonic)
    rate_limit: Optional[RateLimitDecision] = None
    budget: Optional[BudgetStatus] = None
    metadata: MessageMetadata = field(default_factory=MessageMetadata)
    persisted: bool = False

    def transition(self, new_state: TurnState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal chat turn transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Turn {self.turn_id} (session {self.session.session_id}): {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass
class ChatResult:
    message: str
    session_id: str
    video_references: List[Dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    cached: bool = False
    latency_ms: int = 0
    warning_level: Optional[str] = None
    metadata: MessageMetadata = field(default_factory=MessageMetadata)


@dataclass
class StreamEvent:
    type: str  # "content", "done" or "error"
    delta: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    video_references: Optional[List[Dict[str, Any]]] = None
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def content(cls, delta: str) -> "StreamEvent":
        return cls(type="content", delta=delta)

    @classmethod
    def done(cls, input_tokens: int, output_tokens: int, cost_usd: float, references: Sequence[Dict[str, Any]]) -> "StreamEvent":
        return cls(
            type="done",
            usage={"inputTokens": input_tokens, "outputTokens": output_tokens, "costUSD": round(cost_usd, 6)},
            video_references=[VideoReferenceSchema(**ref).model_dump(by_alias=True) for ref in references],
        )

    @classmethod
    def failure(cls, error: ProviderError) -> "StreamEvent":
        return cls(type="error", error={"code": error.code, "message": ProviderError.default_message})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.type == "content":
            payload["delta"] = self.delta
        elif self.type == "done":
            payload["usage"] = self.usage
            payload["videoReferences"] = self.video_references
        else:
            payload["error"] = self.error
        return payload

    def to_sse(self) -> Dict[str, str]:
        """Server-sent event dict for sse-starlette"""
        return {"event": self.type, "data": json.dumps(self.to_payload())}


def is_retriable_provider_error(error: Exception) -> bool:
    return isinstance(error, ProviderError) and error.retriable


class ChatOrchestrator:
    """
    Drives a chat turn through admission, retrieval, generation and bookkeeping.

    Every collaborator is injected; the defaults are the process-wide
    instances, which connect lazily.
    """

    def __init__(
        self,
        store: Optional[ChatHistoryStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cost_tracker: Optional[CostTracker] = None,
        cache: Optional[ResponseCache] = None,
        retriever: Optional[VectorSearchService] = None,
        embeddings=None,
        prompt_builder: Optional[PromptBuilder] = None,
        llm_client: Optional[LLMClient] = None,
        retry_service: Optional[RetryService] = None,
    ):
        self.store = store or chat_store
        self.rate_limiter = rate_limiter or default_rate_limiter
        self.cost_tracker = cost_tracker or default_cost_tracker
        self.cache = cache or default_response_cache
        self.retriever = retriever or VectorSearchService()
        self._embeddings = embeddings
        self.prompt_builder = prompt_builder or default_prompt_builder
        self.llm_client = llm_client or default_llm_client
        self.retry_service = retry_service or RetryService(
            max_attempts=settings.llm_max_attempts,
            base_delay=settings.llm_retry_base_delay,
            max_delay=settings.llm_retry_max_delay,
        )
        self._background: Set[asyncio.Task] = set()

    @property
    def embeddings(self):
        if self._embeddings is None:
            self._embeddings = get_embedding_service()
        return self._embeddings

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @staticmethod
    def _scope_videos(session: SessionContext, requested: Optional[Sequence[str]]) -> Optional[List[str]]:
        """Requested videos narrowed to the session's videos, when both are set"""
        if requested is None:
            return list(session.context_video_ids) if session.context_video_ids is not None else None
        if session.context_video_ids is None:
            return list(requested)
        allowed = set(session.context_video_ids)
        return [video_id for video_id in requested if video_id in allowed]

    async def admit_turn(self, session_id: str, message: str, stream: bool = False,
                         video_ids: Optional[Sequence[str]] = None) -> ChatTurn:
        """
        Validate the session and run admission control.

        Raises:
            SessionInvalidError: Unknown session, or inactive learner/tenant
            RateLimitedError: A learner or tenant window is full
            BudgetExceededError: The tenant's monthly budget is used up
        """
        session = await asyncio.to_thread(self.store.fetch_session, session_id)
        if session is None or not session.is_usable:
            logger.warning(f"Rejected chat turn for invalid session {session_id}")
            raise SessionInvalidError()

        turn = ChatTurn(
            session=session,
            message=message,
            stream=stream,
            video_ids=self._scope_videos(session, video_ids),
        )

        decision = await self.rate_limiter.admit(session.learner_id, session.tenant_id, session.tier)
        turn.rate_limit = decision
        if not decision.allowed:
            turn.transition(TurnState.REJECTED)
            logger.warning(
                f"Rate limited session {session_id}: scope={decision.scope} window={decision.window} "
                f"retry_after={decision.retry_after}s reason={decision.reason}"
            )
            raise RateLimitedError(decision.retry_after, decision.scope,
                                   details={"window": decision.window, "reason": decision.reason})

        budget = await asyncio.to_thread(self.cost_tracker.check_budget, session.tenant_id, session.tier)
        turn.budget = budget
        if budget.is_exceeded:
            await self.rate_limiter.release(decision)
            turn.transition(TurnState.REJECTED)
            logger.warning(f"Budget exceeded for tenant {session.tenant_id}, session {session_id}")
            raise BudgetExceededError(budget)

        return turn

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _search_chunks(self, turn: ChatTurn) -> List[RetrievedChunk]:
        try:
            embedding = await self.embeddings.embed_query(turn.message)
            return await self.retriever.asearch(
                embedding,
                settings.retrieval_top_k,
                settings.retrieval_similarity_floor,
                turn.video_ids,
            )
        except Exception as e:
            raise RetrievalError(str(e)) from e

    async def _retrieve(self, turn: ChatTurn) -> List[RetrievedChunk]:
        """Search chunks; a failing embedding model or index degrades to no context"""
        try:
            return await self._search_chunks(turn)
        except RetrievalError as e:
            logger.warning(f"Retrieval failed for session {turn.session.session_id}, answering without context: {e.message}")
            turn.metadata.retrieval_degraded = True
            return []

    async def _build_prompt(self, turn: ChatTurn, chunks: List[RetrievedChunk]) -> PromptPayload:
        history = await asyncio.to_thread(self.store.fetch_history, turn.session.session_id, settings.max_history_messages)
        payload = self.prompt_builder.build(turn.message, chunks, history, settings.max_history_messages)
        if payload.trimmed_history:
            turn.metadata.trimmed_history = payload.trimmed_history
        if payload.trimmed_chunks:
            turn.metadata.trimmed_chunks = payload.trimmed_chunks
        if not payload.supplied_chunks:
            turn.metadata.no_context = True
        turn.transition(TurnState.PROMPT_BUILT)
        return payload

    def _should_decline(self, payload: PromptPayload) -> bool:
        return not payload.supplied_chunks and settings.no_context_behavior == "decline"

    def _price(self, input_tokens: int, output_tokens: int) -> float:
        return self.cost_tracker.price(input_tokens, output_tokens, self.llm_client.model)

    async def _persist(self, turn: ChatTurn, assistant: AssistantMessage) -> bool:
        """Write the user/assistant pair; on failure log the full answer and carry on"""
        try:
            await asyncio.to_thread(self.store.append_turn, turn.session.session_id, turn.message, assistant)
        except (PersistenceError, SessionInvalidError) as e:
            logger.error(
                f"Failed to persist turn for session {turn.session.session_id}: {e.message}. "
                f"Question: {turn.message!r} Answer: {assistant.content!r}"
            )
            return False
        turn.persisted = True
        turn.transition(TurnState.PERSISTED)
        return True

    async def _record_usage(self, turn: ChatTurn, input_tokens: int, output_tokens: int) -> Optional[CostResult]:
        try:
            return await asyncio.to_thread(
                self.cost_tracker.record_usage,
                turn.session.tenant_id,
                input_tokens,
                output_tokens,
                self.llm_client.model,
                turn.session.tier,
            )
        except Exception as e:
            logger.error(
                f"Failed to record usage for tenant {turn.session.tenant_id} "
                f"({input_tokens} in / {output_tokens} out): {e}"
            )
            return None

    async def _decline(self, turn: ChatTurn) -> ChatResult:
        """Fixed answer without a provider call when nothing relevant was retrieved"""
        assistant = AssistantMessage(content=DECLINE_MESSAGE, model=None, metadata=turn.metadata)
        await self._persist(turn, assistant)
        turn.transition(TurnState.DONE)
        logger.info(f"Declined question without context for session {turn.session.session_id}")
        return ChatResult(
            message=DECLINE_MESSAGE,
            session_id=turn.session.session_id,
            latency_ms=turn.latency_ms,
            metadata=turn.metadata,
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def complete_turn(self, turn: ChatTurn) -> ChatResult:
        """
        Answer an admitted batch turn.

        Retrieval runs before the cache lookup because the cache key covers
        the retrieved chunk set.

        Raises:
            ProviderError: The provider failed after all attempts; nothing was stored
        """
        if turn.stream:
            raise ValueError("complete_turn handles batch turns only")

        chunks = await self._retrieve(turn)

        cache_key = None
        if settings.cache_enabled and not turn.metadata.retrieval_degraded:
            cache_key = self.cache.make_key(turn.message, [c.chunk_id for c in chunks])
            cached = await self.cache.get(cache_key)
            turn.transition(TurnState.CACHE_CHECKED)
            if cached is not None:
                return await self._serve_cached(turn, cached, cache_key)
        else:
            turn.transition(TurnState.CACHE_CHECKED)
        turn.transition(TurnState.RETRIEVED)

        payload = await self._build_prompt(turn, chunks)
        if self._should_decline(payload):
            return await self._decline(turn)

        turn.transition(TurnState.PROVIDER_CALLED)
        try:
            completion = await self.retry_service.retry_async(
                self.llm_client.complete,
                payload.messages,
                is_retriable=is_retriable_provider_error,
                timeout=settings.llm_total_timeout,
            )
        except ProviderError:
            turn.transition(TurnState.FAILED)
            logger.error(f"Provider failed for session {turn.session.session_id} after retries")
            raise
        except Exception as e:
            turn.transition(TurnState.FAILED)
            logger.error(f"Unexpected provider failure for session {turn.session.session_id}: {e}")
            raise ProviderError(str(e)) from e

        references = [ref.to_dict() for ref in extract_video_references(completion.content, payload.supplied_chunks)]
        cost = self._price(completion.input_tokens, completion.output_tokens)
        turn.metadata.finish_reason = completion.finish_reason
        if cache_key:
            turn.metadata.cache_key = cache_key

        assistant = AssistantMessage(
            content=completion.content,
            model=completion.model,
            video_references=references,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            latency_ms=turn.latency_ms,
            cost_usd=cost,
            metadata=turn.metadata,
        )
        await self._persist(turn, assistant)
        cost_result = await self._record_usage(turn, completion.input_tokens, completion.output_tokens)

        if cache_key:
            await self.cache.put(
                cache_key,
                CachedResponse(
                    content=completion.content,
                    video_references=references,
                    model=completion.model,
                    input_tokens=completion.input_tokens,
                    output_tokens=completion.output_tokens,
                    cost_usd=cost,
                ),
                video_ids=[c.video_id for c in payload.supplied_chunks],
            )

        turn.transition(TurnState.DONE)
        logger.info(
            f"Answered session {turn.session.session_id} in {turn.latency_ms}ms "
            f"({completion.input_tokens} in / {completion.output_tokens} out, {len(references)} references)"
        )
        return ChatResult(
            message=completion.content,
            session_id=turn.session.session_id,
            video_references=references,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost_usd=cost,
            latency_ms=turn.latency_ms,
            warning_level=cost_result.warning_level.value if cost_result else None,
            metadata=turn.metadata,
        )

    async def _serve_cached(self, turn: ChatTurn, cached: CachedResponse, cache_key: str) -> ChatResult:
        """A cache hit is stored as a new turn but costs nothing"""
        turn.metadata.cache_key = cache_key
        assistant = AssistantMessage(
            content=cached.content,
            model=cached.model,
            video_references=list(cached.video_references),
            latency_ms=turn.latency_ms,
            cached=True,
            metadata=turn.metadata,
        )
        await self._persist(turn, assistant)
        turn.transition(TurnState.DONE)
        logger.info(f"Served cached answer for session {turn.session.session_id}")
        return ChatResult(
            message=cached.content,
            session_id=turn.session.session_id,
            video_references=list(cached.video_references),
            cached=True,
            latency_ms=turn.latency_ms,
            metadata=turn.metadata,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _open_stream(self, messages: List[Dict[str, str]]):
        """
        Start a provider stream and wait for its first chunk.

        Returns:
            (iterator, first chunk or None for an empty stream)
        """
        iterator = self.llm_client.stream_chat(messages).__aiter__()
        try:
            first = await asyncio.wait_for(iterator.__anext__(), timeout=settings.llm_first_byte_timeout)
        except StopAsyncIteration:
            return iterator, None
        except asyncio.TimeoutError as e:
            await self._close_stream(iterator)
            raise ProviderTimeoutError("No response from LLM provider before first-byte deadline") from e
        except BaseException:
            await self._close_stream(iterator)
            raise
        return iterator, first

    @staticmethod
    async def _close_stream(iterator) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug(f"Ignoring error while closing provider stream: {e}")

    async def stream_turn(self, turn: ChatTurn) -> AsyncIterator[StreamEvent]:
        """
        Answer an admitted streaming turn as content events followed by one
        done event, or one error event if the provider fails.

        Streaming answers are never cached. If the consumer goes away mid-answer
        the partial text is stored with ``truncated`` set and the cancellation
        propagates.
        """
        chunks = await self._retrieve(turn)
        turn.transition(TurnState.RETRIEVED)
        payload = await self._build_prompt(turn, chunks)

        if self._should_decline(payload):
            result = await self._decline(turn)
            yield StreamEvent.content(result.message)
            yield StreamEvent.done(0, 0, 0.0, [])
            return

        turn.transition(TurnState.PROVIDER_CALLED)
        parts: List[str] = []
        usage: Optional[StreamChunk] = None
        iterator = None

        try:
            iterator, chunk = await self.retry_service.retry_async(
                self._open_stream,
                payload.messages,
                is_retriable=is_retriable_provider_error,
            )
            deadline = asyncio.get_running_loop().time() + settings.llm_total_timeout

            while chunk is not None:
                if chunk.delta:
                    parts.append(chunk.delta)
                    yield StreamEvent.content(chunk.delta)
                if chunk.has_usage:
                    usage = chunk
                if chunk.finish_reason:
                    turn.metadata.finish_reason = chunk.finish_reason

                remaining = deadline - asyncio.get_running_loop().time()
                if remaining <= 0:
                    raise ProviderTimeoutError("LLM provider exceeded the total completion deadline")
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    chunk = None
                except asyncio.TimeoutError as e:
                    raise ProviderTimeoutError("LLM provider exceeded the total completion deadline") from e

        except (asyncio.CancelledError, GeneratorExit):
            if iterator is not None:
                await self._close_stream(iterator)
            await self._save_partial(turn, payload, parts)
            raise
        except ProviderError as e:
            if iterator is not None:
                await self._close_stream(iterator)
            turn.transition(TurnState.FAILED)
            logger.error(f"Streaming provider call failed for session {turn.session.session_id}: {e.message}")
            yield StreamEvent.failure(e)
            return
        except Exception as e:
            if iterator is not None:
                await self._close_stream(iterator)
            turn.transition(TurnState.FAILED)
            logger.error(
                f"Unexpected streaming failure for session {turn.session.session_id}: {type(e).__name__}: {e}",
                exc_info=True,
            )
            yield StreamEvent.failure(ProviderError(str(e)))
            return

        content = "".join(parts)
        if usage is not None:
            input_tokens, output_tokens = usage.input_tokens, usage.output_tokens
        else:
            input_tokens = payload.prompt_tokens
            output_tokens = token_counter.count_tokens(content, self.llm_client.model)

        references = [ref.to_dict() for ref in extract_video_references(content, payload.supplied_chunks)]
        cost = self._price(input_tokens, output_tokens)
        assistant = AssistantMessage(
            content=content,
            model=self.llm_client.model,
            video_references=references,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=turn.latency_ms,
            cost_usd=cost,
            metadata=turn.metadata,
        )
        await self._persist(turn, assistant)
        await self._record_usage(turn, input_tokens, output_tokens)
        turn.transition(TurnState.DONE)

        logger.info(
            f"Streamed answer for session {turn.session.session_id} in {turn.latency_ms}ms "
            f"({input_tokens} in / {output_tokens} out, {len(references)} references)"
        )
        yield StreamEvent.done(input_tokens, output_tokens, cost, references)

    async def _save_partial(self, turn: ChatTurn, payload: PromptPayload, parts: List[str]) -> None:
        """
        Store what was streamed before the consumer went away. Runs as its own
        task so a repeated cancellation of the caller cannot interrupt the write.
        """
        content = "".join(parts)
        if not content:
            logger.info(f"Stream for session {turn.session.session_id} cancelled before any content")
            return

        turn.metadata.truncated = True
        task = asyncio.ensure_future(self._write_partial(turn, payload, content))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"Partial answer for session {turn.session.session_id} is being saved in the background")

    async def _write_partial(self, turn: ChatTurn, payload: PromptPayload, content: str) -> None:
        output_tokens = token_counter.count_tokens(content, self.llm_client.model)
        assistant = AssistantMessage(
            content=content,
            model=self.llm_client.model,
            video_references=[ref.to_dict() for ref in extract_video_references(content, payload.supplied_chunks)],
            input_tokens=payload.prompt_tokens,
            output_tokens=output_tokens,
            latency_ms=turn.latency_ms,
            cost_usd=self._price(payload.prompt_tokens, output_tokens),
            metadata=turn.metadata,
        )
        await self._persist(turn, assistant)
        await self._record_usage(turn, payload.prompt_tokens, output_tokens)
        logger.info(f"Saved truncated answer for session {turn.session.session_id} ({len(content)} chars)")
