"""
Unit tests for the chat orchestrator
"""

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from lessonchat.core.config import settings
from lessonchat.deps.exceptions import (
    BudgetExceededError,
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    SessionInvalidError,
)
from lessonchat.models import ChatMessage, UsageLedgerEntry
from lessonchat.services.chat_orchestrator import ALLOWED_TRANSITIONS, StreamEvent, TurnState
from lessonchat.services.chat_store import ChatHistoryStore
from lessonchat.services.prompt_builder import DECLINE_MESSAGE
from tests.utils.db import SESSION_ID, TestingSessionLocal, VIDEO_ID, VIDEO_TITLE
from tests.utils.mock_services import FakeEmbeddingService

GROUNDED_ANSWER = f"A stop loss caps how much you can lose on a trade [{VIDEO_TITLE} @ 0:30]."


def stored_messages():
    db = TestingSessionLocal()
    try:
        return list(db.execute(
            select(ChatMessage).where(ChatMessage.session_id == SESSION_ID).order_by(ChatMessage.seq)
        ).scalars())
    finally:
        db.close()


def ledger_rows():
    db = TestingSessionLocal()
    try:
        return list(db.execute(select(UsageLedgerEntry)).scalars())
    finally:
        db.close()


class FailingChatStore(ChatHistoryStore):
    def append_turn(self, session_id, user_content, assistant):
        raise PersistenceError("disk full")


class TestBatchTurn:

    @pytest.mark.asyncio
    async def test_grounded_answer_with_citation(self, make_orchestrator, fake_llm, kv_store):
        fake_llm.responses = [GROUNDED_ANSWER]
        orchestrator = make_orchestrator()

        turn = await orchestrator.admit_turn(SESSION_ID, "How does a stop loss work?")
        result = await orchestrator.complete_turn(turn)

        assert result.message == GROUNDED_ANSWER
        assert result.cached is False
        assert result.video_references == [
            {"video_id": VIDEO_ID, "timestamp": 30, "title": VIDEO_TITLE, "chunk_id": "chunk-1"}
        ]
        assert result.input_tokens == 100
        assert result.output_tokens == 20
        assert result.cost_usd == pytest.approx((100 * 0.27 + 20 * 1.10) / 1_000_000)
        assert turn.state == TurnState.DONE
        assert turn.persisted is True

        messages = stored_messages()
        assert [(m.seq, m.role) for m in messages] == [(1, "user"), (2, "assistant")]
        assert messages[1].content == GROUNDED_ANSWER
        assert messages[1].video_references[0]["chunk_id"] == "chunk-1"

        rows = ledger_rows()
        assert len(rows) == 1
        assert rows[0].message_count == 1
        assert rows[0].cost_usd == pytest.approx(result.cost_usd)

        assert len(await kv_store.scan_keys("test:response:*")) == 1
        assert await kv_store.set_members(f"test:video:{VIDEO_ID}")

    @pytest.mark.asyncio
    async def test_prompt_carries_context_and_question(self, make_orchestrator, fake_llm):
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "How does a stop loss work?")
        await orchestrator.complete_turn(turn)

        system, user = fake_llm.last_messages[0], fake_llm.last_messages[-1]
        assert system["role"] == "system"
        assert "[Video Title @ MM:SS]" in system["content"]
        assert f"{VIDEO_TITLE} @ 0:00" in user["content"]
        assert "Candlestick" not in user["content"]
        assert user["content"].endswith("How does a stop loss work?")

    @pytest.mark.asyncio
    async def test_repeat_question_is_served_from_cache(self, make_orchestrator, fake_llm):
        fake_llm.responses = [GROUNDED_ANSWER]
        orchestrator = make_orchestrator()

        first = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "How does a stop loss work?"))
        second = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "  how does a STOP loss work? "))

        assert fake_llm.complete_calls == 1
        assert second.cached is True
        assert second.message == first.message
        assert second.video_references == first.video_references
        assert second.cost_usd == 0.0

        messages = stored_messages()
        assert len(messages) == 4
        assert messages[3].cached is True
        assert ledger_rows()[0].message_count == 1

    @pytest.mark.asyncio
    async def test_history_is_sent_on_follow_up(self, make_orchestrator, fake_llm):
        fake_llm.responses = ["First answer", "Second answer"]
        orchestrator = make_orchestrator()

        await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "How does a stop loss work?"))
        await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "And position sizing?"))

        roles = [m["role"] for m in fake_llm.last_messages]
        assert roles == ["system", "user", "assistant", "user"]
        assert fake_llm.last_messages[2]["content"] == "First answer"

    @pytest.mark.asyncio
    async def test_retriable_provider_errors_are_retried(self, make_orchestrator, fake_llm):
        fake_llm.errors = [ProviderTimeoutError(), ProviderError("overloaded", retriable=True)]
        fake_llm.responses = ["Recovered"]
        orchestrator = make_orchestrator()

        result = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "Explain stop losses"))

        assert result.message == "Recovered"
        assert fake_llm.complete_calls == 3

    @pytest.mark.asyncio
    async def test_provider_failure_persists_nothing(self, make_orchestrator, fake_llm, kv_store):
        fake_llm.errors = [ProviderError("bad request", retriable=False)]
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        with pytest.raises(ProviderError):
            await orchestrator.complete_turn(turn)

        assert fake_llm.complete_calls == 1
        assert turn.state == TurnState.FAILED
        assert stored_messages() == []
        assert ledger_rows() == []
        assert await kv_store.scan_keys("test:response:*") == []

    @pytest.mark.asyncio
    async def test_retrieval_failure_degrades_to_no_context(self, make_orchestrator, fake_llm, kv_store):
        orchestrator = make_orchestrator(embeddings=FakeEmbeddingService(fail=True))

        result = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "Explain stop losses"))

        assert fake_llm.complete_calls == 1
        assert result.metadata.retrieval_degraded is True
        assert result.metadata.no_context is True
        assert result.video_references == []
        assert "No relevant video content" in fake_llm.last_messages[-1]["content"]
        assert await kv_store.scan_keys("test:response:*") == []
        assert stored_messages()[1].message_metadata["retrieval_degraded"] is True

    @pytest.mark.asyncio
    async def test_citation_to_unsupplied_video_is_dropped(self, make_orchestrator, fake_llm):
        fake_llm.responses = ["See [Advanced Options @ 2:00] and [Introduction to Trading @ 9:59]"]
        orchestrator = make_orchestrator()

        result = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "Explain stop losses"))

        # 9:59 lies outside every supplied span, so it snaps to the nearest chunk start
        assert len(result.video_references) == 1
        assert result.video_references[0]["video_id"] == VIDEO_ID
        assert result.video_references[0]["timestamp"] == 60

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_answer(self, make_orchestrator, fake_llm):
        fake_llm.responses = [GROUNDED_ANSWER]
        orchestrator = make_orchestrator(store=FailingChatStore(TestingSessionLocal))
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        result = await orchestrator.complete_turn(turn)

        assert result.message == GROUNDED_ANSWER
        assert turn.persisted is False
        assert turn.state == TurnState.DONE
        assert stored_messages() == []

    @pytest.mark.asyncio
    async def test_decline_without_context_skips_provider(self, make_orchestrator, fake_llm, monkeypatch):
        monkeypatch.setattr(settings, "no_context_behavior", "decline")
        orchestrator = make_orchestrator(embeddings=FakeEmbeddingService(vector=[0.0, 0.0, 1.0]))

        result = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, "What is the weather?"))

        assert result.message == DECLINE_MESSAGE
        assert fake_llm.complete_calls == 0
        assert result.cost_usd == 0.0
        assert stored_messages()[1].content == DECLINE_MESSAGE
        assert ledger_rows() == []

    @pytest.mark.asyncio
    async def test_video_filter_outside_session_scope_yields_no_context(self, make_orchestrator, fake_llm, seeded_db):
        from lessonchat.models import ChatSession
        session = seeded_db.get(ChatSession, SESSION_ID)
        session.context_video_ids = ["vid-other"]
        seeded_db.commit()
        orchestrator = make_orchestrator()

        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", video_ids=[VIDEO_ID])
        result = await orchestrator.complete_turn(turn)

        assert turn.video_ids == []
        assert result.metadata.no_context is True


    @pytest.mark.asyncio
    async def test_unpriced_model_is_charged_nothing_but_counted(self, make_orchestrator, fake_llm):
        fake_llm.model = "deepseek-reasoner"
        orchestrator = make_orchestrator()

        for question in ("Explain stop losses", "What is position sizing?", "How do I read a candle?"):
            result = await orchestrator.complete_turn(await orchestrator.admit_turn(SESSION_ID, question))
            assert result.cost_usd == 0.0

        rows = ledger_rows()
        assert len(rows) == 1
        assert rows[0].message_count == 3
        assert rows[0].cost_usd == 0.0
        assert orchestrator.cost_tracker.check_budget(1, "basic").messages_used == 3
        assert stored_messages()[1].cost_usd == 0.0


class TestAdmission:

    @pytest.mark.asyncio
    async def test_unknown_session_is_rejected(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(SessionInvalidError):
            await orchestrator.admit_turn("missing-session", "Hello")

    @pytest.mark.asyncio
    async def test_inactive_learner_is_rejected(self, make_orchestrator, seeded_db):
        from lessonchat.models import Learner
        seeded_db.get(Learner, 1).is_active = False
        seeded_db.commit()
        orchestrator = make_orchestrator()

        with pytest.raises(SessionInvalidError):
            await orchestrator.admit_turn(SESSION_ID, "Hello")

    @pytest.mark.asyncio
    async def test_eleventh_request_in_a_minute_is_rate_limited(self, make_orchestrator, fake_llm):
        orchestrator = make_orchestrator()
        for _ in range(settings.learner_requests_per_minute):
            await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        with pytest.raises(RateLimitedError) as exc_info:
            await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        assert exc_info.value.scope == "learner"
        assert 0 < exc_info.value.retry_after <= 60
        assert fake_llm.complete_calls == 0

    @pytest.mark.asyncio
    async def test_budget_exceeded_makes_no_provider_call(self, make_orchestrator, fake_llm, seeded_db):
        seeded_db.add(UsageLedgerEntry(
            tenant_id=1,
            date=datetime.now(timezone.utc).date(),
            message_count=10,
            cost_usd=10.5,
            monthly_cost_usd=10.5,
        ))
        seeded_db.commit()
        orchestrator = make_orchestrator()

        with pytest.raises(BudgetExceededError) as exc_info:
            await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        assert exc_info.value.details["warning_level"] == "exceeded"
        assert fake_llm.complete_calls == 0
        assert stored_messages() == []
        # The refused request does not use up the learner's rate windows
        statuses = await orchestrator.rate_limiter.status(1, 1, "basic")
        assert [s["used"] for s in statuses] == [0, 0, 0]


class TestStreamingTurn:

    @pytest.mark.asyncio
    async def test_stream_emits_content_then_done(self, make_orchestrator, fake_llm, kv_store):
        fake_llm.stream_parts = ["A stop loss ", f"limits losses [{VIDEO_TITLE} @ 0:45]"]
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert [e.type for e in events] == ["content", "content", "done"]
        assert "".join(e.delta for e in events[:-1]) == f"A stop loss limits losses [{VIDEO_TITLE} @ 0:45]"
        done = events[-1]
        assert done.usage["inputTokens"] == 120
        assert done.usage["outputTokens"] == 8
        assert done.video_references == [
            {"videoId": VIDEO_ID, "timestamp": 45, "title": VIDEO_TITLE, "chunkId": "chunk-1"}
        ]
        assert turn.state == TurnState.DONE

        messages = stored_messages()
        assert messages[1].content.endswith("@ 0:45]")
        assert messages[1].output_tokens == 8
        assert ledger_rows()[0].message_count == 1
        # Streamed answers are not cached
        assert await kv_store.scan_keys("test:response:*") == []

    @pytest.mark.asyncio
    async def test_stream_without_usage_chunk_estimates_tokens(self, make_orchestrator, fake_llm):
        fake_llm.stream_usage = None
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert events[-1].usage["outputTokens"] == 2  # "Hello world"
        assert events[-1].usage["inputTokens"] > 0

    @pytest.mark.asyncio
    async def test_cancelled_stream_saves_truncated_answer(self, make_orchestrator, fake_llm):
        fake_llm.stream_parts = ["Partial", " answer", " never delivered"]
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        stream = orchestrator.stream_turn(turn)
        first = await stream.__anext__()
        await stream.aclose()

        assert first.delta == "Partial"
        messages = stored_messages()
        assert len(messages) == 2
        assert messages[1].content == "Partial"
        assert messages[1].message_metadata["truncated"] is True
        assert ledger_rows()[0].message_count == 1

    @pytest.mark.asyncio
    async def test_cancel_before_any_content_saves_nothing(self, make_orchestrator, fake_llm):
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        stream = orchestrator.stream_turn(turn)
        await stream.aclose()

        assert fake_llm.stream_calls == 0
        assert stored_messages() == []

    @pytest.mark.asyncio
    async def test_provider_failure_emits_error_event(self, make_orchestrator, fake_llm):
        fake_llm.errors = [ProviderError("bad request", retriable=False)]
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert [e.type for e in events] == ["error"]
        assert events[0].error["code"] == "PROVIDER_ERROR"
        assert turn.state == TurnState.FAILED
        assert stored_messages() == []
        assert ledger_rows() == []

    @pytest.mark.asyncio
    async def test_decline_is_streamed_as_one_content_event(self, make_orchestrator, fake_llm, monkeypatch):
        monkeypatch.setattr(settings, "no_context_behavior", "decline")
        orchestrator = make_orchestrator(embeddings=FakeEmbeddingService(vector=[0.0, 0.0, 1.0]))
        turn = await orchestrator.admit_turn(SESSION_ID, "What is the weather?", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert [e.type for e in events] == ["content", "done"]
        assert events[0].delta == DECLINE_MESSAGE
        assert fake_llm.stream_calls == 0


    @pytest.mark.asyncio
    async def test_connection_dropped_mid_stream_emits_error_event(self, make_orchestrator, fake_llm):
        fake_llm.stream_parts = ["Hel"]
        fake_llm.stream_error = RuntimeError("peer closed connection without sending complete message body")
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert [e.type for e in events] == ["content", "error"]
        assert events[1].error["code"] == "PROVIDER_ERROR"
        assert turn.state == TurnState.FAILED
        assert stored_messages() == []
        assert ledger_rows() == []

    @pytest.mark.asyncio
    async def test_first_byte_timeout_is_retried_then_fails(self, make_orchestrator, fake_llm, monkeypatch):
        monkeypatch.setattr(settings, "llm_first_byte_timeout", 0.01)
        fake_llm.stall_at = 0
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert fake_llm.stream_calls == 3
        assert [e.type for e in events] == ["error"]
        assert events[0].error["code"] == "PROVIDER_ERROR"
        assert turn.state == TurnState.FAILED
        assert stored_messages() == []

    @pytest.mark.asyncio
    async def test_total_deadline_cuts_off_a_stalled_stream(self, make_orchestrator, fake_llm, monkeypatch):
        monkeypatch.setattr(settings, "llm_total_timeout", 0.05)
        fake_llm.stream_parts = ["Partial", " answer"]
        fake_llm.stall_at = 1
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses", stream=True)

        events = [event async for event in orchestrator.stream_turn(turn)]

        assert [e.type for e in events] == ["content", "error"]
        assert events[1].error["code"] == "PROVIDER_ERROR"
        assert fake_llm.stream_calls == 1
        assert turn.state == TurnState.FAILED
        assert stored_messages() == []
        assert ledger_rows() == []


class TestTurnStateMachine:

    def test_terminal_states_have_no_exits(self):
        for state in (TurnState.DONE, TurnState.REJECTED, TurnState.FAILED):
            assert ALLOWED_TRANSITIONS[state] == set()

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, make_orchestrator):
        orchestrator = make_orchestrator()
        turn = await orchestrator.admit_turn(SESSION_ID, "Explain stop losses")

        with pytest.raises(RuntimeError):
            turn.transition(TurnState.PERSISTED)

    def test_sse_payload_shape(self):
        event = StreamEvent.content("Hi")
        sse = event.to_sse()

        assert sse["event"] == "content"
        assert json.loads(sse["data"]) == {"type": "content", "delta": "Hi"}
