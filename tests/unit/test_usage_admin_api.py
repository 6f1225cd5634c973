"""
Unit tests for usage and admin endpoints
"""

from datetime import datetime, timezone

from lessonchat.models import Tenant, UsageLedgerEntry
from tests.utils.db import SESSION_ID, VIDEO_ID


def add_spend(db, cost_usd, messages=1, tenant_id=1):
    db.add(UsageLedgerEntry(
        tenant_id=tenant_id,
        date=datetime.now(timezone.utc).date(),
        message_count=messages,
        cost_usd=cost_usd,
        monthly_cost_usd=cost_usd,
    ))
    db.commit()


class TestBudgetEndpoint:

    def test_budget_status(self, client, seeded_db):
        add_spend(seeded_db, 8.0, messages=40)

        response = client.get("/api/usage/1/budget")

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "basic"
        assert data["usedUSD"] == 8.0
        assert data["limitUSD"] == 10.0
        assert data["warningLevel"] == "warning"
        assert data["usage"]["messageCount"] == 40
        assert data["usage"]["activeDays"] == 1

    def test_unknown_tenant(self, client):
        response = client.get("/api/usage/99/budget")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_exceeded_budget_blocks_chat(self, client, seeded_db, fake_llm):
        add_spend(seeded_db, 12.0)

        response = client.post("/api/chat", json={"sessionID": SESSION_ID, "message": "What is a stop loss?"})

        assert response.status_code == 402
        error = response.json()["error"]
        assert error["code"] == "BUDGET_EXCEEDED"
        assert error["details"]["warning_level"] == "exceeded"
        assert fake_llm.complete_calls == 0


class TestUsageOverview:

    def test_overview_has_forecast_and_trend(self, client, seeded_db):
        add_spend(seeded_db, 1.5, messages=6)
        today = datetime.now(timezone.utc).date()

        response = client.get("/api/usage/1", params={"days": 7})

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "basic"
        assert data["usage"]["costUSD"] == 1.5
        forecast = data["forecast"]
        assert forecast["currentCostUSD"] == 1.5
        assert forecast["currentMessages"] == 6
        assert forecast["daysElapsed"] == today.day
        assert forecast["estimatedMonthlyCostUSD"] >= 1.5
        assert data["trend"] == [{"date": today.isoformat(), "costUSD": 1.5, "messageCount": 6}]

    def test_overview_for_unknown_tenant(self, client):
        assert client.get("/api/usage/99").status_code == 404

    def test_trend_length_is_bounded(self, client):
        assert client.get("/api/usage/1", params={"days": 0}).status_code == 422


class TestTopSpenders:

    def test_ranking_includes_tenant_names(self, client, seeded_db):
        seeded_db.add(Tenant(id=2, name="Beta Bootcamp", tier="pro", is_active=True))
        seeded_db.commit()
        add_spend(seeded_db, 2.0, messages=4)
        add_spend(seeded_db, 5.0, messages=10, tenant_id=2)

        response = client.get("/api/admin/usage/top-spenders")

        assert response.status_code == 200
        data = response.json()
        assert data["month"] == datetime.now(timezone.utc).strftime("%Y-%m")
        assert [(s["tenantId"], s["tenantName"]) for s in data["spenders"]] == [(2, "Beta Bootcamp"), (1, "Acme Academy")]
        assert data["spenders"][0]["averageCostPerMessageUSD"] == 0.5

    def test_other_month_is_empty(self, client, seeded_db):
        add_spend(seeded_db, 2.0)

        response = client.get("/api/admin/usage/top-spenders", params={"month": "2001-01"})

        assert response.json() == {"month": "2001-01", "spenders": []}

    def test_malformed_month_is_rejected(self, client):
        assert client.get("/api/admin/usage/top-spenders", params={"month": "2026-13"}).status_code == 422


class TestRateLimitAdmin:

    def test_status_and_reset(self, client):
        client.post("/api/chat", json={"sessionID": SESSION_ID, "message": "What is a stop loss?"})

        status = client.get("/api/admin/rate-limits/learners/1").json()
        windows = {w["window"]: w for w in status["windows"]}
        assert windows["minute"]["used"] == 1
        assert windows["day"]["used"] == 1

        response = client.post("/api/admin/rate-limits/reset", json={"scope": "learner", "actorId": 1})
        assert response.status_code == 200
        assert response.json()["cleared"] == 2

        windows = {w["window"]: w for w in client.get("/api/admin/rate-limits/learners/1").json()["windows"]}
        assert windows["minute"]["used"] == 0
        assert windows["day"]["used"] == 1

    def test_reset_rejects_unknown_scope(self, client):
        response = client.post("/api/admin/rate-limits/reset", json={"scope": "course", "actorId": 1})
        assert response.status_code == 422

    def test_status_for_unknown_learner(self, client):
        assert client.get("/api/admin/rate-limits/learners/404").status_code == 404


class TestCacheAdmin:

    def test_invalidate_by_video(self, client, fake_llm):
        payload = {"sessionID": SESSION_ID, "message": "What is a stop loss?"}
        client.post("/api/chat", json=payload)

        response = client.post("/api/admin/cache/invalidate", json={"videoId": VIDEO_ID})
        assert response.json() == {"videoId": VIDEO_ID, "invalidated": 1}

        assert client.post("/api/chat", json=payload).json()["cached"] is False
        assert fake_llm.complete_calls == 2

    def test_stats(self, client):
        payload = {"sessionID": SESSION_ID, "message": "What is a stop loss?"}
        client.post("/api/chat", json=payload)
        client.post("/api/chat", json=payload)

        stats = client.get("/api/admin/cache/stats").json()

        assert stats["available"] is True
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["entries"] == 1
        assert stats["hitRate"] == 0.5
