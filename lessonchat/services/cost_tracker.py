"""
Per-tenant cost accounting against tier budgets
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from lessonchat.core.config import settings
from lessonchat.core.database import SessionLocal
from lessonchat.models.usage import UsageLedgerEntry

logger = logging.getLogger(__name__)

# USD per 1M tokens: (input, output)
MODEL_PRICING: Dict[str, tuple] = {
    "deepseek-chat": (0.27, 1.10),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
}


class WarningLevel(str, Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [WarningLevel.NONE, WarningLevel.WARNING, WarningLevel.CRITICAL, WarningLevel.EXCEEDED]


def warning_level_for(ratio: float) -> WarningLevel:
    """none below 75%, warning below 90%, critical up to 100%, exceeded above"""
    if ratio > 1.0:
        return WarningLevel.EXCEEDED
    if ratio >= 0.9:
        return WarningLevel.CRITICAL
    if ratio >= 0.75:
        return WarningLevel.WARNING
    return WarningLevel.NONE


def _month_bounds(day: date) -> Tuple[date, date]:
    """First day of the month containing ``day`` and first day of the next month"""
    month_start = day.replace(day=1)
    if month_start.month == 12:
        return month_start, month_start.replace(year=month_start.year + 1, month=1)
    return month_start, month_start.replace(month=month_start.month + 1)


@dataclass
class CostResult:
    cost_usd: float
    warning_level: WarningLevel


@dataclass
class BudgetStatus:
    used_usd: float
    limit_usd: Optional[float]
    messages_used: int
    message_limit: Optional[int]
    warning_level: WarningLevel
    unlimited: bool = False

    @property
    def is_exceeded(self) -> bool:
        return not self.unlimited and self.warning_level == WarningLevel.EXCEEDED


class CostTracker:
    """
    Records token usage in the daily ledger and derives the budget warning level.

    Ledger rows are updated with a single INSERT ... ON CONFLICT DO UPDATE per
    exchange; the application never reads a counter and writes it back.
    """

    def __init__(self, session_factory: Callable = SessionLocal, today: Optional[Callable[[], date]] = None):
        self.session_factory = session_factory
        self._today = today or (lambda: datetime.now(timezone.utc).date())

    @staticmethod
    def calculate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
        """
        Cost of one exchange in USD.

        Raises:
            ValueError: If the model has no pricing entry
        """
        if model not in MODEL_PRICING:
            raise ValueError(f"No pricing configured for model: {model}")
        input_rate, output_rate = MODEL_PRICING[model]
        return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000

    def price(self, input_tokens: int, output_tokens: int, model: str) -> float:
        """``calculate_cost``, but an unpriced model is logged and charged nothing"""
        try:
            return self.calculate_cost(input_tokens, output_tokens, model)
        except ValueError as e:
            logger.error(f"Cannot price completion, charging 0 USD: {e}")
            return 0.0

    def _insert(self, db):
        if db.get_bind().dialect.name == "postgresql":
            return pg_insert(UsageLedgerEntry)
        return sqlite_insert(UsageLedgerEntry)

    def record_usage(
        self,
        tenant_id: int,
        input_tokens: int,
        output_tokens: int,
        model: str,
        tier: str = "basic",
        messages: int = 1,
    ) -> CostResult:
        """
        Charge one exchange to today's ledger row and refresh the running monthly total.

        A model without a pricing entry is charged 0 USD; the message still
        counts towards the tier's message ceiling.

        Returns:
            CostResult with this exchange's cost and the tenant's warning level afterwards
        """
        cost = self.price(input_tokens, output_tokens, model)
        today = self._today()
        month_start = today.replace(day=1)

        db = self.session_factory()
        try:
            stmt = self._insert(db).values(
                tenant_id=tenant_id,
                date=today,
                message_count=messages,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=cost,
                monthly_cost_usd=cost,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "date"],
                set_={
                    "message_count": UsageLedgerEntry.message_count + stmt.excluded.message_count,
                    "input_tokens": UsageLedgerEntry.input_tokens + stmt.excluded.input_tokens,
                    "output_tokens": UsageLedgerEntry.output_tokens + stmt.excluded.output_tokens,
                    "cost_usd": UsageLedgerEntry.cost_usd + stmt.excluded.cost_usd,
                    "updated_at": func.now(),
                },
            )
            db.execute(stmt)

            month_rows = UsageLedgerEntry.__table__.alias("month_rows")
            month_total = (
                select(func.coalesce(func.sum(month_rows.c.cost_usd), 0.0))
                .where(month_rows.c.tenant_id == tenant_id)
                .where(month_rows.c.date >= month_start)
                .where(month_rows.c.date <= today)
                .scalar_subquery()
            )
            db.execute(
                update(UsageLedgerEntry)
                .where(UsageLedgerEntry.tenant_id == tenant_id)
                .where(UsageLedgerEntry.date == today)
                .values(monthly_cost_usd=month_total)
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Failed to record usage for tenant {tenant_id} (${cost:.6f}, model {model})")
            raise
        finally:
            db.close()

        status = self.check_budget(tenant_id, tier)
        if status.warning_level != WarningLevel.NONE:
            logger.warning(
                f"Tenant {tenant_id} budget at {status.warning_level.value}: "
                f"${status.used_usd:.4f} of {status.limit_usd}, {status.messages_used} messages"
            )
        return CostResult(cost_usd=cost, warning_level=status.warning_level)

    def monthly_usage(self, tenant_id: int, month: Optional[date] = None) -> Dict[str, object]:
        """Aggregate the ledger rows of one calendar month (default: current)"""
        month_start, next_month = _month_bounds(month or self._today())

        db = self.session_factory()
        try:
            row = db.execute(
                select(
                    func.coalesce(func.sum(UsageLedgerEntry.cost_usd), 0.0),
                    func.coalesce(func.sum(UsageLedgerEntry.message_count), 0),
                    func.coalesce(func.sum(UsageLedgerEntry.input_tokens), 0),
                    func.coalesce(func.sum(UsageLedgerEntry.output_tokens), 0),
                    func.count(UsageLedgerEntry.id),
                )
                .where(UsageLedgerEntry.tenant_id == tenant_id)
                .where(UsageLedgerEntry.date >= month_start)
                .where(UsageLedgerEntry.date < next_month)
            ).one()
        finally:
            db.close()

        return {
            "month": month_start.strftime("%Y-%m"),
            "cost_usd": float(row[0]),
            "message_count": int(row[1]),
            "input_tokens": int(row[2]),
            "output_tokens": int(row[3]),
            "active_days": int(row[4]),
        }

    def estimate_monthly_usage(self, tenant_id: int) -> Dict[str, object]:
        """Project the month's spend and message count from the daily average so far"""
        today = self._today()
        days_in_month = calendar.monthrange(today.year, today.month)[1]
        usage = self.monthly_usage(tenant_id)

        return {
            "current_cost_usd": usage["cost_usd"],
            "current_messages": usage["message_count"],
            "estimated_monthly_cost_usd": usage["cost_usd"] / today.day * days_in_month,
            "estimated_monthly_messages": round(usage["message_count"] / today.day * days_in_month),
            "days_elapsed": today.day,
            "days_remaining": days_in_month - today.day,
        }

    def cost_trend(self, tenant_id: int, days: int = 30) -> List[Dict[str, object]]:
        """Daily cost and message count for the last ``days`` days, oldest first; idle days are absent"""
        today = self._today()
        db = self.session_factory()
        try:
            rows = db.execute(
                select(UsageLedgerEntry.date, UsageLedgerEntry.cost_usd, UsageLedgerEntry.message_count)
                .where(UsageLedgerEntry.tenant_id == tenant_id)
                .where(UsageLedgerEntry.date >= today - timedelta(days=days))
                .where(UsageLedgerEntry.date <= today)
                .order_by(UsageLedgerEntry.date)
            ).all()
        finally:
            db.close()

        return [
            {"date": row_date.isoformat(), "cost_usd": float(cost), "message_count": int(messages)}
            for row_date, cost, messages in rows
        ]

    def top_spenders(self, limit: int = 10, month: Optional[date] = None) -> List[Dict[str, object]]:
        """Tenants ranked by spend in one calendar month (default: current)"""
        month_start, next_month = _month_bounds(month or self._today())
        total_cost = func.sum(UsageLedgerEntry.cost_usd)
        total_messages = func.sum(UsageLedgerEntry.message_count)

        db = self.session_factory()
        try:
            rows = db.execute(
                select(UsageLedgerEntry.tenant_id, total_cost, total_messages)
                .where(UsageLedgerEntry.date >= month_start)
                .where(UsageLedgerEntry.date < next_month)
                .group_by(UsageLedgerEntry.tenant_id)
                .order_by(total_cost.desc(), UsageLedgerEntry.tenant_id)
                .limit(limit)
            ).all()
        finally:
            db.close()

        return [
            {
                "tenant_id": tenant_id,
                "total_cost_usd": float(cost or 0.0),
                "total_messages": int(messages or 0),
                "average_cost_per_message": float(cost or 0.0) / messages if messages else 0.0,
            }
            for tenant_id, cost, messages in rows
        ]

    def check_budget(self, tenant_id: int, tier: str) -> BudgetStatus:
        """
        Compare this month's usage with the tier's cost and message ceilings.

        The warning level follows whichever ceiling is closer to being reached.
        """
        usage = self.monthly_usage(tenant_id)
        limit_usd = settings.tier_monthly_budgets_usd.get(tier, settings.tier_monthly_budgets_usd.get("basic", 10.0))
        message_limit = settings.tier_monthly_messages.get(tier, settings.tier_monthly_messages.get("basic", 1000))

        if limit_usd < 0:
            return BudgetStatus(
                used_usd=usage["cost_usd"],
                limit_usd=None,
                messages_used=usage["message_count"],
                message_limit=None,
                warning_level=WarningLevel.NONE,
                unlimited=True,
            )

        ratios = [usage["cost_usd"] / limit_usd if limit_usd > 0 else float("inf")]
        if message_limit > 0:
            ratios.append(usage["message_count"] / message_limit)

        return BudgetStatus(
            used_usd=usage["cost_usd"],
            limit_usd=limit_usd,
            messages_used=usage["message_count"],
            message_limit=message_limit if message_limit > 0 else None,
            warning_level=warning_level_for(max(ratios)),
        )


# Global cost tracker instance
cost_tracker = CostTracker()
