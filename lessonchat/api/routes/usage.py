"""
Tenant usage and budget endpoints
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
import asyncio
import logging

from lessonchat.core.database import get_db
from lessonchat.deps.exceptions import ResourceNotFoundError
from lessonchat.models.course import Tenant
from lessonchat.schemas.usage import (
    BudgetStatusResponse,
    CostTrendPoint,
    MonthlyUsageSchema,
    UsageForecastSchema,
    UsageOverviewResponse,
)
from lessonchat.services.cost_tracker import cost_tracker

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None:
        raise ResourceNotFoundError(f"Tenant {tenant_id} not found")
    return tenant


@router.get("/usage/{tenant_id}", response_model=UsageOverviewResponse)
async def get_usage_overview(
    tenant_id: int,
    days: int = Query(30, ge=1, le=366, description="Length of the daily cost trend"),
    db: Session = Depends(get_db),
):
    """
    This month's usage, a month-end projection and the recent daily trend

    Returns:
        Usage overview for the tenant's dashboard
    """
    tenant = _get_tenant(db, tenant_id)

    usage = await asyncio.to_thread(cost_tracker.monthly_usage, tenant.id)
    forecast = await asyncio.to_thread(cost_tracker.estimate_monthly_usage, tenant.id)
    trend = await asyncio.to_thread(cost_tracker.cost_trend, tenant.id, days)

    return UsageOverviewResponse(
        tenant_id=tenant.id,
        tier=tenant.tier,
        usage=MonthlyUsageSchema(**usage),
        forecast=UsageForecastSchema(**forecast),
        trend=[CostTrendPoint(**point) for point in trend],
    )


@router.get("/usage/{tenant_id}/budget", response_model=BudgetStatusResponse)
async def get_budget_status(tenant_id: int, db: Session = Depends(get_db)):
    """
    Current month's spend against the tenant's tier budget

    Returns:
        Budget status with warning level and the month's aggregated usage
    """
    tenant = _get_tenant(db, tenant_id)

    status = await asyncio.to_thread(cost_tracker.check_budget, tenant.id, tenant.tier)
    usage = await asyncio.to_thread(cost_tracker.monthly_usage, tenant.id)

    return BudgetStatusResponse(
        tenant_id=tenant.id,
        tier=tenant.tier,
        used_usd=round(status.used_usd, 6),
        limit_usd=status.limit_usd,
        messages_used=status.messages_used,
        message_limit=status.message_limit,
        warning_level=status.warning_level.value,
        unlimited=status.unlimited,
        usage=MonthlyUsageSchema(**usage),
    )
