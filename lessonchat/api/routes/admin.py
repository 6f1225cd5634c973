"""
Operator endpoints: rate limit counters, the response cache and cross-tenant spend
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session
import asyncio
import logging

from lessonchat.core.database import get_db
from lessonchat.deps.exceptions import ResourceNotFoundError
from lessonchat.models.course import Learner, Tenant
from lessonchat.schemas.usage import (
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    CacheStatsResponse,
    RateLimitResetRequest,
    RateLimitResetResponse,
    RateLimitStatusResponse,
    RateWindowStatus,
    TopSpenderSchema,
    TopSpendersResponse,
)
from lessonchat.services.cost_tracker import cost_tracker
from lessonchat.services.rate_limiter import rate_limiter
from lessonchat.services.response_cache import response_cache

router = APIRouter(prefix="/admin")
logger = logging.getLogger(__name__)


@router.post("/rate-limits/reset", response_model=RateLimitResetResponse)
async def reset_rate_limits(reset_request: RateLimitResetRequest):
    """Clear the counters of one learner or tenant"""
    cleared = await rate_limiter.reset(reset_request.scope, reset_request.actor_id)
    logger.info(f"Admin reset of {reset_request.scope} {reset_request.actor_id} rate limits")
    return RateLimitResetResponse(scope=reset_request.scope, actor_id=reset_request.actor_id, cleared=cleared)


@router.get("/rate-limits/learners/{learner_id}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(learner_id: int, db: Session = Depends(get_db)):
    learner = db.get(Learner, learner_id)
    if learner is None:
        raise ResourceNotFoundError(f"Learner {learner_id} not found")

    windows = await rate_limiter.status(learner.id, learner.tenant_id, learner.tenant.tier)
    return RateLimitStatusResponse(
        learner_id=learner.id,
        tenant_id=learner.tenant_id,
        windows=[RateWindowStatus(**window) for window in windows],
    )


@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(invalidate_request: CacheInvalidateRequest):
    """Drop cached answers built on a video's chunks, e.g. after the video is re-indexed"""
    invalidated = await response_cache.invalidate_by_video(invalidate_request.video_id)
    return CacheInvalidateResponse(video_id=invalidate_request.video_id, invalidated=invalidated)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats():
    stats = await response_cache.stats()
    return CacheStatsResponse(**stats)


@router.get("/usage/top-spenders", response_model=TopSpendersResponse)
async def get_top_spenders(
    limit: int = Query(10, ge=1, le=100),
    month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM, default current"),
    db: Session = Depends(get_db),
):
    """Tenants ranked by spend in one calendar month"""
    month_start = datetime.strptime(month, "%Y-%m").date() if month else None
    spenders = await asyncio.to_thread(cost_tracker.top_spenders, limit, month_start)

    names = {}
    if spenders:
        tenant_ids = [spender["tenant_id"] for spender in spenders]
        names = dict(db.execute(select(Tenant.id, Tenant.name).where(Tenant.id.in_(tenant_ids))).all())

    return TopSpendersResponse(
        month=month or datetime.now(timezone.utc).strftime("%Y-%m"),
        spenders=[TopSpenderSchema(tenant_name=names.get(s["tenant_id"]), **s) for s in spenders],
    )
