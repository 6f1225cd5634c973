"""
Pydantic schemas for usage, budget and admin endpoints
"""

from typing import List, Literal, Optional
from pydantic import Field

from lessonchat.schemas.chat import CamelModel


class MonthlyUsageSchema(CamelModel):
    month: str
    cost_usd: float = Field(..., alias="costUSD")
    message_count: int
    input_tokens: int
    output_tokens: int
    active_days: int


class BudgetStatusResponse(CamelModel):
    tenant_id: int
    tier: str
    used_usd: float = Field(..., alias="usedUSD")
    limit_usd: Optional[float] = Field(None, alias="limitUSD")
    messages_used: int
    message_limit: Optional[int] = None
    warning_level: Literal["none", "warning", "critical", "exceeded"]
    unlimited: bool = False
    usage: MonthlyUsageSchema


class UsageForecastSchema(CamelModel):
    current_cost_usd: float = Field(..., alias="currentCostUSD")
    current_messages: int
    estimated_monthly_cost_usd: float = Field(..., alias="estimatedMonthlyCostUSD")
    estimated_monthly_messages: int
    days_elapsed: int
    days_remaining: int


class CostTrendPoint(CamelModel):
    date: str
    cost_usd: float = Field(..., alias="costUSD")
    message_count: int


class UsageOverviewResponse(CamelModel):
    tenant_id: int
    tier: str
    usage: MonthlyUsageSchema
    forecast: UsageForecastSchema
    trend: List[CostTrendPoint]


class TopSpenderSchema(CamelModel):
    tenant_id: int
    tenant_name: Optional[str] = None
    total_cost_usd: float = Field(..., alias="totalCostUSD")
    total_messages: int
    average_cost_per_message: float = Field(..., alias="averageCostPerMessageUSD")


class TopSpendersResponse(CamelModel):
    month: str
    spenders: List[TopSpenderSchema]


class RateLimitResetRequest(CamelModel):
    scope: Literal["learner", "tenant"]
    actor_id: int


class RateLimitResetResponse(CamelModel):
    scope: str
    actor_id: int
    cleared: int


class RateWindowStatus(CamelModel):
    scope: str
    window: str
    limit: int
    used: int
    remaining: int
    resets_in: int


class RateLimitStatusResponse(CamelModel):
    learner_id: int
    tenant_id: int
    windows: List[RateWindowStatus]


class CacheInvalidateRequest(CamelModel):
    video_id: str = Field(..., min_length=1)


class CacheInvalidateResponse(CamelModel):
    video_id: str
    invalidated: int


class CacheStatsResponse(CamelModel):
    available: bool
    hits: int
    misses: int
    hit_rate: float
    entries: int
