"""
Usage ledger model
"""

from sqlalchemy import Column, Integer, Date, Float, ForeignKey, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from lessonchat.core.database import Base


class UsageLedgerEntry(Base):
    """One row per (tenant, calendar day)"""
    __tablename__ = "usage_ledger"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    date = Column(Date, nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    monthly_cost_usd = Column(Float, nullable=False, default=0.0)  # Running total for the month so far
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('tenant_id', 'date', name='uq_usage_ledger_tenant_date'),
    )
