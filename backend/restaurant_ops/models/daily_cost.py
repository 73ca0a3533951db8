"""Daily cost & profitability report model."""
from sqlalchemy import Column, Date, DateTime, Integer, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.sql import func

from restaurant_ops.db.base import Base


class DailyCostReportRecord(Base):
    """Stored report, one per (tenant, calendar date). Regeneration overwrites it."""
    __tablename__ = "daily_cost_reports"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    report_date = Column(Date, nullable=False, index=True)

    total_sales = Column(Numeric(14, 2), nullable=False, default=0)
    total_expenses = Column(Numeric(14, 2), nullable=False, default=0)
    ingredient_cost = Column(Numeric(14, 2), nullable=False, default=0)
    labor_cost = Column(Numeric(14, 2), nullable=False, default=0)
    waste_cost = Column(Numeric(14, 2), nullable=False, default=0)
    total_cost = Column(Numeric(14, 2), nullable=False, default=0)
    net_profit = Column(Numeric(14, 2), nullable=False, default=0)
    profitability = Column(Numeric(8, 2), nullable=False, default=0)  # percent of sales
    hours_worked = Column(Numeric(10, 2), nullable=False, default=0)
    orders_count = Column(Integer, nullable=False, default=0)
    average_ticket = Column(Numeric(14, 2), nullable=False, default=0)

    details = Column(JSON, nullable=True)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "report_date", name="uq_daily_cost_tenant_date"),
    )
