"""
Daily Cost Analysis Schemas
"""
from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from restaurant_ops.services.daily_cost_service import DailyCostReport


class GenerateDailyCostRequest(BaseModel):
    report_date: Optional[date] = Field(
        None, alias="date", description="Calendar date to analyse; defaults to today in the tenant's time zone"
    )

    model_config = {"populate_by_name": True}


class DailyCostReportResponse(BaseModel):
    tenant_id: str
    report_date: date
    total_sales: float
    total_expenses: float
    ingredient_cost: float
    labor_cost: float
    waste_cost: float
    total_cost: float
    net_profit: float
    profitability: float = Field(..., description="Net profit as a percentage of sales")
    hours_worked: float
    orders_count: int
    average_ticket: float
    generated_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_report(cls, report: DailyCostReport) -> "DailyCostReportResponse":
        return cls(**report.to_dict())
