"""Daily cost & profitability API routes."""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from restaurant_ops.core.rate_limit import limiter
from restaurant_ops.db.session import DbSession
from restaurant_ops.schemas.daily_cost import DailyCostReportResponse, GenerateDailyCostRequest
from restaurant_ops.services.daily_cost_service import GenerationCancelledError, GenerationTimeoutError
from restaurant_ops.services.ledger_service import build_daily_cost_engine
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{tenant_id}/daily-cost-analysis", response_model=DailyCostReportResponse)
@limiter.limit("60/minute")
def get_daily_cost_analysis(
    request: Request,
    tenant_id: str,
    db: DbSession,
    date_str: Optional[str] = Query(None, alias="date", description="YYYY-MM-DD, defaults to today"),
):
    """Get the stored report for a date. Never generates one."""
    timezones = TenantTimezoneResolver(db)
    if date_str:
        try:
            report_date = date.fromisoformat(date_str)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    else:
        report_date = timezones.today(tenant_id, datetime.now(timezone.utc))

    report = build_daily_cost_engine(db, timezones).get(tenant_id, report_date)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No cost analysis for {report_date.isoformat()}")
    return DailyCostReportResponse.from_report(report)


@router.post("/{tenant_id}/daily-cost-analysis/generate", response_model=DailyCostReportResponse)
@limiter.limit("10/minute")
def generate_daily_cost_analysis(
    request: Request,
    tenant_id: str,
    db: DbSession,
    body: Optional[GenerateDailyCostRequest] = None,
):
    """
    Generate (or regenerate) the cost analysis for a date

    Recomputes sales, ingredient, labor, waste and expense totals from the
    ledgers and replaces any stored report for that date.
    """
    timezones = TenantTimezoneResolver(db)
    report_date = body.report_date if body and body.report_date else None
    if report_date is None:
        report_date = timezones.today(tenant_id, datetime.now(timezone.utc))

    try:
        report = build_daily_cost_engine(db, timezones).generate(tenant_id, report_date)
    except GenerationTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except GenerationCancelledError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return DailyCostReportResponse.from_report(report)
