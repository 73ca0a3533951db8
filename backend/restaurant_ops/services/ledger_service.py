"""
SQL Ledgers and Report Store

SQLAlchemy implementations of the record sources read by the daily cost
analysis, and of the per-(tenant, date) report store.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from restaurant_ops.core.clock import ensure_utc
from restaurant_ops.core.config import settings
from restaurant_ops.models.daily_cost import DailyCostReportRecord
from restaurant_ops.models.ledger import (
    BusinessExpense,
    IngredientConsumption,
    LaborEntry,
    SalesOrder,
    WasteRecord as WasteRecordModel,
)
from restaurant_ops.services.daily_cost_service import (
    ConsumptionRecord,
    DailyCostAnalysisEngine,
    DailyCostReport,
    ExpenseRecord,
    LaborRecord,
    OrderRecord,
    WasteRecord,
    to_decimal,
)
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

logger = logging.getLogger(__name__)

# Orders in these states never count as sales
UNSETTLED_ORDER_STATUSES = ("cancelled",)


class SqlOrderLedger:
    def __init__(self, db: Session):
        self.db = db

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> List[OrderRecord]:
        orders = self.db.query(SalesOrder).filter(
            SalesOrder.tenant_id == tenant_id,
            SalesOrder.placed_at >= ensure_utc(start),
            SalesOrder.placed_at < ensure_utc(end),
            SalesOrder.status.notin_(UNSETTLED_ORDER_STATUSES),
        ).order_by(SalesOrder.placed_at).all()

        return [
            OrderRecord(
                amount=to_decimal(o.total),
                payment_method=o.payment_method,
                timestamp=ensure_utc(o.placed_at),
            )
            for o in orders
        ]


class SqlConsumptionLedger:
    def __init__(self, db: Session):
        self.db = db

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> List[ConsumptionRecord]:
        rows = self.db.query(IngredientConsumption).filter(
            IngredientConsumption.tenant_id == tenant_id,
            IngredientConsumption.consumed_at >= ensure_utc(start),
            IngredientConsumption.consumed_at < ensure_utc(end),
        ).all()

        return [
            ConsumptionRecord(
                ingredient_id=r.ingredient_id,
                quantity=to_decimal(r.quantity),
                unit_cost=to_decimal(r.unit_cost),
            )
            for r in rows
        ]


class SqlLaborLedger:
    def __init__(self, db: Session):
        self.db = db

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> List[LaborRecord]:
        # A shift belongs to the day it started on
        rows = self.db.query(LaborEntry).filter(
            LaborEntry.tenant_id == tenant_id,
            LaborEntry.worked_at >= ensure_utc(start),
            LaborEntry.worked_at < ensure_utc(end),
        ).all()

        return [
            LaborRecord(
                employee_id=r.employee_id,
                hours_worked=to_decimal(r.hours_worked),
                hourly_rate=to_decimal(r.hourly_rate),
            )
            for r in rows
        ]


class SqlExpenseLedger:
    def __init__(self, db: Session):
        self.db = db

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> List[ExpenseRecord]:
        rows = self.db.query(BusinessExpense).filter(
            BusinessExpense.tenant_id == tenant_id,
            BusinessExpense.incurred_at >= ensure_utc(start),
            BusinessExpense.incurred_at < ensure_utc(end),
        ).all()

        return [
            ExpenseRecord(amount=to_decimal(r.amount), description=r.description, category=r.category)
            for r in rows
        ]


class SqlWasteLedger:
    def __init__(self, db: Session):
        self.db = db

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> List[WasteRecord]:
        rows = self.db.query(WasteRecordModel).filter(
            WasteRecordModel.tenant_id == tenant_id,
            WasteRecordModel.recorded_at >= ensure_utc(start),
            WasteRecordModel.recorded_at < ensure_utc(end),
        ).all()

        return [
            WasteRecord(item_id=r.item_id, quantity=to_decimal(r.quantity), unit_cost=to_decimal(r.unit_cost))
            for r in rows
        ]


class SqlReportStore:
    """Stores one report per (tenant, date); put replaces every field.

    Two workers generating the same day may both miss the row and insert it.
    The loser hits the (tenant, date) unique constraint, rolls back and
    overwrites the winner's row instead.
    """

    def __init__(self, db: Session):
        self.db = db

    def put(self, tenant_id: str, report_date: date, report: DailyCostReport) -> None:
        try:
            self._write(tenant_id, report_date, report)
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"Daily cost report for tenant {tenant_id} on {report_date} was created concurrently, "
                f"overwriting it"
            )
            try:
                self._write(tenant_id, report_date, report)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to store daily cost report for tenant {tenant_id} on {report_date}: {e}")
                raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store daily cost report for tenant {tenant_id} on {report_date}: {e}")
            raise

    def _write(self, tenant_id: str, report_date: date, report: DailyCostReport) -> None:
        record = self._find(tenant_id, report_date)
        if record is None:
            record = DailyCostReportRecord(tenant_id=tenant_id, report_date=report_date)
            self.db.add(record)

        record.total_sales = report.total_sales
        record.total_expenses = report.total_expenses
        record.ingredient_cost = report.ingredient_cost
        record.labor_cost = report.labor_cost
        record.waste_cost = report.waste_cost
        record.total_cost = report.total_cost
        record.net_profit = report.net_profit
        record.profitability = report.profitability
        record.hours_worked = report.hours_worked
        record.orders_count = report.orders_count
        record.average_ticket = report.average_ticket
        record.details = report.details
        record.generated_at = report.generated_at

        self.db.commit()

    def get(self, tenant_id: str, report_date: date) -> Optional[DailyCostReport]:
        record = self._find(tenant_id, report_date)
        if record is None:
            return None
        return DailyCostReport(
            tenant_id=record.tenant_id,
            report_date=record.report_date,
            total_sales=to_decimal(record.total_sales),
            total_expenses=to_decimal(record.total_expenses),
            ingredient_cost=to_decimal(record.ingredient_cost),
            labor_cost=to_decimal(record.labor_cost),
            waste_cost=to_decimal(record.waste_cost),
            total_cost=to_decimal(record.total_cost),
            net_profit=to_decimal(record.net_profit),
            profitability=to_decimal(record.profitability),
            hours_worked=to_decimal(record.hours_worked),
            orders_count=record.orders_count or 0,
            average_ticket=to_decimal(record.average_ticket),
            generated_at=ensure_utc(record.generated_at),
            details=record.details or {},
        )

    def _find(self, tenant_id: str, report_date: date) -> Optional[DailyCostReportRecord]:
        return self.db.query(DailyCostReportRecord).filter(
            DailyCostReportRecord.tenant_id == tenant_id,
            DailyCostReportRecord.report_date == report_date,
        ).first()


def build_daily_cost_engine(db: Session, timezones: Optional[TenantTimezoneResolver] = None) -> DailyCostAnalysisEngine:
    """Engine wired to the SQL ledgers of *db*."""
    return DailyCostAnalysisEngine(
        orders=SqlOrderLedger(db),
        consumption=SqlConsumptionLedger(db),
        labor=SqlLaborLedger(db),
        expenses=SqlExpenseLedger(db),
        waste=SqlWasteLedger(db),
        reports=SqlReportStore(db),
        timezones=timezones or TenantTimezoneResolver(db),
        default_timeout_seconds=settings.daily_cost_generation_timeout_seconds,
    )
