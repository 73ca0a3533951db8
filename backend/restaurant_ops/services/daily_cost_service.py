"""
Daily Cost Analysis Service

Computes the real cost and profitability of one calendar day for a tenant
from its ledgers:
- Settled orders (sales, ticket count, payment method breakdown)
- Ingredient consumption (quantity x unit cost)
- Labor (hours x hourly rate)
- Waste (quantity x unit cost)
- Miscellaneous business expenses

The day is the tenant's local day ``[date 00:00, date+1 00:00)``. Reports are
stored per (tenant, date); generating again recomputes from the current
ledgers and replaces the stored report. Generation is all-or-nothing: a
ledger failure, cancellation or timeout leaves the stored report untouched.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, TypeVar

from restaurant_ops.core.clock import Clock, system_clock
from restaurant_ops.services.tenant_service import TenantTimezoneResolver, local_day_bounds

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")

# Cancellation/timeout is re-checked every this many records during aggregation
CHECK_INTERVAL = 500


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if value is None:
        return ZERO
    return Decimal(value)


def to_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ==================== LEDGER RECORDS ====================

@dataclass(frozen=True)
class OrderRecord:
    amount: Decimal
    payment_method: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class ConsumptionRecord:
    ingredient_id: str
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return to_decimal(self.quantity) * to_decimal(self.unit_cost)


@dataclass(frozen=True)
class LaborRecord:
    employee_id: str
    hours_worked: Decimal
    hourly_rate: Decimal

    @property
    def cost(self) -> Decimal:
        return to_decimal(self.hours_worked) * to_decimal(self.hourly_rate)


@dataclass(frozen=True)
class ExpenseRecord:
    amount: Decimal
    description: str
    category: str = "other"


@dataclass(frozen=True)
class WasteRecord:
    item_id: str
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return to_decimal(self.quantity) * to_decimal(self.unit_cost)


R = TypeVar("R", covariant=True)


class Ledger(Protocol[R]):
    """Read-only record source for a time range."""

    def list_for_date_range(self, tenant_id: str, start: datetime, end: datetime) -> Sequence[R]:
        ...


# ==================== REPORT ====================

@dataclass(frozen=True)
class DailyCostReport:
    tenant_id: str
    report_date: date
    total_sales: Decimal
    total_expenses: Decimal
    ingredient_cost: Decimal
    labor_cost: Decimal
    waste_cost: Decimal
    total_cost: Decimal
    net_profit: Decimal
    profitability: Decimal
    hours_worked: Decimal
    orders_count: int
    average_ticket: Decimal
    generated_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "report_date": self.report_date.isoformat(),
            "total_sales": float(self.total_sales),
            "total_expenses": float(self.total_expenses),
            "ingredient_cost": float(self.ingredient_cost),
            "labor_cost": float(self.labor_cost),
            "waste_cost": float(self.waste_cost),
            "total_cost": float(self.total_cost),
            "net_profit": float(self.net_profit),
            "profitability": float(self.profitability),
            "hours_worked": float(self.hours_worked),
            "orders_count": self.orders_count,
            "average_ticket": float(self.average_ticket),
            "generated_at": self.generated_at.isoformat(),
            "details": self.details,
        }


def build_report(
    tenant_id: str,
    report_date: date,
    total_sales: Any,
    total_expenses: Any,
    ingredient_cost: Any,
    labor_cost: Any,
    waste_cost: Any,
    hours_worked: Any,
    orders_count: int,
    generated_at: datetime,
    details: Optional[Dict[str, Any]] = None,
) -> DailyCostReport:
    """Apply the cost/profitability formulas to aggregated totals.

    profitability and average_ticket are 0 when their denominator is 0.
    """
    total_sales = to_money(total_sales)
    total_expenses = to_money(total_expenses)
    ingredient_cost = to_money(ingredient_cost)
    labor_cost = to_money(labor_cost)
    waste_cost = to_money(waste_cost)

    total_cost = ingredient_cost + labor_cost + waste_cost + total_expenses
    net_profit = total_sales - total_cost

    profitability = ZERO
    if total_sales != 0:
        profitability = (net_profit / total_sales * 100).quantize(CENT, rounding=ROUND_HALF_UP)

    average_ticket = ZERO
    if orders_count:
        average_ticket = to_money(total_sales / orders_count)

    return DailyCostReport(
        tenant_id=tenant_id,
        report_date=report_date,
        total_sales=total_sales,
        total_expenses=total_expenses,
        ingredient_cost=ingredient_cost,
        labor_cost=labor_cost,
        waste_cost=waste_cost,
        total_cost=total_cost,
        net_profit=net_profit,
        profitability=profitability,
        hours_worked=to_decimal(hours_worked).quantize(CENT, rounding=ROUND_HALF_UP),
        orders_count=orders_count,
        average_ticket=average_ticket,
        generated_at=generated_at,
        details=details or {},
    )


class ReportStore(Protocol):
    def put(self, tenant_id: str, report_date: date, report: DailyCostReport) -> None:
        ...

    def get(self, tenant_id: str, report_date: date) -> Optional[DailyCostReport]:
        ...


class InMemoryReportStore:
    def __init__(self):
        self._reports: Dict[tuple, DailyCostReport] = {}
        self._lock = threading.Lock()

    def put(self, tenant_id: str, report_date: date, report: DailyCostReport) -> None:
        with self._lock:
            self._reports[(tenant_id, report_date)] = report

    def get(self, tenant_id: str, report_date: date) -> Optional[DailyCostReport]:
        with self._lock:
            return self._reports.get((tenant_id, report_date))


# ==================== CANCELLATION ====================

class GenerationCancelledError(Exception):
    """Report generation was cancelled; nothing was persisted."""


class GenerationTimeoutError(GenerationCancelledError):
    """Report generation ran past its deadline; nothing was persisted."""


class CancellationToken:
    """Caller-held signal to stop an in-flight generation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class _GenerationGuard:
    def __init__(self, token: Optional[CancellationToken], timeout_seconds: Optional[float]):
        self.token = token
        self.deadline = None
        if timeout_seconds is not None:
            self.deadline = time.monotonic() + timeout_seconds
        self.timeout_seconds = timeout_seconds

    def check(self, stage: str) -> None:
        if self.token is not None and self.token.cancelled:
            raise GenerationCancelledError(f"Daily cost generation cancelled during {stage}")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise GenerationTimeoutError(
                f"Daily cost generation exceeded {self.timeout_seconds}s during {stage}"
            )

    def iterate(self, records: Iterable, stage: str):
        for index, record in enumerate(records):
            if index and index % CHECK_INTERVAL == 0:
                self.check(stage)
            yield record


# ==================== ENGINE ====================

class DailyCostAnalysisEngine:
    """Generate and read daily cost reports."""

    def __init__(
        self,
        orders: Ledger[OrderRecord],
        consumption: Ledger[ConsumptionRecord],
        labor: Ledger[LaborRecord],
        expenses: Ledger[ExpenseRecord],
        reports: ReportStore,
        waste: Optional[Ledger[WasteRecord]] = None,
        timezones: Optional[TenantTimezoneResolver] = None,
        clock: Clock = system_clock,
        default_timeout_seconds: Optional[float] = None,
    ):
        self.orders = orders
        self.consumption = consumption
        self.labor = labor
        self.expenses = expenses
        self.waste = waste
        self.reports = reports
        self.timezones = timezones or TenantTimezoneResolver()
        self.clock = clock
        self.default_timeout_seconds = default_timeout_seconds

    def generate(
        self,
        tenant_id: str,
        report_date: date,
        cancel_token: Optional[CancellationToken] = None,
        timeout_seconds: Optional[float] = None,
    ) -> DailyCostReport:
        """Recompute the report for (tenant, date) and replace the stored one."""
        if timeout_seconds is None:
            timeout_seconds = self.default_timeout_seconds
        guard = _GenerationGuard(cancel_token, timeout_seconds)
        start, end = local_day_bounds(report_date, self.timezones.get_timezone(tenant_id))

        try:
            guard.check("start")
            orders = self._fetch(self.orders, tenant_id, start, end, "orders", guard)
            consumption = self._fetch(self.consumption, tenant_id, start, end, "consumption", guard)
            labor = self._fetch(self.labor, tenant_id, start, end, "labor", guard)
            expenses = self._fetch(self.expenses, tenant_id, start, end, "expenses", guard)
            waste = []
            if self.waste is not None:
                waste = self._fetch(self.waste, tenant_id, start, end, "waste", guard)

            total_sales = ZERO
            sales_by_payment_method: Dict[str, Decimal] = {}
            for order in guard.iterate(orders, "sales aggregation"):
                amount = to_decimal(order.amount)
                total_sales += amount
                method = order.payment_method or "unknown"
                sales_by_payment_method[method] = sales_by_payment_method.get(method, ZERO) + amount

            ingredient_cost = sum(
                (r.cost for r in guard.iterate(consumption, "ingredient aggregation")), ZERO
            )

            labor_cost = ZERO
            hours_worked = ZERO
            for entry in guard.iterate(labor, "labor aggregation"):
                labor_cost += entry.cost
                hours_worked += to_decimal(entry.hours_worked)

            waste_cost = sum((r.cost for r in guard.iterate(waste, "waste aggregation")), ZERO)
            total_expenses = sum(
                (to_decimal(e.amount) for e in guard.iterate(expenses, "expense aggregation")), ZERO
            )

            report = build_report(
                tenant_id=tenant_id,
                report_date=report_date,
                total_sales=total_sales,
                total_expenses=total_expenses,
                ingredient_cost=ingredient_cost,
                labor_cost=labor_cost,
                waste_cost=waste_cost,
                hours_worked=hours_worked,
                orders_count=len(orders),
                generated_at=self.clock.now(),
                details={
                    "orders": len(orders),
                    "consumption_records": len(consumption),
                    "labor_entries": len(labor),
                    "expenses": len(expenses),
                    "waste_records": len(waste),
                    "sales_by_payment_method": {
                        method: float(to_money(amount))
                        for method, amount in sorted(sales_by_payment_method.items())
                    },
                },
            )

            guard.check("persist")
        except GenerationCancelledError as e:
            logger.warning(f"Daily cost report for tenant {tenant_id} on {report_date} not generated: {e}")
            raise

        self.reports.put(tenant_id, report_date, report)
        logger.info(
            f"Daily cost report generated for tenant {tenant_id} on {report_date}: "
            f"{report.orders_count} orders, sales {report.total_sales}, "
            f"net profit {report.net_profit} ({report.profitability}%)"
        )
        return report

    def get(self, tenant_id: str, report_date: date) -> Optional[DailyCostReport]:
        """Stored report, or None if it was never generated."""
        return self.reports.get(tenant_id, report_date)

    @staticmethod
    def _fetch(
        ledger: Ledger,
        tenant_id: str,
        start: datetime,
        end: datetime,
        name: str,
        guard: _GenerationGuard,
    ) -> List:
        try:
            records = list(ledger.list_for_date_range(tenant_id, start, end))
        except Exception as e:
            logger.error(f"Daily cost generation for tenant {tenant_id} aborted, {name} ledger failed: {e}")
            raise
        guard.check(f"{name} fetch")
        return records
