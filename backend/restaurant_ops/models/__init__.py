"""SQLAlchemy models."""

from restaurant_ops.models.tenant import Tenant
from restaurant_ops.models.operational_mode import OperationalModeStateRecord
from restaurant_ops.models.daily_cost import DailyCostReportRecord
from restaurant_ops.models.ledger import (
    SalesOrder,
    IngredientConsumption,
    LaborEntry,
    BusinessExpense,
    WasteRecord,
)

__all__ = [
    "Tenant",
    "OperationalModeStateRecord",
    "DailyCostReportRecord",
    "SalesOrder",
    "IngredientConsumption",
    "LaborEntry",
    "BusinessExpense",
    "WasteRecord",
]
