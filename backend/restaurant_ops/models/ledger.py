"""
Ledger Models
Append-only operational records read by the daily cost analysis:
sales orders, ingredient consumption, labor, business expenses and waste.
"""
from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from restaurant_ops.db.base import Base


class SalesOrder(Base):
    """Customer order as recorded by the order pipeline."""
    __tablename__ = "sales_orders"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    total = Column(Numeric(14, 2), nullable=False)
    payment_method = Column(String(32), nullable=True)  # cash, card, transfer, mercadopago
    status = Column(String(32), nullable=False, default="completed")  # cancelled orders are not settled
    placed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_sales_orders_tenant_placed", "tenant_id", "placed_at"),
    )


class IngredientConsumption(Base):
    """Ingredient usage with the unit cost at the time it was consumed."""
    __tablename__ = "ingredient_consumptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    ingredient_id = Column(String(64), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_cost = Column(Numeric(12, 4), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_consumptions_tenant_consumed", "tenant_id", "consumed_at"),
    )


class LaborEntry(Base):
    """Time-tracking entry for one employee shift."""
    __tablename__ = "labor_entries"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    employee_id = Column(String(64), nullable=False)
    hours_worked = Column(Numeric(6, 2), nullable=False)
    hourly_rate = Column(Numeric(10, 2), nullable=False)
    worked_at = Column(DateTime(timezone=True), nullable=False)  # shift start

    __table_args__ = (
        Index("idx_labor_entries_tenant_worked", "tenant_id", "worked_at"),
    )


class BusinessExpense(Base):
    """Miscellaneous business expense (rent share, utilities, supplies)."""
    __tablename__ = "business_expenses"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    category = Column(String(64), nullable=False, default="other")
    description = Column(Text, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    incurred_at = Column(DateTime(timezone=True), nullable=False)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_business_expenses_tenant_incurred", "tenant_id", "incurred_at"),
    )


class WasteRecord(Base):
    """Discarded product or ingredient, valued at unit cost."""
    __tablename__ = "waste_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False)
    item_id = Column(String(64), nullable=False)
    quantity = Column(Numeric(12, 3), nullable=False)
    unit_cost = Column(Numeric(12, 4), nullable=False)
    reason = Column(String(64), nullable=True)  # expired, spoiled, dropped, overproduction
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_waste_records_tenant_recorded", "tenant_id", "recorded_at"),
    )
