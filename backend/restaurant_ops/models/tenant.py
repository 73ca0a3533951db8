"""Tenant (store/restaurant account) model."""
from sqlalchemy import Column, Integer, String

from restaurant_ops.db.base import Base, TimestampMixin


class Tenant(TimestampMixin, Base):
    """A single store account. All mode and cost state is partitioned per tenant."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(200), nullable=True)
    timezone = Column(String(64), nullable=True)  # IANA name, falls back to settings.timezone
