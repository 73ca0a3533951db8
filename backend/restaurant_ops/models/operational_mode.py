"""
Operational Mode Models
Durable per-tenant state of the time-bound modes (peak demand, special hours)
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, UniqueConstraint

from restaurant_ops.db.base import Base, TimestampMixin, VersionMixin


class OperationalModeStateRecord(TimestampMixin, VersionMixin, Base):
    """One row per (tenant, mode kind); rewritten in place on every change."""
    __tablename__ = "operational_mode_states"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)

    is_active = Column(Boolean, nullable=False, default=False)
    config = Column(JSON, nullable=True)  # serialized ModeConfig, null while inactive

    activated_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "kind", name="uq_mode_state_tenant_kind"),
    )
