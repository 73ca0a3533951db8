"""
Operational Mode Schemas
Pydantic models for the mode control and effective-mode endpoints
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from restaurant_ops.services.effect_resolver import EffectiveModeSnapshot
from restaurant_ops.services.mode_config import ModeState


class ModeActivationRequest(BaseModel):
    """
    Schema for activating a mode

    Mode parameters are top-level fields, e.g. price_multiplier for peak
    demand or start_time/end_time for special hours:
    {"estimated_time_delta_minutes": 15, "price_multiplier": 1.2, "ttl_minutes": 90}
    """
    model_config = {"extra": "allow"}

    ttl_minutes: Optional[int] = Field(
        None, description="Peak demand only: minutes until the mode expires (defaults to the configured TTL)"
    )

    @property
    def config(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ModeUpdateRequest(BaseModel):
    """Schema for a partial config update; the fields sent overwrite, omitted fields keep their value"""
    model_config = {"extra": "allow"}

    @property
    def config(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ModeStateResponse(BaseModel):
    tenant_id: str
    kind: str
    active: bool
    config: Optional[Dict[str, Any]] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_state(cls, tenant_id: str, state: ModeState) -> "ModeStateResponse":
        return cls(tenant_id=tenant_id, **state.to_dict())


class SpecialHoursWindow(BaseModel):
    start_time: str
    end_time: str


class EffectiveModesResponse(BaseModel):
    """Net effect of the active modes, read by the order pipeline before quoting"""
    tenant_id: str
    resolved_at: datetime
    eta_delta_minutes: int
    price_multiplier: float
    order_rate_ceiling: Optional[int] = None
    disabled_product_ids: List[str] = Field(default_factory=list)
    special_hours_window: Optional[SpecialHoursWindow] = None
    active_modes: List[str] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: EffectiveModeSnapshot) -> "EffectiveModesResponse":
        return cls(**snapshot.to_dict())
