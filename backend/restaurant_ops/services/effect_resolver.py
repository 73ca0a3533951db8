"""
Effect Resolver

Turns the active operational modes of a tenant into the single snapshot the
order pipeline reads before quoting a price or ETA to a customer.

Each mode kind has a contributor that maps its config to the snapshot fields
it owns. Peak demand owns the pricing/ETA/capacity fields; special hours only
owns the advertised-hours window. A new kind adds its own contributor (and
snapshot field) without touching the existing ones.

Snapshots are computed on every call and must not be cached beyond a single
quote.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from restaurant_ops.core.clock import ensure_utc
from restaurant_ops.services.mode_config import (
    ModeConfig,
    ModeKind,
    PeakDemandConfig,
    SpecialHoursConfig,
)
from restaurant_ops.services.operational_mode_service import OperationalModeStore


@dataclass(frozen=True)
class EffectiveModeSnapshot:
    tenant_id: str
    resolved_at: datetime
    eta_delta_minutes: int = 0
    price_multiplier: float = 1.0
    order_rate_ceiling: Optional[int] = None
    disabled_product_ids: FrozenSet[str] = field(default_factory=frozenset)
    special_hours_window: Optional[Tuple[time, time]] = None
    active_modes: Tuple[ModeKind, ...] = ()

    @property
    def is_neutral(self) -> bool:
        return not self.active_modes

    def adjust_price(self, base_price) -> Decimal:
        price = base_price if isinstance(base_price, Decimal) else Decimal(str(base_price))
        return (price * Decimal(str(self.price_multiplier))).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

    def adjust_eta(self, base_minutes: int) -> int:
        return base_minutes + self.eta_delta_minutes

    def is_product_available(self, product_id: str) -> bool:
        return product_id not in self.disabled_product_ids

    def to_dict(self) -> Dict[str, Any]:
        window = None
        if self.special_hours_window is not None:
            start, end = self.special_hours_window
            window = {"start_time": start.strftime("%H:%M"), "end_time": end.strftime("%H:%M")}
        return {
            "tenant_id": self.tenant_id,
            "resolved_at": self.resolved_at.isoformat(),
            "eta_delta_minutes": self.eta_delta_minutes,
            "price_multiplier": self.price_multiplier,
            "order_rate_ceiling": self.order_rate_ceiling,
            "disabled_product_ids": sorted(self.disabled_product_ids),
            "special_hours_window": window,
            "active_modes": [kind.value for kind in self.active_modes],
        }


EffectContributor = Callable[[ModeConfig], Dict[str, Any]]


def peak_demand_effect(config: PeakDemandConfig) -> Dict[str, Any]:
    return {
        "eta_delta_minutes": config.estimated_time_delta_minutes,
        "price_multiplier": config.price_multiplier,
        "order_rate_ceiling": config.max_orders_per_hour,
        "disabled_product_ids": config.disabled_product_ids,
    }


def special_hours_effect(config: SpecialHoursConfig) -> Dict[str, Any]:
    # Advertised hours only; price and ETA are left to peak demand
    return {"special_hours_window": (config.start_time, config.end_time)}


DEFAULT_CONTRIBUTORS: Dict[ModeKind, EffectContributor] = {
    ModeKind.PEAK_DEMAND: peak_demand_effect,
    ModeKind.SPECIAL_HOURS: special_hours_effect,
}


class EffectResolver:
    """Resolve the net effect of a tenant's active modes."""

    def __init__(
        self,
        store: OperationalModeStore,
        contributors: Optional[Dict[ModeKind, EffectContributor]] = None,
    ):
        self.store = store
        self.contributors = dict(contributors or DEFAULT_CONTRIBUTORS)

    def resolve(self, tenant_id: str, now: Optional[datetime] = None) -> EffectiveModeSnapshot:
        now = ensure_utc(now) if now is not None else self.store.clock.now()
        values: Dict[str, Any] = {}
        active = []

        # Independent reads; each key is expired on its own
        for kind, contribute in self.contributors.items():
            state = self.store.get(tenant_id, kind, now)
            if not state.active:
                continue
            values.update(contribute(state.config))
            active.append(kind)

        return EffectiveModeSnapshot(
            tenant_id=tenant_id,
            resolved_at=now,
            active_modes=tuple(active),
            **values,
        )
