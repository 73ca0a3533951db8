"""
Operational Mode Configuration

Value types for the time-bound operational modes:
- Peak Demand Mode ("rain mode"): longer ETAs, order-rate ceiling, price
  multiplier and temporarily disabled products
- Special Hours: a same-day override of the advertised opening hours

Every config is validated when it is built, so an invalid combination never
reaches the store. Each mode kind is described by a ``ModeKindSpec`` in
``MODE_KINDS``; the store looks kinds up there and never branches on them.
"""

import math
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, time, timedelta, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Type, Union

from restaurant_ops.services.tenant_service import end_of_local_day


class ModeKind(str, Enum):
    PEAK_DEMAND = "peak_demand"
    SPECIAL_HOURS = "special_hours"


class OperationalModeError(Exception):
    """Base class for operational mode errors."""


class InvalidConfigError(OperationalModeError, ValueError):
    """Raised when a mode configuration violates its constraints."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class ModeNotActiveError(OperationalModeError):
    """Raised when updating a mode that is inactive or already expired."""
    def __init__(self, tenant_id: str, kind: "ModeKind"):
        self.tenant_id = tenant_id
        self.kind = kind
        super().__init__(
            f"Mode '{kind.value}' is not active for tenant '{tenant_id}'; activate it again"
        )


class ModeWriteConflictError(OperationalModeError):
    """Raised when a key keeps changing underneath a read-modify-write."""
    def __init__(self, tenant_id: str, kind: "ModeKind", attempts: int):
        self.tenant_id = tenant_id
        self.kind = kind
        super().__init__(
            f"Mode '{kind.value}' for tenant '{tenant_id}' was modified concurrently "
            f"{attempts} times in a row; retry the request"
        )


# HH:MM, 24-hour clock
TIME_OF_DAY_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")

MAX_ETA_DELTA_MINUTES = 120
MIN_PRICE_MULTIPLIER = 1.0
MAX_PRICE_MULTIPLIER = 2.0


def parse_mode_kind(value: Union[str, ModeKind]) -> ModeKind:
    try:
        return ModeKind(value)
    except ValueError:
        allowed = ", ".join(k.value for k in ModeKind)
        raise InvalidConfigError(f"Unknown mode kind '{value}'. Use one of: {allowed}", field="kind")


def parse_time_of_day(value: Union[str, time], field_name: str) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not isinstance(value, str) or not TIME_OF_DAY_PATTERN.match(value):
        raise InvalidConfigError(
            f"{field_name} must be a time of day in HH:MM format, got {value!r}", field=field_name
        )
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _require_int(value: Any, field_name: str, minimum: int, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigError(f"{field_name} must be an integer", field=field_name)
    if maximum is not None and not (minimum <= value <= maximum):
        raise InvalidConfigError(
            f"{field_name} must be between {minimum} and {maximum}, got {value}", field=field_name
        )
    if value < minimum:
        raise InvalidConfigError(f"{field_name} must be at least {minimum}, got {value}", field=field_name)
    return value


def _check_unknown_fields(config_class: Type, data: Mapping[str, Any]) -> None:
    known = {f.name for f in fields(config_class)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InvalidConfigError(
            f"Unknown field(s) for {config_class.__name__}: {', '.join(unknown)}",
            field=unknown[0],
        )


@dataclass(frozen=True)
class PeakDemandConfig:
    """Peak demand parameters handed verbatim to the order pipeline."""
    estimated_time_delta_minutes: int = 20
    max_orders_per_hour: Optional[int] = None
    price_multiplier: float = 1.0
    disabled_product_ids: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        _require_int(
            self.estimated_time_delta_minutes,
            "estimated_time_delta_minutes",
            0,
            MAX_ETA_DELTA_MINUTES,
        )
        if self.max_orders_per_hour is not None:
            _require_int(self.max_orders_per_hour, "max_orders_per_hour", 1)

        multiplier = self.price_multiplier
        if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float, Decimal)):
            raise InvalidConfigError("price_multiplier must be a number", field="price_multiplier")
        multiplier = float(multiplier)
        if math.isnan(multiplier) or not (MIN_PRICE_MULTIPLIER <= multiplier <= MAX_PRICE_MULTIPLIER):
            raise InvalidConfigError(
                f"price_multiplier must be between {MIN_PRICE_MULTIPLIER} and "
                f"{MAX_PRICE_MULTIPLIER}, got {self.price_multiplier}",
                field="price_multiplier",
            )
        object.__setattr__(self, "price_multiplier", multiplier)

        product_ids = self.disabled_product_ids
        if product_ids is None:
            product_ids = frozenset()
        if isinstance(product_ids, str) or not hasattr(product_ids, "__iter__"):
            raise InvalidConfigError(
                "disabled_product_ids must be a list of product ids", field="disabled_product_ids"
            )
        product_ids = frozenset(product_ids)
        if any(not isinstance(pid, str) or not pid for pid in product_ids):
            raise InvalidConfigError(
                "disabled_product_ids must contain non-empty strings", field="disabled_product_ids"
            )
        object.__setattr__(self, "disabled_product_ids", product_ids)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PeakDemandConfig":
        _check_unknown_fields(cls, data)
        return cls(**data)

    def merged(self, partial: Mapping[str, Any]) -> "PeakDemandConfig":
        """Return a copy with only the supplied fields replaced."""
        _check_unknown_fields(type(self), partial)
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(partial)
        return type(self)(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimated_time_delta_minutes": self.estimated_time_delta_minutes,
            "max_orders_per_hour": self.max_orders_per_hour,
            "price_multiplier": self.price_multiplier,
            "disabled_product_ids": sorted(self.disabled_product_ids),
        }


@dataclass(frozen=True)
class SpecialHoursConfig:
    """Opening hours that replace the regular schedule for the current day.

    ``end_time`` earlier than (or equal to) ``start_time`` means the window
    runs past midnight, e.g. 18:00-00:00.
    """
    start_time: time
    end_time: time

    def __post_init__(self):
        object.__setattr__(self, "start_time", parse_time_of_day(self.start_time, "start_time"))
        object.__setattr__(self, "end_time", parse_time_of_day(self.end_time, "end_time"))

    @property
    def crosses_midnight(self) -> bool:
        return self.end_time <= self.start_time

    def contains(self, moment: time) -> bool:
        """Whether a local time of day falls inside the window."""
        if self.crosses_midnight:
            return moment >= self.start_time or moment < self.end_time
        return self.start_time <= moment < self.end_time

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SpecialHoursConfig":
        _check_unknown_fields(cls, data)
        missing = [name for name in ("start_time", "end_time") if name not in data]
        if missing:
            raise InvalidConfigError(f"{missing[0]} is required", field=missing[0])
        return cls(**data)

    def merged(self, partial: Mapping[str, Any]) -> "SpecialHoursConfig":
        _check_unknown_fields(type(self), partial)
        return type(self)(
            start_time=partial.get("start_time", self.start_time),
            end_time=partial.get("end_time", self.end_time),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
        }


ModeConfig = Union[PeakDemandConfig, SpecialHoursConfig]


@dataclass(frozen=True)
class ModeState:
    """Current state of one mode kind for one tenant."""
    kind: ModeKind
    active: bool = False
    config: Optional[ModeConfig] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def inactive(cls, kind: ModeKind, version: int = 0) -> "ModeState":
        return cls(kind=kind, active=False, version=version)

    def is_expired_at(self, now: datetime) -> bool:
        return self.active and self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "active": self.active,
            "config": self.config.to_dict() if self.config is not None else None,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "version": self.version,
        }


# ==================== EXPIRY RULES ====================

def expire_after_ttl(activated_at: datetime, tz: tzinfo, ttl: timedelta) -> datetime:
    return activated_at + ttl


def expire_at_end_of_local_day(activated_at: datetime, tz: tzinfo, ttl: timedelta) -> datetime:
    # "For today only": the configured end_time does not move the expiry
    return end_of_local_day(activated_at, tz)


@dataclass(frozen=True)
class ModeKindSpec:
    kind: ModeKind
    config_class: Type
    compute_expiry: Callable[[datetime, tzinfo, timedelta], datetime]
    uses_ttl: bool = False

    def coerce_config(self, config: Union[ModeConfig, Mapping[str, Any]]) -> ModeConfig:
        if isinstance(config, self.config_class):
            return config
        if isinstance(config, Mapping):
            return self.config_class.from_dict(config)
        raise InvalidConfigError(
            f"Expected {self.config_class.__name__} or a mapping of its fields for '{self.kind.value}'"
        )


MODE_KINDS: Dict[ModeKind, ModeKindSpec] = {
    ModeKind.PEAK_DEMAND: ModeKindSpec(
        kind=ModeKind.PEAK_DEMAND,
        config_class=PeakDemandConfig,
        compute_expiry=expire_after_ttl,
        uses_ttl=True,
    ),
    ModeKind.SPECIAL_HOURS: ModeKindSpec(
        kind=ModeKind.SPECIAL_HOURS,
        config_class=SpecialHoursConfig,
        compute_expiry=expire_at_end_of_local_day,
    ),
}


def register_mode_kind(spec: ModeKindSpec) -> None:
    MODE_KINDS[spec.kind] = spec


def get_mode_spec(kind: Union[str, ModeKind]) -> ModeKindSpec:
    kind = parse_mode_kind(kind)
    try:
        return MODE_KINDS[kind]
    except KeyError:
        raise InvalidConfigError(f"Mode kind '{kind.value}' is not registered", field="kind")
