"""Tenant time zones and local calendar-day boundaries."""

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, Optional, Tuple

import pytz
from sqlalchemy.orm import Session

from restaurant_ops.core.clock import ensure_utc
from restaurant_ops.core.config import settings
from restaurant_ops.models.tenant import Tenant

logger = logging.getLogger(__name__)


def local_midnight(day: date, tz: tzinfo) -> datetime:
    """Start of *day* in *tz*, as an aware UTC datetime."""
    return tz.localize(datetime.combine(day, time.min)).astimezone(pytz.UTC)


def local_day_bounds(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """UTC bounds of the local calendar day: ``[day 00:00, day+1 00:00)``."""
    return local_midnight(day, tz), local_midnight(day + timedelta(days=1), tz)


def local_date(moment: datetime, tz: tzinfo) -> date:
    return ensure_utc(moment).astimezone(tz).date()


def end_of_local_day(moment: datetime, tz: tzinfo) -> datetime:
    """The next local midnight after *moment*, as an aware UTC datetime."""
    return local_midnight(local_date(moment, tz) + timedelta(days=1), tz)


class TenantTimezoneResolver:
    """Resolve a tenant's time zone, falling back to the configured default."""

    def __init__(
        self,
        db: Optional[Session] = None,
        default_timezone: Optional[str] = None,
        overrides: Optional[Dict[str, str]] = None,
    ):
        self.db = db
        self.default_timezone = default_timezone or settings.timezone
        self._overrides = dict(overrides or {})
        self._cache: Dict[str, tzinfo] = {}

    def get_timezone(self, tenant_id: str) -> tzinfo:
        if tenant_id in self._cache:
            return self._cache[tenant_id]

        tz_name = self._overrides.get(tenant_id)
        if tz_name is None and self.db is not None:
            tenant = self.db.query(Tenant).filter(Tenant.tenant_id == tenant_id).first()
            if tenant and tenant.timezone:
                tz_name = tenant.timezone

        try:
            tz = pytz.timezone(tz_name or self.default_timezone)
        except pytz.UnknownTimeZoneError:
            logger.warning(
                f"Tenant {tenant_id} has unknown time zone {tz_name!r}, "
                f"using {self.default_timezone}"
            )
            tz = pytz.timezone(self.default_timezone)

        self._cache[tenant_id] = tz
        return tz

    def today(self, tenant_id: str, now: datetime) -> date:
        """The tenant's current local calendar date."""
        return local_date(now, self.get_timezone(tenant_id))
