"""Mode Expiry Sweep.

Periodic job that expires operational modes whose window has passed, so the
"expired" transition is logged (and seen by listeners) even when nobody reads
the mode. Correctness never depends on it: every read expires lazily anyway.
"""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from restaurant_ops.db.session import SessionLocal
from restaurant_ops.services.operational_mode_service import OperationalModeStore, SqlModeStateStore
from restaurant_ops.services.tenant_service import TenantTimezoneResolver


def run_mode_expiry_sweep(session_factory: Optional[Callable[[], Session]] = None) -> int:
    """Open a session, expire overdue modes, and return how many expired."""
    db = (session_factory or SessionLocal)()
    try:
        store = OperationalModeStore(SqlModeStateStore(db), timezones=TenantTimezoneResolver(db))
        return store.sweep_expired()
    finally:
        db.close()
