"""
Operational Mode Store

Holds the current state of every time-bound operational mode per tenant and
applies activation, update, deactivation and expiry.

Expiry is lazy: every read or write of a (tenant, kind) key first checks
``now >= expires_at`` and, if so, persists the key as inactive before doing
anything else. There is exactly one place that decides whether a mode is
still active, and every read path (including the effect resolver) goes
through it. ``sweep_expired`` applies the same check to all active keys so
observers learn about expiries without waiting for a read.

Writes on one key are serialized by a per-key lock; keys never share a lock.
The lock only covers one process, so every read-modify-write also carries the
version it read. The backing rejects the write with ``VersionConflictError``
if another worker wrote the key in between, and the store reloads and
reapplies the change, up to ``MAX_WRITE_ATTEMPTS`` times.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from restaurant_ops.core.clock import Clock, ensure_utc, system_clock
from restaurant_ops.core.config import settings
from restaurant_ops.db.base import VersionConflictError
from restaurant_ops.models.operational_mode import OperationalModeStateRecord
from restaurant_ops.services.mode_config import (
    InvalidConfigError,
    ModeConfig,
    ModeKind,
    ModeNotActiveError,
    ModeState,
    ModeWriteConflictError,
    get_mode_spec,
    parse_mode_kind,
)
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


# ==================== BACKING STORES ====================

class ModeStateStore(Protocol):
    """Durable backing for mode states."""

    def get(self, tenant_id: str, kind: ModeKind) -> Optional[ModeState]:
        ...

    def put(
        self,
        tenant_id: str,
        kind: ModeKind,
        state: ModeState,
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> ModeState:
        """Persist *state* in full and return it with its new version.

        With *expected_version* the write only happens if the key still has
        that version (0 for a key that was never written); otherwise
        ``VersionConflictError`` is raised and nothing changes.
        """
        ...

    def list_active(self) -> List[Tuple[str, ModeState]]:
        ...


class InMemoryModeStateStore:
    """Process-local backing, used by tests and single-process deployments."""

    def __init__(self):
        self._states: Dict[Tuple[str, ModeKind], ModeState] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, kind: ModeKind) -> Optional[ModeState]:
        with self._lock:
            return self._states.get((tenant_id, kind))

    def put(
        self,
        tenant_id: str,
        kind: ModeKind,
        state: ModeState,
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> ModeState:
        with self._lock:
            previous = self._states.get((tenant_id, kind))
            current = previous.version if previous else 0
            if expected_version is not None and expected_version != current:
                raise VersionConflictError(
                    f"Version conflict: expected {expected_version}, current {current}"
                )
            stored = replace(state, version=current + 1)
            self._states[(tenant_id, kind)] = stored
            return stored

    def list_active(self) -> List[Tuple[str, ModeState]]:
        with self._lock:
            return [(tenant_id, state) for (tenant_id, _), state in self._states.items() if state.active]


class SqlModeStateStore:
    """SQLAlchemy backing.

    Each put rewrites the whole row in one transaction with
    ``UPDATE ... WHERE version = :read_version``, so two workers that read the
    same version cannot both write. A first insert that loses the race on the
    (tenant, kind) unique constraint is retried as an update.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, tenant_id: str, kind: ModeKind) -> Optional[ModeState]:
        record = self._find(tenant_id, kind)
        return self._to_state(record) if record else None

    def put(
        self,
        tenant_id: str,
        kind: ModeKind,
        state: ModeState,
        now: datetime,
        expected_version: Optional[int] = None,
    ) -> ModeState:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                return self._write(tenant_id, kind, state, now, expected_version)
            except VersionConflictError:
                self.db.rollback()
                # Conditional writes report the conflict; unconditional ones just go again
                if expected_version is not None or attempt == MAX_WRITE_ATTEMPTS:
                    raise
            except IntegrityError as e:
                self.db.rollback()
                if attempt == MAX_WRITE_ATTEMPTS:
                    logger.error(f"Failed to persist mode {kind.value} for tenant {tenant_id}: {e}")
                    raise
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to persist mode {kind.value} for tenant {tenant_id}: {e}")
                raise
            logger.info(
                f"Mode {kind.value} for tenant {tenant_id} was written concurrently, "
                f"retrying (attempt {attempt + 1})"
            )

    def list_active(self) -> List[Tuple[str, ModeState]]:
        records = self.db.query(OperationalModeStateRecord).filter(
            OperationalModeStateRecord.is_active.is_(True)
        ).all()
        states = []
        for record in records:
            try:
                states.append((record.tenant_id, self._to_state(record)))
            except InvalidConfigError as e:
                logger.warning(f"Skipping unreadable mode state {record.id}: {e}")
        return states

    def _write(
        self,
        tenant_id: str,
        kind: ModeKind,
        state: ModeState,
        now: datetime,
        expected_version: Optional[int],
    ) -> ModeState:
        values = {
            "is_active": state.active,
            "config": state.config.to_dict() if state.config is not None else None,
            "activated_at": state.activated_at,
            "expires_at": state.expires_at,
        }
        record = self._find(tenant_id, kind, for_update=True)

        if record is None:
            if expected_version:
                raise VersionConflictError(
                    f"Version conflict: expected {expected_version}, row no longer exists"
                )
            record = OperationalModeStateRecord(tenant_id=tenant_id, kind=kind.value, version=1, **values)
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
            return self._to_state(record)

        record.check_version(expected_version)
        read_version = record.version
        if record.is_active and not state.active:
            values["deactivated_at"] = now

        result = self.db.execute(
            update(OperationalModeStateRecord)
            .where(
                OperationalModeStateRecord.id == record.id,
                OperationalModeStateRecord.version == read_version,
            )
            .values(version=read_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise VersionConflictError(
                f"Version conflict: expected {read_version}, row was rewritten concurrently"
            )
        self.db.commit()
        self.db.refresh(record)
        return self._to_state(record)

    def _find(self, tenant_id: str, kind: ModeKind, for_update: bool = False):
        query = self.db.query(OperationalModeStateRecord).filter(
            OperationalModeStateRecord.tenant_id == tenant_id,
            OperationalModeStateRecord.kind == kind.value,
        ).populate_existing()
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def _to_state(record: OperationalModeStateRecord) -> ModeState:
        spec = get_mode_spec(record.kind)
        config = None
        if record.is_active and record.config is not None:
            config = spec.config_class.from_dict(record.config)
        return ModeState(
            kind=spec.kind,
            active=bool(record.is_active) and config is not None,
            config=config,
            activated_at=ensure_utc(record.activated_at) if record.activated_at else None,
            expires_at=ensure_utc(record.expires_at) if record.expires_at else None,
            version=record.version or 0,
        )


# ==================== LOCKING ====================

class KeyedLockRegistry:
    """One lock per (tenant_id, kind) key."""

    def __init__(self):
        self._locks: Dict[Tuple[str, ModeKind], threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, tenant_id: str, kind: ModeKind) -> threading.Lock:
        with self._guard:
            lock = self._locks.get((tenant_id, kind))
            if lock is None:
                lock = self._locks[(tenant_id, kind)] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, tenant_id: str, kind: ModeKind) -> Iterator[None]:
        with self.lock_for(tenant_id, kind):
            yield


# Shared by every store in the process so that per-request store instances
# still serialize writes on the same key.
mode_locks = KeyedLockRegistry()


# ==================== STORE ====================

@dataclass(frozen=True)
class ModeTransition:
    tenant_id: str
    kind: ModeKind
    event: str  # activated, updated, deactivated, expired
    state: ModeState
    at: datetime


TransitionListener = Callable[[ModeTransition], None]


class OperationalModeStore:
    """Activation, update, deactivation and lazy expiry of operational modes."""

    def __init__(
        self,
        backing: ModeStateStore,
        clock: Clock = system_clock,
        timezones: Optional[TenantTimezoneResolver] = None,
        locks: KeyedLockRegistry = mode_locks,
        default_ttl_minutes: Optional[int] = None,
    ):
        self.backing = backing
        self.clock = clock
        self.timezones = timezones or TenantTimezoneResolver()
        self.locks = locks
        self.default_ttl_minutes = default_ttl_minutes or settings.peak_demand_default_ttl_minutes
        self._listeners: List[TransitionListener] = []

    def subscribe(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def activate(
        self,
        tenant_id: str,
        kind: Union[str, ModeKind],
        config: Union[ModeConfig, Mapping[str, Any]],
        now: Optional[datetime] = None,
        ttl_minutes: Optional[int] = None,
    ) -> ModeState:
        """Activate a mode, replacing whatever state the key had."""
        spec = get_mode_spec(kind)
        if ttl_minutes is not None and not spec.uses_ttl:
            raise InvalidConfigError(
                f"ttl_minutes does not apply to {spec.kind.value}; its expiry is fixed",
                field="ttl_minutes",
            )
        mode_config = spec.coerce_config(config)
        ttl = self._ttl(ttl_minutes)
        now = self._now(now)

        state = ModeState(
            kind=spec.kind,
            active=True,
            config=mode_config,
            activated_at=now,
            expires_at=spec.compute_expiry(now, self.timezones.get_timezone(tenant_id), ttl),
        )

        with self.locks.hold(tenant_id, spec.kind):
            stored = self.backing.put(tenant_id, spec.kind, state, now)

        logger.info(
            f"Mode {spec.kind.value} ACTIVATED for tenant {tenant_id} "
            f"until {stored.expires_at.isoformat()}"
        )
        self._emit(ModeTransition(tenant_id, spec.kind, "activated", stored, now))
        return stored

    def deactivate(
        self,
        tenant_id: str,
        kind: Union[str, ModeKind],
        now: Optional[datetime] = None,
    ) -> None:
        """Deactivate a mode. Never fails on a mode that is already inactive."""
        kind = parse_mode_kind(kind)
        now = self._now(now)
        transitions = []

        def to_inactive(state: ModeState) -> Optional[ModeState]:
            if state.active or state.config is not None:
                return ModeState.inactive(kind)
            return None

        try:
            with self.locks.hold(tenant_id, kind):
                stored = self._write_current(tenant_id, kind, now, transitions, to_inactive)
                if stored is not None:
                    transitions.append(ModeTransition(tenant_id, kind, "deactivated", stored, now))
        finally:
            self._emit(*transitions)

        if stored is not None:
            logger.info(f"Mode {kind.value} DEACTIVATED for tenant {tenant_id}")

    def update(
        self,
        tenant_id: str,
        kind: Union[str, ModeKind],
        partial_config: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> ModeState:
        """Merge *partial_config* into the active config; expiry is unchanged."""
        kind = parse_mode_kind(kind)
        if not isinstance(partial_config, Mapping):
            raise InvalidConfigError("Partial config must be a mapping of fields to new values")
        now = self._now(now)
        transitions = []

        def merge(state: ModeState) -> ModeState:
            if not state.active:
                raise ModeNotActiveError(tenant_id, kind)
            return replace(state, config=state.config.merged(partial_config))

        try:
            with self.locks.hold(tenant_id, kind):
                stored = self._write_current(tenant_id, kind, now, transitions, merge)
                transitions.append(ModeTransition(tenant_id, kind, "updated", stored, now))
        finally:
            self._emit(*transitions)

        logger.info(f"Mode {kind.value} UPDATED for tenant {tenant_id}: {sorted(partial_config)}")
        return stored

    def get(
        self,
        tenant_id: str,
        kind: Union[str, ModeKind],
        now: Optional[datetime] = None,
    ) -> ModeState:
        """Current state of the key, with expiry applied."""
        kind = parse_mode_kind(kind)
        now = self._now(now)
        transitions = []

        try:
            with self.locks.hold(tenant_id, kind):
                state = self._load(tenant_id, kind, now, transitions)
        finally:
            self._emit(*transitions)
        return state

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire every active mode whose window has passed. Returns the count."""
        now = self._now(now)
        expired = 0
        for tenant_id, state in self.backing.list_active():
            if not state.is_expired_at(now):
                continue
            transitions = []
            with self.locks.hold(tenant_id, state.kind):
                self._load(tenant_id, state.kind, now, transitions)
            expired += len(transitions)
            self._emit(*transitions)
        if expired:
            logger.info(f"Mode expiry sweep: {expired} mode(s) expired")
        return expired

    # ==================== INTERNALS ====================

    def _load(
        self,
        tenant_id: str,
        kind: ModeKind,
        now: datetime,
        transitions: List[ModeTransition],
    ) -> ModeState:
        """Read the key and resolve expiry. Caller must hold the key's lock."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            state = self.backing.get(tenant_id, kind)
            if state is None:
                return ModeState.inactive(kind)
            if not state.is_expired_at(now):
                return state
            try:
                state = self.backing.put(
                    tenant_id, kind, ModeState.inactive(kind), now, expected_version=state.version
                )
            except VersionConflictError:
                # Someone else rewrote the key; look at what they left
                continue
            logger.info(f"Mode {kind.value} EXPIRED for tenant {tenant_id}")
            transitions.append(ModeTransition(tenant_id, kind, "expired", state, now))
            return state
        raise ModeWriteConflictError(tenant_id, kind, MAX_WRITE_ATTEMPTS)

    def _write_current(
        self,
        tenant_id: str,
        kind: ModeKind,
        now: datetime,
        transitions: List[ModeTransition],
        change: Callable[[ModeState], Optional[ModeState]],
    ) -> Optional[ModeState]:
        """Apply *change* to the freshest state of the key and write the result.

        The write is conditional on the version that was read. When another
        worker wrote the key first, the state is reloaded and *change* applied
        again. Returns None when *change* leaves the key as it is.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            state = self._load(tenant_id, kind, now, transitions)
            target = change(state)
            if target is None:
                return None
            try:
                return self.backing.put(tenant_id, kind, target, now, expected_version=state.version)
            except VersionConflictError:
                logger.info(f"Mode {kind.value} for tenant {tenant_id} changed concurrently, reapplying")
        raise ModeWriteConflictError(tenant_id, kind, MAX_WRITE_ATTEMPTS)

    def _emit(self, *transitions: ModeTransition) -> None:
        for transition in transitions:
            for listener in self._listeners:
                try:
                    listener(transition)
                except Exception as e:
                    logger.warning(
                        f"Mode transition listener failed for {transition.kind.value} "
                        f"({transition.event}) on tenant {transition.tenant_id}: {e}"
                    )

    def _ttl(self, ttl_minutes: Optional[int]) -> timedelta:
        if ttl_minutes is None:
            return timedelta(minutes=self.default_ttl_minutes)
        if isinstance(ttl_minutes, bool) or not isinstance(ttl_minutes, int) or ttl_minutes <= 0:
            raise InvalidConfigError("ttl_minutes must be a positive integer", field="ttl_minutes")
        return timedelta(minutes=ttl_minutes)

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.clock.now()
