"""Tests for the operational mode store: lifecycle, lazy expiry, concurrency, SQL backing."""

import threading
import pytest
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session, sessionmaker

from restaurant_ops.core.clock import FixedClock, ensure_utc
from restaurant_ops.db.base import VersionConflictError
from restaurant_ops.models.operational_mode import OperationalModeStateRecord
from restaurant_ops.services.mode_config import (
    MODE_KINDS,
    InvalidConfigError,
    ModeKind,
    ModeKindSpec,
    ModeNotActiveError,
    ModeState,
    ModeWriteConflictError,
    PeakDemandConfig,
    SpecialHoursConfig,
    expire_after_ttl,
    register_mode_kind,
)
from restaurant_ops.services.mode_expiry_sweep import run_mode_expiry_sweep
from restaurant_ops.services.operational_mode_service import (
    InMemoryModeStateStore,
    KeyedLockRegistry,
    OperationalModeStore,
    SqlModeStateStore,
)
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

START = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


PEAK = ModeKind.PEAK_DEMAND
SPECIAL = ModeKind.SPECIAL_HOURS


def record_transitions(store):
    events = []
    store.subscribe(lambda t: events.append((t.tenant_id, t.kind, t.event)))
    return events


class PauseAfterFirstRead:
    """Backing wrapper whose first get waits until the other worker has read too."""

    def __init__(self, backing, barrier: threading.Barrier):
        self.backing = backing
        self.barrier = barrier
        self.paused = False

    def get(self, tenant_id, kind):
        state = self.backing.get(tenant_id, kind)
        if not self.paused:
            self.paused = True
            self.barrier.wait(timeout=10)
        return state

    def put(self, *args, **kwargs):
        return self.backing.put(*args, **kwargs)

    def list_active(self):
        return self.backing.list_active()


class PauseAfterFirstLookup(SqlModeStateStore):
    """Both workers look the row up before either inserts it."""

    def __init__(self, db, barrier: threading.Barrier):
        super().__init__(db)
        self.barrier = barrier
        self.paused = False

    def _find(self, tenant_id, kind, for_update=False):
        record = super()._find(tenant_id, kind, for_update)
        if for_update and not self.paused:
            self.paused = True
            self.barrier.wait(timeout=10)
        return record


class AlwaysStaleStore(InMemoryModeStateStore):
    """Every versioned write loses to some other worker."""

    def put(self, tenant_id, kind, state, now, expected_version=None):
        if expected_version is not None:
            raise VersionConflictError("Version conflict: key rewritten")
        return super().put(tenant_id, kind, state, now)


def run_in_threads(*calls):
    errors = []

    def run(call):
        try:
            call()
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=run, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


class TestActivation:
    """Tests for activating modes."""

    def test_unset_key_is_inactive(self, mode_store):
        state = mode_store.get("t1", PEAK)
        assert state.active is False
        assert state.config is None
        assert state.expires_at is None

    def test_activate_peak_demand_uses_default_ttl(self, mode_store):
        state = mode_store.activate("t1", PEAK, {"estimated_time_delta_minutes": 10})
        assert state.active is True
        assert state.activated_at == START
        assert state.expires_at == START + timedelta(minutes=60)
        assert state.config.estimated_time_delta_minutes == 10
        assert state.version == 1

    def test_activate_with_explicit_ttl(self, mode_store):
        state = mode_store.activate("t1", PEAK, PeakDemandConfig(), ttl_minutes=15)
        assert state.expires_at == START + timedelta(minutes=15)

    @pytest.mark.parametrize("ttl", [0, -5, 1.5, True])
    def test_activate_rejects_bad_ttl(self, mode_store, ttl):
        with pytest.raises(InvalidConfigError):
            mode_store.activate("t1", PEAK, {}, ttl_minutes=ttl)
        assert mode_store.get("t1", PEAK).active is False

    def test_invalid_config_leaves_state_untouched(self, mode_store):
        mode_store.activate("t1", PEAK, {"price_multiplier": 1.2})
        with pytest.raises(InvalidConfigError):
            mode_store.activate("t1", PEAK, {"price_multiplier": 5})
        state = mode_store.get("t1", PEAK)
        assert state.active is True
        assert state.config.price_multiplier == 1.2
        assert state.version == 1

    def test_reactivation_replaces_config(self, mode_store):
        mode_store.activate("t1", PEAK, {"estimated_time_delta_minutes": 10, "price_multiplier": 1.5})
        state = mode_store.activate("t1", PEAK, {"estimated_time_delta_minutes": 5})
        assert state.config.estimated_time_delta_minutes == 5
        assert state.config.price_multiplier == 1.0
        assert state.version == 2

    def test_special_hours_expire_at_local_midnight(self, mode_store):
        # START is 09:00 in Buenos Aires; midnight there is 03:00 UTC
        state = mode_store.activate("t1", SPECIAL, {"start_time": "18:00", "end_time": "02:00"})
        assert state.expires_at == datetime(2024, 3, 16, 3, 0, tzinfo=timezone.utc)

    def test_special_hours_ignore_end_time_for_expiry(self, mode_store, clock):
        clock.set(datetime(2024, 3, 16, 2, 59, tzinfo=timezone.utc))  # 23:59 local
        state = mode_store.activate("t1", SPECIAL, {"start_time": "10:00", "end_time": "12:00"})
        assert state.expires_at == datetime(2024, 3, 16, 3, 0, tzinfo=timezone.utc)
        clock.advance(minutes=1)
        assert mode_store.get("t1", SPECIAL).active is False

    def test_tenants_and_kinds_are_independent(self, mode_store):
        mode_store.activate("t1", PEAK, {})
        assert mode_store.get("t2", PEAK).active is False
        assert mode_store.get("t1", SPECIAL).active is False

    def test_unknown_kind(self, mode_store):
        with pytest.raises(InvalidConfigError):
            mode_store.activate("t1", "rain", {})

    def test_ttl_rejected_for_special_hours(self, mode_store):
        with pytest.raises(InvalidConfigError) as exc:
            mode_store.activate("t1", SPECIAL, {"start_time": "10:00", "end_time": "22:00"}, ttl_minutes=30)
        assert exc.value.field == "ttl_minutes"
        assert mode_store.get("t1", SPECIAL).active is False

    def test_registered_kind_spec_drives_expiry(self, mode_store, monkeypatch):
        # setitem restores the built-in spec on teardown
        monkeypatch.setitem(MODE_KINDS, SPECIAL, MODE_KINDS[SPECIAL])
        register_mode_kind(ModeKindSpec(
            kind=SPECIAL,
            config_class=SpecialHoursConfig,
            compute_expiry=expire_after_ttl,
            uses_ttl=True,
        ))

        state = mode_store.activate(
            "t1", SPECIAL, {"start_time": "10:00", "end_time": "22:00"}, ttl_minutes=30
        )
        assert state.expires_at == START + timedelta(minutes=30)
        assert state.config == SpecialHoursConfig(start_time="10:00", end_time="22:00")


class TestExpiry:
    """Tests for lazy expiry on read and write."""

    def test_expires_exactly_at_deadline(self, mode_store, clock):
        mode_store.activate("t1", PEAK, {})
        clock.advance(minutes=59, seconds=59)
        assert mode_store.get("t1", PEAK).active is True
        clock.advance(seconds=1)
        state = mode_store.get("t1", PEAK)
        assert state.active is False
        assert state.config is None

    def test_expiry_is_recorded_once(self, mode_store, clock):
        events = record_transitions(mode_store)
        mode_store.activate("t1", PEAK, {})
        clock.advance(hours=2)
        mode_store.get("t1", PEAK)
        mode_store.get("t1", PEAK)
        assert events == [("t1", PEAK, "activated"), ("t1", PEAK, "expired")]

    def test_expiry_persists_inactive_state(self, clock, timezones):
        backing = InMemoryModeStateStore()
        store = OperationalModeStore(backing, clock=clock, timezones=timezones, locks=KeyedLockRegistry())
        store.activate("t1", PEAK, {}, ttl_minutes=5)
        clock.advance(minutes=5)
        store.get("t1", PEAK)
        assert backing.get("t1", PEAK).active is False

    def test_explicit_now_overrides_clock(self, mode_store):
        mode_store.activate("t1", PEAK, {})
        assert mode_store.get("t1", PEAK, now=START + timedelta(hours=1)).active is False

    def test_sweep_expires_overdue_modes(self, mode_store, clock):
        events = record_transitions(mode_store)
        mode_store.activate("t1", PEAK, {}, ttl_minutes=10)
        mode_store.activate("t2", PEAK, {}, ttl_minutes=30)
        mode_store.activate("t3", SPECIAL, {"start_time": "10:00", "end_time": "22:00"})
        clock.advance(minutes=20)

        assert mode_store.sweep_expired() == 1
        assert ("t1", PEAK, "expired") in events
        assert mode_store.sweep_expired() == 0

        clock.advance(days=1)
        assert mode_store.sweep_expired() == 2


class TestDeactivate:
    """Tests for deactivation."""

    def test_deactivate_never_activated(self, mode_store):
        events = record_transitions(mode_store)
        mode_store.deactivate("t1", PEAK)
        assert mode_store.get("t1", PEAK).active is False
        assert events == []

    def test_deactivate_is_idempotent(self, mode_store):
        events = record_transitions(mode_store)
        mode_store.activate("t1", PEAK, {})
        mode_store.deactivate("t1", PEAK)
        mode_store.deactivate("t1", PEAK)
        state = mode_store.get("t1", PEAK)
        assert state.active is False
        assert state.config is None
        assert [e[2] for e in events] == ["activated", "deactivated"]

    def test_deactivate_after_expiry(self, mode_store, clock):
        events = record_transitions(mode_store)
        mode_store.activate("t1", PEAK, {})
        clock.advance(hours=1)
        mode_store.deactivate("t1", PEAK)
        assert [e[2] for e in events] == ["activated", "expired"]


class TestUpdate:
    """Tests for partial config updates."""

    def test_update_merges_and_keeps_expiry(self, mode_store, clock):
        activated = mode_store.activate("t1", PEAK, {"estimated_time_delta_minutes": 10, "price_multiplier": 1.1})
        clock.advance(minutes=30)
        state = mode_store.update("t1", PEAK, {"price_multiplier": 1.3})
        assert state.config.price_multiplier == 1.3
        assert state.config.estimated_time_delta_minutes == 10
        assert state.expires_at == activated.expires_at
        assert state.activated_at == activated.activated_at
        assert state.version == 2

    def test_update_inactive_mode(self, mode_store):
        with pytest.raises(ModeNotActiveError):
            mode_store.update("t1", PEAK, {"price_multiplier": 1.3})

    def test_update_expired_mode(self, mode_store, clock):
        events = record_transitions(mode_store)
        mode_store.activate("t1", PEAK, {})
        clock.advance(hours=1)
        with pytest.raises(ModeNotActiveError):
            mode_store.update("t1", PEAK, {"price_multiplier": 1.3})
        assert [e[2] for e in events] == ["activated", "expired"]
        assert mode_store.get("t1", PEAK).active is False

    def test_update_invalid_value(self, mode_store):
        mode_store.activate("t1", PEAK, {"price_multiplier": 1.2})
        with pytest.raises(InvalidConfigError):
            mode_store.update("t1", PEAK, {"price_multiplier": 0.5})
        assert mode_store.get("t1", PEAK).config.price_multiplier == 1.2

    def test_update_special_hours(self, mode_store):
        mode_store.activate("t1", SPECIAL, {"start_time": "10:00", "end_time": "16:00"})
        state = mode_store.update("t1", SPECIAL, {"end_time": "20:00"})
        assert state.config.to_dict() == {"start_time": "10:00", "end_time": "20:00"}

    def test_concurrent_updates_are_not_lost(self, mode_store):
        mode_store.activate("t1", PEAK, {})
        barrier = threading.Barrier(2)
        errors = []

        def worker(partial):
            try:
                barrier.wait()
                mode_store.update("t1", PEAK, partial)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=({"estimated_time_delta_minutes": 33},)),
            threading.Thread(target=worker, args=({"max_orders_per_hour": 77},)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        state = mode_store.get("t1", PEAK)
        assert state.config.estimated_time_delta_minutes == 33
        assert state.config.max_orders_per_hour == 77
        assert state.version == 3

    def test_many_concurrent_writers(self, mode_store):
        mode_store.activate("t1", PEAK, {})

        def worker(i):
            mode_store.update("t1", PEAK, {"estimated_time_delta_minutes": i})

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert mode_store.get("t1", PEAK).version == 21


class TestVersionedWrites:
    """Writers that do not share a lock registry, as in separate worker processes."""

    def _worker(self, backing, clock, timezones) -> OperationalModeStore:
        return OperationalModeStore(
            backing, clock=clock, timezones=timezones, locks=KeyedLockRegistry(), default_ttl_minutes=60,
        )

    def test_interleaved_updates_are_not_lost(self, clock, timezones):
        shared = InMemoryModeStateStore()
        self._worker(shared, clock, timezones).activate("t1", PEAK, {})
        barrier = threading.Barrier(2)
        first = self._worker(PauseAfterFirstRead(shared, barrier), clock, timezones)
        second = self._worker(PauseAfterFirstRead(shared, barrier), clock, timezones)

        errors = run_in_threads(
            lambda: first.update("t1", PEAK, {"estimated_time_delta_minutes": 33}),
            lambda: second.update("t1", PEAK, {"max_orders_per_hour": 77}),
        )

        assert errors == []
        state = shared.get("t1", PEAK)
        assert state.config.estimated_time_delta_minutes == 33
        assert state.config.max_orders_per_hour == 77
        assert state.version == 3

    def test_stale_version_is_rejected(self):
        backing = InMemoryModeStateStore()
        backing.put("t1", PEAK, ModeState.inactive(PEAK), START)
        with pytest.raises(VersionConflictError):
            backing.put("t1", PEAK, ModeState.inactive(PEAK), START, expected_version=0)
        assert backing.get("t1", PEAK).version == 1

    def test_gives_up_after_repeated_conflicts(self, clock, timezones):
        store = self._worker(AlwaysStaleStore(), clock, timezones)
        store.activate("t1", PEAK, {"price_multiplier": 1.2})
        with pytest.raises(ModeWriteConflictError):
            store.update("t1", PEAK, {"price_multiplier": 1.5})
        assert store.get("t1", PEAK).config.price_multiplier == 1.2


class TestListeners:
    def test_failing_listener_does_not_break_activation(self, mode_store):
        def boom(transition):
            raise RuntimeError("listener down")

        events = []
        mode_store.subscribe(boom)
        mode_store.subscribe(lambda t: events.append(t.event))
        state = mode_store.activate("t1", PEAK, {})
        assert state.active is True
        assert events == ["activated"]


class TestSqlModeStateStore:
    """Tests for the SQLAlchemy backing."""

    def _store(self, db: Session, clock: FixedClock) -> OperationalModeStore:
        return OperationalModeStore(
            SqlModeStateStore(db),
            clock=clock,
            timezones=TenantTimezoneResolver(db),
            locks=KeyedLockRegistry(),
            default_ttl_minutes=60,
        )

    def test_state_survives_new_store_instance(self, db_session: Session, clock):
        self._store(db_session, clock).activate(
            "t1", PEAK, {"price_multiplier": 1.25, "disabled_product_ids": ["p2", "p1"]}
        )
        state = self._store(db_session, clock).get("t1", PEAK)
        assert state.active is True
        assert state.config.price_multiplier == 1.25
        assert state.config.disabled_product_ids == frozenset({"p1", "p2"})
        assert state.expires_at == START + timedelta(hours=1)
        assert state.version == 1

    def test_one_row_per_key(self, db_session: Session, clock):
        store = self._store(db_session, clock)
        store.activate("t1", PEAK, {})
        store.update("t1", PEAK, {"price_multiplier": 1.5})
        store.deactivate("t1", PEAK)
        store.activate("t1", PEAK, {})

        rows = db_session.query(OperationalModeStateRecord).filter_by(tenant_id="t1").all()
        assert len(rows) == 1
        assert rows[0].version == 4

    def test_deactivate_records_timestamp(self, db_session: Session, clock):
        store = self._store(db_session, clock)
        store.activate("t1", PEAK, {})
        clock.advance(minutes=5)
        store.deactivate("t1", PEAK)
        row = db_session.query(OperationalModeStateRecord).filter_by(tenant_id="t1").one()
        assert row.is_active is False
        assert row.config is None
        assert ensure_utc(row.deactivated_at) == START + timedelta(minutes=5)

    def test_expiry_records_clock_time(self, db_session: Session, clock):
        store = self._store(db_session, clock)
        store.activate("t1", PEAK, {}, ttl_minutes=10)
        clock.advance(minutes=15)
        store.get("t1", PEAK)
        row = db_session.query(OperationalModeStateRecord).filter_by(tenant_id="t1").one()
        assert ensure_utc(row.deactivated_at) == START + timedelta(minutes=15)

    def test_put_rejects_stale_version(self, db_session: Session, clock):
        backing = SqlModeStateStore(db_session)
        self._store(db_session, clock).activate("t1", PEAK, {})
        with pytest.raises(VersionConflictError):
            backing.put("t1", PEAK, ModeState.inactive(PEAK), START, expected_version=5)
        with pytest.raises(VersionConflictError):
            backing.put("t2", PEAK, ModeState.inactive(PEAK), START, expected_version=1)
        state = backing.get("t1", PEAK)
        assert state.active is True
        assert state.version == 1
        assert backing.get("t2", PEAK) is None

    def test_check_version(self):
        record = OperationalModeStateRecord(tenant_id="t1", kind=PEAK.value, version=2)
        record.check_version(None)
        record.check_version(2)
        with pytest.raises(VersionConflictError):
            record.check_version(1)

    def test_lazy_expiry_is_persisted(self, db_session: Session, clock):
        store = self._store(db_session, clock)
        store.activate("t1", PEAK, {})
        clock.advance(hours=1)
        assert store.get("t1", PEAK).active is False
        row = db_session.query(OperationalModeStateRecord).filter_by(tenant_id="t1").one()
        assert row.is_active is False

    def test_special_hours_use_tenant_timezone(self, db_session: Session, clock, test_tenant):
        # 13:00 in Madrid (UTC+1); local midnight is 23:00 UTC
        state = self._store(db_session, clock).activate(
            test_tenant.tenant_id, SPECIAL, {"start_time": "20:00", "end_time": "23:59"}
        )
        assert state.expires_at == datetime(2024, 3, 15, 23, 0, tzinfo=timezone.utc)

    def test_sweep_job(self, db_engine, db_session: Session):
        now = datetime.now(timezone.utc)
        store = self._store(db_session, FixedClock(now - timedelta(hours=3)))
        store.activate("t1", PEAK, {}, ttl_minutes=60)
        store.activate("t2", PEAK, {}, ttl_minutes=600)

        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
        assert run_mode_expiry_sweep(SessionLocal) == 1

        db_session.expire_all()
        active = {r.tenant_id for r in db_session.query(OperationalModeStateRecord).filter_by(is_active=True)}
        assert active == {"t2"}


class TestConcurrentActivation:
    def test_activations_never_mix_fields(self, mode_store):
        configs = [
            {"estimated_time_delta_minutes": 5, "price_multiplier": 1.1, "disabled_product_ids": ["a"]},
            {"estimated_time_delta_minutes": 50, "price_multiplier": 1.9, "disabled_product_ids": ["b"]},
        ]
        barrier = threading.Barrier(8)

        def worker(config):
            barrier.wait()
            for _ in range(25):
                mode_store.activate("t1", PEAK, config)

        threads = [threading.Thread(target=worker, args=(configs[i % 2],)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        final = mode_store.get("t1", PEAK).config
        assert final in (PeakDemandConfig.from_dict(configs[0]), PeakDemandConfig.from_dict(configs[1]))
        assert mode_store.get("t1", PEAK).version == 200


class TestSqlWorkers:
    """Separate sessions and lock registries against one file database, like separate workers."""

    def _worker(self, backing, clock, timezones) -> OperationalModeStore:
        return OperationalModeStore(
            backing, clock=clock, timezones=timezones, locks=KeyedLockRegistry(), default_ttl_minutes=60,
        )

    def test_interleaved_updates_are_not_lost(self, file_db_engine, clock, timezones):
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=file_db_engine)
        sessions = [SessionLocal() for _ in range(3)]
        try:
            setup = self._worker(SqlModeStateStore(sessions[0]), clock, timezones)
            setup.activate("t1", PEAK, {})

            barrier = threading.Barrier(2)
            first = self._worker(PauseAfterFirstRead(SqlModeStateStore(sessions[1]), barrier), clock, timezones)
            second = self._worker(PauseAfterFirstRead(SqlModeStateStore(sessions[2]), barrier), clock, timezones)

            errors = run_in_threads(
                lambda: first.update("t1", PEAK, {"estimated_time_delta_minutes": 33}),
                lambda: second.update("t1", PEAK, {"max_orders_per_hour": 77}),
            )

            assert errors == []
            state = setup.get("t1", PEAK)
            assert state.config.estimated_time_delta_minutes == 33
            assert state.config.max_orders_per_hour == 77
            assert state.version == 3
        finally:
            for session in sessions:
                session.close()

    def test_concurrent_first_activation_keeps_one_row(self, file_db_engine, clock, timezones):
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=file_db_engine)
        sessions = [SessionLocal() for _ in range(2)]
        try:
            barrier = threading.Barrier(2)
            first = self._worker(PauseAfterFirstLookup(sessions[0], barrier), clock, timezones)
            second = self._worker(PauseAfterFirstLookup(sessions[1], barrier), clock, timezones)

            errors = run_in_threads(
                lambda: first.activate("t1", PEAK, {"price_multiplier": 1.1}),
                lambda: second.activate("t1", PEAK, {"price_multiplier": 1.9}),
            )

            assert errors == []
            check = SessionLocal()
            try:
                rows = check.query(OperationalModeStateRecord).filter_by(tenant_id="t1").all()
                assert len(rows) == 1
                assert rows[0].version == 2
                assert rows[0].config["price_multiplier"] in (1.1, 1.9)
            finally:
                check.close()
        finally:
            for session in sessions:
                session.close()
