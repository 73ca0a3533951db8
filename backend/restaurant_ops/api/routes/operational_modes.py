"""
Operational Mode API Endpoints
Peak demand ("rain mode") and special hours controls, plus the effective-mode
snapshot consumed by the order pipeline
"""

import logging

from fastapi import APIRouter, HTTPException, Request

from restaurant_ops.core.rate_limit import limiter
from restaurant_ops.db.session import DbSession
from restaurant_ops.schemas.operational_mode import (
    EffectiveModesResponse,
    ModeActivationRequest,
    ModeStateResponse,
    ModeUpdateRequest,
)
from restaurant_ops.services.effect_resolver import EffectResolver
from restaurant_ops.services.mode_config import (
    InvalidConfigError,
    ModeKind,
    ModeNotActiveError,
    ModeWriteConflictError,
    parse_mode_kind,
)
from restaurant_ops.services.operational_mode_service import OperationalModeStore, SqlModeStateStore
from restaurant_ops.services.tenant_service import TenantTimezoneResolver

logger = logging.getLogger(__name__)


router = APIRouter()


def _mode_store(db) -> OperationalModeStore:
    return OperationalModeStore(SqlModeStateStore(db), timezones=TenantTimezoneResolver(db))


def _parse_kind(kind: str) -> ModeKind:
    try:
        return parse_mode_kind(kind)
    except InvalidConfigError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _invalid_config(e: InvalidConfigError) -> HTTPException:
    return HTTPException(status_code=422, detail={"message": str(e), "field": e.field})


# ==================== ENDPOINTS ====================

@router.get("/{tenant_id}/modes/{kind}", response_model=ModeStateResponse)
@limiter.limit("120/minute")
def get_mode_state(request: Request, tenant_id: str, kind: str, db: DbSession):
    """Get the current state of a mode; an expired mode is reported inactive"""
    mode_kind = _parse_kind(kind)
    state = _mode_store(db).get(tenant_id, mode_kind)
    return ModeStateResponse.from_state(tenant_id, state)


@router.post("/{tenant_id}/modes/{kind}/activate", response_model=ModeStateResponse)
@limiter.limit("30/minute")
def activate_mode(request: Request, tenant_id: str, kind: str, body: ModeActivationRequest, db: DbSession):
    """
    Activate a mode, replacing any previous configuration

    - Peak demand expires after ttl_minutes (or the configured default)
    - Special hours expire at the end of the tenant's current local day
    """
    mode_kind = _parse_kind(kind)
    try:
        state = _mode_store(db).activate(tenant_id, mode_kind, body.config, ttl_minutes=body.ttl_minutes)
    except InvalidConfigError as e:
        raise _invalid_config(e)
    return ModeStateResponse.from_state(tenant_id, state)


@router.patch("/{tenant_id}/modes/{kind}", response_model=ModeStateResponse)
@limiter.limit("30/minute")
def update_mode_config(request: Request, tenant_id: str, kind: str, body: ModeUpdateRequest, db: DbSession):
    """Change some fields of an active mode without moving its expiry"""
    mode_kind = _parse_kind(kind)
    try:
        state = _mode_store(db).update(tenant_id, mode_kind, body.config)
    except (ModeNotActiveError, ModeWriteConflictError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidConfigError as e:
        raise _invalid_config(e)
    return ModeStateResponse.from_state(tenant_id, state)


@router.delete("/{tenant_id}/modes/{kind}", response_model=ModeStateResponse)
@limiter.limit("30/minute")
def deactivate_mode(request: Request, tenant_id: str, kind: str, db: DbSession):
    """Deactivate a mode. Succeeds when the mode is already inactive."""
    mode_kind = _parse_kind(kind)
    store = _mode_store(db)
    try:
        store.deactivate(tenant_id, mode_kind)
    except ModeWriteConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ModeStateResponse.from_state(tenant_id, store.get(tenant_id, mode_kind))


@router.get("/{tenant_id}/effective-modes", response_model=EffectiveModesResponse)
@limiter.limit("300/minute")
def get_effective_modes(request: Request, tenant_id: str, db: DbSession):
    """Net price/ETA/capacity effect of the active modes, valid for a single quote"""
    snapshot = EffectResolver(_mode_store(db)).resolve(tenant_id)
    return EffectiveModesResponse.from_snapshot(snapshot)
