"""API routes."""

from fastapi import APIRouter

from restaurant_ops.api.routes import daily_cost, operational_modes

api_router = APIRouter()

api_router.include_router(operational_modes.router, prefix="/tenants", tags=["operational-modes"])
api_router.include_router(daily_cost.router, prefix="/tenants", tags=["daily-cost"])
