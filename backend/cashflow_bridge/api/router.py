from fastapi import APIRouter

from cashflow_bridge.api.routes import advances, health

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(advances.router)
