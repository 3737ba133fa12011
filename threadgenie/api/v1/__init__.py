"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/
"""

from fastapi import APIRouter

from threadgenie.api.v1.sessions import router as sessions_router
from threadgenie.api.v1.credentials import router as credentials_router
from threadgenie.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(sessions_router, prefix="/sessions", tags=["sessions"])
api_v1_router.include_router(credentials_router, prefix="/credentials", tags=["credentials"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
