"""
API router aggregator.
Includes all route modules.
"""
from fastapi import APIRouter
from emailkit.api import health, usage, billing

api_router = APIRouter()
v1_router = APIRouter()

# Versioned billing routes
v1_router.include_router(usage.router, prefix="/usage", tags=["usage"])
v1_router.include_router(billing.router, prefix="/billing", tags=["billing"])

api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(v1_router, prefix="/v1")
