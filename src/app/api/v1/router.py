"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import cards, health, integrations

router = APIRouter()

# Health checks stay at the root
router.include_router(health.router)

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(integrations.router)
api_router.include_router(cards.router)

router.include_router(api_router)
