# margin_leakage/api/health.py
"""Liveness and model backend configuration."""

from fastapi import APIRouter, Depends
from ..models.analysis import HealthResponse
from ..core.config import get_settings, Settings

router = APIRouter(tags=["health"])

@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)):
    # Reports configuration only; no backend is contacted.
    return HealthResponse(
        status="ok",
        version=settings.app_version,
        services={
            "vertex_ai": bool(settings.vertex_project),
            "openrouter": bool(settings.openrouter_api_key),
        },
    )
