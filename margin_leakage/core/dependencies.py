# margin_leakage/core/dependencies.py
"""Dependency injection for FastAPI."""

from functools import lru_cache
from fastapi import Header, HTTPException, status
from typing import Optional

from .config import get_settings, Settings
from ..llm_analyzer import (
    VertexGeminiClient, OpenRouterClient, build_vertex_client, build_openrouter_client
)
from ..services.storage import MongoStorage
from ..services.analysis_service import MarginAnalysisService
from ..services.combine_service import CombineService

@lru_cache()
def get_storage() -> MongoStorage:
    """Get the shared MongoDB/GridFS store."""
    return MongoStorage(get_settings())

@lru_cache()
def get_vertex_client() -> VertexGeminiClient:
    return build_vertex_client(get_settings())

@lru_cache()
def get_openrouter_client() -> OpenRouterClient:
    return build_openrouter_client(get_settings())

@lru_cache()
def get_analysis_service() -> MarginAnalysisService:
    """Get analysis service singleton."""
    return MarginAnalysisService(
        storage=get_storage(),
        vertex_client=get_vertex_client(),
        openrouter_client=build_openrouter_client(get_settings(), title="AI CRM"),
        settings=get_settings(),
    )

@lru_cache()
def get_combine_service() -> CombineService:
    """Get combine service singleton."""
    return CombineService(
        storage=get_storage(),
        openrouter_client=get_openrouter_client(),
        settings=get_settings(),
    )

def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity; requests without an X-User-Id header act as 'anonymous'."""
    return (x_user_id or "").strip() or "anonymous"

def validate_file_upload(file_content: bytes, filename: str, settings: Settings):
    """Validate uploaded file."""
    # Check file extension
    extension = "." + filename.split(".")[-1].lower() if filename and "." in filename else ""
    if extension not in settings.allowed_file_extensions:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported file type. Allowed: {', '.join(settings.allowed_file_extensions)}"
        )

    # Check file size
    if len(file_content) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size: {settings.max_file_size / (1024*1024):.1f}MB"
        )

    return True
