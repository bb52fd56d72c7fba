"""Health check and settings endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Non-secret server settings (endpoint, model, retry policy, emotion set)."""
    return request.app.state.settings.public()
