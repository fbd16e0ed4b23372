"""Health check and settings endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request
from npc_social.config import preview_settings, update_settings as save_settings
from npc_social.errors import ConfigurationError
from npc_social.service import SocialService

from .deps import get_service

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(service: SocialService = Depends(get_service)):
    """Get runtime settings (rate limits, context bounds, cache, model wiring)."""
    return service.settings.public_dump()


@router.patch("/settings")
async def update_settings(
    body: dict, request: Request, service: SocialService = Depends(get_service)
):
    """Update settings (partial merge). Applied immediately and persisted."""
    data_dir = request.app.state.data_dir
    try:
        service.configure(preview_settings(data_dir, body))
    except (ValueError, ConfigurationError) as e:
        # ValueError covers pydantic ValidationError and out-of-range bounds
        raise HTTPException(422, str(e))
    save_settings(data_dir, body)
    return service.settings.public_dump()
