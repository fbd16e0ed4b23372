"""FastAPI API endpoints under /api.

Endpoint groups: settings/health, social (timeline, posts, NPC directory,
reset) and messenger (contacts, DM threads, sends). Every user-scoped
endpoint reads the caller's id from the X-User-Id header, which the
fronting auth layer sets after verifying the session.
"""

from fastapi import APIRouter

from .messenger import router as messenger_router
from .settings import router as settings_router
from .social import router as social_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(social_router)
router.include_router(messenger_router)
