"""Request dependencies shared by the route modules."""

from fastapi import HTTPException, Request

from npc_social.service import SocialService


def get_service(request: Request) -> SocialService:
    return request.app.state.service


def current_user(request: Request) -> str:
    """FastAPI dependency: extract X-User-Id header or raise 401.

    The core never checks credentials itself; the fronting auth layer sets
    this header after verifying the session.
    """
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
