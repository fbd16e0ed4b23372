"""Timeline, post, account, NPC directory and game reset endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from npc_social.errors import AccountLimitReached
from npc_social.service import SocialService

from .deps import current_user, get_service
from .models import CreateAccount, CreatePost, UpdateAccount

router = APIRouter()


@router.get("/timeline")
async def get_timeline(
    cursor: str | None = None,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """One page of the user's timeline, newest first."""
    page = await service.fetch_timeline_page(user_id, cursor)
    return page.model_dump(mode="json")


@router.post("/timeline/init")
async def init_timeline(
    user_id: str = Depends(current_user), service: SocialService = Depends(get_service)
):
    """Copy seeded NPC posts onto the user's timeline."""
    return {"added": service.initialize_timeline(user_id)}


@router.post("/posts", status_code=201)
async def create_post(
    body: CreatePost,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Publish a post, optionally as a reply to another post."""
    return service.create_post(user_id, body.content, body.reply_to).model_dump(mode="json")


@router.get("/posts/{post_id}/thread")
async def get_thread(
    post_id: str,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """A post and its replies, flattened with depth."""
    return [e.model_dump(mode="json") for e in service.post_thread(user_id, post_id)]


@router.get("/npcs")
async def list_npcs(service: SocialService = Depends(get_service)):
    """List NPC accounts."""
    return [a.model_dump(mode="json") for a in service.list_npcs()]


@router.get("/accounts/{account_id}")
async def get_account(account_id: str, service: SocialService = Depends(get_service)):
    """Get one account profile."""
    account = service.get_account(account_id)
    if account is None:
        raise HTTPException(404, "Account not found")
    return account.model_dump(mode="json")


# ── Player accounts ──────────────────────────────────────


@router.get("/me/accounts")
async def list_my_accounts(
    user_id: str = Depends(current_user), service: SocialService = Depends(get_service)
):
    """List the social accounts the user created, oldest first."""
    return [a.model_dump(mode="json") for a in service.list_player_accounts(user_id)]


@router.post("/me/accounts", status_code=201)
async def create_my_account(
    body: CreateAccount,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Create a social account. The first one becomes active."""
    try:
        account = service.create_player_account(user_id, body.display_name, body.avatar_ref)
    except AccountLimitReached as e:
        raise HTTPException(409, str(e))
    return account.model_dump(mode="json")


@router.delete("/me/accounts/{account_id}")
async def delete_my_account(
    account_id: str,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Delete one of the user's social accounts."""
    service.delete_player_account(user_id, account_id)
    return {"ok": True}


@router.post("/me/accounts/{account_id}/activate")
async def activate_my_account(
    account_id: str,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Make the account the one the user posts as."""
    return service.switch_active_account(user_id, account_id).model_dump(mode="json")


@router.patch("/accounts/{account_id}")
async def update_account(
    account_id: str,
    body: UpdateAccount,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Change display name or avatar of an account the user controls."""
    account = service.update_account(user_id, account_id, body.display_name, body.avatar_ref)
    return account.model_dump(mode="json")


@router.post("/reset")
async def reset_game(
    user_id: str = Depends(current_user), service: SocialService = Depends(get_service)
):
    """Clear every relationship, contact, thread and cached page for the user."""
    service.reset_game(user_id)
    return {"ok": True}
