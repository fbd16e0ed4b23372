"""Contacts, DM thread and send-message endpoints."""

import math

from fastapi import APIRouter, Depends, HTTPException

from npc_social.models import Failure
from npc_social.service import SocialService

from .deps import current_user, get_service
from .models import AddContact, SendMessage

router = APIRouter()

_FAILURE_STATUS = {
    "validation_error": 422,
    "rate_limited": 429,
    "superseded": 409,
    "model_unavailable": 503,
}


def _require_npc(service: SocialService, npc_id: str) -> None:
    account = service.get_account(npc_id)
    if account is None or account.kind != "npc":
        raise HTTPException(404, "Conversation not found")


@router.get("/contacts")
async def list_contacts(
    user_id: str = Depends(current_user), service: SocialService = Depends(get_service)
):
    """List the user's contacts, oldest first."""
    return [c.model_dump(mode="json") for c in service.list_contacts(user_id)]


@router.post("/contacts", status_code=201)
async def add_contact(
    body: AddContact,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Add a contact. Adding an existing contact returns it unchanged."""
    return service.add_contact(user_id, body.account_id).model_dump(mode="json")


@router.get("/conversations/{npc_id}/messages")
async def get_messages(
    npc_id: str,
    cursor: str | None = None,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """One page of the DM thread, oldest first."""
    _require_npc(service, npc_id)
    page = await service.fetch_dm_page(user_id, npc_id, cursor)
    return page.model_dump(mode="json")


@router.get("/conversations/{npc_id}/history")
async def get_history(
    npc_id: str,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """The messages currently in scope for the NPC's model context."""
    _require_npc(service, npc_id)
    return [m.model_dump(mode="json") for m in service.relationship_history(user_id, npc_id)]


@router.post("/conversations/{npc_id}/messages")
async def send_message(
    npc_id: str,
    body: SendMessage,
    user_id: str = Depends(current_user),
    service: SocialService = Depends(get_service),
):
    """Send a message to an NPC and return the exchange, including its reply."""
    _require_npc(service, npc_id)
    outcome = await service.send_message(user_id, npc_id, body.text, body.request_id)
    if isinstance(outcome, Failure):
        headers = None
        if outcome.retry_after is not None:
            headers = {"Retry-After": str(max(1, math.ceil(outcome.retry_after)))}
        raise HTTPException(
            _FAILURE_STATUS[outcome.kind],
            outcome.model_dump(mode="json"),
            headers=headers,
        )
    return outcome.model_dump(mode="json")
