"""Pydantic request models for API endpoints."""

from pydantic import BaseModel


class CreatePost(BaseModel):
    content: str
    reply_to: str | None = None


class AddContact(BaseModel):
    account_id: str


class SendMessage(BaseModel):
    text: str
    request_id: str | None = None


class CreateAccount(BaseModel):
    display_name: str
    avatar_ref: str = ""


class UpdateAccount(BaseModel):
    display_name: str | None = None
    avatar_ref: str | None = None
