"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.

`LocalSession` doubles as the client-side session record: it is what
`SessionStore` persists and what the access token carries.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.token import TokenDuration


# ── Session ──────────────────────────────────────────────────────────
class LocalSession(BaseModel):
    username: str
    user_id: str
    session_id: str
    device_fingerprint: str | None = None
    token: str | None = None
    token_expiry: datetime | None = None
    created_at: datetime | None = None
    is_admin: bool = False
    is_logged_in: bool = True


# ── Auth ─────────────────────────────────────────────────────────────
class SignInRequest(BaseModel):
    username: str
    password: str
    device_fingerprint: str = Field(min_length=1, max_length=256)


class SignUpRequest(BaseModel):
    username: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1)
    token: str = Field(min_length=1)
    device_fingerprint: str | None = Field(default=None, max_length=256)


class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    session: LocalSession


# ── User ─────────────────────────────────────────────────────────────
class UserOut(BaseModel):
    id: uuid.UUID
    username: str
    token: str | None = None
    token_expiry: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Token ────────────────────────────────────────────────────────────
class GenerateTokenRequest(BaseModel):
    duration: TokenDuration


class RenewTokenRequest(BaseModel):
    duration: TokenDuration


class TokenOut(BaseModel):
    id: uuid.UUID
    token: str
    duration: TokenDuration
    expiry_date: datetime
    is_used: bool
    used_by: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str


class ExpirySweepResponse(BaseModel):
    expired_users: int
