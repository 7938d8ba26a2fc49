"""
Admin controller — token management, user management, maintenance.

Every route uses `Depends(require_admin)` for enforcement.
Controllers are THIN — they delegate to services and return schemas.
All routes run on the elevated store credentials.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_service_db
from app.rbac.dependencies import require_admin
from app.schemas import (
    ExpirySweepResponse,
    GenerateTokenRequest,
    MessageResponse,
    RenewTokenRequest,
    TokenOut,
    UserOut,
)
from app.services import maintenance, token_service, user_service

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)],
)


# ── Tokens ───────────────────────────────────────────────────────────
@router.post("/tokens", response_model=TokenOut, status_code=201)
async def generate_token(
    body: GenerateTokenRequest,
    db: AsyncSession = Depends(get_service_db),
):
    """Issue a new invitation token."""
    token = await token_service.generate_token(body.duration, db)
    return TokenOut.model_validate(token)


@router.get("/tokens", response_model=dict[str, list[TokenOut]])
async def list_tokens(db: AsyncSession = Depends(get_service_db)):
    """All tokens, grouped by duration."""
    tokens = await token_service.list_tokens(db)
    grouped = token_service.group_tokens_by_duration(tokens)
    return {
        duration: [TokenOut.model_validate(t) for t in items]
        for duration, items in grouped.items()
    }


@router.delete("/tokens/{token_id}", response_model=MessageResponse)
async def delete_unused_token(
    token_id: uuid.UUID,
    db: AsyncSession = Depends(get_service_db),
):
    await token_service.delete_unused_token(token_id, db)
    return MessageResponse(detail="Token deleted successfully")


@router.post("/tokens/expire", response_model=ExpirySweepResponse)
async def expire_tokens(db: AsyncSession = Depends(get_service_db)):
    """Run the token-expiry sweep now."""
    expired = await maintenance.expire_tokens(db)
    return ExpirySweepResponse(expired_users=expired)


# ── Users ────────────────────────────────────────────────────────────
@router.get("/users", response_model=list[UserOut])
async def list_users(
    db: AsyncSession = Depends(get_service_db),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    users = await user_service.list_users(db, skip, limit)
    return [UserOut.model_validate(u) for u in users]


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_service_db),
):
    await user_service.delete_user(user_id, db)
    return MessageResponse(detail="User and associated token deleted successfully")


@router.delete("/users/{user_id}/token", response_model=MessageResponse)
async def delete_user_token(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_service_db),
):
    await user_service.delete_user_token(user_id, db)
    return MessageResponse(detail="Token deleted successfully")


@router.post("/users/{user_id}/renew", response_model=TokenOut)
async def renew_token(
    user_id: uuid.UUID,
    body: RenewTokenRequest,
    db: AsyncSession = Depends(get_service_db),
):
    token = await user_service.renew_token(user_id, body.duration, db)
    return TokenOut.model_validate(token)


@router.post("/users/{user_id}/force-logout", response_model=MessageResponse)
async def force_logout(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_service_db),
):
    count = await user_service.force_logout(user_id, db)
    return MessageResponse(detail=f"Ended {count} session(s)")
