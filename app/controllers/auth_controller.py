"""
Auth controller — sign-up, sign-in, session check, sign-out & the
push channel.

Sign-up and sign-in are PUBLIC.  Everything else needs the bearer
access token returned by sign-in; the session check additionally
needs the device fingerprint the caller presents right now.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.change_feed import change_feed
from app.core.database import get_db, get_service_db
from app.core.errors import AccessRevoked, AuthError
from app.core.security import (
    create_access_token,
    decode_access_token,
    get_current_session,
    get_device_fingerprint,
)
from app.schemas import (
    LocalSession,
    MessageResponse,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    UserOut,
)
from app.services import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/signup", response_model=UserOut, status_code=201)
async def sign_up(body: SignUpRequest, db: AsyncSession = Depends(get_db)):
    """Redeem an invitation token and create the account."""
    user = await auth_service.sign_up(
        body.username, body.password, body.token, db,
        device_fingerprint=body.device_fingerprint,
    )
    return UserOut.model_validate(user)


@router.post("/signin", response_model=SessionResponse)
async def sign_in(body: SignInRequest, db: AsyncSession = Depends(get_service_db)):
    """Authenticate with username + password + device fingerprint."""
    local = await auth_service.sign_in(
        body.username, body.password, body.device_fingerprint, db,
    )
    return SessionResponse(access_token=create_access_token(local), session=local)


@router.get("/session", response_model=SessionResponse)
async def check_session(
    local: LocalSession = Depends(get_current_session),
    device_fingerprint: str = Depends(get_device_fingerprint),
    db: AsyncSession = Depends(get_service_db),
):
    """
    Re-validate the caller's session.  A rejected-but-not-revoked
    session comes back unchanged; revocations answer 401.
    """
    refreshed = await auth_service.check_session(local, device_fingerprint, db)
    if refreshed is None:
        raise AccessRevoked("Admin session no longer valid")
    return SessionResponse(access_token=create_access_token(refreshed), session=refreshed)


@router.delete("/signout", response_model=MessageResponse)
async def sign_out(
    local: LocalSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_service_db),
):
    """Deactivate the current session (server-side sign-out)."""
    await auth_service.sign_out(local, db)
    return MessageResponse(detail="Signed out successfully")


@router.websocket("/events")
async def session_events(websocket: WebSocket, access_token: str):
    """
    Push channel: stream change-feed events for the caller's user row
    and sessions as JSON until the client disconnects.
    """
    try:
        local = decode_access_token(access_token)
    except AuthError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if local.is_admin:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    users = change_feed.subscribe("users", column="username", value=local.username)
    sessions = change_feed.subscribe("sessions", column="user_id", value=local.user_id)
    forwarders = [
        asyncio.create_task(_forward(sub, websocket)) for sub in (users, sessions)
    ]
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Push channel closed for %s", local.username)
    finally:
        await _stop_forwarding(forwarders, (users, sessions))


async def _forward(sub, websocket: WebSocket) -> None:
    async for change in sub:
        await websocket.send_json(change.to_dict())


async def _stop_forwarding(forwarders, subscriptions) -> None:
    for task in forwarders:
        task.cancel()
    # collect failures too, e.g. a send on an already closed socket
    await asyncio.gather(*forwarders, return_exceptions=True)
    for sub in subscriptions:
        sub.close()
