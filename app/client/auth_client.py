"""
Client-side authentication flow.

`AuthClient` is one browser/device: it owns a `SessionStore` and a
fingerprint provider and talks to the credential store through a
session factory.  Nothing here is global, so tests run several clients
against one store side by side.

State machine:

    ANONYMOUS → AUTHENTICATING → AUTHENTICATED → INVALIDATED → ANONYMOUS

Every store round-trip is one `run_in_transaction` unit of work with an
explicit timeout and one retry.

Sessions the client ends itself (sign-out, or signing in again over a
stored session) are recorded in `retired` before the store commits, so
a coordinator watching the change feed can tell them apart from
invalidations made elsewhere.  Listeners added with `add_listener` hear
about every local session the client stores or drops on its own.
"""

import enum
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.client.fingerprint import FingerprintProvider, HostFingerprint
from app.client.session_store import SessionStore
from app.core.database import run_in_transaction
from app.core.errors import SESSION_ENDING_ERRORS, StoreUnavailable
from app.models.user import User
from app.schemas import LocalSession
from app.services import auth_service

logger = logging.getLogger(__name__)


class AuthState(str, enum.Enum):
    ANONYMOUS = "ANONYMOUS"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
    INVALIDATED = "INVALIDATED"


class AuthClient:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: SessionStore,
        fingerprint: FingerprintProvider | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = store
        self.fingerprint = fingerprint or HostFingerprint()
        self.timeout = timeout
        self.state = AuthState.AUTHENTICATED if store.load() else AuthState.ANONYMOUS
        self.retired: set[str] = set()
        self._listeners: list[Callable[[LocalSession | None], None]] = []

    async def _run(self, work):
        return await run_in_transaction(self.session_factory, work, timeout=self.timeout)

    def add_listener(self, listener: Callable[[LocalSession | None], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, local: LocalSession | None) -> None:
        for listener in self._listeners:
            listener(local)

    @property
    def session(self) -> LocalSession | None:
        return self.store.load()

    # ── Sign-in / sign-up ────────────────────────────────────────────

    async def sign_in(self, username: str, password: str) -> LocalSession:
        """Authenticate and persist the new local session.  Errors propagate."""
        device = self.fingerprint.get()
        previous = self.store.load()
        if previous is not None:
            self.retired.add(previous.session_id)
        self.state = AuthState.AUTHENTICATING
        try:
            local = await self._run(
                lambda db: auth_service.sign_in(username, password, device, db)
            )
        except Exception:
            # rolled back: the stored session is still live
            if previous is not None:
                self.retired.discard(previous.session_id)
            self.state = AuthState.AUTHENTICATED if self.store.load() else AuthState.ANONYMOUS
            raise
        self.store.save(local)
        self.state = AuthState.AUTHENTICATED
        self._notify(local)
        return local

    async def sign_up(self, username: str, password: str, token: str) -> User:
        device = self.fingerprint.get()
        return await self._run(
            lambda db: auth_service.sign_up(
                username, password, token, db, device_fingerprint=device,
            )
        )

    async def mark_token_used(self, token: str, username: str) -> bool:
        """Retry hook for an account whose token was never flagged used."""
        return await self._run(lambda db: auth_service.mark_token_used(token, username, db))

    # ── Session lifecycle ────────────────────────────────────────────

    async def check_session(self) -> LocalSession | None:
        """
        Re-validate the stored session.

        None means ANONYMOUS.  AccessRevoked / TokenExpired /
        TokenDeactivated clear the local session and propagate.  A
        store outage keeps the stale session.
        """
        local = self.store.load()
        if local is None or not local.is_logged_in:
            self.state = AuthState.ANONYMOUS
            return None

        device = self.fingerprint.get()
        try:
            refreshed = await self._run(
                lambda db: auth_service.check_session(local, device, db)
            )
        except SESSION_ENDING_ERRORS as exc:
            logger.info("Session of %s ended: %s", local.username, exc.code)
            self.invalidate()
            raise
        except StoreUnavailable:
            logger.warning("Store unavailable during session check; keeping session")
            return local

        if refreshed is None:
            self.invalidate()
            return None

        # The push path may have invalidated or replaced the session while
        # this check was in flight; never resurrect it.
        current = self.store.load()
        if current is None or current.session_id != local.session_id:
            return current

        self.store.save(refreshed)
        self.state = AuthState.AUTHENTICATED
        return refreshed

    async def sign_out(self) -> None:
        """End the server session (best-effort) and always clear locally."""
        local = self.store.load()
        try:
            if local is not None:
                self.retired.add(local.session_id)
                await self._run(lambda db: auth_service.sign_out(local, db))
        except (StoreUnavailable, SQLAlchemyError):
            logger.exception("Error ending session during sign out")
        finally:
            self.store.clear()
            self.state = AuthState.ANONYMOUS
            self._notify(None)

    def invalidate(self) -> bool:
        """
        Drop the local session.  Returns False when there was nothing to
        drop, so racing invalidation paths can tell who got there first.
        """
        if self.store.load() is None:
            self.state = AuthState.ANONYMOUS
            return False
        self.store.clear()
        self.state = AuthState.INVALIDATED
        return True
