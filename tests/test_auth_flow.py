"""Tests for sign-up, sign-in, session check and sign-out."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.client.auth_client import AuthState
from app.core.errors import (
    AccessRevoked,
    AlreadyLoggedInElsewhere,
    InvalidCredentials,
    InvalidToken,
    StoreUnavailable,
    TokenAlreadyUsed,
    TokenDeactivated,
    TokenExpired,
    UsernameTaken,
)
from app.models.base import as_utc, utcnow
from app.services import auth_service, session_service, user_service


def _store_down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("connection refused"))


# ── Sign-up ──────────────────────────────────────────────────────────

class TestSignUp:
    @pytest.mark.asyncio
    async def test_sign_up_consumes_token(self, make_client, issue_token, store_rows):
        token = await issue_token()

        user = await make_client("F1").sign_up("alice", "pa55word", token)

        assert user.username == "alice"
        assert user.token == token
        row = await store_rows.token(token)
        assert row.is_used is True
        assert row.used_by == "alice"
        stored = await store_rows.user("alice")
        assert stored.device_fingerprint == "F1"
        assert as_utc(stored.token_expiry) == as_utc(row.expiry_date)
        assert stored.password_hash != "pa55word"

    @pytest.mark.asyncio
    async def test_used_token_is_rejected(self, make_client, issue_token):
        token = await issue_token(is_used=True)

        for username, password in (("bob", "x"), ("carol", "another-password")):
            with pytest.raises(TokenAlreadyUsed):
                await make_client().sign_up(username, password, token)

    @pytest.mark.asyncio
    async def test_second_redemption_is_rejected(self, make_client, registered_user):
        _, _, token = await registered_user("alice")

        with pytest.raises(TokenAlreadyUsed):
            await make_client().sign_up("bob", "pa55word", token)

    @pytest.mark.asyncio
    async def test_unknown_token(self, make_client):
        with pytest.raises(InvalidToken):
            await make_client().sign_up("alice", "pa55word", "no-such-token")

    @pytest.mark.asyncio
    async def test_username_taken_checked_first(self, make_client, registered_user, issue_token):
        await registered_user("alice")
        fresh = await issue_token()

        with pytest.raises(UsernameTaken):
            await make_client().sign_up("alice", "other", fresh)
        # the fresh token stays redeemable
        await make_client().sign_up("bob", "other", fresh)

    @pytest.mark.asyncio
    async def test_admin_username_is_reserved(self, make_client, issue_token, store_rows):
        token = await issue_token()

        with pytest.raises(UsernameTaken):
            await make_client().sign_up("admin", "pa55word", token)

        assert await store_rows.user("admin") is None
        assert (await store_rows.token(token)).is_used is False

    @pytest.mark.asyncio
    async def test_failed_sign_up_writes_nothing(self, make_client, issue_token, store_rows):
        token = await issue_token(is_used=True)

        with pytest.raises(TokenAlreadyUsed):
            await make_client().sign_up("alice", "pa55word", token)

        assert await store_rows.user("alice") is None

    @pytest.mark.asyncio
    async def test_mark_token_used_is_idempotent(self, make_client, issue_token, store_rows):
        token = await issue_token()
        client = make_client()

        assert await client.mark_token_used(token, "alice") is True
        assert await client.mark_token_used(token, "alice") is True
        assert await client.mark_token_used("missing", "alice") is False
        assert (await store_rows.token(token)).used_by == "alice"


# ── Sign-in ──────────────────────────────────────────────────────────

class TestSignIn:
    @pytest.mark.asyncio
    async def test_sign_up_then_sign_in_yields_one_active_session(
        self, make_client, registered_user, store_rows,
    ):
        username, password, token = await registered_user()
        client = make_client("F1")

        local = await client.sign_in(username, password)

        user = await store_rows.user(username)
        active = await store_rows.active_sessions(user.id)
        assert [s.session_id for s in active] == [local.session_id]
        assert local.user_id == str(user.id)
        assert local.token == token
        assert local.device_fingerprint == "F1"
        assert local.is_admin is False
        assert client.session == local
        assert client.state is AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_second_device_is_refused(self, make_client, registered_user):
        username, password, _ = await registered_user()
        first = make_client("F1")
        second = make_client("F2")

        await first.sign_in(username, password)
        with pytest.raises(AlreadyLoggedInElsewhere):
            await second.sign_in(username, password)

        assert second.session is None
        assert second.state is AuthState.ANONYMOUS
        assert first.session is not None

    @pytest.mark.asyncio
    async def test_same_device_supersedes_previous_session(
        self, make_client, registered_user, store_rows,
    ):
        username, password, _ = await registered_user()
        browser_a = make_client("F1")
        browser_b = make_client("F1")

        old = await browser_a.sign_in(username, password)
        new = await browser_b.sign_in(username, password)

        user = await store_rows.user(username)
        assert [s.session_id for s in await store_rows.active_sessions(user.id)] == [new.session_id]
        assert old.session_id != new.session_id

    @pytest.mark.asyncio
    async def test_wrong_password(self, make_client, registered_user):
        username, _, _ = await registered_user()
        client = make_client()

        with pytest.raises(InvalidCredentials):
            await client.sign_in(username, "wrong")
        assert client.state is AuthState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_unknown_user(self, make_client):
        with pytest.raises(InvalidCredentials):
            await make_client().sign_in("ghost", "whatever")

    @pytest.mark.asyncio
    async def test_sign_in_after_force_logout_moves_to_new_device(
        self, make_client, registered_user, uow,
    ):
        username, password, _ = await registered_user()
        first = make_client("F1")
        local = await first.sign_in(username, password)
        user_id = uuid.UUID(local.user_id)

        await uow(lambda db: user_service.force_logout(user_id, db))
        await make_client("F2").sign_in(username, password)

        assert not await uow(
            lambda db: session_service.validate_session(local.session_id, user_id, "F1", db)
        )

    @pytest.mark.asyncio
    async def test_store_outage_surfaces_on_sign_in(self, make_client, registered_user, monkeypatch):
        username, password, _ = await registered_user()
        client = make_client()
        monkeypatch.setattr(auth_service, "sign_in", _store_down)

        with pytest.raises(StoreUnavailable):
            await client.sign_in(username, password)
        assert client.state is AuthState.ANONYMOUS


class TestAdminSignIn:
    @pytest.mark.asyncio
    async def test_admin_bypasses_registry(self, make_client):
        client = make_client()

        local = await client.sign_in("admin", "admin-secret")

        assert local.is_admin is True
        assert local.user_id == auth_service.ADMIN_USER_ID
        assert local.session_id
        assert await client.check_session() == local

    @pytest.mark.asyncio
    async def test_wrong_admin_password(self, make_client):
        with pytest.raises(InvalidCredentials):
            await make_client().sign_in("admin", "nope")

    @pytest.mark.asyncio
    async def test_admin_session_with_stale_username_is_cleared(self, make_client, monkeypatch):
        client = make_client()
        await client.sign_in("admin", "admin-secret")
        monkeypatch.setattr(auth_service.settings, "ADMIN_USERNAME", "root")

        assert await client.check_session() is None
        assert client.session is None
        assert client.state is AuthState.INVALIDATED


# ── Session check ───────────────────────────────────────────────────

class TestCheckSession:
    @pytest.mark.asyncio
    async def test_anonymous(self, make_client):
        client = make_client()
        assert await client.check_session() is None
        assert client.state is AuthState.ANONYMOUS

    @pytest.mark.asyncio
    async def test_valid_session_is_refreshed(self, make_client, registered_user, uow):
        username, password, _ = await registered_user()
        client = make_client("F1")
        local = await client.sign_in(username, password)
        renewed = await uow(
            lambda db: user_service.renew_token(uuid.UUID(local.user_id), "1year", db)
        )

        refreshed = await client.check_session()

        assert refreshed.session_id == local.session_id
        assert refreshed.token == renewed.token
        assert client.session.token == renewed.token

    @pytest.mark.asyncio
    async def test_deleted_user_clears_session(self, make_client, registered_user, uow):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)
        await uow(lambda db: user_service.delete_user(uuid.UUID(local.user_id), db))

        with pytest.raises(AccessRevoked):
            await client.check_session()
        assert client.session is None
        assert client.state is AuthState.INVALIDATED

    @pytest.mark.asyncio
    async def test_pulled_token_clears_session(self, make_client, registered_user, uow):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)
        await uow(lambda db: user_service.delete_user_token(uuid.UUID(local.user_id), db))

        with pytest.raises(TokenDeactivated):
            await client.check_session()
        assert client.session is None

    @pytest.mark.asyncio
    async def test_expired_token_clears_session(self, make_client, registered_user, uow):
        username, password, token = await registered_user()
        client = make_client()
        await client.sign_in(username, password)

        async def _expire(db):
            row = await auth_service.get_token(token, db)
            row.expiry_date = utcnow() - timedelta(minutes=1)

        await uow(_expire)

        with pytest.raises(TokenExpired):
            await client.check_session()
        assert client.session is None

    @pytest.mark.asyncio
    async def test_unflagged_token_clears_session(self, make_client, registered_user, uow):
        username, password, token = await registered_user()
        client = make_client()
        await client.sign_in(username, password)

        async def _unflag(db):
            row = await auth_service.get_token(token, db)
            row.is_used = False

        await uow(_unflag)

        with pytest.raises(TokenDeactivated):
            await client.check_session()
        assert client.session is None

    @pytest.mark.asyncio
    async def test_rejected_session_is_kept(self, make_client, registered_user, uow):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)
        await uow(lambda db: user_service.force_logout(uuid.UUID(local.user_id), db))

        assert await client.check_session() == local
        assert client.session == local

    @pytest.mark.asyncio
    async def test_store_outage_keeps_stale_session(
        self, make_client, registered_user, monkeypatch,
    ):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)
        monkeypatch.setattr(auth_service, "check_session", _store_down)

        assert await client.check_session() == local
        assert client.session == local
        assert client.state is AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_check_does_not_resurrect_cleared_session(
        self, make_client, registered_user, monkeypatch,
    ):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)
        real_check = auth_service.check_session

        async def check_then_invalidate(*args, **kwargs):
            result = await real_check(*args, **kwargs)
            client.invalidate()
            return result

        monkeypatch.setattr(auth_service, "check_session", check_then_invalidate)

        assert await client.check_session() is None
        assert client.session is None
        assert local.session_id


# ── Sign-out ─────────────────────────────────────────────────────────

class TestSignOut:
    @pytest.mark.asyncio
    async def test_sign_out_ends_server_session(self, make_client, registered_user, store_rows):
        username, password, _ = await registered_user()
        client = make_client()
        local = await client.sign_in(username, password)

        await client.sign_out()

        assert client.session is None
        assert client.state is AuthState.ANONYMOUS
        assert await store_rows.active_sessions(uuid.UUID(local.user_id)) == []

    @pytest.mark.asyncio
    async def test_sign_out_clears_locally_when_store_is_down(
        self, make_client, registered_user, monkeypatch,
    ):
        username, password, _ = await registered_user()
        client = make_client()
        await client.sign_in(username, password)
        monkeypatch.setattr(auth_service, "sign_out", _store_down)

        await client.sign_out()

        assert client.session is None

    @pytest.mark.asyncio
    async def test_other_device_may_sign_in_after_sign_out(self, make_client, registered_user):
        username, password, _ = await registered_user()
        first = make_client("F1")
        await first.sign_in(username, password)
        await first.sign_out()

        local = await make_client("F2").sign_in(username, password)
        assert local.device_fingerprint == "F2"

    @pytest.mark.asyncio
    async def test_invalidate_reports_whether_anything_was_cleared(
        self, make_client, registered_user,
    ):
        username, password, _ = await registered_user()
        client = make_client()
        await client.sign_in(username, password)

        assert client.invalidate() is True
        assert client.state is AuthState.INVALIDATED
        assert client.invalidate() is False
        assert client.state is AuthState.ANONYMOUS
