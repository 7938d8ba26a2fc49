"""Tests for the client-side unit of work: timeout, one retry, then StoreUnavailable."""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from app.core import database
from app.core.database import run_in_transaction
from app.core.errors import StoreUnavailable, UsernameTaken
from app.models.token import TokenDuration
from app.services import token_service


def _transient() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("connection reset"))


class _Work:
    """Callable unit of work that counts its attempts."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, db):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "slow":
            await asyncio.sleep(5)
        return outcome


@pytest.mark.asyncio
async def test_one_transient_failure_is_retried(session_factory):
    work = _Work(_transient(), "ok")

    assert await run_in_transaction(session_factory, work, timeout=5) == "ok"
    assert work.calls == 2


@pytest.mark.asyncio
async def test_second_transient_failure_surfaces(session_factory):
    work = _Work(_transient(), _transient(), "ok")

    with pytest.raises(StoreUnavailable) as excinfo:
        await run_in_transaction(session_factory, work, timeout=5)

    assert work.calls == 2
    assert isinstance(excinfo.value.__cause__, OperationalError)


@pytest.mark.asyncio
async def test_slow_store_times_out_after_two_attempts(session_factory):
    work = _Work("slow", "slow")

    with pytest.raises(StoreUnavailable):
        await run_in_transaction(session_factory, work, timeout=0.05)

    assert work.calls == 2


@pytest.mark.asyncio
async def test_slow_first_attempt_then_success(session_factory):
    work = _Work("slow", "ok")

    assert await run_in_transaction(session_factory, work, timeout=0.05) == "ok"
    assert work.calls == 2


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried(session_factory):
    work = _Work(UsernameTaken())

    with pytest.raises(UsernameTaken):
        await run_in_transaction(session_factory, work, timeout=5)

    assert work.calls == 1


@pytest.mark.asyncio
async def test_default_timeout_comes_from_settings(session_factory, monkeypatch):
    monkeypatch.setattr(database.settings, "STORE_TIMEOUT_SECONDS", 0.05)
    work = _Work("slow", "slow")

    with pytest.raises(StoreUnavailable):
        await run_in_transaction(session_factory, work)

    assert work.calls == 2


@pytest.mark.asyncio
async def test_failed_attempt_is_rolled_back(session_factory, store_rows):
    attempts = []

    async def _issue(db):
        token = token_service.new_token(TokenDuration.THREE_MONTHS)
        db.add(token)
        await db.flush()
        attempts.append(token.token)
        if len(attempts) == 1:
            raise _transient()
        return token.token

    value = await run_in_transaction(session_factory, _issue, timeout=5)

    assert [t.token for t in await store_rows.tokens()] == [value]
    assert await store_rows.token(attempts[0]) is None
