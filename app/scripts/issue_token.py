"""
Operator script — issue an invitation token from the shell.

Usage:
    python -m app.scripts.issue_token            # prompts for duration
    python -m app.scripts.issue_token 6month

Handy before the admin console is reachable, or to hand out a token
without signing in as admin.
"""

import asyncio
import sys

from app.core.config import settings
from app.core.database import build_engine, build_session_factory
from app.models.token import TokenDuration
from app.services import token_service

DURATIONS = [d.value for d in TokenDuration]


async def issue_token(duration: str | None = None) -> int:
    if duration is None:
        print("\n🔧  Token Gate — Issue Invitation Token\n")
        duration = input(f"  Duration ({', '.join(DURATIONS)}): ").strip()

    if duration not in DURATIONS:
        print(f"\n❌  Unknown duration '{duration}'. Choose one of: {', '.join(DURATIONS)}.")
        return 1

    engine = build_engine(settings.ELEVATED_DATABASE_URL)
    session_factory = build_session_factory(engine)
    try:
        async with session_factory() as session:
            async with session.begin():
                token = await token_service.generate_token(TokenDuration(duration), session)
    finally:
        await engine.dispose()

    print(f"\n✅  Token issued!")
    print(f"    Token:   {token.token}")
    print(f"    Expires: {token.expiry_date:%Y-%m-%d %H:%M} UTC")
    print(f"\n   Share it with the new user; it can be redeemed exactly once.\n")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(issue_token(sys.argv[1] if len(sys.argv) > 1 else None)))
