"""
FastAPI application factory.

Assembles the app, registers all routers, and wires up lifecycle
events.  Database schema is managed by Alembic — NOT create_all.
"""

import asyncio
import contextlib
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.controllers.admin_controller import router as admin_router
from app.controllers.auth_controller import router as auth_router
from app.core.config import settings
from app.core.database import ServiceSessionLocal, engine, service_engine
from app.core.errors import AuthError
from app.models import Base  # noqa: F401  registers every table
from app.services.maintenance import run_token_sweeper

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(*, run_maintenance: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(admin_router)

    # ── Errors ───────────────────────────────────────────────────────
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=exc.headers,
        )

    # ── Startup / Shutdown ───────────────────────────────────────────
    sweeper: dict[str, asyncio.Task] = {}

    @app.on_event("startup")
    async def on_startup() -> None:
        """Start the token-expiry sweep.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        if run_maintenance:
            sweeper["task"] = asyncio.create_task(run_token_sweeper(ServiceSessionLocal))
            logger.info("Token expiry sweep started.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        task = sweeper.pop("task", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await engine.dispose()
        if service_engine is not engine:
            await service_engine.dispose()
        logger.info("Database engines disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
