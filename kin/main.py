"""kin - family accountability: task completions, proof verification, points and streaks."""

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from kin.agents.verification_agent import VerificationAgent
from kin.core.config import constants, settings
from kin.core.db_client import DBClient
from kin.core.logging import configure_logfire, instrument_fastapi, instrument_pydantic_ai
from kin.core.schema import init_db
from kin.interface.completion_router import register_error_handlers, router as completion_router
from kin.interface.storage_client import StorageClient
from kin.services.completion_service import CompletionService
from kin.services.store import SQLiteCompletionStore


logger = logging.getLogger(__name__)


def validate_startup_configuration() -> None:
    """Fail fast when required credentials are missing."""
    logger.info("startup_validation_begin")
    try:
        settings.require_credential("openrouter_api_key", "OpenRouter API key")
    except ValueError as e:
        logger.error("startup_validation_failed", extra={"error": str(e)})
        print(f"\n❌ Startup validation failed: {e}\n", file=sys.stderr)  # noqa: T201
        sys.exit(1)
    logger.info("startup_validation_complete", extra={"status": "ok"})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager."""
    # Startup
    # Configure logging first so validation logs are captured
    configure_logfire()
    validate_startup_configuration()

    db = DBClient(settings.sqlite_db_path)
    try:
        await init_db(db)
        logger.info("Database initialized")

        instrument_pydantic_ai()
        async with httpx.AsyncClient(timeout=constants.UPLOAD_TIMEOUT_SECONDS) as http_client:
            app.state.completion_service = CompletionService(
                store=SQLiteCompletionStore(db),
                object_store=StorageClient.from_settings(settings, client=http_client),
                verifier=VerificationAgent.from_settings(settings),
                settings=settings,
            )
            yield
    finally:
        # Shutdown
        await db.close()


app = FastAPI(
    title="kin",
    description="Family accountability: task completions, proof verification, points and streaks",
    version="0.1.0",
    lifespan=lifespan,
)

# Instrument FastAPI with Logfire
instrument_fastapi(app)

# Register routers
app.include_router(completion_router)
register_error_handlers(app)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "healthy"}, status_code=200)
