"""FastAPI application for the guided look workflow backend."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .auth import init_firebase
from .credits_api import router as credits_router
from .db import init_db
from .settings import settings
from .workflows import router as workflows_router


logger = logging.getLogger("guided-look")
logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

app = FastAPI(title="Guided Look Backend", version="0.1.0")
app.include_router(workflows_router)
app.include_router(credits_router)


@app.on_event("startup")
async def startup_event() -> None:
    """Initialise Firebase and create the workflow tables if needed."""
    init_firebase()
    await init_db()
    logger.info(
        "Firebase and database initialised; provider=%s; tier limits=%s",
        settings.provider,
        settings.tier_limits,
    )
    if settings.uses_default_secret:
        logger.warning("Confirmation tokens are signed with the default secret; set GUIDED_LOOK_CONFIRMATION_SECRET")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health endpoint to confirm the service is up."""
    return {"status": "ok"}
