"""AB Jail Core API.

Serves the inbound channel webhooks, the manual pipeline triggers, case
views and comment submission, violation reports and signed blob downloads.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from abjail_core.api.routes import blobs, cases, inbound, pipeline, reports, submissions
from abjail_core.config import get_settings
from abjail_core.infra.db import dispose_engine
from abjail_core.observability import configure_logging, get_logger

VERSION = "0.1.0"

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        service_name="abjail-core",
    )
    app.state.settings = settings
    logger.info("app:started", version=VERSION, platforms=settings.landing_platform_domains)
    yield
    dispose_engine()


app = FastAPI(
    title="AB Jail Core API",
    description="Ingestion and AI classification of political fundraising messages",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (blobs, cases, inbound, pipeline, reports, submissions):
    app.include_router(module.router)


@app.get("/healthz")
async def health_check() -> dict:
    return {"ok": True, "service": "abjail-core"}


@app.get("/")
async def root() -> dict:
    return {"name": "AB Jail Core API", "version": VERSION, "status": "running"}
