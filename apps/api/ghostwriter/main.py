from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ghostwriter.config import settings
from ghostwriter.db import async_session, init_models
from ghostwriter.logging_config import setup_logging
from ghostwriter.realtime.collaborators import Collaborators
from ghostwriter.realtime.lifecycle import RealtimeSessionController
from ghostwriter.realtime.registry import SessionRegistry
from ghostwriter.realtime.transport import RealtimeCredentials, RealtimeTransport
from ghostwriter.routers import health, sessions, ws
from ghostwriter.services.drafting_service import DraftQueueSweeper
from ghostwriter.services.llm_client import LLMClient
from ghostwriter.services.stores import build_collaborators

logger = structlog.get_logger()


def build_registry(collaborators: Collaborators) -> SessionRegistry:
    transport = RealtimeTransport(open_timeout=settings.channel_open_timeout_seconds)
    credentials = RealtimeCredentials(
        api_key=settings.openai_api_key,
        model=settings.realtime_model,
        url=settings.realtime_url,
    )
    return SessionRegistry(
        lambda: RealtimeSessionController(collaborators, transport, credentials, settings),
        media_timeout=settings.media_grant_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, settings.environment)
    logger.info("ghostwriter_starting", environment=settings.environment)
    if settings.auto_create_schema:
        await init_models()
    collaborators = build_collaborators(async_session, LLMClient())
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry(collaborators)
    sweeper = None
    if settings.draft_sweep_interval_seconds > 0:
        sweeper = DraftQueueSweeper(
            collaborators.drafts,
            interval=settings.draft_sweep_interval_seconds,
            batch_size=settings.draft_sweep_batch_size,
        )
        sweeper.start()
    yield
    if sweeper is not None:
        await sweeper.stop()
    await app.state.registry.close_all()
    logger.info("ghostwriter_shutting_down")


app = FastAPI(
    title="Ghostwriter Realtime API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(sessions.router)
app.include_router(ws.router)
