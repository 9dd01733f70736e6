from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from genpipe.config import settings
from genpipe.api.callbacks import router as callbacks_router
from genpipe.api.credits import router as credits_router
from genpipe.api.devices import router as devices_router
from genpipe.api.generations import router as generations_router
from genpipe.database import async_session_factory
from genpipe.integrations.fcm_client import FcmPushClient
from genpipe.integrations.providers.registry import build_registry
from genpipe.services.generation_orchestrator import GenerationOrchestrator
from genpipe.services.notifier import Notifier
from genpipe.services.reconciliation_sweeper import ReconciliationSweeper

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("starting_up", env=settings.APP_ENV)
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis.ping()
        log.info("redis_connected", url=settings.REDIS_URL)
    except Exception as e:
        log.warning("redis_connection_failed", error=str(e))
    app.state.redis = redis

    providers = build_registry(settings)
    push_client = FcmPushClient(settings.FCM_SERVER_KEY, url=settings.FCM_URL) if settings.FCM_SERVER_KEY else None
    notifier = Notifier(redis, push_client, async_session_factory)
    orchestrator = GenerationOrchestrator(async_session_factory, providers, notifier, settings)
    sweeper = ReconciliationSweeper(async_session_factory, orchestrator, providers, settings)
    app.state.providers = providers
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper

    if settings.SWEEPER_ENABLED:
        await sweeper.start()

    yield

    # Shutdown
    log.info("shutting_down")
    await sweeper.stop()
    await orchestrator.shutdown()
    await redis.close()


app = FastAPI(
    title="Generation Pipeline",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(generations_router)
app.include_router(callbacks_router)
app.include_router(credits_router)
app.include_router(devices_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
