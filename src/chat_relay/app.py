from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_relay.api.middleware.correlation_id import CorrelationIdMiddleware
from chat_relay.api.v1.routers import conversations, health, messages, ws
from chat_relay.application.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from chat_relay.config import settings
from chat_relay.infrastructure.bus.redis_pubsub import (
    RedisPubSubPublisher,
    RedisPubSubSubscriber,
)
from chat_relay.infrastructure.ws.hub import RealtimeHub

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    hub: RealtimeHub = app.state.realtime
    await hub.typing.start_sweeper(settings.TYPING_SWEEP_INTERVAL)

    subscriber: RedisPubSubSubscriber | None = None
    if settings.FANOUT_MODE == "redis":
        app.state.redis = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        logger.info("Redis connection pool created")
        hub.broadcaster.attach_relay(
            RedisPubSubPublisher(app.state.redis), settings.REDIS_PUBSUB_CHANNEL,
        )
        subscriber = RedisPubSubSubscriber(
            app.state.redis,
            settings.REDIS_PUBSUB_CHANNEL,
            hub.broadcaster.on_relay_event,
        )
        await subscriber.start()

    yield

    if subscriber is not None:
        await subscriber.stop()
        hub.broadcaster.detach_relay()
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    await hub.typing.stop_sweeper()
    await hub.registry.shutdown()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Chat Relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.realtime = RealtimeHub.create(
        queue_size=settings.WS_SEND_QUEUE_SIZE,
        typing_window=settings.TYPING_WINDOW_SECONDS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    _register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(conversations.router)
    app.include_router(messages.router)
    app.include_router(ws.router)

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnauthenticatedError)
    async def _unauthenticated(_req: Request, exc: UnauthenticatedError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(NotFoundError)
    async def _not_found(_req: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(ForbiddenError)
    async def _forbidden(_req: Request, exc: ForbiddenError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(ConflictError)
    async def _conflict(_req: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": exc.detail, "code": exc.code})

    @app.exception_handler(ValidationError)
    async def _validation(_req: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.detail, "code": exc.code})
