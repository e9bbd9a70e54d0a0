"""FastAPI dependency injection helpers."""
from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Annotated, AsyncIterator, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.requests import HTTPConnection

from chat_relay.application.dto.principal import Principal
from chat_relay.application.ports.auth import TokenVerifier
from chat_relay.application.uow import UnitOfWork
from chat_relay.config import settings
from chat_relay.infrastructure.auth.hs256_verifier import HS256Verifier
from chat_relay.infrastructure.auth.jwks_verifier import JWKSVerifier
from chat_relay.infrastructure.db.session import AsyncSessionLocal, open_uow
from chat_relay.infrastructure.db.uow import SqlAlchemyUoW
from chat_relay.infrastructure.ws.broadcast import BroadcastRouter
from chat_relay.infrastructure.ws.hub import RealtimeHub

_bearer_scheme = HTTPBearer()

UoWFactory = Callable[[], AbstractAsyncContextManager[UnitOfWork]]


async def get_uow() -> AsyncIterator[SqlAlchemyUoW]:
    async with AsyncSessionLocal() as session:
        uow = SqlAlchemyUoW(session)
        try:
            yield uow
        finally:
            await session.close()


UoWDep = Annotated[UnitOfWork, Depends(get_uow)]


def get_uow_factory() -> UoWFactory:
    """Per-event units of work for the long-lived WebSocket handler."""
    return open_uow


def _get_verifier() -> TokenVerifier:
    if settings.JWT_VERIFY_MODE == "jwks":
        assert settings.JWKS_URL, "JWKS_URL must be set when JWT_VERIFY_MODE=jwks"
        return JWKSVerifier(settings.JWKS_URL)
    return HS256Verifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)


_verifier: TokenVerifier | None = None


def get_verifier() -> TokenVerifier:
    global _verifier  # noqa: PLW0603
    if _verifier is None:
        _verifier = _get_verifier()
    return _verifier


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_verifier)],
) -> Principal:
    try:
        return await verifier.verify(credentials.credentials)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def get_hub(conn: HTTPConnection) -> RealtimeHub:
    return conn.app.state.realtime


HubDep = Annotated[RealtimeHub, Depends(get_hub)]


def get_broadcaster(hub: HubDep) -> BroadcastRouter:
    return hub.broadcaster


BroadcasterDep = Annotated[BroadcastRouter, Depends(get_broadcaster)]
