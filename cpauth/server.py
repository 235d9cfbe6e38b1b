"""FastAPI-powered Chaum-Pedersen authentication service."""

from __future__ import annotations

import contextlib
from datetime import datetime
from typing import AsyncIterator

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .auth import AuthOrchestrator
from .constants import MAX_INT_DIGITS
from .crypto import ProofEngine
from .errors import (
    AuthenticationFailed,
    AuthError,
    DuplicateUser,
    InvalidInput,
    StoreCorruption,
    StoreUnavailable,
)
from .logging import setup_logging
from .settings import AuthSettings, DatabaseSettings
from .store import SessionStore
from .sweeper import ExpirySweeper

logger = structlog.get_logger()

_bearer = HTTPBearer(auto_error=False)


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    y1: str
    y2: str


class RegisterResponse(BaseModel):
    username: str


class LoginStartRequest(BaseModel):
    username: str
    r1: str
    r2: str


class LoginStartResponse(BaseModel):
    auth_id: str
    c: str
    r1: str
    r2: str


class LoginFinishRequest(BaseModel):
    auth_id: str
    response: str


class LoginFinishResponse(BaseModel):
    session_id: str
    expires_at: datetime


class SessionResponse(BaseModel):
    user_id: int
    created_at: datetime
    expires_at: datetime
    last_activity: datetime


class HealthResponse(BaseModel):
    status: str


def _parse_int(value: str, field: str) -> int:
    # Base-10 only; int() would also accept whitespace and underscores.
    if not value or not value.isascii() or not value.isdigit():
        raise HTTPException(status_code=400, detail=f"{field} must be a base-10 integer")
    if len(value) > MAX_INT_DIGITS:
        raise HTTPException(status_code=400, detail=f"{field} is out of range")
    try:
        return int(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{field} is out of range") from exc


async def _open_store(db_settings: DatabaseSettings) -> SessionStore | None:
    store = SessionStore.from_settings(db_settings)
    try:
        await store.ping()
        await store.create_schema()
    except StoreUnavailable as exc:
        logger.warning("database unavailable, starting in degraded mode", error=str(exc))
        await store.close()
        return None
    return store


def _error_response(exc: AuthError) -> JSONResponse:
    if isinstance(exc, AuthenticationFailed):
        return JSONResponse(status_code=401, content={"detail": "authentication failed"})
    if isinstance(exc, DuplicateUser):
        return JSONResponse(status_code=409, content={"detail": "username already registered"})
    if isinstance(exc, InvalidInput):
        return JSONResponse(status_code=400, content={"detail": str(exc)})
    if isinstance(exc, StoreUnavailable):
        return JSONResponse(status_code=503, content={"detail": "service unavailable"})
    if isinstance(exc, StoreCorruption):
        logger.error("corrupt stored value", error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "internal error"})


def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def _require_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="authentication failed")
    return credentials.credentials


def create_app(
    settings: AuthSettings | None = None,
    db_settings: DatabaseSettings | None = None,
    engine: ProofEngine | None = None,
) -> FastAPI:
    settings = settings or AuthSettings()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store = await _open_store(db_settings or DatabaseSettings())
        app.state.orchestrator = AuthOrchestrator(
            store,
            engine,
            challenge_ttl=settings.challenge_ttl,
            session_ttl=settings.session_ttl,
            operation_timeout=settings.operation_timeout_seconds,
        )
        sweeper = ExpirySweeper(store, settings.sweep_interval_seconds) if store is not None else None
        if sweeper is not None:
            sweeper.start()
        try:
            yield
        finally:
            if sweeper is not None:
                await sweeper.stop()
            if store is not None:
                await store.close()

    app = FastAPI(
        title="cpauth",
        description="Passwordless Chaum-Pedersen authentication",
        lifespan=lifespan,
    )

    @app.exception_handler(AuthError)
    async def handle_auth_error(_request: Request, exc: AuthError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/health", response_model=HealthResponse)
    async def health(orchestrator: AuthOrchestrator = Depends(get_orchestrator)) -> HealthResponse:
        return HealthResponse(status="degraded" if orchestrator.degraded else "ok")

    @app.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
    async def register(
        request: RegisterRequest,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> RegisterResponse:
        y1 = _parse_int(request.y1, "y1")
        y2 = _parse_int(request.y2, "y2")
        record = await orchestrator.register(request.username, y1, y2)
        return RegisterResponse(username=record.username)

    @app.post("/login/start", response_model=LoginStartResponse)
    async def login_start(
        request: LoginStartRequest,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> LoginStartResponse:
        r1 = _parse_int(request.r1, "r1")
        r2 = _parse_int(request.r2, "r2")
        result = await orchestrator.begin_authentication(request.username, r1, r2)
        return LoginStartResponse(auth_id=result.auth_id, c=str(result.c), r1=str(result.r1), r2=str(result.r2))

    @app.post("/login/finish", response_model=LoginFinishResponse)
    async def login_finish(
        request: LoginFinishRequest,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> LoginFinishResponse:
        response_int = _parse_int(request.response, "response")
        result = await orchestrator.verify_authentication(request.auth_id, response_int)
        return LoginFinishResponse(session_id=result.session_id, expires_at=result.expires_at)

    @app.get("/session", response_model=SessionResponse)
    async def get_session(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> SessionResponse:
        session = await orchestrator.get_session(_require_token(credentials))
        return SessionResponse(
            user_id=session.user_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
        )

    @app.post("/session/touch", status_code=status.HTTP_204_NO_CONTENT)
    async def touch_session(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        await orchestrator.touch_session(_require_token(credentials))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
    async def logout(
        credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        if credentials is not None and credentials.credentials:
            await orchestrator.logout(credentials.credentials)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


def get_app() -> FastAPI:
    """ASGI application factory for production use (e.g., uvicorn --factory)."""
    settings = AuthSettings()
    setup_logging(settings.log_dir)
    return create_app(settings=settings)


__all__ = ["create_app", "get_app"]
