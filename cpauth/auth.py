"""Registration and authentication flow on top of the session store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, TypeVar

import structlog

from .constants import DEFAULT_CHALLENGE_TTL, DEFAULT_SESSION_TTL
from .crypto import ProofEngine, Transcript
from .errors import InvalidInput, NotFound, StoreUnavailable, VerificationFailed
from .store import ActiveSessionRecord, SessionStore, UserRecord, token_prefix

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_OPERATION_TIMEOUT = 10.0


@dataclass(frozen=True)
class ChallengeResult:
    auth_id: str
    c: int
    r1: int
    r2: int


@dataclass(frozen=True)
class SessionResult:
    session_id: str
    expires_at: datetime


def _require_int(value: int, field: str, operation: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidInput(f"{field} must be a positive integer", operation=operation)
    return value


class AuthOrchestrator:
    """Sequences the proof engine and the session store.

    Holds no protocol state of its own. ``store`` may be ``None`` when the
    process started without a reachable database; every call then fails
    fast with ``StoreUnavailable``.
    """

    def __init__(
        self,
        store: SessionStore | None,
        engine: ProofEngine | None = None,
        *,
        challenge_ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.store = store
        self.engine = engine or ProofEngine()
        self.challenge_ttl = challenge_ttl
        self.session_ttl = session_ttl
        self.operation_timeout = operation_timeout

    @property
    def degraded(self) -> bool:
        return self.store is None

    def _require_store(self, operation: str) -> SessionStore:
        if self.store is None:
            raise StoreUnavailable("store not configured", operation=operation)
        return self.store

    async def _bounded(self, call: Awaitable[T], operation: str) -> T:
        # A timeout cancels the store call, which rolls its transaction back.
        try:
            return await asyncio.wait_for(call, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable("store operation timed out", operation=operation) from exc

    async def register(self, username: str, y1: int, y2: int) -> UserRecord:
        operation = "register"
        store = self._require_store(operation)
        _require_int(y1, "y1", operation)
        _require_int(y2, "y2", operation)
        self.engine.validate_public_key(y1, y2)
        return await self._bounded(store.register_user(username, y1, y2), operation)

    async def begin_authentication(self, username: str, r1: int, r2: int) -> ChallengeResult:
        """Record the client's commitments together with a fresh challenge."""

        operation = "begin_authentication"
        store = self._require_store(operation)
        _require_int(r1, "r1", operation)
        _require_int(r2, "r2", operation)

        user = await self._bounded(store.get_user_by_username(username), operation)
        transcript = self.engine.new_transcript(user.y1, user.y2, r1, r2)
        auth_id = await self._bounded(
            store.create_auth_challenge(username, transcript.c, transcript.r1, transcript.r2, self.challenge_ttl),
            operation,
        )
        return ChallengeResult(auth_id=auth_id, c=transcript.c, r1=transcript.r1, r2=transcript.r2)

    async def verify_authentication(self, auth_id: str, response: int) -> SessionResult:
        """Check the response and, only on success, consume the challenge.

        A rejected response leaves the challenge live, so the client may try
        again until it expires. A challenge that already produced a session
        can never produce another.
        """

        operation = "verify_authentication"
        store = self._require_store(operation)
        if isinstance(response, bool) or not isinstance(response, int) or response < 0:
            raise InvalidInput("response must be a non-negative integer", operation=operation)

        challenge = await self._bounded(store.get_auth_challenge(auth_id), operation)
        if challenge.verified:
            raise NotFound("auth session already used", operation=operation)
        user = await self._bounded(store.get_user_by_id(challenge.user_id), operation)

        transcript = Transcript(c=challenge.c, r1=challenge.r1, r2=challenge.r2)
        if not self.engine.verify(user.y1, user.y2, transcript, response):
            logger.info("proof rejected", user_id=user.id, auth_id=token_prefix(auth_id))
            raise VerificationFailed("proof rejected", operation=operation)

        session = await self._bounded(store.issue_session(auth_id, self.session_ttl), operation)
        logger.info("user authenticated", user_id=user.id, username=user.username)
        return SessionResult(session_id=session.session_id, expires_at=session.expires_at)

    async def get_session(self, session_id: str) -> ActiveSessionRecord:
        operation = "get_session"
        store = self._require_store(operation)
        return await self._bounded(store.get_active_session(session_id), operation)

    async def touch_session(self, session_id: str) -> None:
        operation = "touch_session"
        store = self._require_store(operation)
        await self._bounded(store.touch_session_activity(session_id), operation)

    async def logout(self, session_id: str) -> None:
        operation = "logout"
        store = self._require_store(operation)
        await self._bounded(store.delete_session(session_id), operation)


__all__ = ["AuthOrchestrator", "ChallengeResult", "SessionResult"]
