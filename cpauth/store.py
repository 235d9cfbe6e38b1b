"""Transactional store for users, authentication challenges and sessions.

Every public coroutine runs inside its own transaction. An exception raised
anywhere inside it, task cancellation included, rolls the transaction back
before the error reaches the caller, so a half-applied mutation is never
visible.
"""

from __future__ import annotations

import contextlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable

import structlog
from sqlalchemy import delete, event, exists, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from .constants import MAX_INT_BITS, MAX_INT_DIGITS
from .errors import AuthError, DuplicateUser, InvalidInput, NotFound, StoreCorruption, StoreUnavailable
from .models import ActiveSession, AuthSession, Base, User
from .settings import DatabaseSettings

logger = structlog.get_logger()

Clock = Callable[[], datetime]

MAX_USERNAME_LENGTH = 255


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ``TIMESTAMP`` columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def token_prefix(token: str) -> str:
    return token[:8]


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    y1: int
    y2: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class AuthChallengeRecord:
    id: int
    auth_id: str
    user_id: int
    c: int
    r1: int
    r2: int
    created_at: datetime
    expires_at: datetime
    verified: bool


@dataclass(frozen=True)
class ActiveSessionRecord:
    id: int
    session_id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    last_activity: datetime


@dataclass(frozen=True)
class SweepResult:
    auth_challenges: int
    active_sessions: int

    @property
    def total(self) -> int:
        return self.auth_challenges + self.active_sessions


def encode_int(value: int, *, field: str, operation: str, positive: bool = False) -> str:
    """Serialize a big integer to its base-10 text form."""

    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{field} must be an integer", operation=operation)
    if value < 0 or (positive and value == 0) or value.bit_length() > MAX_INT_BITS:
        raise InvalidInput(f"{field} is out of range", operation=operation)
    try:
        return str(value)
    except ValueError as exc:
        raise InvalidInput(f"{field} is out of range", operation=operation) from exc


def decode_int(raw: str, *, field: str, operation: str) -> int:
    """Parse a stored base-10 integer; anything else means the row is corrupt."""

    if not raw or len(raw) > MAX_INT_DIGITS or not raw.isascii() or not raw.isdigit():
        raise StoreCorruption(f"stored {field} is not a base-10 integer", operation=operation)
    try:
        return int(raw)
    except ValueError as exc:
        raise StoreCorruption(f"stored {field} is not a base-10 integer", operation=operation) from exc


def _as_timedelta(ttl: timedelta | float, operation: str) -> timedelta:
    if isinstance(ttl, timedelta):
        return ttl
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise InvalidInput("ttl must be a timedelta or a number of seconds", operation=operation)
    return timedelta(seconds=ttl)


def _validate_username(username: str, operation: str) -> str:
    if not isinstance(username, str) or not username.strip():
        raise InvalidInput("username must be a non-empty string", operation=operation)
    if len(username) > MAX_USERNAME_LENGTH:
        raise InvalidInput("username is too long", operation=operation)
    return username


def _user_record(row: User, operation: str) -> UserRecord:
    return UserRecord(
        id=row.id,
        username=row.username,
        y1=decode_int(row.y1, field="y1", operation=operation),
        y2=decode_int(row.y2, field="y2", operation=operation),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _challenge_record(row: AuthSession, operation: str) -> AuthChallengeRecord:
    return AuthChallengeRecord(
        id=row.id,
        auth_id=row.auth_id,
        user_id=row.user_id,
        c=decode_int(row.challenge_c, field="challenge_c", operation=operation),
        r1=decode_int(row.commitment_r1, field="commitment_r1", operation=operation),
        r2=decode_int(row.commitment_r2, field="commitment_r2", operation=operation),
        created_at=row.created_at,
        expires_at=row.expires_at,
        verified=bool(row.verified),
    )


def _session_record(row: ActiveSession) -> ActiveSessionRecord:
    return ActiveSessionRecord(
        id=row.id,
        session_id=row.session_id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_activity=row.last_activity,
    )


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create the process-wide connection pool described by ``settings``."""

    url = settings.sqlalchemy_url()
    if settings.is_sqlite:
        # SQLite allows a single writer; one pooled connection serialises access.
        engine = create_async_engine(
            url,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=settings.pool_timeout_seconds,
        )
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    connect_args = {}
    if settings.sslmode != "disable":
        connect_args["ssl"] = settings.sslmode
    return create_async_engine(
        url,
        pool_size=settings.pool_max_idle,
        max_overflow=settings.pool_max_open - settings.pool_max_idle,
        pool_recycle=settings.pool_recycle_seconds,
        pool_timeout=settings.pool_timeout_seconds,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


class SessionStore:
    """Owns all persisted protocol state.

    Instances are constructed explicitly and handed to their callers; there
    is no module-level store.
    """

    def __init__(self, engine: AsyncEngine, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: DatabaseSettings, *, clock: Clock = utcnow) -> SessionStore:
        return cls(build_engine(settings), clock=clock)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @contextlib.asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session, session.begin():
                yield session
        except AuthError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("store operation failed", operation=operation, error=type(exc).__name__)
            raise StoreUnavailable("store unavailable", operation=operation) from exc

    async def ping(self) -> None:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable("store unreachable", operation="ping") from exc

    async def create_schema(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable("schema creation failed", operation="create_schema") from exc

    async def close(self) -> None:
        await self._engine.dispose()

    # Users

    async def register_user(self, username: str, y1: int, y2: int) -> UserRecord:
        operation = "register_user"
        username = _validate_username(username, operation)
        y1_text = encode_int(y1, field="y1", operation=operation, positive=True)
        y2_text = encode_int(y2, field="y2", operation=operation, positive=True)
        now = self._clock()

        async with self._transaction(operation) as session:
            row = User(username=username, y1=y1_text, y2=y2_text, created_at=now, updated_at=now)
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise DuplicateUser(f"username {username!r} is already registered", operation=operation) from exc
            record = _user_record(row, operation)

        logger.info("user registered", username=username, user_id=record.id)
        return record

    async def get_user_by_username(self, username: str) -> UserRecord:
        operation = "get_user_by_username"
        async with self._transaction(operation) as session:
            row = await session.scalar(select(User).where(User.username == username))
            if row is None:
                raise NotFound("user not found", operation=operation)
            return _user_record(row, operation)

    async def get_user_by_id(self, user_id: int) -> UserRecord:
        operation = "get_user_by_id"
        async with self._transaction(operation) as session:
            row = await session.get(User, user_id)
            if row is None:
                raise NotFound("user not found", operation=operation)
            return _user_record(row, operation)

    async def user_exists(self, username: str) -> bool:
        async with self._transaction("user_exists") as session:
            found = await session.scalar(select(exists().where(User.username == username)))
            return bool(found)

    async def amend_user_keys(self, username: str, y1: int, y2: int) -> UserRecord:
        """Replace the enrollment key. The only operation that moves ``updated_at``."""

        operation = "amend_user_keys"
        y1_text = encode_int(y1, field="y1", operation=operation, positive=True)
        y2_text = encode_int(y2, field="y2", operation=operation, positive=True)
        now = self._clock()

        async with self._transaction(operation) as session:
            row = await session.scalar(select(User).where(User.username == username))
            if row is None:
                raise NotFound("user not found", operation=operation)
            row.y1 = y1_text
            row.y2 = y2_text
            row.updated_at = max(now, row.updated_at)
            await session.flush()
            record = _user_record(row, operation)

        logger.info("user keys amended", username=username, user_id=record.id)
        return record

    async def delete_user(self, username: str) -> None:
        """Remove a user; challenges and sessions go with it through the foreign keys."""

        operation = "delete_user"
        async with self._transaction(operation) as session:
            result = await session.execute(delete(User).where(User.username == username))
            if result.rowcount == 0:
                raise NotFound("user not found", operation=operation)
        logger.info("user deleted", username=username)

    # Authentication challenges

    async def _lookup_user_id(self, session: AsyncSession, username: str, operation: str) -> int:
        user_id = await session.scalar(select(User.id).where(User.username == username))
        if user_id is None:
            raise NotFound("user not found", operation=operation)
        return user_id

    async def create_auth_challenge(
        self,
        username: str,
        c: int,
        r1: int,
        r2: int,
        ttl: timedelta | float,
    ) -> str:
        operation = "create_auth_challenge"
        ttl = _as_timedelta(ttl, operation)
        c_text = encode_int(c, field="c", operation=operation)
        r1_text = encode_int(r1, field="r1", operation=operation, positive=True)
        r2_text = encode_int(r2, field="r2", operation=operation, positive=True)

        async with self._transaction(operation) as session:
            user_id = await self._lookup_user_id(session, username, operation)

            auth_id = str(uuid.uuid4())
            now = self._clock()
            session.add(
                AuthSession(
                    auth_id=auth_id,
                    user_id=user_id,
                    challenge_c=c_text,
                    commitment_r1=r1_text,
                    commitment_r2=r2_text,
                    created_at=now,
                    expires_at=now + ttl,
                    verified=False,
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                # The user was deleted between the lookup and the insert.
                raise NotFound("user not found", operation=operation) from exc

        logger.info("auth challenge created", user_id=user_id, auth_id=token_prefix(auth_id))
        return auth_id

    async def get_auth_challenge(self, auth_id: str) -> AuthChallengeRecord:
        operation = "get_auth_challenge"
        async with self._transaction(operation) as session:
            row = await session.scalar(
                select(AuthSession).where(
                    AuthSession.auth_id == auth_id,
                    AuthSession.expires_at > self._clock(),
                )
            )
            # An expired challenge and one that never existed MUST raise the
            # same NotFound. Splitting them lets a caller discover which auth ids
            # were ever issued. Expired rows are left for the sweep to delete.
            if row is None:
                raise NotFound("auth session not found or expired", operation=operation)
            return _challenge_record(row, operation)

    async def complete_verification(self, auth_id: str, ttl: timedelta | float) -> str:
        """Consume a live, unverified challenge and return the new session id."""

        record = await self.issue_session(auth_id, ttl, operation="complete_verification")
        return record.session_id

    async def issue_session(
        self,
        auth_id: str,
        ttl: timedelta | float,
        *,
        operation: str = "issue_session",
    ) -> ActiveSessionRecord:
        """Consume a live, unverified challenge and mint the session it earns.

        The flip of ``verified`` is a conditional update, so of any number of
        concurrent callers for one ``auth_id`` exactly one sees an affected
        row. Everyone else gets ``NotFound`` and no session is written. The
        returned record is read inside the same transaction.
        """

        ttl = _as_timedelta(ttl, operation)

        async with self._transaction(operation) as session:
            now = self._clock()
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.auth_id == auth_id,
                    AuthSession.verified.is_(False),
                    AuthSession.expires_at > now,
                )
                .values(verified=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFound("auth session not found, expired or already used", operation=operation)

            user_id = await session.scalar(select(AuthSession.user_id).where(AuthSession.auth_id == auth_id))
            row = ActiveSession(
                session_id=str(uuid.uuid4()),
                user_id=user_id,
                created_at=now,
                expires_at=now + ttl,
                last_activity=now,
            )
            session.add(row)
            await session.flush()
            record = _session_record(row)

        logger.info(
            "auth challenge verified",
            user_id=user_id,
            auth_id=token_prefix(auth_id),
            session_id=token_prefix(record.session_id),
        )
        return record

    # Active sessions

    async def get_active_session(self, session_id: str) -> ActiveSessionRecord:
        operation = "get_active_session"
        async with self._transaction(operation) as session:
            row = await session.scalar(
                select(ActiveSession).where(
                    ActiveSession.session_id == session_id,
                    ActiveSession.expires_at > self._clock(),
                )
            )
            # Same rule as get_auth_challenge: expired and unknown are one case.
            if row is None:
                raise NotFound("session not found or expired", operation=operation)
            return _session_record(row)

    async def touch_session_activity(self, session_id: str) -> None:
        async with self._transaction("touch_session_activity") as session:
            now = self._clock()
            await session.execute(
                update(ActiveSession)
                .where(
                    ActiveSession.session_id == session_id,
                    ActiveSession.expires_at > now,
                    ActiveSession.last_activity < now,
                )
                .values(last_activity=now)
                .execution_options(synchronize_session=False)
            )

    async def delete_session(self, session_id: str) -> None:
        async with self._transaction("delete_session") as session:
            result = await session.execute(delete(ActiveSession).where(ActiveSession.session_id == session_id))
        if result.rowcount:
            logger.info("session deleted", session_id=token_prefix(session_id))

    async def sweep_expired(self) -> SweepResult:
        """Physically remove challenges and sessions whose deadline has passed."""

        async with self._transaction("sweep_expired") as session:
            now = self._clock()
            challenges = await session.execute(delete(AuthSession).where(AuthSession.expires_at <= now))
            sessions = await session.execute(delete(ActiveSession).where(ActiveSession.expires_at <= now))

        swept = SweepResult(auth_challenges=challenges.rowcount, active_sessions=sessions.rowcount)
        if swept.total:
            logger.info(
                "swept expired rows",
                auth_challenges=swept.auth_challenges,
                active_sessions=swept.active_sessions,
            )
        return swept


__all__ = [
    "ActiveSessionRecord",
    "AuthChallengeRecord",
    "SessionStore",
    "SweepResult",
    "UserRecord",
    "build_engine",
    "decode_int",
    "encode_int",
    "utcnow",
]
