"""Periodic removal of expired challenges and sessions."""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from .constants import DEFAULT_SWEEP_INTERVAL
from .errors import AuthError
from .store import SessionStore, SweepResult

logger = structlog.get_logger()


class ExpirySweeper:
    """Runs ``SessionStore.sweep_expired`` on a fixed interval.

    Call start() on app startup and stop() on shutdown. A failed pass is
    logged and the loop carries on; nothing propagates to request handlers.
    """

    def __init__(self, store: SessionStore, interval: float = DEFAULT_SWEEP_INTERVAL.total_seconds()) -> None:
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self._store = store
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepResult | None:
        """Sweep once. Returns None when the pass failed."""
        try:
            return await self._store.sweep_expired()
        except AuthError as exc:
            logger.warning("expiry sweep failed", error=str(exc))
        except Exception:
            logger.exception("expiry sweep crashed")
        return None

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()


__all__ = ["ExpirySweeper"]
