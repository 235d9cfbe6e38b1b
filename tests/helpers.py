"""Shared fixtures for the test-suite."""

from __future__ import annotations

import os
from datetime import datetime, timedelta

from sqlalchemy import func, select

from cpauth.crypto import Group
from cpauth.settings import DatabaseSettings
from cpauth.store import SessionStore

# Textbook group: p = 2q + 1 with q = 11; 4 and 9 both generate the order-11 subgroup.
TEST_GROUP = Group(p=23, q=11, g=4, h=9)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def sqlite_settings(directory: str) -> DatabaseSettings:
    return DatabaseSettings(url=f"sqlite+aiosqlite:///{os.path.join(directory, 'cpauth.db')}")


def make_store(directory: str, clock: FakeClock | None = None) -> SessionStore:
    if clock is None:
        return SessionStore.from_settings(sqlite_settings(directory))
    return SessionStore.from_settings(sqlite_settings(directory), clock=clock)


async def count_rows(store: SessionStore, model: type) -> int:
    async with store.engine.connect() as conn:
        return await conn.scalar(select(func.count()).select_from(model))
