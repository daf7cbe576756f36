"""
Tests for application wiring: the periodic session purge.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import pytest

from app.main import purge_expired_sessions_forever
from app.services.sessions import SessionManager


def fake_session_scope(db_session: AsyncMock):
    @asynccontextmanager
    async def scope():
        yield db_session

    return scope


@pytest.mark.asyncio
async def test_purge_runs_each_tick(db_session: AsyncMock) -> None:
    sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])
    purge = AsyncMock(return_value=2)

    with (
        patch("app.main.asyncio.sleep", sleep),
        patch("app.main.get_write_session", fake_session_scope(db_session)),
        patch.object(SessionManager, "purge_expired", purge),
    ):
        with pytest.raises(asyncio.CancelledError):
            await purge_expired_sessions_forever(300)

    assert purge.await_count == 2
    sleep.assert_awaited_with(300)


@pytest.mark.asyncio
async def test_failed_sweep_does_not_stop_the_loop(db_session: AsyncMock) -> None:
    sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])
    purge = AsyncMock(side_effect=[ConnectionError("db down"), 0])

    with (
        patch("app.main.asyncio.sleep", sleep),
        patch("app.main.get_write_session", fake_session_scope(db_session)),
        patch.object(SessionManager, "purge_expired", purge),
    ):
        with pytest.raises(asyncio.CancelledError):
            await purge_expired_sessions_forever(300)

    assert purge.await_count == 2
