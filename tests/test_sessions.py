"""
Tests for SessionManager - one credit per conversation.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.exceptions import InvalidSessionError, NoCreditsError
from app.models.api import CreditMode
from app.models.domain import ConsumptionResult
from app.services.sessions import SessionManager
from conftest import make_session_row


@pytest.fixture
def ledger() -> AsyncMock:
    mock = AsyncMock()
    mock.consume_one = AsyncMock(
        return_value=ConsumptionResult(device_id="device-1", mode=CreditMode.FREE, paid_credits_after=0)
    )
    return mock


@pytest.fixture
def manager(db_session: AsyncMock, ledger: AsyncMock) -> SessionManager:
    return SessionManager(db_session, ledger, ttl_seconds=600, early_revocation=True)


class TestStartConversation:
    @pytest.mark.asyncio
    async def test_consumes_one_credit_and_stores_hash(
        self, manager: SessionManager, db_session: AsyncMock, ledger: AsyncMock
    ) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=make_session_row())):
            started = await manager.start_conversation("device-1")

        ledger.consume_one.assert_awaited_once_with("device-1")
        row = db_session.add.call_args.args[0]
        assert row.token_hash == SessionManager.hash_token(started.session_token)
        assert row.token_hash != started.session_token
        assert row.mode == CreditMode.FREE
        assert started.expires_at - started.created_at == timedelta(seconds=600)
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, manager: SessionManager) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=make_session_row())):
            first = await manager.start_conversation("device-1")
            second = await manager.start_conversation("device-1")

        assert first.session_token != second.session_token
        assert len(first.session_token) >= 43

    @pytest.mark.asyncio
    async def test_no_credits_mints_nothing(
        self, manager: SessionManager, db_session: AsyncMock, ledger: AsyncMock
    ) -> None:
        ledger.consume_one.side_effect = NoCreditsError("device-1")

        with pytest.raises(NoCreditsError):
            await manager.start_conversation("device-1")

        db_session.add.assert_not_called()


class TestValidate:
    @pytest.mark.asyncio
    async def test_live_token_returns_mode(self, manager: SessionManager) -> None:
        row = make_session_row(mode="paid")
        with patch.object(manager, "_find_session", AsyncMock(return_value=row)):
            assert await manager.validate("token", "device-1") == CreditMode.PAID

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("row", "reason"),
        [
            (None, "unknown token"),
            (make_session_row(device_id="device-2"), "token belongs to another device"),
            (make_session_row(revoked=True), "token revoked"),
            (make_session_row(expires_in=timedelta(seconds=-1)), "token expired"),
        ],
    )
    async def test_invalid_tokens_rejected(
        self, manager: SessionManager, row: object, reason: str
    ) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=row)):
            with pytest.raises(InvalidSessionError) as exc_info:
                await manager.validate("token", "device-1")

        assert exc_info.value.reason == reason


class TestAuthorizeStage:
    @pytest.mark.asyncio
    async def test_valid_token_is_not_charged(
        self, manager: SessionManager, ledger: AsyncMock
    ) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=make_session_row())):
            auth = await manager.authorize_stage("device-1", "token", "initial")

        assert auth.charged is False
        assert auth.session_token == "token"
        ledger.consume_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_token_charges_once(
        self, manager: SessionManager, ledger: AsyncMock
    ) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=make_session_row())):
            auth = await manager.authorize_stage("device-1", None, "initial")

        assert auth.charged is True
        assert auth.session_token
        ledger.consume_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expired_token_starts_new_paid_conversation(
        self, manager: SessionManager, ledger: AsyncMock
    ) -> None:
        expired = make_session_row(expires_in=timedelta(seconds=-5))
        fresh = make_session_row()
        with patch.object(manager, "_find_session", AsyncMock(side_effect=[expired, fresh])):
            auth = await manager.authorize_stage("device-1", "old-token", "conflict")

        assert auth.charged is True
        assert auth.session_token != "old-token"
        ledger.consume_one.assert_awaited_once()


class TestSessionReuse:
    @pytest.mark.asyncio
    async def test_one_credit_covers_every_stage(
        self, manager: SessionManager, db_session: AsyncMock, ledger: AsyncMock
    ) -> None:
        rows: dict[str, object] = {}
        db_session.add.side_effect = lambda row: rows.__setitem__(row.token_hash, row)

        async def find_session(token_hash: str) -> object | None:
            return rows.get(token_hash)

        with patch.object(manager, "_find_session", side_effect=find_session):
            started = await manager.start_conversation("device-1")
            auths = [
                await manager.authorize_stage("device-1", started.session_token, stage)
                for stage in ("initial", "queries", "conflict", "supportQuery", "support", "final")
            ]

        ledger.consume_one.assert_awaited_once_with("device-1")
        assert all(auth.charged is False for auth in auths)
        assert {auth.session_token for auth in auths} == {started.session_token}
        assert len(rows) == 1


class TestEndConversation:
    @pytest.mark.asyncio
    async def test_disabled_revocation_is_a_no_op(
        self, db_session: AsyncMock, ledger: AsyncMock
    ) -> None:
        manager = SessionManager(db_session, ledger, early_revocation=False)

        assert await manager.end_conversation("token", "device-1") is False
        db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revokes_live_session(
        self, manager: SessionManager, db_session: AsyncMock
    ) -> None:
        with patch.object(manager, "_find_session", AsyncMock(return_value=make_session_row())):
            assert await manager.end_conversation("token", "device-1") is True

        db_session.execute.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cannot_revoke_another_devices_session(self, manager: SessionManager) -> None:
        row = make_session_row(device_id="device-2")
        with patch.object(manager, "_find_session", AsyncMock(return_value=row)):
            with pytest.raises(InvalidSessionError):
                await manager.end_conversation("token", "device-1")


class TestPurge:
    @pytest.mark.asyncio
    async def test_returns_deleted_count(
        self, manager: SessionManager, db_session: AsyncMock
    ) -> None:
        db_session.execute.return_value.rowcount = 4

        assert await manager.purge_expired() == 4
        db_session.commit.assert_awaited_once()
