"""
Session Manager - one credit per conversation.

startConversation consumes exactly one credit and mints a session token.
Stage calls presenting a valid token run without charge; calls without one
start (and pay for) a new conversation.

Uses SHA-256 hash of tokens (never stores raw tokens).
"""

import hashlib
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import ConversationSession
from app.exceptions import InvalidSessionError, WriteVerificationError
from app.models.api import CreditMode
from app.models.domain import ConversationSessionData, StageAuthorization, validate_device_id
from app.observability.metrics import metrics
from app.services.ledger import CreditLedger

logger = get_logger(__name__)

TOKEN_BYTES = 32  # 256 bits of entropy


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SessionManager:
    """
    Mints and validates conversation sessions.

    Usage:
        manager = SessionManager(db)
        started = await manager.start_conversation(device_id)
        auth = await manager.authorize_stage(device_id, started.session_token, "initial")
        assert auth.charged is False
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: CreditLedger | None = None,
        *,
        ttl_seconds: int | None = None,
        early_revocation: bool | None = None,
    ) -> None:
        self.session = session
        self.ledger = ledger or CreditLedger(session)
        self.ttl = timedelta(seconds=ttl_seconds or settings.session_ttl_seconds)
        self.early_revocation = (
            settings.session_early_revocation if early_revocation is None else early_revocation
        )

    @staticmethod
    def hash_token(token: str) -> str:
        """Hash a token using SHA-256. Raw tokens never reach the database."""
        return hashlib.sha256(token.encode()).hexdigest()

    async def start_conversation(self, device_id: str) -> ConversationSessionData:
        """
        Consume one credit and mint a session.

        Raises:
            NoCreditsError: the device cannot pay for a conversation
        """
        consumption = await self.ledger.consume_one(device_id)

        token = secrets.token_urlsafe(TOKEN_BYTES)
        now = _utc_now()
        expires_at = now + self.ttl
        row = ConversationSession(
            token_hash=self.hash_token(token),
            device_id=device_id,
            mode=consumption.mode,
            created_at=now,
            expires_at=expires_at,
        )
        self.session.add(row)
        await self.session.flush()

        verified = await self._find_session(row.token_hash)
        if verified is None:
            raise WriteVerificationError("Conversation session not found after insert")
        await self.session.commit()

        metrics.sessions_started_total.labels(mode=consumption.mode.value).inc()
        logger.info(
            "conversation_started",
            device_id=device_id,
            mode=consumption.mode.value,
            expires_at=expires_at.isoformat(),
        )
        return ConversationSessionData(
            session_token=token,
            device_id=device_id,
            mode=consumption.mode,
            created_at=now,
            expires_at=expires_at,
        )

    async def validate(self, session_token: str, device_id: str) -> CreditMode:
        """
        Return the mode the session was paid with.

        Raises:
            InvalidSessionError: unknown, foreign, revoked or expired token
        """
        row = await self._find_session(self.hash_token(session_token))
        if row is None:
            raise InvalidSessionError("unknown token")
        if row.device_id != device_id:
            raise InvalidSessionError("token belongs to another device")
        if row.revoked_at is not None:
            raise InvalidSessionError("token revoked")
        if row.expires_at <= _utc_now():
            raise InvalidSessionError("token expired")
        return row.mode

    async def authorize_stage(
        self, device_id: str, session_token: str | None, stage: str
    ) -> StageAuthorization:
        """
        Gate a paid stage call.

        A valid token costs nothing. A missing or invalid token starts a new
        conversation (one credit) whose token is returned for reuse.
        """
        validate_device_id(device_id)
        if session_token:
            try:
                mode = await self.validate(session_token, device_id)
            except InvalidSessionError as exc:
                logger.info(
                    "stage_session_invalid",
                    device_id=device_id,
                    stage=stage,
                    reason=exc.reason,
                )
            else:
                metrics.record_stage_call(stage, charged=False)
                return StageAuthorization(
                    device_id=device_id,
                    mode=mode,
                    session_token=session_token,
                    charged=False,
                )

        started = await self.start_conversation(device_id)
        metrics.record_stage_call(stage, charged=True)
        return StageAuthorization(
            device_id=device_id,
            mode=started.mode,
            session_token=started.session_token,
            charged=True,
        )

    async def end_conversation(self, session_token: str, device_id: str) -> bool:
        """
        Revoke a session before its TTL when early revocation is enabled.

        Returns False (and changes nothing) when it is disabled.

        Raises:
            InvalidSessionError: token is not a live session of this device
        """
        if not self.early_revocation:
            return False

        await self.validate(session_token, device_id)
        await self.session.execute(
            update(ConversationSession)
            .where(ConversationSession.token_hash == self.hash_token(session_token))
            .values(revoked_at=_utc_now())
        )
        await self.session.commit()
        logger.info("conversation_ended", device_id=device_id)
        return True

    async def purge_expired(self) -> int:
        """Delete expired sessions. Returns the number removed."""
        result = await self.session.execute(
            delete(ConversationSession).where(ConversationSession.expires_at <= _utc_now())
        )
        await self.session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("expired_sessions_purged", count=removed)
        return removed

    async def _find_session(self, token_hash: str) -> ConversationSession | None:
        stmt = select(ConversationSession).where(ConversationSession.token_hash == token_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
