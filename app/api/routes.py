"""
API Routes - action envelope, streamed conversations, payment webhook, health.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_orchestrator,
    get_payment_provider,
    resolve_device_id,
    resolve_session_token,
)
from app.api.errors import error_body, error_response
from app.config import settings
from app.db.session import get_write_db
from app.exceptions import InvalidSessionError, UnknownActionError
from app.models.api import (
    ActionEnvelope,
    ActionName,
    ActionResponse,
    AnalysisResultModel,
    ConfirmPaymentIntentPayload,
    ConflictPayload,
    ConversationRequest,
    ConversationResultModel,
    ConversationStartedModel,
    CreatePaymentIntentPayload,
    CreditsResponse,
    EndConversationPayload,
    EndConversationResponse,
    FinalPayload,
    HealthResponse,
    InitialPayload,
    PaymentIntentResponse,
    PerspectivePayload,
    PingResponse,
    ProgressEventModel,
    ReconciliationSource,
    ReferenceLinkModel,
    StageResultModel,
    StartConversationResponse,
    SupportPayload,
    TranscribePayload,
    WebhookResponse,
)
from app.models.domain import AnalysisResult, CreditSnapshot, ProgressEvent
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.services.ledger import CreditLedger
from app.services.payment_provider import PaymentProvider
from app.services.pipeline import CancellationToken, PipelineOrchestrator
from app.services.reconciler import PaymentReconciler
from app.services.sessions import SessionManager

logger = get_logger(__name__)
router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"


# =============================================================================
# Conversions
# =============================================================================


def _credits_response(snapshot: CreditSnapshot) -> CreditsResponse:
    return CreditsResponse(
        paid_credits=snapshot.paid_credits,
        free_available_today=snapshot.free_available_today,
        free_pool_remaining=snapshot.free_pool_remaining,
        unit_price=snapshot.unit_price_minor,
        currency=snapshot.currency,
    )


def _analysis_model(result: AnalysisResult) -> AnalysisResultModel:
    def links(items: tuple[Any, ...]) -> list[ReferenceLinkModel]:
        return [ReferenceLinkModel(title=link.title, url=link.url) for link in items]

    return AnalysisResultModel(
        topic=result.topic,
        perspective_a_label=result.perspective_a_label,
        perspective_b_label=result.perspective_b_label,
        summary_bullets=list(result.summary_bullets),
        perspective_a_bullets=list(result.perspective_a_bullets),
        perspective_b_bullets=list(result.perspective_b_bullets),
        narration=result.narration,
        summary_links=links(result.summary_links),
        perspective_a_links=links(result.perspective_a_links),
        perspective_b_links=links(result.perspective_b_links),
    )


def _progress_model(event: ProgressEvent) -> ProgressEventModel:
    stage_result = None
    if event.result is not None:
        stage_result = StageResultModel(
            stage_name=event.result.stage_name,
            summary_bullets=list(event.result.summary_bullets),
            narration=event.result.narration,
            one_line_summary=event.result.one_line_summary,
        )
    return ProgressEventModel(stage=event.stage, progress=event.progress, result=stage_result)


def _ndjson(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=True, exclude_none=True)) + "\n"


# =============================================================================
# Action Envelope
# =============================================================================


@router.post("/v1/actions", response_model=None)
async def perform_action(
    envelope: ActionEnvelope,
    db: AsyncSession = Depends(get_write_db),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    payment_provider: PaymentProvider = Depends(get_payment_provider),
    x_device_id: str | None = Header(None),
    x_session_token: str | None = Header(None),
) -> BaseModel | JSONResponse:
    """
    Single entry point for client actions.

    Action names are matched case-insensitively. Stage actions charge one
    credit unless they present a live session token.
    """
    action = ActionName.parse(envelope.action)
    if action is None:
        raise UnknownActionError(envelope.action)

    if action == ActionName.PING:
        return PingResponse()

    device_id = resolve_device_id(x_device_id, envelope.device_id)
    session_token = resolve_session_token(x_session_token, envelope.payload)

    with log_context(device_id=device_id, action=action.value):
        if action.is_charged:
            return await _run_charged_action(
                action, envelope.payload, device_id, session_token, db, orchestrator
            )

        if action == ActionName.CREDITS:
            snapshot = await CreditLedger(db).get_snapshot(device_id)
            return _credits_response(snapshot)

        if action == ActionName.CREATE_PAYMENT_INTENT:
            purchase = CreatePaymentIntentPayload.model_validate(envelope.payload)
            result = await PaymentReconciler(db, payment_provider).create_payment_intent(
                device_id, purchase.quantity, purchase.request_id
            )
            return PaymentIntentResponse(
                payment_intent_id=result.payment_id,
                client_secret=result.client_secret,
                amount_minor=result.amount_minor,
                currency=result.currency,
                quantity=purchase.quantity,
                publishable_key=settings.stripe_publishable_key,
            )

        if action == ActionName.CONFIRM_PAYMENT_INTENT:
            confirm = ConfirmPaymentIntentPayload.model_validate(envelope.payload)
            snapshot = await PaymentReconciler(db, payment_provider).reconcile(
                device_id, confirm.payment_intent_id, ReconciliationSource.CLIENT_CONFIRMATION
            )
            return _credits_response(snapshot)

        if action == ActionName.START_CONVERSATION:
            started = await SessionManager(db).start_conversation(device_id)
            return StartConversationResponse(
                session_token=started.session_token,
                mode=started.mode,
                expires_at=started.expires_at.isoformat(),
            )

        if action == ActionName.END_CONVERSATION:
            end = EndConversationPayload.model_validate(envelope.payload)
            token = end.session_token or session_token
            if not token:
                raise InvalidSessionError("missing token")
            revoked = await SessionManager(db).end_conversation(token, device_id)
            return EndConversationResponse(revoked=revoked)

    raise UnknownActionError(envelope.action)


async def _run_charged_action(
    action: ActionName,
    payload: dict[str, Any],
    device_id: str,
    session_token: str | None,
    db: AsyncSession,
    orchestrator: PipelineOrchestrator,
) -> BaseModel | JSONResponse:
    # Validate before charging so a malformed request never costs a credit
    stage_input: BaseModel
    if action == ActionName.INITIAL:
        stage_input = InitialPayload.model_validate(payload)
    elif action == ActionName.CONFLICT:
        stage_input = ConflictPayload.model_validate(payload)
    elif action == ActionName.SUPPORT:
        stage_input = SupportPayload.model_validate(payload)
    elif action == ActionName.FINAL:
        stage_input = FinalPayload.model_validate(payload)
    elif action == ActionName.TRANSCRIBE_AND_EXTRACT:
        stage_input = TranscribePayload.model_validate(payload)
    else:
        stage_input = PerspectivePayload.model_validate(payload)

    auth = await SessionManager(db).authorize_stage(device_id, session_token, action.value)

    try:
        if action == ActionName.INITIAL:
            result: Any = await orchestrator.run_initial(stage_input)  # type: ignore[arg-type]
        elif action == ActionName.QUERIES:
            result = await orchestrator.run_queries(stage_input)  # type: ignore[arg-type]
        elif action == ActionName.CONFLICT:
            result = await orchestrator.run_conflict(stage_input)  # type: ignore[arg-type]
        elif action == ActionName.SUPPORT_QUERY:
            result = await orchestrator.run_support_query(stage_input)  # type: ignore[arg-type]
        elif action == ActionName.SUPPORT:
            result = await orchestrator.run_support(stage_input)  # type: ignore[arg-type]
        elif action == ActionName.FINAL:
            result = await orchestrator.run_final(stage_input)  # type: ignore[arg-type]
        else:
            result = await orchestrator.transcribe(stage_input)  # type: ignore[arg-type]
    except Exception as exc:
        # The credit is spent; hand back the token so a retry is free
        logger.warning(
            "stage_failed",
            stage=action.value,
            charged=auth.charged,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(exc, session_token=auth.session_token)

    return ActionResponse(
        action=action.value,
        charged=auth.charged,
        mode=auth.mode,
        session_token=auth.session_token,
        result=result,
    )


# =============================================================================
# Streamed Conversation
# =============================================================================


@router.post("/v1/conversations", response_model=None)
async def stream_conversation(
    body: ConversationRequest,
    db: AsyncSession = Depends(get_write_db),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    x_device_id: str | None = Header(None),
) -> StreamingResponse:
    """
    Run the whole pipeline for one credit, streaming NDJSON lines:
    a session line, one progress line per stage, then a result or error line.

    Credit failures are returned as a normal error response before streaming.
    """
    device_id = resolve_device_id(x_device_id, body.device_id)
    started = await SessionManager(db).start_conversation(device_id)

    async def event_stream() -> AsyncIterator[str]:
        cancel = CancellationToken()
        queue: asyncio.Queue[str] = asyncio.Queue()

        async def on_progress(event: ProgressEvent) -> None:
            await queue.put(_ndjson(_progress_model(event)))

        run_task = asyncio.create_task(orchestrator.run(body, on_progress, cancel))
        getter: asyncio.Future[str] | None = None
        try:
            yield _ndjson(
                ConversationStartedModel(
                    session_token=started.session_token,
                    mode=started.mode,
                    expires_at=started.expires_at.isoformat(),
                )
            )
            while not run_task.done() or not queue.empty():
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, run_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    yield getter.result()
                else:
                    getter.cancel()

            try:
                analysis = run_task.result()
            except Exception as exc:
                _, error = error_body(exc, session_token=started.session_token)
                metrics.conversations_total.labels(outcome=error.error.code.value).inc()
                logger.warning(
                    "conversation_failed",
                    device_id=device_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                yield _ndjson(error)
                return

            metrics.conversations_total.labels(outcome="completed").inc()
            yield _ndjson(ConversationResultModel(result=_analysis_model(analysis)))
        finally:
            # Client disconnects land here as generator cancellation
            cancel.cancel()
            if getter is not None and not getter.done():
                getter.cancel()
            if not run_task.done():
                run_task.cancel()
                metrics.conversations_total.labels(outcome="disconnected").inc()
                logger.info("conversation_abandoned", device_id=device_id)

    return StreamingResponse(event_stream(), media_type=NDJSON_MEDIA_TYPE)


# =============================================================================
# Payment Webhook
# =============================================================================


@router.post("/v1/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    payment_provider: PaymentProvider = Depends(get_payment_provider),
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    Succeeded payments are reconciled exactly like a client confirmation;
    redeliveries are harmless.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    outcome = await PaymentReconciler(db, payment_provider).handle_webhook(payload, signature)
    logger.info("stripe_webhook_handled", event_id=outcome.event_id, status=outcome.status)
    return WebhookResponse(status=outcome.status, event_id=outcome.event_id)  # type: ignore[arg-type]


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_write_db)) -> HealthResponse | JSONResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_failed", error=str(exc))
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="unhealthy",
                database="disconnected",
                timestamp=datetime.now(UTC).isoformat(),
            ).model_dump(),
        )

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
