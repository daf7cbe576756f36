"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase to match the mobile client.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreditMode(str, Enum):
    """Which kind of credit paid for a conversation."""

    FREE = "free"
    PAID = "paid"


class ReconciliationSource(str, Enum):
    """Which trigger applied a payment to the ledger."""

    CLIENT_CONFIRMATION = "client_confirmation"
    WEBHOOK = "webhook"


class ActionName(str, Enum):
    """Actions accepted by the action envelope endpoint."""

    PING = "ping"
    CREDITS = "credits"
    CREATE_PAYMENT_INTENT = "createPaymentIntent"
    CONFIRM_PAYMENT_INTENT = "confirmPaymentIntent"
    START_CONVERSATION = "startConversation"
    END_CONVERSATION = "endConversation"
    INITIAL = "initial"
    QUERIES = "queries"
    CONFLICT = "conflict"
    SUPPORT_QUERY = "supportQuery"
    SUPPORT = "support"
    FINAL = "final"
    TRANSCRIBE_AND_EXTRACT = "transcribeAndExtract"

    @classmethod
    def parse(cls, raw: str) -> "ActionName | None":
        """Match an action name case-insensitively."""
        lowered = raw.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        return None

    @property
    def is_charged(self) -> bool:
        """Whether the action runs paid work and needs a credit or session."""
        return self in CHARGED_ACTIONS


CHARGED_ACTIONS = frozenset(
    {
        ActionName.INITIAL,
        ActionName.QUERIES,
        ActionName.CONFLICT,
        ActionName.SUPPORT_QUERY,
        ActionName.SUPPORT,
        ActionName.FINAL,
        ActionName.TRANSCRIBE_AND_EXTRACT,
    }
)


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to clients."""

    NO_CREDITS = "NO_CREDITS"
    MISSING_DEVICE_ID = "MISSING_DEVICE_ID"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    RATE_LIMIT = "RATE_LIMIT"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    UPSTREAM_MALFORMED = "UPSTREAM_MALFORMED"
    PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"
    INVALID_SESSION = "INVALID_SESSION"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    CONVERSATION_CANCELLED = "CONVERSATION_CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# Envelope
# ============================================================================


class ActionEnvelope(CamelModel):
    """POST /v1/actions request body."""

    action: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    device_id: str | None = Field(None, max_length=255)


# ============================================================================
# Credit and Payment Models
# ============================================================================


class CreditsResponse(CamelModel):
    """Snapshot of a device's credits."""

    paid_credits: int
    free_available_today: bool
    free_pool_remaining: int
    unit_price: int = Field(..., description="Price of one credit in minor units")
    currency: str


class CreatePaymentIntentPayload(CamelModel):
    """createPaymentIntent payload."""

    quantity: int = Field(..., ge=1)
    request_id: str | None = Field(
        None, min_length=1, max_length=128, description="Client retry key for this purchase"
    )


class ConfirmPaymentIntentPayload(CamelModel):
    """confirmPaymentIntent payload."""

    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class PaymentIntentResponse(CamelModel):
    """createPaymentIntent response."""

    payment_intent_id: str
    client_secret: str
    amount_minor: int
    currency: str
    quantity: int
    publishable_key: str


class WebhookResponse(BaseModel):
    """Stripe webhook acknowledgement."""

    status: Literal["success", "acknowledged", "ignored"]
    event_id: str


# ============================================================================
# Session Models
# ============================================================================


class StartConversationResponse(CamelModel):
    """startConversation response."""

    session_token: str
    mode: CreditMode
    expires_at: str


class EndConversationPayload(CamelModel):
    """endConversation payload (token may also come from the header)."""

    session_token: str | None = Field(None, max_length=255)


class EndConversationResponse(CamelModel):
    """endConversation response."""

    revoked: bool


# ============================================================================
# Pipeline Inputs
# ============================================================================


class ReferenceLinkModel(CamelModel):
    """A (title, url) reference link."""

    title: str
    url: str


class AnalysisResultModel(CamelModel):
    """Terminal output of a conversation."""

    topic: str
    perspective_a_label: str = ""
    perspective_b_label: str = ""
    summary_bullets: list[str]
    perspective_a_bullets: list[str]
    perspective_b_bullets: list[str]
    narration: str
    summary_links: list[ReferenceLinkModel] = Field(default_factory=list)
    perspective_a_links: list[ReferenceLinkModel] = Field(default_factory=list)
    perspective_b_links: list[ReferenceLinkModel] = Field(default_factory=list)


class PerspectivePayload(CamelModel):
    """Topic and the two perspectives being debated."""

    topic: str = Field(..., min_length=1, max_length=2000)
    opinion_a: str = Field(..., min_length=1, max_length=4000)
    opinion_b: str = Field(..., min_length=1, max_length=4000)

    @field_validator("topic", "opinion_a", "opinion_b")
    @classmethod
    def strip_text(cls, v: str) -> str:
        """Reject whitespace-only text."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class InitialPayload(PerspectivePayload):
    """initial payload."""

    previous_analysis: AnalysisResultModel | None = None


class ConflictPayload(PerspectivePayload):
    """conflict payload."""

    query_a: str = Field(..., min_length=1, max_length=500)
    query_b: str = Field(..., min_length=1, max_length=500)


class SupportPayload(PerspectivePayload):
    """support payload."""

    query: str = Field(..., min_length=1, max_length=500)


class FinalPayload(PerspectivePayload):
    """final payload."""

    initial_narration: str = ""
    conflict_narration: str = ""
    support_narration: str = ""


class ConversationRequest(PerspectivePayload):
    """POST /v1/conversations request body."""

    previous_analysis: AnalysisResultModel | None = None
    perspective_a_label: str | None = Field(None, max_length=100)
    perspective_b_label: str | None = Field(None, max_length=100)
    device_id: str | None = Field(None, max_length=255)


class TranscribePayload(CamelModel):
    """transcribeAndExtract payload."""

    audio_data: str = Field(..., min_length=1, description="Base64-encoded audio")
    mime_type: str = Field(..., min_length=1, max_length=100)


# ============================================================================
# Completion Outputs (validated model responses)
# ============================================================================


class InitialOutput(CamelModel):
    """Schema of the initial completion."""

    summary_bullets: list[str] = Field(..., min_length=1)
    perspective_a_bullets: list[str] = Field(..., min_length=1)
    perspective_b_bullets: list[str] = Field(..., min_length=1)
    narration: str = Field(..., min_length=1)
    one_line_summary: str = ""


class QueriesOutput(CamelModel):
    """Schema of the queries completion."""

    query_a: str = Field(..., min_length=1)
    query_b: str = Field(..., min_length=1)


class StageOutput(CamelModel):
    """Schema of the conflict and support completions."""

    summary_bullets: list[str] = Field(..., min_length=1)
    narration: str = Field(..., min_length=1)
    one_line_summary: str = ""


class SupportQueryOutput(CamelModel):
    """Schema of the supportQuery completion."""

    query: str = Field(..., min_length=1)


class FinalOutput(CamelModel):
    """Schema of the final completion."""

    summary_bullets: list[str] = Field(..., min_length=1)
    perspective_a_bullets: list[str] = Field(..., min_length=1)
    perspective_b_bullets: list[str] = Field(..., min_length=1)
    narration: str = Field(..., min_length=1)


class TranscriptionOutput(CamelModel):
    """Schema of the transcribeAndExtract completion."""

    topic: str
    viewpoint_a: str
    viewpoint_b: str
    transcript: str = ""
    confidence: Literal["high", "medium", "low"] = "low"


# ============================================================================
# Stage Responses
# ============================================================================


class ConflictResult(StageOutput):
    """conflict stage output plus the evidence links of each side."""

    perspective_a_links: list[ReferenceLinkModel] = Field(default_factory=list)
    perspective_b_links: list[ReferenceLinkModel] = Field(default_factory=list)


class SupportResult(StageOutput):
    """support stage output plus the evidence links."""

    summary_links: list[ReferenceLinkModel] = Field(default_factory=list)


class ActionResponse(CamelModel):
    """Response of a charged action."""

    action: str
    charged: bool
    mode: CreditMode
    session_token: str
    result: (
        InitialOutput
        | QueriesOutput
        | ConflictResult
        | SupportResult
        | SupportQueryOutput
        | FinalOutput
        | TranscriptionOutput
    )


class StageResultModel(CamelModel):
    """User-facing output of a stage."""

    stage_name: str
    summary_bullets: list[str]
    narration: str
    one_line_summary: str


class ProgressEventModel(CamelModel):
    """One line of the streamed conversation."""

    type: Literal["progress"] = "progress"
    stage: str
    progress: float
    result: StageResultModel | None = None


class ConversationStartedModel(CamelModel):
    """First line of the streamed conversation."""

    type: Literal["session"] = "session"
    session_token: str
    mode: CreditMode
    expires_at: str


class ConversationResultModel(CamelModel):
    """Last line of a successful streamed conversation."""

    type: Literal["result"] = "result"
    result: AnalysisResultModel


# ============================================================================
# Error and Health Models
# ============================================================================


class ErrorBody(BaseModel):
    """Error details."""

    code: ErrorCode
    message: str


class ErrorResponse(CamelModel):
    """Error envelope returned for every failure."""

    type: Literal["error"] = "error"
    error: ErrorBody
    # Set when the failed call already paid for a conversation
    session_token: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str


class PingResponse(BaseModel):
    """Diagnostic ping response."""

    ok: bool = True
