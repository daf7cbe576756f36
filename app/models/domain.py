"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from app.models.api import CreditMode, ReconciliationSource

MAX_DEVICE_ID_LENGTH = 255


def validate_device_id(device_id: str) -> str:
    """Validate a client-supplied device identifier."""
    if not device_id or not device_id.strip():
        raise ValueError("device_id cannot be empty")
    if len(device_id) > MAX_DEVICE_ID_LENGTH:
        raise ValueError(f"device_id longer than {MAX_DEVICE_ID_LENGTH} characters")
    return device_id


# ============================================================================
# Ledger Models
# ============================================================================


@dataclass(frozen=True)
class CreditSnapshot:
    """Immutable view of a device's credits at a point in time."""

    paid_credits: int
    free_available_today: bool
    free_pool_remaining: int
    unit_price_minor: int
    currency: str

    def __post_init__(self) -> None:
        """Validate snapshot constraints."""
        if self.paid_credits < 0:
            raise ValueError(f"Paid credits cannot be negative: {self.paid_credits}")
        if self.free_pool_remaining < 0:
            raise ValueError(f"Free pool remaining cannot be negative: {self.free_pool_remaining}")


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of consuming one credit."""

    device_id: str
    mode: CreditMode
    paid_credits_after: int


@dataclass(frozen=True)
class PurchaseIntent:
    """Validated purchase about to be applied to the ledger - immutable intent."""

    device_id: str
    quantity: int
    transaction_id: str
    received_amount_minor: int
    currency: str
    source: ReconciliationSource

    def __post_init__(self) -> None:
        """Validate purchase constraints."""
        validate_device_id(self.device_id)
        if self.quantity <= 0:
            raise ValueError(f"Purchase quantity must be positive: {self.quantity}")
        if not self.transaction_id:
            raise ValueError("transaction_id cannot be empty")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


# ============================================================================
# Session Models
# ============================================================================


@dataclass(frozen=True)
class ConversationSessionData:
    """A freshly minted conversation session (the only time the raw token exists)."""

    session_token: str
    device_id: str
    mode: CreditMode
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class StageAuthorization:
    """Proof that a stage call is covered by a charged conversation."""

    device_id: str
    mode: CreditMode
    session_token: str
    charged: bool


# ============================================================================
# Pipeline Models
# ============================================================================


@dataclass(frozen=True)
class SearchResult:
    """One evidence search hit."""

    title: str
    url: str
    snippet: str = ""


@dataclass(frozen=True)
class ReferenceLink:
    """A (title, url) reference shown with the analysis."""

    title: str
    url: str

    @classmethod
    def from_search_result(cls, result: SearchResult) -> "ReferenceLink":
        return cls(title=result.title, url=result.url)


@dataclass(frozen=True)
class Evidence:
    """Search hits for one query and the extracted text of the top pages."""

    query: str
    results: tuple[SearchResult, ...] = ()
    page_texts: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated page text; empty when nothing could be fetched."""
        return " ".join(t for t in self.page_texts if t)

    def links(self, limit: int) -> list[ReferenceLink]:
        return [ReferenceLink.from_search_result(r) for r in self.results[:limit]]


@dataclass(frozen=True)
class StageResult:
    """User-facing output of a pipeline stage."""

    stage_name: str
    summary_bullets: tuple[str, ...]
    narration: str
    one_line_summary: str


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted on each pipeline transition."""

    stage: str
    progress: float
    result: StageResult | None = None


@dataclass(frozen=True)
class AnalysisResult:
    """Terminal output of a conversation. Immutable once produced."""

    topic: str
    perspective_a_label: str
    perspective_b_label: str
    summary_bullets: tuple[str, ...]
    perspective_a_bullets: tuple[str, ...]
    perspective_b_bullets: tuple[str, ...]
    narration: str
    summary_links: tuple[ReferenceLink, ...] = field(default_factory=tuple)
    perspective_a_links: tuple[ReferenceLink, ...] = field(default_factory=tuple)
    perspective_b_links: tuple[ReferenceLink, ...] = field(default_factory=tuple)


# ============================================================================
# Payment Models
# ============================================================================


@dataclass(frozen=True)
class WebhookOutcome:
    """How a processor notification was handled."""

    event_id: str
    status: str  # success | acknowledged | ignored
    snapshot: CreditSnapshot | None = None
