"""
FastAPI Dependencies - device identification and provider wiring.

Providers are process-wide singletons so HTTP connection pools are shared;
tests replace them with app.dependency_overrides.
"""

from fastapi import Depends

from app.config import settings
from app.exceptions import MissingIdentifierError
from app.models.domain import validate_device_id
from app.services.completion import CompletionProvider, GeminiCompletionProvider
from app.services.evidence import DuckDuckGoEvidenceLookup, EvidenceLookup
from app.services.payment_provider import PaymentProvider
from app.services.pipeline import PipelineOrchestrator
from app.services.stripe_provider import StripeProvider

_completion_provider: GeminiCompletionProvider | None = None
_evidence_lookup: DuckDuckGoEvidenceLookup | None = None
_payment_provider: StripeProvider | None = None


def resolve_device_id(header_value: str | None, body_value: str | None) -> str:
    """
    Device id from the X-Device-Id header, else from the request body.

    Raises:
        MissingIdentifierError: neither carries a non-blank id
        ValueError: id longer than allowed
    """
    for candidate in (header_value, body_value):
        if candidate and candidate.strip():
            return validate_device_id(candidate.strip())
    raise MissingIdentifierError()


def resolve_session_token(header_value: str | None, payload: dict[str, object]) -> str | None:
    """Session token from the X-Session-Token header, else the payload's sessionToken."""
    if header_value and header_value.strip():
        return header_value.strip()
    token = payload.get("sessionToken")
    if isinstance(token, str) and token.strip():
        return token.strip()
    return None


def get_completion_provider() -> CompletionProvider:
    global _completion_provider
    if _completion_provider is None:
        _completion_provider = GeminiCompletionProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.completion_timeout_seconds,
            max_output_tokens=settings.completion_max_output_tokens,
        )
    return _completion_provider


def get_evidence_lookup() -> EvidenceLookup:
    global _evidence_lookup
    if _evidence_lookup is None:
        _evidence_lookup = DuckDuckGoEvidenceLookup(
            search_url=settings.evidence_search_url,
            user_agent=settings.evidence_user_agent,
            max_chars=settings.evidence_max_chars,
            max_page_bytes=settings.evidence_max_page_bytes,
        )
    return _evidence_lookup


def get_payment_provider() -> PaymentProvider:
    global _payment_provider
    if _payment_provider is None:
        _payment_provider = StripeProvider(
            api_key=settings.stripe_api_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
    return _payment_provider


def get_orchestrator(
    completion: CompletionProvider = Depends(get_completion_provider),
    evidence: EvidenceLookup = Depends(get_evidence_lookup),
) -> PipelineOrchestrator:
    return PipelineOrchestrator(completion, evidence)


async def close_providers() -> None:
    """Close shared HTTP clients (for graceful shutdown)."""
    global _completion_provider, _evidence_lookup

    if _completion_provider is not None:
        await _completion_provider.aclose()
        _completion_provider = None
    if _evidence_lookup is not None:
        await _evidence_lookup.aclose()
        _evidence_lookup = None
