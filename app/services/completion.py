"""
Completion Provider - generative model access with failure classification.

Model output is treated as untrusted text: the JSON object is located
(inside code fences or surrounding chatter), decoded, then validated
against a per-action pydantic schema.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from structlog import get_logger

from app.exceptions import (
    MalformedResponseError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamProviderError,
    UpstreamTimeoutError,
)

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class InlineAudio:
    """Base64 audio sent alongside a prompt."""

    data: str
    mime_type: str


class CompletionProvider(Protocol):
    """
    Completion provider protocol.

    Implementations return the decoded JSON object produced by the model
    and raise the UpstreamProviderError family on failure.
    """

    async def complete(
        self, action: str, prompt: str, *, audio: InlineAudio | None = None
    ) -> dict[str, Any]:
        ...


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Return the first JSON object in `text`, ignoring fences and chatter.

    Each fenced block is tried in turn, then the whole text. Decoding starts
    at every `{` and stops at the end of the object, so trailing prose with
    braces of its own does not matter.
    """
    if not text or not text.strip():
        raise ValueError("Empty model output")
    decoder = json.JSONDecoder()
    candidates = [block.strip() for block in _FENCE_RE.findall(text)]
    candidates.append(text)
    for candidate in candidates:
        start = candidate.find("{")
        while start != -1:
            try:
                data, _ = decoder.raw_decode(candidate, start)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                return data
            start = candidate.find("{", start + 1)
    raise ValueError("No JSON object found in output")


def decode_completion(action: str, text: str) -> dict[str, Any]:
    """Decode model text into a JSON object or raise MalformedResponseError."""
    try:
        return extract_json_object(text)
    except ValueError as exc:
        raise MalformedResponseError(action, str(exc)) from exc


def parse_completion(action: str, data: dict[str, Any], model: type[T]) -> T:
    """Validate a decoded completion against its output schema."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "completion_schema_mismatch",
            action=action,
            errors=exc.error_count(),
            keys=sorted(data.keys()),
        )
        raise MalformedResponseError(action, f"schema mismatch: {exc.error_count()} errors") from exc


def _candidate_text(data: Any) -> str | None:
    """Concatenate the text parts of the first candidate."""
    if not isinstance(data, dict):
        return None
    candidates = data.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [part["text"] for part in parts if isinstance(part, dict) and part.get("text")]
    return "".join(texts) or None


class GeminiCompletionProvider:
    """
    Gemini REST adapter (models/{model}:generateContent).

    Failure classification:
    - 429 -> RateLimitedError
    - 5xx, network errors -> TransientUpstreamError
    - timeout -> UpstreamTimeoutError
    - other 4xx -> UpstreamProviderError
    - unparsable or schema-violating output -> MalformedResponseError
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float,
        max_output_tokens: int,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def complete(
        self, action: str, prompt: str, *, audio: InlineAudio | None = None
    ) -> dict[str, Any]:
        parts: list[dict[str, Any]] = []
        if audio is not None:
            parts.append({"inline_data": {"mime_type": audio.mime_type, "data": audio.data}})
        parts.append({"text": prompt})

        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            response = await self.http_client.post(
                url,
                json=body,
                headers={"x-goog-api-key": self.api_key},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.warning("completion_timeout", action=action, model=self.model)
            raise UpstreamTimeoutError(action, self.timeout_seconds) from exc
        except httpx.RequestError as exc:
            logger.warning("completion_network_error", action=action, error=str(exc))
            raise TransientUpstreamError(action, f"network error: {type(exc).__name__}") from exc

        status = response.status_code
        if status == 429:
            logger.warning("completion_rate_limited", action=action, model=self.model)
            raise RateLimitedError(action, "rate limited by completion provider")
        if status >= 500:
            logger.warning("completion_upstream_unavailable", action=action, status=status)
            raise TransientUpstreamError(action, f"provider returned HTTP {status}")
        if status >= 400:
            logger.error(
                "completion_request_rejected",
                action=action,
                status=status,
                body_preview=response.text[:500],
            )
            raise UpstreamProviderError(action, f"provider rejected request: HTTP {status}")

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(action, "provider response is not JSON") from exc

        text = _candidate_text(data)
        if text is None:
            logger.warning(
                "completion_empty",
                action=action,
                finish_reason=(data.get("candidates") or [{}])[0].get("finishReason")
                if isinstance(data, dict)
                else None,
            )
            raise MalformedResponseError(action, "provider returned no text")

        return decode_completion(action, text)
