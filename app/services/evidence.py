"""
Evidence Lookup - web search and page text for the evidence stages.

Evidence is best-effort: gather_evidence() never raises for lookup
failures, it degrades to an empty Evidence and records why.
"""

import asyncio
import re
from typing import Protocol
from urllib.parse import parse_qs, urlparse

import httpx
from bs4 import BeautifulSoup
from structlog import get_logger

from app.models.domain import Evidence, SearchResult
from app.observability.metrics import metrics

logger = get_logger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_NOISE_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside", "form", "svg")


class EvidenceLookup(Protocol):
    """Search and fetch interface used by the pipeline."""

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        ...

    async def fetch_text(self, url: str) -> str:
        ...


def unwrap_result_url(href: str) -> str | None:
    """
    Resolve a DuckDuckGo result link to its target.

    Redirect links (//duckduckgo.com/l/?uddg=...) are unwrapped; anything
    still pointing at DuckDuckGo (ads, internal pages) returns None.
    """
    if not href:
        return None
    if href.startswith("//"):
        href = "https:" + href
    parsed = urlparse(href)
    if "duckduckgo.com" in parsed.netloc:
        target = parse_qs(parsed.query).get("uddg")
        if not target:
            return None
        href = target[0]
        parsed = urlparse(href)
    if parsed.scheme not in ("http", "https") or "duckduckgo.com" in parsed.netloc:
        return None
    return href


def parse_search_results(html: str, max_results: int) -> list[SearchResult]:
    """Extract result titles, links and snippets from DuckDuckGo HTML."""
    soup = BeautifulSoup(html, "html.parser")
    results: list[SearchResult] = []
    for container in soup.select(".result"):
        anchor = container.select_one("a.result__a")
        if anchor is None:
            continue
        url = unwrap_result_url(str(anchor.get("href") or ""))
        if url is None:
            continue
        snippet_tag = container.select_one(".result__snippet")
        results.append(
            SearchResult(
                title=anchor.get_text(" ", strip=True),
                url=url,
                snippet=snippet_tag.get_text(" ", strip=True) if snippet_tag else "",
            )
        )
        if len(results) >= max_results:
            break
    return results


def html_to_text(html: str, max_chars: int) -> str:
    """Readable text of a page with markup noise removed, truncated."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    text = _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()
    return text[:max_chars]


class DuckDuckGoEvidenceLookup:
    """DuckDuckGo HTML search plus plain page fetching."""

    def __init__(
        self,
        search_url: str,
        user_agent: str,
        max_chars: int,
        max_page_bytes: int = 512_000,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.search_url = search_url
        self.user_agent = user_agent
        self.max_chars = max_chars
        self.max_page_bytes = max_page_bytes
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def search(self, query: str, max_results: int) -> list[SearchResult]:
        response = await self.http_client.get(self.search_url, params={"q": query})
        response.raise_for_status()
        results = parse_search_results(response.text, max_results)
        logger.debug("evidence_search_completed", query=query, results=len(results))
        return results

    async def fetch_text(self, url: str) -> str:
        """Page text; the body is read only up to max_page_bytes."""
        async with self.http_client.stream("GET", url) as response:
            response.raise_for_status()
            content_type = response.headers.get("content-type", "")
            if content_type and "html" not in content_type and "text" not in content_type:
                return ""
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= self.max_page_bytes:
                    logger.debug("evidence_page_truncated", url=url, limit=self.max_page_bytes)
                    break
            encoding = response.charset_encoding or "utf-8"
        html = bytes(body[: self.max_page_bytes]).decode(encoding, errors="replace")
        return html_to_text(html, self.max_chars)


async def _fetch_page(lookup: EvidenceLookup, url: str, timeout: float) -> str:
    try:
        return await asyncio.wait_for(lookup.fetch_text(url), timeout)
    except asyncio.TimeoutError:
        metrics.evidence_fallbacks_total.labels(reason="fetch_timeout").inc()
        logger.info("evidence_fetch_timeout", url=url, timeout_seconds=timeout)
    except Exception as exc:  # any page failure just drops that page
        metrics.evidence_fallbacks_total.labels(reason="fetch_error").inc()
        logger.info("evidence_fetch_failed", url=url, error=str(exc), error_type=type(exc).__name__)
    return ""


async def gather_evidence(
    lookup: EvidenceLookup,
    query: str,
    *,
    max_results: int,
    pages: int,
    search_timeout: float,
    fetch_timeout: float,
) -> Evidence:
    """Search `query`, fetch the top `pages` results concurrently; never raises."""
    try:
        results = await asyncio.wait_for(lookup.search(query, max_results), search_timeout)
    except asyncio.TimeoutError:
        metrics.evidence_fallbacks_total.labels(reason="search_timeout").inc()
        logger.warning("evidence_search_timeout", query=query, timeout_seconds=search_timeout)
        return Evidence(query=query)
    except Exception as exc:  # lookup failures degrade to empty evidence
        metrics.evidence_fallbacks_total.labels(reason="search_error").inc()
        logger.warning(
            "evidence_search_failed",
            query=query,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return Evidence(query=query)

    if not results:
        metrics.evidence_fallbacks_total.labels(reason="no_results").inc()
        return Evidence(query=query)

    texts = await asyncio.gather(
        *(_fetch_page(lookup, r.url, fetch_timeout) for r in results[:pages])
    )
    return Evidence(query=query, results=tuple(results), page_texts=tuple(texts))
