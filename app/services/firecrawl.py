# =============================================================================
# Firecrawl Extraction Adapter — Financial Web Page Scraping
# =============================================================================
#
# For one research sub-question, builds search-page URLs on a fixed list of
# financial news sites, scrapes the first N of them through Firecrawl's
# /v1/scrape endpoint, and returns every page as a FirecrawlPage with a
# naive query-word relevance score.
#
# FLOW (per query):
#   generate_financial_search_urls() → scrape_url() × max_pages (sequential,
#   fixed delay between pages) → sort successes by relevance → extraction
#
# DESIGN DECISION: Sequential page scraping.
# Firecrawl rate-limits per key; one page at a time with a pause is slower
# but never trips the limit. Parallelism happens one level up, across
# sub-questions, in the search orchestrator.
#
# DESIGN DECISION: Per-page failures are values.
# A page that fails to scrape becomes a ScrapeOutcome(success=False). Only
# a configuration error (missing API key) makes extract_for_query() raise.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx

from app.config import Settings, is_configured_key, settings

logger = logging.getLogger(__name__)

PROVIDER_NAME = "firecrawl"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class FirecrawlPage:
    """Structured content extracted from one scraped page."""

    title: str
    url: str
    content: str
    summary: str
    relevance_score: int
    keywords: list[str] = field(default_factory=list)
    publish_date: str | None = None
    author: str | None = None
    extracted_data: Any = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "summary": self.summary,
            "keywords": self.keywords,
            "publishDate": self.publish_date,
            "author": self.author,
            "extractedData": self.extracted_data,
            "relevanceScore": self.relevance_score,
        }


@dataclass
class ScrapeOutcome:
    """Result of scraping one URL: a page or an error."""

    url: str
    success: bool
    page: FirecrawlPage | None = None
    error: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat()
    )


@dataclass
class FirecrawlExtraction:
    """All scrape outcomes for one query."""

    query: str
    successful: list[ScrapeOutcome]
    failed: list[ScrapeOutcome]
    extraction_id: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat()
    )
    source: str = PROVIDER_NAME

    @property
    def total(self) -> int:
        return len(self.successful) + len(self.failed)

    @property
    def ok(self) -> bool:
        return len(self.successful) > 0


# ---------------------------------------------------------------------------
# URL Generation & Relevance
# ---------------------------------------------------------------------------

_FINANCIAL_SEARCH_PAGES = [
    "https://www.investopedia.com/search?q={q}",
    "https://finance.yahoo.com/search?p={q}",
    "https://www.marketwatch.com/search?q={q}",
    "https://www.bloomberg.com/search?query={q}",
    "https://www.cnbc.com/search/?query={q}",
    "https://www.reuters.com/search/news?blob={q}",
    "https://www.wsj.com/search?query={q}",
    "https://seekingalpha.com/search?q={q}",
]


def generate_financial_search_urls(query: str) -> list[str]:
    """Search-result pages on well-known financial sites for a query."""
    encoded = quote(query, safe="")
    return [template.format(q=encoded) for template in _FINANCIAL_SEARCH_PAGES]


def calculate_relevance_score(text: str, query: str) -> int:
    """
    Percentage of query words that appear anywhere in the page text.

    Substring match, case-insensitive, rounded to an integer in [0, 100].
    """
    query_words = query.lower().split()
    if not query_words:
        return 0
    haystack = (text or "").lower()
    hits = sum(1 for word in query_words if word in haystack)
    return round(hits / len(query_words) * 100)


def extract_structured_content(
    payload: dict[str, Any], query: str,
) -> FirecrawlPage | None:
    """Map a Firecrawl scrape `data` object into a FirecrawlPage."""
    if not payload:
        return None

    metadata = payload.get("metadata") or {}
    text = payload.get("markdown") or payload.get("html") or ""
    keywords = metadata.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [k.strip() for k in keywords.split(",") if k.strip()]

    return FirecrawlPage(
        title=metadata.get("title") or "No title",
        url=metadata.get("sourceURL") or payload.get("url") or "Unknown URL",
        content=text or "No content extracted",
        summary=metadata.get("description") or "No description",
        keywords=keywords,
        publish_date=metadata.get("publishDate"),
        author=metadata.get("author"),
        extracted_data=payload.get("llm_extraction") or payload.get("json"),
        relevance_score=calculate_relevance_score(text, query),
    )


def _millis() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class FirecrawlClient:
    """
    Firecrawl scraping adapter.

    Args:
        config: Settings to read keys, limits and delays from.
        http_client: Optional pre-built httpx.AsyncClient. Tests pass one
            backed by httpx.MockTransport; in production a client is opened
            per query and closed when the query finishes.
    """

    def __init__(
        self,
        config: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or settings
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return is_configured_key(self._config.firecrawl_api_key)

    def _require_key(self) -> str:
        key = self._config.firecrawl_api_key
        if not is_configured_key(key):
            raise ValueError(
                "FIRECRAWL_API_KEY is required (not the placeholder value)"
            )
        return key

    def _open_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.firecrawl_base_url,
            timeout=self._config.firecrawl_timeout_seconds + 10,
            transport=httpx.AsyncHTTPTransport(
                retries=self._config.firecrawl_max_retries,
            ),
        )

    async def scrape_url(
        self,
        url: str,
        query: str,
        client: httpx.AsyncClient | None = None,
    ) -> ScrapeOutcome:
        """Scrape one URL. Never raises; failures become ScrapeOutcome values."""
        logger.info("Firecrawl scraping %s", url)
        body = {
            "url": url,
            "formats": ["markdown"],
            "onlyMainContent": True,
            "timeout": int(self._config.firecrawl_timeout_seconds * 1000),
            "waitFor": self._config.firecrawl_wait_for_ms,
        }

        try:
            key = self._require_key()
            http = client or self._http_client
            if http is None:
                async with self._open_client() as owned:
                    response = await self._post_scrape(owned, key, body)
            else:
                response = await self._post_scrape(http, key, body)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Firecrawl scrape failed for %s: %s", url, e)
            return ScrapeOutcome(url=url, success=False, error=str(e))

        if not response.get("success"):
            error = response.get("error") or "Scrape unsuccessful"
            logger.warning("Firecrawl scrape unsuccessful for %s: %s", url, error)
            return ScrapeOutcome(url=url, success=False, error=error)

        page = extract_structured_content(response.get("data") or {}, query)
        if page is None:
            return ScrapeOutcome(url=url, success=False, error="Empty scrape payload")
        return ScrapeOutcome(url=url, success=True, page=page)

    async def _post_scrape(
        self, http: httpx.AsyncClient, key: str, body: dict,
    ) -> dict[str, Any]:
        response = await http.post(
            f"{self._config.firecrawl_base_url.rstrip('/')}/v1/scrape",
            json=body,
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()
        return response.json()

    async def extract_for_query(self, query: str) -> FirecrawlExtraction:
        """
        Scrape the financial search pages for one query.

        Raises:
            ValueError: If FIRECRAWL_API_KEY is not configured.
        """
        self._require_key()
        cfg = self._config
        urls = generate_financial_search_urls(query)[: cfg.firecrawl_max_pages]
        logger.info("Firecrawl extraction for '%s': %d URLs", query[:80], len(urls))

        outcomes: list[ScrapeOutcome] = []
        if self._http_client is not None:
            outcomes = await self._scrape_all(urls, query, self._http_client)
        else:
            async with self._open_client() as http:
                outcomes = await self._scrape_all(urls, query, http)

        successful = [o for o in outcomes if o.success and o.page is not None]
        failed = [o for o in outcomes if not o.success]
        successful.sort(key=lambda o: o.page.relevance_score, reverse=True)

        logger.info(
            "Firecrawl extraction complete: %d successful, %d failed",
            len(successful), len(failed),
        )
        return FirecrawlExtraction(
            query=query,
            successful=successful,
            failed=failed,
            extraction_id=f"fc_{_millis()}",
        )

    async def _scrape_all(
        self, urls: list[str], query: str, http: httpx.AsyncClient,
    ) -> list[ScrapeOutcome]:
        outcomes = []
        for i, url in enumerate(urls):
            outcomes.append(await self.scrape_url(url, query, client=http))
            if i < len(urls) - 1 and self._config.firecrawl_page_delay_seconds:
                await asyncio.sleep(self._config.firecrawl_page_delay_seconds)
        return outcomes

    async def extract_for_queries(
        self, queries: list[str],
    ) -> list[FirecrawlExtraction]:
        """Run extract_for_query() for each query, one after another."""
        results = []
        for i, query in enumerate(queries):
            results.append(await self.extract_for_query(query))
            if i < len(queries) - 1 and self._config.firecrawl_query_delay_seconds:
                await asyncio.sleep(self._config.firecrawl_query_delay_seconds)
        return results
