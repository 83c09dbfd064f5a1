# =============================================================================
# Unit Tests — Firecrawl Extraction Adapter
# =============================================================================
#
# HTTP is served by httpx.MockTransport, so the real request/response code
# path runs without touching the network.
# =============================================================================

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from app.config import Settings
from app.services.firecrawl import (
    FirecrawlClient,
    calculate_relevance_score,
    extract_structured_content,
    generate_financial_search_urls,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _settings(**overrides) -> Settings:
    values = {
        "firecrawl_api_key": "fc-test",
        "firecrawl_max_pages": 3,
        "firecrawl_page_delay_seconds": 0,
        "firecrawl_query_delay_seconds": 0,
        "_env_file": None,
    }
    values.update(overrides)
    return Settings(**values)


def _page(url: str, markdown: str, title: str = "Page") -> dict:
    return {
        "success": True,
        "data": {
            "markdown": markdown,
            "metadata": {
                "title": title,
                "sourceURL": url,
                "description": "A page about markets",
                "keywords": "fed, rates",
            },
        },
    }


class TestRelevanceScore:
    def test_all_words_present(self):
        assert calculate_relevance_score("Federal Reserve raised rates", "federal reserve") == 100

    def test_half_present(self):
        assert calculate_relevance_score("inflation is cooling", "inflation gdp") == 50

    def test_empty_query(self):
        assert calculate_relevance_score("anything", "") == 0

    def test_empty_text(self):
        assert calculate_relevance_score("", "rates") == 0


class TestUrlGeneration:
    def test_eight_sites_with_encoded_query(self):
        urls = generate_financial_search_urls("fed rate & cpi")
        assert len(urls) == 8
        assert all("fed%20rate%20%26%20cpi" in url for url in urls)
        assert urls[0].startswith("https://www.investopedia.com/")


class TestExtractStructuredContent:
    def test_maps_metadata(self):
        page = extract_structured_content(
            _page("https://www.reuters.com/a", "The fed held rates")["data"],
            "fed rates",
        )
        assert page.title == "Page"
        assert page.url == "https://www.reuters.com/a"
        assert page.summary == "A page about markets"
        assert page.keywords == ["fed", "rates"]
        assert page.relevance_score == 100

    def test_defaults_when_metadata_missing(self):
        page = extract_structured_content({"markdown": "text"}, "q")
        assert page.title == "No title"
        assert page.url == "Unknown URL"
        assert page.summary == "No description"

    def test_empty_payload(self):
        assert extract_structured_content({}, "q") is None


class TestExtractForQuery:
    def test_scrapes_pages_and_sorts_by_relevance(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append((request, body))
            url = body["url"]
            if "yahoo" in url:
                return httpx.Response(200, json=_page(url, "inflation and rates"))
            if "marketwatch" in url:
                return httpx.Response(500, json={"error": "upstream"})
            return httpx.Response(200, json=_page(url, "nothing relevant"))

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                client = FirecrawlClient(_settings(), http_client=http)
                return await client.extract_for_query("inflation rates")

        extraction = _run(scenario())

        assert len(requests) == 3
        request, body = requests[0]
        assert request.url.path == "/v1/scrape"
        assert request.headers["Authorization"] == "Bearer fc-test"
        assert body["formats"] == ["markdown"]
        assert body["onlyMainContent"] is True
        assert body["timeout"] == 60000
        assert body["waitFor"] == 3000

        assert extraction.ok
        assert extraction.total == 3
        assert len(extraction.failed) == 1
        scores = [o.page.relevance_score for o in extraction.successful]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == 100
        assert extraction.extraction_id.startswith("fc_")

    def test_unsuccessful_payload_is_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "error": "blocked"})

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                client = FirecrawlClient(_settings(firecrawl_max_pages=1), http_client=http)
                return await client.extract_for_query("gdp")

        extraction = _run(scenario())
        assert not extraction.ok
        assert extraction.failed[0].error == "blocked"

    def test_missing_key_raises(self):
        client = FirecrawlClient(_settings(firecrawl_api_key=""))
        assert not client.is_configured
        with pytest.raises(ValueError, match="FIRECRAWL_API_KEY"):
            _run(client.extract_for_query("gdp"))

    def test_extract_for_queries_runs_each(self):
        def handler(request: httpx.Request) -> httpx.Response:
            url = json.loads(request.content)["url"]
            return httpx.Response(200, json=_page(url, "markets"))

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
                client = FirecrawlClient(_settings(firecrawl_max_pages=1), http_client=http)
                return await client.extract_for_queries(["markets", "bonds"])

        results = _run(scenario())
        assert [r.query for r in results] == ["markets", "bonds"]


class TestHttpClient:
    def test_transport_retries_follow_settings(self, monkeypatch):
        seen = {}
        real_transport = httpx.AsyncHTTPTransport

        def transport(**kwargs):
            seen.update(kwargs)
            return real_transport(**kwargs)

        monkeypatch.setattr(httpx, "AsyncHTTPTransport", transport)
        http = FirecrawlClient(_settings(firecrawl_max_retries=5))._open_client()

        assert seen["retries"] == 5
        assert str(http.base_url).startswith("https://api.firecrawl.dev")
        _run(http.aclose())
