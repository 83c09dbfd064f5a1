# =============================================================================
# Search Orchestrator — Parallel Multi-Provider Search
# =============================================================================
#
# Runs one query against every enabled provider (Perplexity, Firecrawl) at
# the same time, bounds the whole thing with a single timeout, and merges
# whatever came back into a CombinedResult.
#
# FLOW (one query):
#   SearchOperation(pending) → in_progress → provider tasks race a timeout
#   → combine_search_results() → completed
#                      └─ timeout / error → partial_success if any provider
#                         already answered (and fallback is on), else raise
#
# FLOW (batch):
#   queries split into windows of `max_concurrent`; all queries in a window
#   run concurrently; a fixed pause separates windows; a failing query turns
#   into a failed SearchOutcome instead of aborting the batch.
#
# DESIGN DECISION: Provider failures are isolated, not propagated.
# Each provider call is wrapped so its exception lands in the operation's
# error slot for that provider. One flaky provider never fails the search.
#
# DESIGN DECISION: Cancellation is advisory.
# cancel_search() flips the status flag for observers. It does not abort
# the provider calls already in flight.
#
# DESIGN DECISION: No automatic retries.
# `retry_attempts` exists in the config for compatibility but the
# orchestrator never consults it. Provider SDKs do their own retrying.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from app.config import Settings, settings
from app.errors import NoProvidersEnabledError, SearchTimeoutError
from app.services.firecrawl import FirecrawlExtraction
from app.services.operation_store import OperationStore
from app.services.perplexity import PerplexityResult

logger = logging.getLogger(__name__)

PERPLEXITY = "perplexity"
FIRECRAWL = "firecrawl"


# ---------------------------------------------------------------------------
# Provider Interfaces
# ---------------------------------------------------------------------------


class SearchProvider(Protocol):
    async def search(self, sub_question: str) -> PerplexityResult: ...


class ExtractionProvider(Protocol):
    async def extract_for_query(self, query: str) -> FirecrawlExtraction: ...


# ---------------------------------------------------------------------------
# Status & Operation
# ---------------------------------------------------------------------------


class SearchStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    # Outcome-only: returned to callers, never stored on an operation
    PARTIAL_SUCCESS = "partial_success"


TERMINAL_STATUSES = frozenset({
    SearchStatus.COMPLETED,
    SearchStatus.FAILED,
    SearchStatus.TIMEOUT,
    SearchStatus.CANCELLED,
})


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _millis() -> int:
    return int(time.time() * 1000)


def new_search_id(prefix: str = "search") -> str:
    return f"{prefix}_{_millis()}_{secrets.token_hex(5)[:9]}"


@dataclass
class SearchOperation:
    """
    Execution record for one query.

    Each provider wrapper writes only its own result/error slot. Once the
    status is terminal it never changes again.
    """

    id: str
    query: str
    status: SearchStatus = SearchStatus.PENDING
    started_at: float = field(default_factory=time.monotonic)
    start_time: str = field(default_factory=_now_iso)
    ended_at: float | None = None
    end_time: str | None = None
    perplexity: PerplexityResult | None = None
    firecrawl: FirecrawlExtraction | None = None
    errors: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    combined: CombinedResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: SearchStatus) -> bool:
        """Move to `status` unless already terminal. Returns True on change."""
        if self.is_terminal:
            return False
        self.status = status
        if status in TERMINAL_STATUSES:
            self.ended_at = time.monotonic()
            self.end_time = _now_iso()
        return True

    @property
    def duration_ms(self) -> int:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return int((end - self.started_at) * 1000)

    @property
    def perplexity_ok(self) -> bool:
        return self.perplexity is not None and self.perplexity.ok

    @property
    def firecrawl_ok(self) -> bool:
        return self.firecrawl is not None and self.firecrawl.ok

    @property
    def has_usable_data(self) -> bool:
        return self.perplexity_ok or self.firecrawl_ok

    def providers_reported(self) -> dict[str, bool]:
        return {PERPLEXITY: self.perplexity_ok, FIRECRAWL: self.firecrawl_ok}


# ---------------------------------------------------------------------------
# Combined Results
# ---------------------------------------------------------------------------


@dataclass
class CombinedEntry:
    """
    One piece of evidence from one provider.

    Perplexity contributes one entry per answer (content + confidence);
    Firecrawl contributes one entry per scraped page (title, url, content,
    relevance score).
    """

    source: str
    content: str | None
    confidence: str | None = None
    search_id: str | None = None
    title: str | None = None
    url: str | None = None
    summary: str | None = None
    relevance_score: int | None = None
    extracted_data: Any = None

    def to_dict(self) -> dict:
        data = {
            "source": self.source,
            "content": self.content,
            "confidence": self.confidence,
            "searchId": self.search_id,
            "title": self.title,
            "url": self.url,
            "summary": self.summary,
            "relevanceScore": self.relevance_score,
            "extractedData": self.extracted_data,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class CombinedResult:
    """All provider output for one query, flattened."""

    query: str
    search_id: str
    sources: list[str] = field(default_factory=list)
    all_results: list[CombinedEntry] = field(default_factory=list)
    perplexity_available: bool = False
    firecrawl_available: bool = False
    combined_confidence: int = 0
    timestamp: str = field(default_factory=_now_iso)

    @property
    def total_sources(self) -> int:
        return len(self.sources)

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "searchId": self.search_id,
            "sources": list(self.sources),
            "allResults": [e.to_dict() for e in self.all_results],
            "summary": {
                "totalSources": self.total_sources,
                "perplexityAvailable": self.perplexity_available,
                "firecrawlAvailable": self.firecrawl_available,
                "combinedConfidence": self.combined_confidence,
            },
            "timestamp": self.timestamp,
        }


@dataclass
class SearchOutcome:
    """What execute_parallel_search() hands back to its caller."""

    query: str
    status: SearchStatus
    search_id: str | None = None
    results: CombinedResult | None = None
    duration_ms: int | None = None
    sources: dict[str, bool] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "searchId": self.search_id,
            "query": self.query,
            "status": self.status.value,
            "results": self.results.to_dict() if self.results else None,
            "duration": self.duration_ms,
            "sources": dict(self.sources),
            "errors": dict(self.errors),
            "error": self.error,
        }


@dataclass
class BatchResult:
    """Outcomes of a multi-query batch, in query order."""

    batch_id: str
    queries: list[str]
    results: list[SearchOutcome]
    duration_ms: int = 0
    timestamp: str = field(default_factory=_now_iso)

    @property
    def successful(self) -> list[SearchOutcome]:
        return [r for r in self.results if r.status == SearchStatus.COMPLETED]

    @property
    def failed(self) -> list[SearchOutcome]:
        return [r for r in self.results if r.status != SearchStatus.COMPLETED]

    def to_dict(self) -> dict:
        return {
            "batchId": self.batch_id,
            "queries": list(self.queries),
            "results": [r.to_dict() for r in self.results],
            "successful": len(self.successful),
            "failed": len(self.failed),
            "duration": self.duration_ms,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class OrchestratorConfig:
    enable_perplexity: bool = True
    enable_firecrawl: bool = True
    timeout: float = 120.0
    max_concurrent_queries: int = 3
    batch_delay: float = 2.0
    retry_attempts: int = 2  # declared, never consulted
    fallback_enabled: bool = True

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> OrchestratorConfig:
        cfg = cfg or settings
        return cls(
            enable_perplexity=cfg.search_enable_perplexity,
            enable_firecrawl=cfg.search_enable_firecrawl,
            timeout=cfg.search_timeout_seconds,
            max_concurrent_queries=cfg.search_max_concurrent_queries,
            batch_delay=cfg.search_batch_delay_seconds,
            retry_attempts=cfg.search_retry_attempts,
            fallback_enabled=cfg.search_fallback_enabled,
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SearchOrchestrator:
    """
    Fans a query out to the enabled providers and merges the results.

    Args:
        perplexity: Anything with `async search(query) -> PerplexityResult`.
        firecrawl: Anything with
            `async extract_for_query(query) -> FirecrawlExtraction`.
        config: Toggles, timeout, batch window size and delay.
        store: Registry of active/recent operations. A fresh store with the
            configured TTL is created when omitted.
        sleep: Awaitable sleep used between batch windows (tests pass a
            recorder so no real time passes).
    """

    def __init__(
        self,
        perplexity: SearchProvider,
        firecrawl: ExtractionProvider,
        config: OrchestratorConfig | None = None,
        store: OperationStore[SearchOperation] | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._perplexity = perplexity
        self._firecrawl = firecrawl
        self.config = config or OrchestratorConfig.from_settings()
        self._store: OperationStore[SearchOperation] = store or OperationStore(
            ttl_seconds=settings.search_operation_ttl_seconds,
        )
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Single query
    # -----------------------------------------------------------------------

    async def execute_parallel_search(
        self,
        query: str,
        *,
        timeout: float | None = None,
        enable_perplexity: bool | None = None,
        enable_firecrawl: bool | None = None,
    ) -> SearchOutcome:
        """
        Search one query across the enabled providers.

        Raises:
            NoProvidersEnabledError: Both providers are switched off.
            SearchTimeoutError: The timeout fired and no provider had
                produced usable data (or fallback is disabled).
        """
        operation = SearchOperation(id=new_search_id(), query=query)
        self._store.add(operation)
        limit = timeout if timeout is not None else self.config.timeout
        use_perplexity = (
            enable_perplexity if enable_perplexity is not None
            else self.config.enable_perplexity
        )
        use_firecrawl = (
            enable_firecrawl if enable_firecrawl is not None
            else self.config.enable_firecrawl
        )

        logger.info(
            "Starting parallel search %s for '%s'", operation.id, query[:80],
        )

        try:
            calls = []
            if use_perplexity:
                calls.append(self._run_perplexity(operation))
            if use_firecrawl:
                calls.append(self._run_firecrawl(operation))
            if not calls:
                raise NoProvidersEnabledError()

            operation.transition(SearchStatus.IN_PROGRESS)
            await self._race(calls, limit)

            combined = self.combine_search_results(operation)
            operation.combined = combined
            operation.transition(SearchStatus.COMPLETED)

            logger.info(
                "Parallel search %s finished in %dms (status=%s, sources=%s)",
                operation.id, operation.duration_ms,
                operation.status.value, combined.sources,
            )
            return SearchOutcome(
                search_id=operation.id,
                query=query,
                status=(
                    SearchStatus.CANCELLED
                    if operation.status == SearchStatus.CANCELLED
                    else SearchStatus.COMPLETED
                ),
                results=combined,
                duration_ms=operation.duration_ms,
                sources=operation.providers_reported(),
                errors=dict(operation.errors),
            )

        except Exception as e:
            failed_status = (
                SearchStatus.TIMEOUT if isinstance(e, SearchTimeoutError)
                else SearchStatus.FAILED
            )
            operation.transition(failed_status)
            operation.error = str(e)
            logger.error("Parallel search %s failed: %s", operation.id, e)

            if self.config.fallback_enabled:
                fallback = self._create_fallback_outcome(operation)
                if fallback is not None:
                    logger.warning(
                        "Using partial results for search %s", operation.id,
                    )
                    return fallback
            raise

        finally:
            self._store.mark_finished(operation.id)

    async def _race(self, calls: list, limit: float) -> None:
        """Wait for every provider call, or raise once `limit` elapses."""
        tasks = [asyncio.ensure_future(c) for c in calls]
        try:
            _, pending = await asyncio.wait(tasks, timeout=limit)
            if pending:
                raise SearchTimeoutError(limit)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    async def _run_perplexity(self, operation: SearchOperation) -> None:
        try:
            result = await self._perplexity.search(operation.query)
        except Exception as e:
            logger.warning("Perplexity failed for %s: %s", operation.id, e)
            operation.errors[PERPLEXITY] = str(e)
            return
        if result.error is not None:
            operation.errors[PERPLEXITY] = result.error
            return
        operation.perplexity = result

    async def _run_firecrawl(self, operation: SearchOperation) -> None:
        try:
            result = await self._firecrawl.extract_for_query(operation.query)
        except Exception as e:
            logger.warning("Firecrawl failed for %s: %s", operation.id, e)
            operation.errors[FIRECRAWL] = str(e)
            return
        operation.firecrawl = result
        if not result.ok:
            operation.errors[FIRECRAWL] = (
                f"No pages scraped ({len(result.failed)} failed)"
            )

    # -----------------------------------------------------------------------
    # Batch
    # -----------------------------------------------------------------------

    async def execute_batch_search(
        self,
        queries: list[str],
        *,
        max_concurrent: int | None = None,
        timeout: float | None = None,
        enable_perplexity: bool | None = None,
        enable_firecrawl: bool | None = None,
    ) -> BatchResult:
        """
        Search many queries in fixed-size concurrency windows.

        At most `max_concurrent` queries are in flight at once. Failures are
        recorded per query; the batch itself never raises for them.
        """
        window = max(1, max_concurrent or self.config.max_concurrent_queries)
        batch_id = f"batch_{_millis()}"
        started = time.monotonic()
        logger.info(
            "Starting batch %s: %d queries, window=%d",
            batch_id, len(queries), window,
        )

        async def run_one(query: str) -> SearchOutcome:
            try:
                return await self.execute_parallel_search(
                    query,
                    timeout=timeout,
                    enable_perplexity=enable_perplexity,
                    enable_firecrawl=enable_firecrawl,
                )
            except Exception as e:
                return SearchOutcome(
                    query=query, status=SearchStatus.FAILED, error=str(e),
                )

        results: list[SearchOutcome] = []
        for start in range(0, len(queries), window):
            chunk = queries[start:start + window]
            results.extend(await asyncio.gather(*(run_one(q) for q in chunk)))
            if start + window < len(queries) and self.config.batch_delay > 0:
                await self._sleep(self.config.batch_delay)

        batch = BatchResult(
            batch_id=batch_id,
            queries=list(queries),
            results=results,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Batch %s finished in %dms: %d successful, %d failed",
            batch_id, batch.duration_ms,
            len(batch.successful), len(batch.failed),
        )
        return batch

    # -----------------------------------------------------------------------
    # Combination
    # -----------------------------------------------------------------------

    def combine_search_results(self, operation: SearchOperation) -> CombinedResult:
        """
        Flatten provider output into one entry list.

        combined_confidence is the plain mean over entries of 90 for a
        "high" confidence entry, else the entry's relevance score, else 50.
        """
        combined = CombinedResult(query=operation.query, search_id=operation.id)

        if operation.perplexity_ok:
            pplx = operation.perplexity
            combined.sources.append(PERPLEXITY)
            combined.perplexity_available = True
            combined.all_results.append(CombinedEntry(
                source=PERPLEXITY,
                content=pplx.content,
                confidence=pplx.confidence,
                search_id=pplx.search_id,
            ))

        if operation.firecrawl_ok:
            combined.sources.append(FIRECRAWL)
            combined.firecrawl_available = True
            for outcome in operation.firecrawl.successful:
                page = outcome.page
                combined.all_results.append(CombinedEntry(
                    source=FIRECRAWL,
                    content=page.content,
                    title=page.title,
                    url=page.url,
                    summary=(
                        page.summary if page.summary != "No description"
                        else None
                    ),
                    relevance_score=page.relevance_score,
                    extracted_data=page.extracted_data,
                ))

        if combined.all_results:
            total = sum(
                90 if e.confidence == "high" else (e.relevance_score or 50)
                for e in combined.all_results
            )
            combined.combined_confidence = round(total / len(combined.all_results))

        return combined

    def _create_fallback_outcome(
        self, operation: SearchOperation,
    ) -> SearchOutcome | None:
        """Partial-success outcome from whatever providers already answered."""
        if not operation.has_usable_data:
            return None
        combined = self.combine_search_results(operation)
        operation.combined = combined
        return SearchOutcome(
            search_id=operation.id,
            query=operation.query,
            status=SearchStatus.PARTIAL_SUCCESS,
            results=combined,
            duration_ms=operation.duration_ms,
            sources=operation.providers_reported(),
            errors=dict(operation.errors),
            error=operation.error,
        )

    # -----------------------------------------------------------------------
    # Observation
    # -----------------------------------------------------------------------

    def cancel_search(self, search_id: str) -> bool:
        """
        Flag an operation as cancelled.

        Returns whether the id is known. Operations already in a terminal
        state keep their status.
        """
        operation = self._store.get(search_id)
        if operation is None:
            return False
        if operation.transition(SearchStatus.CANCELLED):
            logger.info("Search %s cancelled", search_id)
        return True

    def get_active_searches(self) -> list[dict]:
        """Snapshot of in-flight and recently finished operations."""
        return [
            {
                "id": op.id,
                "query": op.query,
                "status": op.status.value,
                "duration": op.duration_ms,
                "sources": op.providers_reported(),
            }
            for op in self._store.values()
        ]
