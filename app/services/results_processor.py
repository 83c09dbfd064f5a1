# =============================================================================
# Results Processor — Normalize, Deduplicate, Score, Categorize
# =============================================================================
#
# Turns the per-query CombinedResults from the search orchestrator into one
# ranked, deduplicated, categorized list ready for the answering LLM.
#
# PIPELINE (each stage a pure function over the previous stage's output):
#   extract_raw_results()   → one RawRecord per provider entry
#   normalize_results()     → NormalizedRecord (one normalizer per variant)
#   deduplicate_results()   → word-overlap similarity > 0.8 collapses
#   score_results()         → weighted quality score, stable sort desc
#   categorize_results()    → one category + up to 10 tags
#   create_structured_output()
#
# DESIGN DECISION: One record type per provider.
# Perplexity answers, Firecrawl pages and anything else arrive as distinct
# dataclasses, each with its own normalizer, instead of one function that
# checks a dict for whichever keys happen to exist.
#
# DESIGN DECISION: All-or-nothing.
# If any stage raises, process() returns a zero-result record carrying the
# error. run() is the raising variant used by the workflow, which falls
# back to an unranked item list on ProcessingError.
#
# QUALITY SCORE:
#   relevance × 0.4 + confidence tier × 0.3 + freshness × 0.2
#   + completeness × 0.1, rounded and clamped to [0, 100]
# =============================================================================

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from app.errors import ProcessingError
from app.services.search_orchestrator import FIRECRAWL, PERPLEXITY, CombinedResult

logger = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 0.8
MAX_TAGS = 10
DEFAULT_CATEGORY = "general_financial"

WEIGHTS = {
    "relevance": 0.4,
    "confidence": 0.3,
    "freshness": 0.2,
    "completeness": 0.1,
}

CONFIDENCE_SCORES = {"high": 100, "medium": 75}

# First match wins, so order matters.
CATEGORY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("interest_rates", re.compile(
        r"interest rate|fed rate|federal reserve|monetary policy")),
    ("inflation", re.compile(r"inflation|cpi|consumer price|price index")),
    ("stock_market", re.compile(r"stock|equity|market|dow|nasdaq|s&p")),
    ("economic_indicators", re.compile(
        r"gdp|economic growth|recession|economy")),
    ("employment", re.compile(r"employment|unemployment|jobs|labor")),
    ("currency", re.compile(r"currency|forex|exchange rate|dollar")),
]

CATEGORIES = [name for name, _ in CATEGORY_PATTERNS] + [DEFAULT_CATEGORY]

FINANCIAL_ENTITIES = [
    "federal reserve", "fed", "treasury", "sec", "nasdaq", "nyse",
    "dow jones", "s&p 500", "russell", "bloomberg", "reuters",
]


# ---------------------------------------------------------------------------
# Raw Records (one variant per provider)
# ---------------------------------------------------------------------------


@dataclass
class PerplexityRecord:
    query: str
    search_id: str
    content: str | None
    confidence: str | None = None
    provider_id: str | None = None
    timestamp: str | None = None
    source: str = PERPLEXITY


@dataclass
class FirecrawlRecord:
    query: str
    search_id: str
    content: str | None
    title: str | None = None
    url: str | None = None
    summary: str | None = None
    relevance_score: int | None = None
    extracted_data: Any = None
    timestamp: str | None = None
    source: str = FIRECRAWL


@dataclass
class GenericRecord:
    """Entry from a provider without a dedicated normalizer."""

    query: str
    search_id: str
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None


RawRecord = PerplexityRecord | FirecrawlRecord | GenericRecord


@dataclass
class NormalizedRecord:
    """Canonical shape of one piece of evidence."""

    id: str
    query: str
    search_id: str
    source: str
    url: str | None
    title: str
    content: str
    summary: str
    relevance_score: int
    confidence: str
    timestamp: str
    source_data: dict[str, Any] = field(default_factory=dict)
    quality_score: int = 0
    category: str = DEFAULT_CATEGORY
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "query": self.query,
            "searchId": self.search_id,
            "source": self.source,
            "url": self.url,
            "title": self.title,
            "content": self.content,
            "summary": self.summary,
            "relevanceScore": self.relevance_score,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "qualityScore": self.quality_score,
            "category": self.category,
            "tags": list(self.tags),
        }


@dataclass
class SearchPayload:
    """Everything the workflow collected for one user question."""

    search_id: str
    query: str
    results: list[CombinedResult]
    duration_ms: int | None = None
    sources: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


# ---------------------------------------------------------------------------
# Stage 1: Extract
# ---------------------------------------------------------------------------


def extract_raw_results(payload: SearchPayload) -> list[RawRecord]:
    """Flatten every CombinedResult, tagging each entry with its query."""
    records: list[RawRecord] = []
    for combined in payload.results:
        for entry in combined.all_results:
            if entry.source == PERPLEXITY:
                records.append(PerplexityRecord(
                    query=combined.query,
                    search_id=combined.search_id,
                    content=entry.content,
                    confidence=entry.confidence,
                    provider_id=entry.search_id,
                    timestamp=combined.timestamp,
                ))
            elif entry.source == FIRECRAWL:
                records.append(FirecrawlRecord(
                    query=combined.query,
                    search_id=combined.search_id,
                    content=entry.content,
                    title=entry.title,
                    url=entry.url,
                    summary=entry.summary,
                    relevance_score=entry.relevance_score,
                    extracted_data=entry.extracted_data,
                    timestamp=combined.timestamp,
                ))
            else:
                records.append(GenericRecord(
                    query=combined.query,
                    search_id=combined.search_id,
                    source=entry.source,
                    data=entry.to_dict(),
                    timestamp=combined.timestamp,
                ))
    return records


# ---------------------------------------------------------------------------
# Stage 2: Normalize
# ---------------------------------------------------------------------------


def default_title(source: str) -> str:
    return f"{source.capitalize()} Result"


def relevance_from_confidence(confidence: str | None) -> int:
    if confidence == "high":
        return 85
    if confidence == "medium":
        return 65
    return 45


def confidence_from_relevance(relevance: int) -> str:
    if relevance >= 80:
        return "high"
    if relevance >= 60:
        return "medium"
    return "low"


def _summarize(content: str) -> str:
    return f"{content[:200]}..." if content else ""


def _source_data(raw: RawRecord) -> dict[str, Any]:
    return {k: v for k, v in asdict(raw).items() if v not in (None, "", {}, [])}


def _record_id(source: str, index: int, stamp: int) -> str:
    return f"{source}_{index}_{stamp}"


def normalize_perplexity(
    raw: PerplexityRecord, index: int, stamp: int, now: datetime,
) -> NormalizedRecord:
    content = raw.content or ""
    relevance = relevance_from_confidence(raw.confidence)
    return NormalizedRecord(
        id=_record_id(raw.source, index, stamp),
        query=raw.query,
        search_id=raw.search_id,
        source=raw.source,
        url=None,
        title=default_title(raw.source),
        content=content,
        summary=_summarize(content),
        relevance_score=relevance,
        confidence=raw.confidence or confidence_from_relevance(relevance),
        timestamp=raw.timestamp or now.isoformat(),
        source_data=_source_data(raw),
    )


def normalize_firecrawl(
    raw: FirecrawlRecord, index: int, stamp: int, now: datetime,
) -> NormalizedRecord:
    content = raw.content or ""
    if raw.relevance_score is not None:
        relevance = raw.relevance_score
    else:
        relevance = relevance_from_confidence(None)
    return NormalizedRecord(
        id=_record_id(raw.source, index, stamp),
        query=raw.query,
        search_id=raw.search_id,
        source=raw.source,
        url=raw.url,
        title=raw.title or default_title(raw.source),
        content=content,
        summary=raw.summary or _summarize(content),
        relevance_score=relevance,
        confidence=confidence_from_relevance(relevance),
        timestamp=raw.timestamp or now.isoformat(),
        source_data=_source_data(raw),
    )


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def normalize_generic(
    raw: GenericRecord, index: int, stamp: int, now: datetime,
) -> NormalizedRecord:
    data = raw.data
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    content = _first(
        data.get("content"), nested.get("content"),
        data.get("text"), data.get("markdown"),
    )
    if not content and data.get("extractedData") is not None:
        content = json.dumps(data["extractedData"])
    content = content or ""

    relevance = _first(data.get("relevanceScore"), nested.get("relevanceScore"))
    confidence = data.get("confidence")
    if relevance is None:
        relevance = relevance_from_confidence(confidence)

    return NormalizedRecord(
        id=_record_id(raw.source, index, stamp),
        query=raw.query,
        search_id=raw.search_id,
        source=raw.source,
        url=_first(
            data.get("url"), data.get("sourceUrl"),
            nested.get("url"), metadata.get("sourceURL"),
        ),
        title=_first(
            data.get("title"), nested.get("title"), metadata.get("title"),
        ) or default_title(raw.source),
        content=content,
        summary=_first(
            data.get("summary"), nested.get("summary"),
            metadata.get("description"),
        ) or _summarize(content),
        relevance_score=int(relevance),
        confidence=confidence or confidence_from_relevance(int(relevance)),
        timestamp=raw.timestamp or now.isoformat(),
        source_data=_source_data(raw),
    )


def normalize_results(
    records: list[RawRecord], now: datetime | None = None,
) -> list[NormalizedRecord]:
    now = now or datetime.now(UTC)
    stamp = int(now.timestamp() * 1000)
    normalized = []
    for index, raw in enumerate(records):
        if isinstance(raw, PerplexityRecord):
            normalized.append(normalize_perplexity(raw, index, stamp, now))
        elif isinstance(raw, FirecrawlRecord):
            normalized.append(normalize_firecrawl(raw, index, stamp, now))
        else:
            normalized.append(normalize_generic(raw, index, stamp, now))
    return normalized


# ---------------------------------------------------------------------------
# Stage 3: Deduplicate
# ---------------------------------------------------------------------------


def normalize_text(text: str | None) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    text = re.sub(r"[^\w\s]", "", (text or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def calculate_similarity(text1: str, text2: str) -> float:
    """Shared words over all distinct words (Jaccard) of two normalized strings."""
    if not text1 or not text2:
        return 0.0
    if text1 == text2:
        return 1.0
    words1 = set(text1.split())
    words2 = set(text2.split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def _has_real_title(record: NormalizedRecord) -> bool:
    return bool(record.title) and record.title not in (
        "Untitled", default_title(record.source),
    )


def is_duplicate(
    a: NormalizedRecord,
    b: NormalizedRecord,
    threshold: float = DUPLICATE_THRESHOLD,
) -> bool:
    """Title or leading-content overlap above threshold."""
    title_sim = calculate_similarity(
        normalize_text(a.title), normalize_text(b.title),
    )
    if title_sim > threshold:
        return True
    content_sim = calculate_similarity(
        normalize_text(a.content[:100]), normalize_text(b.content[:100]),
    )
    return content_sim > threshold


def deduplicate_results(
    records: list[NormalizedRecord],
    threshold: float = DUPLICATE_THRESHOLD,
) -> list[NormalizedRecord]:
    """
    Keep one record per group of near-duplicates.

    A new record that matches kept records competes with them on relevance;
    the winner takes the earliest matched position and the other matches
    are dropped. Ties go to the record kept first. The output never holds
    two records that match each other, so running it twice changes nothing.
    """
    kept: list[NormalizedRecord] = []
    for record in records:
        matches = [
            i for i, existing in enumerate(kept)
            if is_duplicate(existing, record, threshold)
        ]
        if not matches:
            kept.append(record)
            continue

        winner = kept[matches[0]]
        for i in matches[1:]:
            if kept[i].relevance_score > winner.relevance_score:
                winner = kept[i]
        if record.relevance_score > winner.relevance_score:
            winner = record

        kept[matches[0]] = winner
        for i in reversed(matches[1:]):
            del kept[i]

    removed = len(records) - len(kept)
    if removed:
        logger.info("Removed %d duplicate results", removed)
    return kept


# ---------------------------------------------------------------------------
# Stage 4: Score
# ---------------------------------------------------------------------------


def calculate_freshness_score(timestamp: str | None, now: datetime) -> int:
    if not timestamp:
        return 50
    try:
        then = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return 50
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    age_hours = (now - then).total_seconds() / 3600
    if age_hours < 1:
        return 100
    if age_hours < 24:
        return 90
    if age_hours < 168:
        return 70
    return 50


def calculate_completeness_score(record: NormalizedRecord) -> int:
    checks = [
        _has_real_title(record),
        len(record.content) > 50,
        bool(record.url),
        len(record.summary) > 20,
        len(record.source_data) > 3,
    ]
    return round(sum(checks) / len(checks) * 100)


def calculate_quality_score(record: NormalizedRecord, now: datetime) -> int:
    relevance = max(0, min(100, record.relevance_score))
    score = (
        relevance * WEIGHTS["relevance"]
        + CONFIDENCE_SCORES.get(record.confidence, 50) * WEIGHTS["confidence"]
        + calculate_freshness_score(record.timestamp, now) * WEIGHTS["freshness"]
        + calculate_completeness_score(record) * WEIGHTS["completeness"]
    )
    return max(0, min(100, round(score)))


def score_results(
    records: list[NormalizedRecord], now: datetime | None = None,
) -> list[NormalizedRecord]:
    """Attach quality scores and sort descending (stable)."""
    now = now or datetime.now(UTC)
    for record in records:
        record.quality_score = calculate_quality_score(record, now)
    return sorted(records, key=lambda r: r.quality_score, reverse=True)


# ---------------------------------------------------------------------------
# Stage 5: Categorize & Tag
# ---------------------------------------------------------------------------


def determine_category(record: NormalizedRecord) -> str:
    text = f"{record.title} {record.content}".lower()
    for name, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return name
    return DEFAULT_CATEGORY


def extract_domain(url: str | None) -> str | None:
    if not url:
        return None
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return host[4:] if host.startswith("www.") else host


def generate_tags(record: NormalizedRecord, year: int) -> list[str]:
    tags = [f"source:{record.source}"]

    domain = extract_domain(record.url)
    if domain:
        tags.append(f"domain:{domain}")

    text = f"{record.title} {record.content}".lower()
    for entity in FINANCIAL_ENTITIES:
        if entity in text:
            tags.append(f"entity:{entity.replace(' ', '_')}")

    if str(year) in text:
        tags.append(f"year:{year}")

    return tags[:MAX_TAGS]


def categorize_results(
    records: list[NormalizedRecord], now: datetime | None = None,
) -> list[NormalizedRecord]:
    year = (now or datetime.now(UTC)).year
    for record in records:
        record.category = determine_category(record)
        record.tags = generate_tags(record, year)
    return records


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _search_block(payload: SearchPayload) -> dict:
    return {
        "id": payload.search_id,
        "query": payload.query,
        "timestamp": payload.timestamp,
        "duration": payload.duration_ms,
        "sources": list(payload.sources),
    }


def create_structured_output(
    payload: SearchPayload,
    records: list[NormalizedRecord],
    processing_ms: int,
) -> dict:
    categories: dict[str, list[dict]] = {}
    distribution = {"high": 0, "medium": 0, "low": 0}
    for record in records:
        categories.setdefault(record.category, []).append(record.to_dict())
        if record.confidence in distribution:
            distribution[record.confidence] += 1

    average = (
        round(sum(r.quality_score for r in records) / len(records))
        if records else 0
    )

    return {
        "search": _search_block(payload),
        "results": {
            "total": len(records),
            "items": [r.to_dict() for r in records],
            "categories": categories,
            "topResult": records[0].to_dict() if records else None,
            "highConfidenceResults": [
                r.to_dict() for r in records if r.confidence == "high"
            ],
            "averageQuality": average,
        },
        "metadata": {
            "processingTime": processing_ms,
            "deduplicationApplied": True,
            "qualityScored": True,
            "sourcesUsed": sorted({r.source for r in records}),
            "confidenceDistribution": distribution,
        },
    }


def create_error_output(payload: SearchPayload, error: Exception) -> dict:
    return {
        "search": _search_block(payload),
        "results": {
            "total": 0,
            "items": [],
            "categories": {},
            "topResult": None,
            "highConfidenceResults": [],
            "averageQuality": 0,
        },
        "metadata": {
            "processingTime": 0,
            "deduplicationApplied": False,
            "qualityScored": False,
            "sourcesUsed": [],
            "confidenceDistribution": {"high": 0, "medium": 0, "low": 0},
            "error": str(error),
        },
    }


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class ResultsProcessor:
    """
    Runs the pipeline over one SearchPayload.

    Args:
        clock: Returns "now" as an aware datetime. Drives freshness, record
            ids and the year tag; tests pin it.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))

    def run(self, payload: SearchPayload) -> dict:
        """Process or raise ProcessingError."""
        started = time.monotonic()
        now = self._clock()
        try:
            raw = extract_raw_results(payload)
            normalized = normalize_results(raw, now)
            unique = deduplicate_results(normalized)
            scored = score_results(unique, now)
            categorized = categorize_results(scored, now)
        except Exception as e:
            raise ProcessingError(f"Results processing failed: {e}") from e

        processing_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Processed %d raw results into %d items for search %s (%dms)",
            len(raw), len(categorized), payload.search_id, processing_ms,
        )
        return create_structured_output(payload, categorized, processing_ms)

    def process(self, payload: SearchPayload) -> dict:
        """Process, returning the zero-result error record on failure."""
        try:
            return self.run(payload)
        except ProcessingError as e:
            logger.exception("Results processing failed for %s", payload.search_id)
            return create_error_output(payload, e)
