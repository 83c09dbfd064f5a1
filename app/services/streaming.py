# =============================================================================
# Text Streaming Helpers
# =============================================================================
#
# Both the SSE chat route and the analyst replay finished text to the client
# in fixed-size slices with a pause between them. This module holds the
# slicing and the SSE event framing they share.
#
# Event framing follows sse-starlette: handlers yield dicts with "id",
# "event" and "data" keys and EventSourceResponse writes the wire format.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


@dataclass
class TextChunk:
    text: str
    index: int
    progress: int  # percent of the full text sent once this chunk is out
    is_last: bool


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def chunk_text(text: str, size: int) -> Iterator[TextChunk]:
    """Yield `text` in `size`-character slices with progress percentages."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    total = len(text)
    for index, start in enumerate(range(0, total, size)):
        end = start + size
        yield TextChunk(
            text=text[start:end],
            index=index,
            progress=min(100, round(end / total * 100)),
            is_last=end >= total,
        )


def sse_event(event_id: str, event: str, data: Any) -> dict[str, str]:
    """Build one sse-starlette event dict with JSON-encoded data."""
    return {
        "id": event_id,
        "event": event,
        "data": data if isinstance(data, str) else json.dumps(data),
    }


async def stream_message(
    text: str,
    chunk_size: int,
    delay: float,
    stream_id: str | None = None,
) -> AsyncIterator[dict[str, str]]:
    """
    SSE events replaying `text`: message_start, message_chunk × n,
    message_end. Sleeps `delay` seconds between chunks.
    """
    stream_id = stream_id or f"chunk_{int(time.time() * 1000)}"
    yield sse_event(stream_id, "message_start", {
        "id": stream_id,
        "totalLength": len(text),
        "timestamp": _now_iso(),
    })
    for chunk in chunk_text(text, chunk_size):
        yield sse_event(stream_id, "message_chunk", {
            "id": stream_id,
            "text": chunk.text,
            "progress": chunk.progress,
            "timestamp": _now_iso(),
        })
        if not chunk.is_last and delay > 0:
            await asyncio.sleep(delay)
    yield sse_event(stream_id, "message_end", {
        "id": stream_id,
        "complete": True,
        "timestamp": _now_iso(),
    })
