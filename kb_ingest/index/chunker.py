"""Boundary-aware text chunking for embedding.

Two modes share one segmentation routine:

``chunk_text``
    Slides a ``chunk_size`` window over the cleaned text. Each cut is moved to
    the nearest paragraph break, else sentence end, else word boundary (only
    if that keeps at least 70% of the window) inside a lookback/lookahead
    window around the naive cut. The next window starts ``chunk_overlap``
    characters before the cut and always moves forward.

``chunk_page``
    Splits on blank lines first and greedily packs adjacent paragraphs up to
    ``chunk_size``. Paragraphs that alone exceed ``chunk_size`` fall back to
    the sliding window.

In both modes candidates shorter than ``min_chunk_size`` are dropped, and a
document that is shorter than ``min_chunk_size`` after cleaning yields nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Iterator, Union

from kb_ingest.config import Settings
from kb_ingest.index.tokens import estimate_tokens
from kb_ingest.monitoring.logging_utils import get_logger

LOGGER = get_logger("chunker")

ChunkValue = Union[str, int, float, list[str]]
ChunkMetadata = dict[str, ChunkValue]

BOUNDARY_LOOKBACK = 300
BOUNDARY_LOOKAHEAD = 200
WORD_BOUNDARY_MIN_RATIO = 0.7

_HORIZONTAL_WS = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NEWLINE = re.compile(r" ?\n ?")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?](?=\s)")


@dataclass(frozen=True)
class ChunkOptions:
    chunk_size: int = 1500
    chunk_overlap: int = 100
    min_chunk_size: int = 200

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must not be negative")

    @classmethod
    def from_settings(cls) -> "ChunkOptions":
        return cls(
            chunk_size=Settings.chunk_size,
            chunk_overlap=Settings.chunk_overlap,
            min_chunk_size=Settings.min_chunk_size,
        )


@dataclass
class TextChunk:
    content: str
    chunk_index: int
    metadata: ChunkMetadata
    token_count: int


def clean_text(text: str) -> str:
    """Collapse runs of spaces/tabs and cap blank-line runs at one.

    Single newlines and paragraph breaks survive so the boundary search can
    use them.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


def _find_boundary(text: str, start: int, end: int, chunk_size: int) -> int:
    window_start = max(end - BOUNDARY_LOOKBACK, start + 1)
    window_end = min(end + BOUNDARY_LOOKAHEAD, len(text))

    position = text.rfind("\n\n", window_start, end)
    if position > start:
        return position
    position = text.find("\n\n", end, window_end)
    if position != -1:
        return position

    last_sentence = None
    for match in _SENTENCE_END.finditer(text, window_start, end):
        last_sentence = match
    if last_sentence is not None:
        return last_sentence.end()
    match = _SENTENCE_END.search(text, end, window_end)
    if match is not None:
        return match.end()

    position = text.rfind(" ", start, end)
    if position > start + chunk_size * WORD_BOUNDARY_MIN_RATIO:
        return position
    return end


def _segments(text: str, options: ChunkOptions) -> Iterator[tuple[int, int, str]]:
    """Yield ``(start, end, trimmed content)`` for each window over ``text``."""
    length = len(text)
    start = 0
    while start < length:
        end = min(start + options.chunk_size, length)
        if end < length:
            end = _find_boundary(text, start, end, options.chunk_size)
        yield start, end, text[start:end].strip()
        if end >= length:
            return
        start = max(end - options.chunk_overlap, start + 1)


def _paragraph_spans(text: str) -> list[tuple[int, int]]:
    spans: list[tuple[int, int]] = []
    position = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        if match.start() > position:
            spans.append((position, match.start()))
        position = match.end()
    if position < len(text):
        spans.append((position, len(text)))
    return spans


def _make_chunk(content: str, index: int, metadata: ChunkMetadata) -> TextChunk:
    return TextChunk(
        content=content,
        chunk_index=index,
        metadata=metadata,
        token_count=estimate_tokens(content),
    )


def chunk_text(
    text: str,
    options: ChunkOptions | None = None,
    metadata: ChunkMetadata | None = None,
) -> list[TextChunk]:
    options = options or ChunkOptions()
    cleaned = clean_text(text)
    if len(cleaned) < options.min_chunk_size:
        LOGGER.debug("Text too small (%d chars), skipping", len(cleaned))
        return []

    chunks: list[TextChunk] = []
    for start, end, content in _segments(cleaned, options):
        if len(content) < options.min_chunk_size:
            LOGGER.debug("Skipping small chunk (%d chars)", len(content))
            continue
        chunk_metadata: ChunkMetadata = {
            **(metadata or {}),
            "start_index": start,
            "end_index": end,
            "length": len(content),
        }
        chunks.append(_make_chunk(content, len(chunks), chunk_metadata))
    return chunks


def chunk_page(
    content: str,
    url: str,
    title: str | None = None,
    options: ChunkOptions | None = None,
    metadata: ChunkMetadata | None = None,
) -> list[TextChunk]:
    options = options or ChunkOptions()
    cleaned = clean_text(content)
    if len(cleaned) < options.min_chunk_size:
        LOGGER.debug("Page %s too small (%d chars), skipping", url, len(cleaned))
        return []

    base: ChunkMetadata = {
        "source": "website",
        "url": url,
        "title": title or url,
        **(metadata or {}),
    }
    chunks: list[TextChunk] = []

    def emit(start: int, end: int, body: str, kind: str) -> None:
        if len(body) < options.min_chunk_size:
            return
        chunk_metadata: ChunkMetadata = {
            **base,
            "type": kind,
            "start_index": start,
            "end_index": end,
            "length": len(body),
        }
        chunks.append(_make_chunk(body, len(chunks), chunk_metadata))

    batch_start: int | None = None
    batch_end = 0
    for start, end in _paragraph_spans(cleaned):
        if end - start > options.chunk_size:
            if batch_start is not None:
                emit(batch_start, batch_end, cleaned[batch_start:batch_end], "paragraph-batch")
                batch_start = None
            paragraph = cleaned[start:end]
            for seg_start, seg_end, body in _segments(paragraph, options):
                emit(start + seg_start, start + seg_end, body, "paragraph-split")
            continue
        if batch_start is not None and end - batch_start > options.chunk_size:
            emit(batch_start, batch_end, cleaned[batch_start:batch_end], "paragraph-batch")
            batch_start = None
        if batch_start is None:
            batch_start = start
        batch_end = end
    if batch_start is not None:
        emit(batch_start, batch_end, cleaned[batch_start:batch_end], "paragraph-batch")
    return chunks


def chunk_stats(chunks: list[TextChunk]) -> dict[str, int]:
    total_chunks = len(chunks)
    total_chars = sum(len(chunk.content) for chunk in chunks)
    total_tokens = sum(chunk.token_count for chunk in chunks)
    return {
        "total_chunks": total_chunks,
        "total_chars": total_chars,
        "total_tokens": total_tokens,
        "avg_chunk_size": round(total_chars / total_chunks) if total_chunks else 0,
        "avg_tokens_per_chunk": round(total_tokens / total_chunks) if total_chunks else 0,
    }
