"""
Extraction Dispatcher
═════════════════════

Single entry point the batch runner calls per document:

    result = await dispatcher.extract(source_reference, file_name, declared_type)
    result.text, result.method

Flow:
  1. Detect format (extension first, declared MIME type second)
  2. Fetch bytes from object storage (skipped for placeholder-only formats)
  3. Walk the format's strategy chain; the first successful outcome wins
  4. Replace empty text with "[No content extracted]"
  5. Clip to the per-item character budget

The dispatcher is total: fetch errors, parser errors, exhausted chains
and the per-file timeout all come back as a DispatchResult with method
"Failed" and a bracketed marker as text. Nothing propagates to the caller,
so a batch always advances.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Protocol

from auditvault.core.config import settings
from auditvault.processing.formats import DocumentFormat, detect_format
from auditvault.processing.strategies import (
    METHOD_FAILED,
    METHOD_POWERPOINT,
    METHOD_UNSUPPORTED,
    BaseExtractionStrategy,
    ImageOcrExtractor,
    PdfPlainExtractor,
    PdfTextExtractor,
    PlaceholderExtractor,
    PlainTextExtractor,
    SpreadsheetExtractor,
    Utf8FallbackExtractor,
    WordExtractor,
)

logger = logging.getLogger(__name__)

NO_CONTENT_PLACEHOLDER = "[No content extracted]"
UNSUPPORTED_PLACEHOLDER = "[Unsupported format]"
POWERPOINT_PLACEHOLDER = "[PowerPoint - manual review needed]"
TRUNCATION_MARKER = "\n\n[TRUNCATED]"

# Chains made only of placeholders never look at the bytes
_NO_FETCH_FORMATS = frozenset({DocumentFormat.UNKNOWN, DocumentFormat.PRESENTATION})


class ByteSource(Protocol):
    async def fetch_bytes(self, reference: str) -> bytes: ...


@dataclass
class DispatchResult:
    text:       str
    method:     str
    format:     DocumentFormat
    elapsed_ms: float = 0.0
    attempts:   list[str] = field(default_factory=list)   # methods tried, in order

    @property
    def failed(self) -> bool:
        return self.method == METHOD_FAILED


def clamp_text(text: str, max_chars: int) -> str:
    """Clip text to max_chars; clipped output ends with the truncation marker."""
    if len(text) <= max_chars:
        return text
    keep = max(max_chars - len(TRUNCATION_MARKER), 0)
    return (text[:keep] + TRUNCATION_MARKER)[:max_chars]


def build_default_chains() -> dict[DocumentFormat, list[BaseExtractionStrategy]]:
    """Ordered fallback chain per format."""
    utf8 = Utf8FallbackExtractor()
    return {
        DocumentFormat.PDF:          [PdfTextExtractor(), PdfPlainExtractor()],
        DocumentFormat.SPREADSHEET:  [SpreadsheetExtractor(), utf8],
        DocumentFormat.WORD:         [WordExtractor(), utf8],
        DocumentFormat.IMAGE:        [ImageOcrExtractor(), utf8],
        DocumentFormat.TEXT:         [PlainTextExtractor(), utf8],
        DocumentFormat.PRESENTATION: [PlaceholderExtractor(METHOD_POWERPOINT, POWERPOINT_PLACEHOLDER)],
        DocumentFormat.UNKNOWN:      [PlaceholderExtractor(METHOD_UNSUPPORTED, UNSUPPORTED_PLACEHOLDER)],
    }


class ExtractionDispatcher:
    """
    Stateless dispatcher — one instance can serve every batch.

    Constructor args:
        storage          : anything with `async fetch_bytes(reference) -> bytes`
        max_chars        : per-item clip (default EXTRACTION_MAX_CHARS)
        per_file_timeout : seconds before an item is abandoned (default 90)
        chains           : override the format → strategies table (tests)
    """

    def __init__(
        self,
        storage: ByteSource,
        max_chars: int | None = None,
        per_file_timeout: float | None = None,
        chains: dict[DocumentFormat, list[BaseExtractionStrategy]] | None = None,
    ) -> None:
        self._storage   = storage
        self._max_chars = settings.extraction_max_chars if max_chars is None else max_chars
        self._timeout   = settings.per_file_timeout_seconds if per_file_timeout is None else per_file_timeout
        self._chains    = chains if chains is not None else build_default_chains()

    async def extract(
        self,
        source_reference: str,
        file_name: str,
        declared_type: str | None = None,
    ) -> DispatchResult:
        t0 = time.monotonic()
        fmt = detect_format(file_name, declared_type)
        attempts: list[str] = []

        try:
            text, method = await asyncio.wait_for(
                self._run_chain(source_reference, file_name, fmt, attempts),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Extraction timed out | file=%s format=%s timeout=%.0fs",
                file_name, fmt.value, self._timeout,
            )
            text, method = f"[Extraction timed out after {self._timeout:.0f}s]", METHOD_FAILED
        except Exception as exc:
            # Strategies never raise; this guards the dispatcher's own code paths
            logger.exception("Extraction crashed | file=%s format=%s", file_name, fmt.value)
            text, method = f"[Error: {exc}]", METHOD_FAILED

        if not text or not text.strip():
            text = NO_CONTENT_PLACEHOLDER

        result = DispatchResult(
            text=clamp_text(text, self._max_chars),
            method=method,
            format=fmt,
            elapsed_ms=(time.monotonic() - t0) * 1000,
            attempts=attempts,
        )
        logger.info(
            "Dispatch | file=%s format=%s method=%s chars=%d attempts=%s elapsed_ms=%.0f",
            file_name, fmt.value, result.method, len(result.text),
            ",".join(attempts) or "-", result.elapsed_ms,
        )
        return result

    async def _run_chain(
        self,
        source_reference: str,
        file_name: str,
        fmt: DocumentFormat,
        attempts: list[str],
    ) -> tuple[str, str]:
        data = b""
        if fmt not in _NO_FETCH_FORMATS:
            try:
                data = await self._storage.fetch_bytes(source_reference)
            except Exception as exc:
                logger.warning("Fetch failed | ref=%s file=%s error=%s", source_reference, file_name, exc)
                return f"[Error: {exc}]", METHOD_FAILED

        last_error = "no extraction strategy available"
        for strategy in self._chains.get(fmt, []):
            attempts.append(strategy.method)
            outcome = await strategy.extract(data, file_name)
            if outcome.succeeded:
                return outcome.text, outcome.method
            last_error = outcome.error or last_error

        return f"[Error: {last_error}]", METHOD_FAILED
