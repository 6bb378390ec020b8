"""
Extraction Strategies  —  Bytes → Normalised Text
══════════════════════════════════════════════════

Design: Strategy + ordered fallback chain
────────────────────────────────────────
Each strategy turns the raw bytes of one document into plain text and
reports the outcome with a uniform result type instead of raising:

  Strategy            method label       backend
  ──────────────────  ─────────────────  ──────────────────────────────
  PdfTextExtractor    PDF-Text           PyMuPDF text layer (pypdf fallback)
  PdfPlainExtractor   PDF-Plain          raw byte decode + control-char strip
  SpreadsheetExtractor Excel-Complete    openpyxl (.xlsx), xlrd (.xls), every cell
  WordExtractor       Word               python-docx paragraphs + tables
  ImageOcrExtractor   Image-OCR          Tesseract via pytesseract + Pillow
  PlainTextExtractor  Plain-Text         UTF-8 decode
  Utf8FallbackExtractor Fallback-UTF8    first N bytes decoded as UTF-8
  PlaceholderExtractor N/A / PowerPoint  fixed placeholder text

The dispatcher owns the order; strategies know nothing about each other.

Contract shared by all strategies:
  - Accept raw bytes (never a file path — keeps workers stateless)
  - Return ExtractionOutcome; never raise
  - Blocking parser calls run in the default thread executor
  - No shared mutable state, safe for concurrent use
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from auditvault.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Method labels (stored in audit_job_files.extraction_method)
# ---------------------------------------------------------------------------

METHOD_PDF_TEXT      = "PDF-Text"
METHOD_PDF_PLAIN     = "PDF-Plain"
METHOD_SPREADSHEET   = "Excel-Complete"
METHOD_WORD          = "Word"
METHOD_IMAGE_OCR     = "Image-OCR"
METHOD_PLAIN_TEXT    = "Plain-Text"
METHOD_UTF8_FALLBACK = "Fallback-UTF8"
METHOD_POWERPOINT    = "PowerPoint"
METHOD_UNSUPPORTED   = "N/A"
METHOD_FAILED        = "Failed"

# Compound File header of legacy .xls / .doc files
OLE2_MAGIC = bytes.fromhex("D0CF11E0A1B11AE1")

# C0 controls except \t \n \r, plus DEL
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub(" ", text)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class ExtractionOutcome:
    """
    Result of one strategy attempt.

    method : label of the strategy that produced this outcome
    text   : extracted text (empty on failure)
    error  : None on success, otherwise a short failure description
    """
    method: str
    text:   str = ""
    error:  str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, method: str, error: str) -> "ExtractionOutcome":
        return cls(method=method, text="", error=error or "unknown error")


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseExtractionStrategy(ABC):
    """
    Abstract base for extraction strategies.

    Subclasses implement _extract_sync(); the async wrapper moves it off
    the event loop and converts any exception into a failed outcome.
    """

    @property
    @abstractmethod
    def method(self) -> str:
        """Label recorded as extraction_method."""

    @abstractmethod
    def _extract_sync(self, data: bytes) -> str:
        """Blocking extraction — runs in thread executor. May raise."""

    def _accept(self, text: str) -> ExtractionOutcome:
        """Turn raw parser output into an outcome; override to add thresholds."""
        return ExtractionOutcome(method=self.method, text=text)

    async def extract(self, data: bytes, file_name: str = "") -> ExtractionOutcome:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()

        try:
            text = await loop.run_in_executor(None, self._extract_sync, data)
        except Exception as exc:
            logger.warning(
                "Strategy failed | method=%s file=%s error=%s",
                self.method, file_name, exc,
            )
            return ExtractionOutcome.failure(self.method, str(exc) or type(exc).__name__)

        outcome = self._accept(text or "")
        logger.info(
            "Strategy | method=%s file=%s ok=%s chars=%d elapsed_ms=%.0f",
            self.method, file_name, outcome.succeeded,
            len(outcome.text), (time.monotonic() - t0) * 1000,
        )
        return outcome


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfTextExtractor(BaseExtractionStrategy):
    """
    Native PDF text layer, first `max_pages` pages.

    PyMuPDF reads the document; if it cannot open the stream, pypdf gets
    a second try. Pages that fail individually are skipped. A result
    shorter than `min_chars` (after stripping) counts as a failure so the
    chain moves on to PdfPlainExtractor — typical for scanned PDFs.
    """

    def __init__(
        self,
        min_chars: int | None = None,
        max_pages: int | None = None,
    ) -> None:
        self._min_chars = settings.pdf_min_text_chars if min_chars is None else min_chars
        self._max_pages = settings.pdf_max_pages if max_pages is None else max_pages

    @property
    def method(self) -> str:
        return METHOD_PDF_TEXT

    def _extract_sync(self, data: bytes) -> str:
        try:
            return self._read_pymupdf(data)
        except Exception as exc:
            logger.debug("PyMuPDF could not open PDF (%s), retrying with pypdf", exc)
            return self._read_pypdf(data)

    def _read_pymupdf(self, data: bytes) -> str:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        parts: list[str] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page_num in range(min(doc.page_count, self._max_pages)):
                try:
                    parts.append(doc.load_page(page_num).get_text("text") or "")
                except Exception as exc:
                    logger.debug("PyMuPDF page %d skipped: %s", page_num + 1, exc)
        return "\n".join(parts)

    def _read_pypdf(self, data: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        parts: list[str] = []
        for page in reader.pages[: self._max_pages]:
            try:
                parts.append(page.extract_text() or "")
            except Exception as exc:
                logger.debug("pypdf page skipped: %s", exc)
        return "\n".join(parts)

    def _accept(self, text: str) -> ExtractionOutcome:
        if len(text.strip()) < self._min_chars:
            return ExtractionOutcome.failure(
                self.method, f"text layer below {self._min_chars} characters",
            )
        return ExtractionOutcome(method=self.method, text=text)


class PdfPlainExtractor(BaseExtractionStrategy):
    """Decode the raw PDF bytes as UTF-8 and blank out control characters."""

    def __init__(self, max_chars: int | None = None) -> None:
        self._max_chars = settings.extraction_max_chars if max_chars is None else max_chars

    @property
    def method(self) -> str:
        return METHOD_PDF_PLAIN

    def _extract_sync(self, data: bytes) -> str:
        text = data.decode("utf-8", errors="replace")
        return strip_control_chars(text)[: self._max_chars]


# ---------------------------------------------------------------------------
# Office formats
# ---------------------------------------------------------------------------

class SpreadsheetExtractor(BaseExtractionStrategy):
    """
    Every sheet, every row, every non-empty cell.

    .xlsx / .xlsm go through openpyxl. Legacy .xls workbooks (OLE2
    compound files) go through xlrd, which openpyxl cannot read.

    Output layout:
        SHEET: <name>
        cell | cell | cell
        ...
    """

    @property
    def method(self) -> str:
        return METHOD_SPREADSHEET

    def _extract_sync(self, data: bytes) -> str:
        if data.startswith(OLE2_MAGIC):
            return self._read_xls(data)
        return self._read_xlsx(data)

    def _read_xlsx(self, data: bytes) -> str:
        from openpyxl import load_workbook

        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
        lines: list[str] = []
        try:
            for ws in wb.worksheets:
                lines.append(f"SHEET: {ws.title}")
                for row in ws.iter_rows(values_only=True):
                    cells = [_cell_text(v) for v in row if v is not None and str(v) != ""]
                    if cells:
                        lines.append(" | ".join(cells))
        finally:
            wb.close()
        return "\n".join(lines)

    def _read_xls(self, data: bytes) -> str:
        import xlrd

        book = xlrd.open_workbook(file_contents=data, on_demand=True)
        lines: list[str] = []
        try:
            for index in range(book.nsheets):
                sheet = book.sheet_by_index(index)
                lines.append(f"SHEET: {sheet.name}")
                for r in range(sheet.nrows):
                    cells = [_cell_text(v) for v in sheet.row_values(r) if v is not None and str(v) != ""]
                    if cells:
                        lines.append(" | ".join(cells))
                book.unload_sheet(index)
        finally:
            book.release_resources()
        return "\n".join(lines)


def _cell_text(value) -> str:
    # xlrd stores every number as float
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class WordExtractor(BaseExtractionStrategy):
    """python-docx: body paragraphs, then table rows joined with ' | '."""

    @property
    def method(self) -> str:
        return METHOD_WORD

    def _extract_sync(self, data: bytes) -> str:
        from docx import Document

        doc = Document(io.BytesIO(data))
        lines = [p.text for p in doc.paragraphs if p.text.strip()]
        for table in doc.tables:
            for row in table.rows:
                cells = [c.text.strip() for c in row.cells if c.text.strip()]
                if cells:
                    lines.append(" | ".join(cells))
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------

class ImageOcrExtractor(BaseExtractionStrategy):
    """
    Tesseract OCR at a fixed language.

    pytesseract shells out to the tesseract binary and prints nothing,
    so there is no progress output to suppress.
    """

    def __init__(self, language: str | None = None, tesseract_cmd: str | None = None) -> None:
        self._language      = language or settings.ocr_language
        self._tesseract_cmd = settings.tesseract_cmd if tesseract_cmd is None else tesseract_cmd

    @property
    def method(self) -> str:
        return METHOD_IMAGE_OCR

    def _extract_sync(self, data: bytes) -> str:
        import pytesseract
        from PIL import Image

        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd

        with Image.open(io.BytesIO(data)) as img:
            return pytesseract.image_to_string(img, lang=self._language)


# ---------------------------------------------------------------------------
# Text and fallbacks
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseExtractionStrategy):

    @property
    def method(self) -> str:
        return METHOD_PLAIN_TEXT

    def _extract_sync(self, data: bytes) -> str:
        return strip_control_chars(data.decode("utf-8-sig", errors="replace"))


class Utf8FallbackExtractor(BaseExtractionStrategy):
    """Last resort after a format parser failed: read the head of the file as text."""

    def __init__(self, max_bytes: int | None = None) -> None:
        self._max_bytes = settings.utf8_fallback_bytes if max_bytes is None else max_bytes

    @property
    def method(self) -> str:
        return METHOD_UTF8_FALLBACK

    def _extract_sync(self, data: bytes) -> str:
        return strip_control_chars(data[: self._max_bytes].decode("utf-8", errors="replace"))


class PlaceholderExtractor(BaseExtractionStrategy):
    """Formats nobody parses: store a fixed marker so the item still counts as processed."""

    def __init__(self, method: str, placeholder: str) -> None:
        self._method      = method
        self._placeholder = placeholder

    @property
    def method(self) -> str:
        return self._method

    def _extract_sync(self, data: bytes) -> str:
        return self._placeholder

    async def extract(self, data: bytes, file_name: str = "") -> ExtractionOutcome:
        # No parsing involved, skip the executor hop
        return ExtractionOutcome(method=self._method, text=self._placeholder)
