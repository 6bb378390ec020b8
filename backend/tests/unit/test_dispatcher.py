"""
Unit Tests — Extraction Dispatcher, Strategies, Format Detection, Classifier
═══════════════════════════════════════════════════════════════════════════
Documents are generated in-memory with the same libraries the strategies
parse them with (PyMuPDF, openpyxl, python-docx, Pillow). Tesseract is
patched out.

Coverage:
  ✅ PDF with a text layer      → PDF-Text
  ✅ PDF below the text minimum → PDF-Plain (raw decode fallback)
  ✅ XLSX                       → Excel-Complete, every sheet and row
  ✅ Corrupt XLSX               → Fallback-UTF8
  ✅ Legacy XLS                 → Excel-Complete via xlrd
  ✅ Fallback text never carries NUL bytes
  ✅ DOCX                       → Word, paragraphs + table rows
  ✅ Image                      → Image-OCR (pytesseract patched)
  ✅ TXT                        → Plain-Text
  ✅ PPTX                       → PowerPoint placeholder, no fetch
  ✅ Unknown extension          → N/A placeholder, no fetch
  ✅ Fetch error                → Failed, "[Error: ...]"
  ✅ Whole chain failing        → Failed
  ✅ Per-file timeout           → Failed, "[Extraction timed out ...]"
  ✅ Empty text                 → "[No content extracted]"
  ✅ Output clipped to max_chars with the truncation marker
  ✅ detect_format: extension wins, MIME type fallback
  ✅ classify_document: ordered keyword rules
"""

from __future__ import annotations

import asyncio
import io
from unittest.mock import MagicMock, patch

import pytest

from auditvault.processing.classifier import DocumentCategory, classify_document
from auditvault.processing.dispatcher import (
    NO_CONTENT_PLACEHOLDER,
    POWERPOINT_PLACEHOLDER,
    TRUNCATION_MARKER,
    UNSUPPORTED_PLACEHOLDER,
    ExtractionDispatcher,
    clamp_text,
)
from auditvault.processing.formats import DocumentFormat, detect_format
from auditvault.processing.strategies import (
    OLE2_MAGIC,
    BaseExtractionStrategy,
    ExtractionOutcome,
    PdfTextExtractor,
    strip_control_chars,
)


# ─────────────────────────────────────────────────────────────────────────────
# Document builders
# ─────────────────────────────────────────────────────────────────────────────

LEDGER_LINES = [
    "Sundry Debtors Ledger FY 2023-24",
    "Opening balance 1,250,000.00",
    "Invoice 4411 raised to Northwind Traders 310,400.00",
    "Receipt against invoice 4398 -212,000.00",
    "Closing balance 1,348,400.00",
]


def _pdf_bytes(lines: list[str]) -> bytes:
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    y = 72
    for line in lines:
        page.insert_text((72, y), line, fontsize=11)
        y += 16
    data = doc.tobytes()
    doc.close()
    return data


def _xlsx_bytes() -> bytes:
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Trial Balance"
    ws.append(["Account", "Debit", "Credit"])
    ws.append(["Cash", 1000, None])
    ws.append(["Revenue", None, 1000])
    notes = wb.create_sheet("Notes")
    notes.append(["Prepared by finance"])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _docx_bytes() -> bytes:
    from docx import Document

    doc = Document()
    doc.add_paragraph("Salary register for March 2024")
    table = doc.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Employee"
    table.cell(0, 1).text = "Net Pay"
    table.cell(1, 0).text = "R. Mehta"
    table.cell(1, 1).text = "85,000"
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def _png_bytes() -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (40, 20), color="white").save(buf, format="PNG")
    return buf.getvalue()


class _SlowStrategy(BaseExtractionStrategy):
    @property
    def method(self) -> str:
        return "Slow"

    def _extract_sync(self, data: bytes) -> str:   # pragma: no cover
        return ""

    async def extract(self, data: bytes, file_name: str = "") -> ExtractionOutcome:
        await asyncio.sleep(5)
        return ExtractionOutcome(method=self.method, text="too late")


class _BrokenStrategy(BaseExtractionStrategy):
    @property
    def method(self) -> str:
        return "Broken"

    def _extract_sync(self, data: bytes) -> str:
        raise ValueError("parser exploded")


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher — per format
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestDispatchByFormat:

    async def test_pdf_text_layer(self, dispatcher, document_store):
        document_store["dr/ledger.pdf"] = _pdf_bytes(LEDGER_LINES)

        result = await dispatcher.extract("dr/ledger.pdf", "ledger.pdf")

        assert result.method == "PDF-Text"
        assert result.format == DocumentFormat.PDF
        assert "Closing balance 1,348,400.00" in result.text
        assert result.attempts == ["PDF-Text"]

    async def test_pdf_without_enough_text_falls_back_to_plain(self, dispatcher, document_store):
        document_store["dr/scan.pdf"] = _pdf_bytes(["p1"])

        result = await dispatcher.extract("dr/scan.pdf", "scan.pdf")

        assert result.method == "PDF-Plain"
        assert result.attempts == ["PDF-Text", "PDF-Plain"]
        assert result.text.startswith("%PDF")

    async def test_spreadsheet_every_sheet(self, dispatcher, document_store):
        document_store["dr/tb.xlsx"] = _xlsx_bytes()

        result = await dispatcher.extract("dr/tb.xlsx", "tb.xlsx")

        assert result.method == "Excel-Complete"
        lines = result.text.splitlines()
        assert lines[0] == "SHEET: Trial Balance"
        assert "Account | Debit | Credit" in lines
        assert "Cash | 1000" in lines
        assert "SHEET: Notes" in lines
        assert "Prepared by finance" in lines

    async def test_corrupt_spreadsheet_uses_utf8_fallback(self, dispatcher, document_store):
        document_store["dr/bad.xlsx"] = b"Account,Debit\nCash,1000\n"

        result = await dispatcher.extract("dr/bad.xlsx", "bad.xlsx")

        assert result.method == "Fallback-UTF8"
        assert result.text == "Account,Debit\nCash,1000\n"
        assert result.attempts == ["Excel-Complete", "Fallback-UTF8"]

    async def test_legacy_xls_read_with_xlrd(self, dispatcher, document_store):
        sheets = [
            MagicMock(name="tb", nrows=2, row_values=MagicMock(side_effect=[
                ["Account", "Debit", ""], ["Cash", 1000.0, 12.5],
            ])),
            MagicMock(name="notes", nrows=1, row_values=MagicMock(return_value=["Audited"])),
        ]
        sheets[0].name, sheets[1].name = "Trial Balance", "Notes"
        book = MagicMock(nsheets=2, sheet_by_index=MagicMock(side_effect=sheets))
        document_store["dr/tb.xls"] = OLE2_MAGIC + b"\x00" * 32

        with patch("xlrd.open_workbook", return_value=book) as open_workbook:
            result = await dispatcher.extract("dr/tb.xls", "tb.xls")

        assert result.method == "Excel-Complete"
        assert result.text.splitlines() == [
            "SHEET: Trial Balance", "Account | Debit", "Cash | 1000 | 12.5",
            "SHEET: Notes", "Audited",
        ]
        assert open_workbook.call_args.kwargs["file_contents"].startswith(OLE2_MAGIC)
        book.release_resources.assert_called_once()

    async def test_unreadable_legacy_file_keeps_no_nul_bytes(self, dispatcher, document_store):
        document_store["dr/ledger.xls"] = OLE2_MAGIC + b"\x00" * 16 + b"Cash 1000"

        result = await dispatcher.extract("dr/ledger.xls", "ledger.xls")

        assert result.method == "Fallback-UTF8"
        assert "\x00" not in result.text
        assert "Cash 1000" in result.text

    async def test_word_paragraphs_and_tables(self, dispatcher, document_store):
        document_store["dr/payroll.docx"] = _docx_bytes()

        result = await dispatcher.extract("dr/payroll.docx", "payroll.docx")

        assert result.method == "Word"
        assert "Salary register for March 2024" in result.text
        assert "Employee | Net Pay" in result.text
        assert "R. Mehta | 85,000" in result.text

    async def test_image_ocr(self, dispatcher, document_store):
        document_store["dr/receipt.png"] = _png_bytes()

        with patch("pytesseract.image_to_string", return_value="RECEIPT No. 881 TOTAL 4,500") as ocr:
            result = await dispatcher.extract("dr/receipt.png", "receipt.png")

        assert result.method == "Image-OCR"
        assert result.text == "RECEIPT No. 881 TOTAL 4,500"
        assert ocr.call_args.kwargs["lang"] == "eng"

    async def test_plain_text(self, dispatcher, document_store):
        document_store["dr/notes.txt"] = "\ufeffBoard approved the FY24 budget.\x00".encode("utf-8")

        result = await dispatcher.extract("dr/notes.txt", "notes.txt")

        assert result.method == "Plain-Text"
        assert result.text == "Board approved the FY24 budget. "

    async def test_powerpoint_placeholder_skips_fetch(self, dispatcher, storage):
        result = await dispatcher.extract("dr/deck.pptx", "deck.pptx")

        assert result.method == "PowerPoint"
        assert result.text == POWERPOINT_PLACEHOLDER
        assert storage.fetched == []

    async def test_unknown_format_placeholder_skips_fetch(self, dispatcher, storage):
        result = await dispatcher.extract("dr/archive.zip", "archive.zip")

        assert result.method == "N/A"
        assert result.text == UNSUPPORTED_PLACEHOLDER
        assert result.format == DocumentFormat.UNKNOWN
        assert storage.fetched == []


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher — failure handling
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestDispatchFailures:

    async def test_fetch_error_returns_failed(self, dispatcher):
        result = await dispatcher.extract("dr/missing.pdf", "missing.pdf")

        assert result.method == "Failed"
        assert result.failed is True
        assert result.text == "[Error: Object not found: dr/missing.pdf]"
        assert result.attempts == []

    async def test_exhausted_chain_returns_failed(self, storage, document_store):
        document_store["dr/x.txt"] = b"anything"
        dispatcher = ExtractionDispatcher(
            storage, chains={DocumentFormat.TEXT: [_BrokenStrategy()]},
        )

        result = await dispatcher.extract("dr/x.txt", "x.txt")

        assert result.method == "Failed"
        assert result.text == "[Error: parser exploded]"
        assert result.attempts == ["Broken"]

    async def test_timeout_returns_failed(self, storage, document_store):
        document_store["dr/slow.txt"] = b"slow"
        dispatcher = ExtractionDispatcher(
            storage, per_file_timeout=0.05, chains={DocumentFormat.TEXT: [_SlowStrategy()]},
        )

        result = await dispatcher.extract("dr/slow.txt", "slow.txt")

        assert result.method == "Failed"
        assert result.text == "[Extraction timed out after 0s]"

    async def test_empty_text_gets_placeholder(self, dispatcher, document_store):
        document_store["dr/blank.txt"] = b"   \n  "

        result = await dispatcher.extract("dr/blank.txt", "blank.txt")

        assert result.method == "Plain-Text"
        assert result.text == NO_CONTENT_PLACEHOLDER

    async def test_long_text_is_clipped(self, storage, document_store):
        document_store["dr/long.txt"] = ("journal entry " * 1000).encode()
        dispatcher = ExtractionDispatcher(storage, max_chars=200)

        result = await dispatcher.extract("dr/long.txt", "long.txt")

        assert len(result.text) <= 200
        assert result.text.endswith(TRUNCATION_MARKER)


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.extraction
class TestHelpers:

    def test_clamp_short_text_untouched(self):
        assert clamp_text("abc", 10) == "abc"

    def test_clamp_respects_limit_exactly(self):
        clipped = clamp_text("x" * 5000, 100)
        assert len(clipped) == 100
        assert clipped.endswith("[TRUNCATED]")

    def test_clamp_tiny_limit_never_exceeds(self):
        assert len(clamp_text("x" * 50, 5)) == 5

    def test_strip_control_chars_keeps_whitespace(self):
        assert strip_control_chars("a\x00b\tc\nd\x7f") == "a b\tc\nd "

    async def test_pdf_text_threshold(self):
        short = await PdfTextExtractor(min_chars=50).extract(_pdf_bytes(["tiny"]), "tiny.pdf")
        assert short.succeeded is False
        assert "below 50 characters" in short.error

    async def test_unreadable_pdf_fails_cleanly(self):
        outcome = await PdfTextExtractor().extract(b"not a pdf at all", "junk.pdf")
        assert outcome.succeeded is False
        assert outcome.method == "PDF-Text"


@pytest.mark.unit
@pytest.mark.extraction
class TestDetectFormat:

    @pytest.mark.parametrize("name,expected", [
        ("report.PDF",        DocumentFormat.PDF),
        ("tb.xlsx",           DocumentFormat.SPREADSHEET),
        ("legacy.xls",        DocumentFormat.SPREADSHEET),
        ("minutes.docx",      DocumentFormat.WORD),
        ("scan.jpeg",         DocumentFormat.IMAGE),
        ("scan.tiff",         DocumentFormat.IMAGE),
        ("deck.pptx",         DocumentFormat.PRESENTATION),
        ("notes.txt",         DocumentFormat.TEXT),
        ("export.csv",        DocumentFormat.TEXT),
        ("archive.zip",       DocumentFormat.UNKNOWN),
        ("no_extension",      DocumentFormat.UNKNOWN),
    ])
    def test_by_extension(self, name, expected):
        assert detect_format(name) == expected

    def test_extension_wins_over_mime(self):
        assert detect_format("ledger.pdf", "text/plain") == DocumentFormat.PDF

    @pytest.mark.parametrize("mime,expected", [
        ("application/pdf",                 DocumentFormat.PDF),
        ("image/heic",                      DocumentFormat.IMAGE),
        ("text/plain; charset=utf-8",       DocumentFormat.TEXT),
        ("application/vnd.ms-powerpoint",   DocumentFormat.PRESENTATION),
        ("application/octet-stream",        DocumentFormat.UNKNOWN),
    ])
    def test_mime_fallback(self, mime, expected):
        assert detect_format("upload", mime) == expected


@pytest.mark.unit
@pytest.mark.extraction
class TestClassifier:

    @pytest.mark.parametrize("name,text,expected", [
        ("HDFC_bank_mar.pdf",   None,                              DocumentCategory.BANK_STATEMENT),
        ("scan_001.pdf",        "Account Number: 5010 0021",       DocumentCategory.BANK_STATEMENT),
        ("tally_export.xlsx",   None,                              DocumentCategory.TALLY_SHEET),
        ("misc.xlsx",           "Total Debit 400 Total Credit 400", DocumentCategory.TALLY_SHEET),
        ("payroll_march.xlsx",  None,                              DocumentCategory.SALARY_REGISTER),
        ("GSTR-3B_Q1.pdf",      None,                              DocumentCategory.GST_FILING),
        ("summary.pdf",         "IGST payable 18%",                DocumentCategory.GST_FILING),
        ("FY24 Balance Sheet.pdf", None,                           DocumentCategory.FINANCIAL_STATEMENT),
        ("board_minutes.docx",  "The board met on 4 March.",       DocumentCategory.UNKNOWN),
    ])
    def test_rules(self, name, text, expected):
        assert classify_document(name, text) == expected

    def test_first_matching_rule_wins(self):
        # "statement" matches both bank_statement and financial_statement
        assert classify_document("financial_statement.pdf") == DocumentCategory.BANK_STATEMENT
