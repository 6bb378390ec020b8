"""
Keyword-based document category detection.

Rules are checked in order and the first match wins; file-name keywords
and content keywords are tested independently. The category only feeds
the synthesis prompt header and the report breakdown.
"""

from __future__ import annotations

from enum import Enum


class DocumentCategory(str, Enum):
    BANK_STATEMENT      = "bank_statement"
    TALLY_SHEET         = "tally_sheet"
    SALARY_REGISTER     = "salary_register"
    GST_FILING          = "gst_filing"
    FINANCIAL_STATEMENT = "financial_statement"
    UNKNOWN             = "unknown"


# (category, file-name keywords, content keywords)
_RULES: list[tuple[DocumentCategory, tuple[str, ...], tuple[str, ...]]] = [
    (DocumentCategory.BANK_STATEMENT,      ("bank", "statement"),                ("account number", "transaction")),
    (DocumentCategory.TALLY_SHEET,         ("tally", "ledger", "journal"),       ("debit", "credit")),
    (DocumentCategory.SALARY_REGISTER,     ("salary", "payroll", "employee"),    ("salary", "payroll")),
    (DocumentCategory.GST_FILING,          ("gst", "tax"),                       ("gst", "igst")),
    (DocumentCategory.FINANCIAL_STATEMENT, ("financial", "statement", "balance sheet", "p&l"), ()),
]


def classify_document(file_name: str, text: str | None = None) -> DocumentCategory:
    name    = (file_name or "").lower()
    content = (text or "").lower()

    for category, name_keys, content_keys in _RULES:
        if any(k in name for k in name_keys) or any(k in content for k in content_keys):
            return category
    return DocumentCategory.UNKNOWN
