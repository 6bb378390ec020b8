"""
Document Processing Package
════════════════════════════

Turns one stored document into bounded, normalised text:

  Format Detection → Byte Fetch → Strategy Chain → Clip → Classify

Modules
───────
  formats.py     Extension / MIME → DocumentFormat
  strategies.py  Per-format extractors (PyMuPDF, pypdf, openpyxl, python-docx, Tesseract)
  dispatcher.py  Ordered fallback chains, per-file timeout, truncation
  classifier.py  Keyword-based document category

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • The dispatcher never raises; failures become "Failed" results.
  • Every step emits a single structured log line.
"""

from auditvault.processing.classifier import DocumentCategory, classify_document
from auditvault.processing.dispatcher import DispatchResult, ExtractionDispatcher, clamp_text
from auditvault.processing.formats import DocumentFormat, detect_format

__all__ = [
    "DocumentCategory",
    "classify_document",
    "DispatchResult",
    "ExtractionDispatcher",
    "clamp_text",
    "DocumentFormat",
    "detect_format",
]
