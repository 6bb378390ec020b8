"""
Document format detection.

The file extension decides; the MIME type recorded at upload is consulted
only when the name carries no recognised extension.
"""

from __future__ import annotations

import os
from enum import Enum


class DocumentFormat(str, Enum):
    PDF          = "pdf"
    SPREADSHEET  = "spreadsheet"
    WORD         = "word"
    IMAGE        = "image"
    PRESENTATION = "presentation"
    TEXT         = "text"
    UNKNOWN      = "unknown"


_EXTENSIONS: dict[str, DocumentFormat] = {
    ".pdf":  DocumentFormat.PDF,
    ".xlsx": DocumentFormat.SPREADSHEET,
    ".xlsm": DocumentFormat.SPREADSHEET,
    ".xls":  DocumentFormat.SPREADSHEET,
    ".docx": DocumentFormat.WORD,
    ".doc":  DocumentFormat.WORD,
    ".jpg":  DocumentFormat.IMAGE,
    ".jpeg": DocumentFormat.IMAGE,
    ".png":  DocumentFormat.IMAGE,
    ".gif":  DocumentFormat.IMAGE,
    ".webp": DocumentFormat.IMAGE,
    ".bmp":  DocumentFormat.IMAGE,
    ".tif":  DocumentFormat.IMAGE,
    ".tiff": DocumentFormat.IMAGE,
    ".ppt":  DocumentFormat.PRESENTATION,
    ".pptx": DocumentFormat.PRESENTATION,
    ".txt":  DocumentFormat.TEXT,
    ".csv":  DocumentFormat.TEXT,
    ".md":   DocumentFormat.TEXT,
    ".json": DocumentFormat.TEXT,
    ".xml":  DocumentFormat.TEXT,
    ".log":  DocumentFormat.TEXT,
}

_MIME_TYPES: dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": DocumentFormat.SPREADSHEET,
    "application/vnd.ms-excel": DocumentFormat.SPREADSHEET,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.WORD,
    "application/msword": DocumentFormat.WORD,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": DocumentFormat.PRESENTATION,
    "application/vnd.ms-powerpoint": DocumentFormat.PRESENTATION,
    "application/json": DocumentFormat.TEXT,
    "application/xml": DocumentFormat.TEXT,
}


def detect_format(file_name: str, declared_type: str | None = None) -> DocumentFormat:
    """Return the DocumentFormat for a file; UNKNOWN when nothing matches."""
    ext = os.path.splitext(file_name or "")[1].lower()
    if ext in _EXTENSIONS:
        return _EXTENSIONS[ext]

    if declared_type:
        mime = declared_type.split(";", 1)[0].strip().lower()
        if mime in _MIME_TYPES:
            return _MIME_TYPES[mime]
        if mime.startswith("image/"):
            return DocumentFormat.IMAGE
        if mime.startswith("text/"):
            return DocumentFormat.TEXT

    return DocumentFormat.UNKNOWN
