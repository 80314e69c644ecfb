# src/dicomview_core/documents.py
"""
Embedded document signature detection.

Classifies a byte blob (typically an Encapsulated Document payload) by
its leading magic bytes. Pure: no I/O, no state.
"""
from __future__ import annotations

from typing import NamedTuple, Optional, Tuple


class DocumentType(NamedTuple):
    """Detected document kind."""
    mime_type: str
    extension: str


PDF = DocumentType("application/pdf", "pdf")
JPEG = DocumentType("image/jpeg", "jpg")
PNG = DocumentType("image/png", "png")
XML = DocumentType("application/xml", "xml")
OFFICE_OPEN_XML = DocumentType("application/vnd.openxmlformats-officedocument", "docx")
BINARY = DocumentType("application/octet-stream", "bin")

# Checked in order; first prefix match wins.
SIGNATURES: Tuple[Tuple[bytes, DocumentType], ...] = (
    (b"%PDF", PDF),
    (b"\xff\xd8", JPEG),
    (b"\x89PNG\r\n\x1a\n", PNG),
    (b"<?xml", XML),
    (b"PK\x03\x04", OFFICE_OPEN_XML),
)


def classify(data: bytes) -> DocumentType:
    """
    Detect the document type of ``data`` from its signature.

    Args:
        data: Raw document bytes (bytes, bytearray or memoryview)

    Returns:
        DocumentType; BINARY when no signature matches
    """
    head = bytes(data[:8])
    for signature, document_type in SIGNATURES:
        if head.startswith(signature):
            return document_type
    return BINARY


def suggested_filename(data: bytes, index: Optional[int] = None) -> str:
    """Download name for an embedded document, e.g. ``document_2.pdf``."""
    extension = classify(data).extension
    if index is None:
        return f"document.{extension}"
    return f"document_{index}.{extension}"
