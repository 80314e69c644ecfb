# src/dicomview_core/parser.py
"""
File-level DICOM parsing.

parse_file() is the single "parse one file" entry point used by the viewer:
decode the element stream, normalize pixels when both a payload and
dimensions exist, otherwise substitute a checkerboard test pattern.

The result is never None and parse_file() never raises on malformed input;
degraded results are flagged with is_placeholder and a reason.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import DEFAULT_CONFIG, DecoderConfig
from .elements import decode
from .model import DecodedFile, SubDocument
from .pixels import (
    Raster,
    UnsupportedBitDepthError,
    WindowPolicy,
    create_test_pattern,
    normalize,
)

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    """Everything the display layer needs for one DICOM file."""
    metadata: Dict[str, Any]
    raster: Raster
    width: int
    height: int
    sub_documents: List[SubDocument] = field(default_factory=list)
    pixel_bytes: Optional[bytes] = None
    is_placeholder: bool = False
    placeholder_reason: str = ""

    @property
    def has_documents(self) -> bool:
        return bool(self.sub_documents)


def parse_file(
    buffer: bytes,
    config: Optional[DecoderConfig] = None,
    policy: Optional[WindowPolicy] = None,
) -> ParseResult:
    """
    Parse one DICOM file held in memory.

    Args:
        buffer: Complete file contents
        config: Optional DecoderConfig
        policy: Optional WindowPolicy for pixel normalization

    Returns:
        ParseResult with metadata, raster and embedded documents
    """
    config = config or DEFAULT_CONFIG
    decoded = decode(buffer, config)

    if decoded is None:
        return _placeholder(DecodedFile(), config, "buffer too small for DICOM format")

    if not decoded.has_pixels:
        return _placeholder(decoded, config, "no pixel data")

    if not decoded.width or not decoded.height:
        return _placeholder(decoded, config, "missing image dimensions")

    if decoded.width * decoded.height > config.max_raster_pixels:
        return _placeholder(
            decoded,
            config,
            f"image dimensions {decoded.width}x{decoded.height} exceed max_raster_pixels",
        )

    try:
        raster = normalize(
            decoded.pixel_bytes,
            decoded.width,
            decoded.height,
            decoded.bits_allocated,
            decoded.is_signed,
            little_endian=decoded.little_endian,
            policy=policy,
            metadata=decoded.metadata,
        )
    except UnsupportedBitDepthError as exc:
        return _placeholder(decoded, config, str(exc))
    except ValueError as exc:
        return _placeholder(decoded, config, f"failed to render pixel data: {exc}")

    return ParseResult(
        metadata=decoded.metadata,
        raster=raster,
        width=decoded.width,
        height=decoded.height,
        sub_documents=decoded.sub_documents,
        pixel_bytes=decoded.pixel_bytes,
    )


def _placeholder(decoded: DecodedFile, config: DecoderConfig, reason: str) -> ParseResult:
    """Test-pattern result that keeps whatever metadata was recovered."""
    width = decoded.width or config.placeholder_size
    height = decoded.height or config.placeholder_size
    if width * height > config.max_raster_pixels:
        width = height = config.placeholder_size
    logger.warning("Substituting %dx%d test pattern: %s", width, height, reason)

    raster = create_test_pattern(
        width,
        height,
        square_size=config.checker_size,
        label=config.label_test_pattern,
    )
    return ParseResult(
        metadata=decoded.metadata,
        raster=raster,
        width=width,
        height=height,
        sub_documents=decoded.sub_documents,
        pixel_bytes=decoded.pixel_bytes,
        is_placeholder=True,
        placeholder_reason=reason,
    )
