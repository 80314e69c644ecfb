# src/dicomview_core/config.py
"""
Decoder configuration for dicomview_core.

Every bound that keeps the decoders finite on hostile input lives here,
so callers can tighten or relax them without touching parsing code.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DecoderConfig:
    """Tunable limits shared by the element, pixel and directory decoders."""
    # Element stream
    max_string_length: int = 256       # explicit-VR string values
    max_uid_length: int = 64           # Transfer Syntax UID
    implicit_string_length: int = 64   # implicit-VR patient name / ID

    # Pixel normalizer
    sample_limit: int = 10_000         # points used to estimate min/max
    max_raster_pixels: int = 4096 * 4096  # Rows x Columns accepted for rendering

    # Placeholder raster
    placeholder_size: int = 512
    checker_size: int = 16
    label_test_pattern: bool = True

    # DICOMDIR
    record_search_window: int = 512    # undefined-length record items


DEFAULT_CONFIG = DecoderConfig()
