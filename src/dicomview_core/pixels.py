# src/dicomview_core/pixels.py
"""
Pixel sample normalization.

Turns raw 8/16-bit grayscale samples into a displayable RGBA raster.

The intensity mapping is delegated to a WindowPolicy:
- SampledMinMaxWindow (default): stretch between the min and max of up to
  10,000 evenly strided samples. Ignores Window Center/Width and Rescale
  Slope/Intercept.
- VoiLutWindow: use the file's Window Center/Width (after Rescale
  Slope/Intercept) when present, else fall back to SampledMinMaxWindow.

Every policy returns (low, span) in stored-sample units; samples are mapped
with floor((sample - low) / span * 255) and clamped to 0..255.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from .config import DEFAULT_CONFIG

logger = logging.getLogger(__name__)

SUPPORTED_BITS_ALLOCATED = (8, 16)

WINDOW_CENTER_KEY = "00281050"
WINDOW_WIDTH_KEY = "00281051"
RESCALE_INTERCEPT_KEY = "00281052"
RESCALE_SLOPE_KEY = "00281053"

CHECKER_LIGHT = 255
CHECKER_DARK = 128
LABEL_COLOR = (255, 0, 0, 255)


class UnsupportedBitDepthError(ValueError):
    """Raised when Bits Allocated is not 8 or 16."""


# ═══════════════════════════════════════════════════════════════════════════════
# RASTER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class Raster:
    """
    Width x height RGBA image, row-major, one uint8 per channel.

    rgba has shape (height, width, 4).
    """
    width: int
    height: int
    rgba: np.ndarray

    @property
    def gray(self) -> np.ndarray:
        """Red channel, which equals green and blue for normalized output."""
        return self.rgba[:, :, 0]

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.rgba)

    def to_png_bytes(self) -> bytes:
        buf = io.BytesIO()
        self.to_image().save(buf, format="PNG")
        return buf.getvalue()


# ═══════════════════════════════════════════════════════════════════════════════
# WINDOW POLICIES
# ═══════════════════════════════════════════════════════════════════════════════

class WindowPolicy:
    """Chooses the (low, span) intensity window for a sample array."""
    name = "window"

    def window(
        self,
        samples: np.ndarray,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[float, float]:
        raise NotImplementedError


class SampledMinMaxWindow(WindowPolicy):
    """Linear stretch over the sampled min/max; span is at least 1."""
    name = "sampled-min-max"

    def __init__(self, sample_limit: int = DEFAULT_CONFIG.sample_limit):
        self.sample_limit = max(1, sample_limit)

    def window(self, samples, metadata=None):
        total = samples.size
        if total == 0:
            return 0.0, 1.0
        count = min(self.sample_limit, total)
        stride = total / count
        indices = np.floor(np.arange(count) * stride).astype(np.int64)
        sampled = samples[indices]
        low = int(sampled.min())
        high = int(sampled.max())
        return float(low), float(max(high - low, 1))


class VoiLutWindow(WindowPolicy):
    """Window Center/Width from the metadata map, in stored-sample units."""
    name = "voi-lut"

    def __init__(self, fallback: Optional[WindowPolicy] = None):
        self.fallback = fallback or SampledMinMaxWindow()

    def window(self, samples, metadata=None):
        metadata = metadata or {}
        center = _first_number(metadata.get(WINDOW_CENTER_KEY))
        width = _first_number(metadata.get(WINDOW_WIDTH_KEY))
        slope = _first_number(metadata.get(RESCALE_SLOPE_KEY))
        intercept = _first_number(metadata.get(RESCALE_INTERCEPT_KEY))

        if slope is None:
            slope = 1.0
        if intercept is None:
            intercept = 0.0

        if center is None or width is None or width <= 0 or slope <= 0:
            return self.fallback.window(samples, metadata)

        low = (center - width / 2.0 - intercept) / slope
        return low, width / slope


def _first_number(value: Any) -> Optional[float]:
    """First value of a numeric or backslash-separated DS/IS string."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).split('\\')[0])
    except ValueError:
        return None


# ═══════════════════════════════════════════════════════════════════════════════
# NORMALIZE
# ═══════════════════════════════════════════════════════════════════════════════

def sample_array(
    raw: bytes,
    bits_allocated: int,
    signed: bool,
    little_endian: bool = True,
) -> np.ndarray:
    """View raw pixel bytes as a 1-D sample array; a trailing partial sample is dropped."""
    if bits_allocated not in SUPPORTED_BITS_ALLOCATED:
        raise UnsupportedBitDepthError(
            f"Unsupported bits allocated: {bits_allocated} (expected 8 or 16)"
        )

    if bits_allocated == 8:
        dtype = np.dtype(np.int8 if signed else np.uint8)
    else:
        code = 'i2' if signed else 'u2'
        dtype = np.dtype(('<' if little_endian else '>') + code)

    count = len(raw) // dtype.itemsize
    return np.frombuffer(raw, dtype=dtype, count=count)


def normalize(
    raw: bytes,
    width: int,
    height: int,
    bits_allocated: int,
    signed: bool,
    *,
    little_endian: bool = True,
    policy: Optional[WindowPolicy] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Raster:
    """
    Convert raw grayscale samples into an 8-bit RGBA raster.

    Args:
        raw: Pixel Data payload
        width: Columns
        height: Rows
        bits_allocated: 8 or 16
        signed: True when Pixel Representation is 1
        little_endian: Byte order of 16-bit samples
        policy: WindowPolicy (defaults to SampledMinMaxWindow)
        metadata: Metadata map handed to the policy

    Returns:
        Raster; pixels beyond the available samples stay (0, 0, 0, 0)

    Raises:
        UnsupportedBitDepthError: bits_allocated is not 8 or 16
        ValueError: width or height is not positive
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid raster dimensions: {width}x{height}")

    samples = sample_array(raw, bits_allocated, signed, little_endian)
    policy = policy or SampledMinMaxWindow()
    low, span = policy.window(samples, metadata)

    count = min(width * height, samples.size)
    logger.debug(
        "Normalizing %d samples (%d-bit, signed=%s) with %s window low=%s span=%s",
        count, bits_allocated, signed, policy.name, low, span,
    )

    scaled = np.floor((samples[:count].astype(np.float64) - low) / span * 255.0)
    gray = np.clip(scaled, 0, 255).astype(np.uint8)

    rgba = np.zeros((width * height, 4), dtype=np.uint8)
    rgba[:count, 0] = gray
    rgba[:count, 1] = gray
    rgba[:count, 2] = gray
    rgba[:count, 3] = 255

    return Raster(width, height, rgba.reshape(height, width, 4))


# ═══════════════════════════════════════════════════════════════════════════════
# TEST PATTERN
# ═══════════════════════════════════════════════════════════════════════════════

def create_test_pattern(
    width: int = DEFAULT_CONFIG.placeholder_size,
    height: int = DEFAULT_CONFIG.placeholder_size,
    *,
    square_size: int = DEFAULT_CONFIG.checker_size,
    label: bool = True,
) -> Raster:
    """
    Checkerboard placeholder: white where the x and y square parities agree,
    grey elsewhere, fully opaque. Optionally labelled in red.
    """
    square_size = max(1, square_size)
    ys = (np.arange(height) // square_size % 2)[:, None]
    xs = (np.arange(width) // square_size % 2)[None, :]
    gray = np.full((height, width), CHECKER_DARK, dtype=np.uint8)
    gray[xs == ys] = CHECKER_LIGHT

    rgba = np.empty((height, width, 4), dtype=np.uint8)
    rgba[:, :, :3] = gray[:, :, None]
    rgba[:, :, 3] = 255

    if label and width > 0 and height > 0:
        image = Image.fromarray(rgba)
        draw = ImageDraw.Draw(image)
        draw.text((20, 12), "TEST PATTERN", fill=LABEL_COLOR)
        draw.text((20, 42), f"{width}x{height}", fill=LABEL_COLOR)
        rgba = np.array(image)

    return Raster(width, height, rgba)
