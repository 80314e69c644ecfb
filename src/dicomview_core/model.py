# src/dicomview_core/model.py
"""
Data model for decoded DICOM content.

Value Variants:
---------------
An Element's typed value is exactly one of:
- StringValue: trimmed text (string VRs, implicit patient name/ID)
- IntValue: US/SS/UL/SL and the implicit image-geometry tags
- FloatValue: FL/FD
- NoValue: skipped, mismatched, structural or bulk elements

Bulk payloads (Pixel Data, Encapsulated Document) are never copied into
an Element; the element records where its value starts so the owner of the
buffer can slice it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .documents import DocumentType, classify, suggested_filename


# ═══════════════════════════════════════════════════════════════════════════════
# TAGS
# ═══════════════════════════════════════════════════════════════════════════════

Tag = Tuple[int, int]

TRANSFER_SYNTAX_UID: Tag = (0x0002, 0x0010)
PATIENT_NAME: Tag = (0x0010, 0x0010)
PATIENT_ID: Tag = (0x0010, 0x0020)
ROWS: Tag = (0x0028, 0x0010)
COLUMNS: Tag = (0x0028, 0x0011)
BITS_ALLOCATED: Tag = (0x0028, 0x0100)
BITS_STORED: Tag = (0x0028, 0x0101)
HIGH_BIT: Tag = (0x0028, 0x0102)
PIXEL_REPRESENTATION: Tag = (0x0028, 0x0103)
ENCAPSULATED_DOCUMENT: Tag = (0x0042, 0x0011)
PIXEL_DATA: Tag = (0x7FE0, 0x0010)

ITEM: Tag = (0xFFFE, 0xE000)
ITEM_DELIMITATION: Tag = (0xFFFE, 0xE00D)
SEQUENCE_DELIMITATION: Tag = (0xFFFE, 0xE0DD)

UNDEFINED_LENGTH = 0xFFFFFFFF

# Synthetic metadata keys mirrored from pixel-module tags
SYNTHETIC_KEYS = {
    BITS_ALLOCATED: 'bits_allocated',
    BITS_STORED: 'bits_stored',
    HIGH_BIT: 'high_bit',
    PIXEL_REPRESENTATION: 'pixel_representation',
}
TRANSFER_SYNTAX_KEY = 'transfer_syntax_uid'
PIXEL_DATA_LENGTH_KEY = 'pixel_data_length'


def tag_key(group: int, element: int) -> str:
    """Render a tag as its canonical 8-hex-digit key, e.g. ``"00280010"``."""
    return f"{group & 0xFFFF:04X}{element & 0xFFFF:04X}"


def parse_tag_key(key: str) -> Tag:
    """Inverse of :func:`tag_key`. Accepts an optional ``0x`` prefix."""
    text = key[2:] if key.lower().startswith('0x') else key
    if len(text) != 8:
        raise ValueError(f"Not a tag key: {key!r}")
    value = int(text, 16)
    return (value >> 16) & 0xFFFF, value & 0xFFFF


# ═══════════════════════════════════════════════════════════════════════════════
# ELEMENT VALUES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class IntValue:
    value: int


@dataclass(frozen=True)
class FloatValue:
    value: float


@dataclass(frozen=True)
class NoValue:
    @property
    def value(self) -> None:
        return None


ElementValue = Union[StringValue, IntValue, FloatValue, NoValue]

NO_VALUE = NoValue()


@dataclass(frozen=True)
class Element:
    """One decoded (tag, VR, length, value) unit from the element stream."""
    group: int
    element: int
    vr: str                  # '' when implicit and not inferred
    length: int              # declared length, may be UNDEFINED_LENGTH
    value: ElementValue
    value_offset: int        # buffer offset of the first value byte
    depth: int = 0           # sequence nesting level when read

    @property
    def tag(self) -> Tag:
        return (self.group, self.element)

    @property
    def key(self) -> str:
        return tag_key(self.group, self.element)

    @property
    def plain(self) -> Any:
        """The bare Python value (str/int/float) or None."""
        return self.value.value

    @property
    def has_value(self) -> bool:
        return not isinstance(self.value, NoValue)


# ═══════════════════════════════════════════════════════════════════════════════
# DECODED FILE
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SubDocument:
    """An embedded document blob captured from (0042,0011)."""
    offset: int
    length: int
    data: bytes

    @property
    def document_type(self) -> DocumentType:
        # Classified on demand; parsing never inspects document content.
        return classify(self.data)

    def filename(self, index: Optional[int] = None) -> str:
        return suggested_filename(self.data, index)


@dataclass
class DecodedFile:
    """
    Output of the element stream decoder for one buffer.

    metadata holds plain values keyed by tag key plus the synthetic keys
    listed in SYNTHETIC_KEYS / TRANSFER_SYNTAX_KEY / PIXEL_DATA_LENGTH_KEY.
    """
    metadata: Dict[str, Any] = field(default_factory=dict)
    elements: List[Element] = field(default_factory=list)
    pixel_bytes: Optional[bytes] = None
    sub_documents: List[SubDocument] = field(default_factory=list)
    width: int = 0
    height: int = 0
    has_preamble: bool = False
    explicit_vr: bool = True
    little_endian: bool = True

    @property
    def has_pixels(self) -> bool:
        return self.pixel_bytes is not None

    @property
    def bits_allocated(self) -> int:
        return int(self.metadata.get('bits_allocated') or 16)

    @property
    def is_signed(self) -> bool:
        return self.metadata.get('pixel_representation') == 1
