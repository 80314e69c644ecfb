# src/dicomview_core/elements.py
"""
Element stream decoder.

Walks a DICOM byte buffer tag by tag and yields typed Elements, tracking
transfer-syntax state (VR explicitness and byte order) as it goes.

Stream layout handled:
- Optional 128-byte preamble + "DICM" magic. With it, the file meta group is
  read as explicit VR little endian; without it the buffer is read from
  offset 0 as implicit VR little endian.
- Transfer Syntax UID (0002,0010) switches mode once the meta group ends.
- Sequence framing (group FFFE) is consumed without producing elements.
- Pixel Data (7FE0,0010) at the top level terminates the scan.

Decoding is best effort: a tag that cannot be decoded moves the cursor two
bytes past its start and the scan resumes.
"""
from __future__ import annotations

import logging
import struct
from typing import Iterator, NamedTuple, Optional

from .config import DEFAULT_CONFIG, DecoderConfig
from .model import (
    BITS_ALLOCATED,
    BITS_STORED,
    COLUMNS,
    ENCAPSULATED_DOCUMENT,
    HIGH_BIT,
    ITEM,
    ITEM_DELIMITATION,
    NO_VALUE,
    PATIENT_ID,
    PATIENT_NAME,
    PIXEL_DATA,
    PIXEL_DATA_LENGTH_KEY,
    PIXEL_REPRESENTATION,
    ROWS,
    SEQUENCE_DELIMITATION,
    SYNTHETIC_KEYS,
    TRANSFER_SYNTAX_KEY,
    TRANSFER_SYNTAX_UID,
    UNDEFINED_LENGTH,
    DecodedFile,
    Element,
    ElementValue,
    FloatValue,
    IntValue,
    StringValue,
    SubDocument,
)

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════════

PREAMBLE_LENGTH = 128
MAGIC = b"DICM"
HEADER_LENGTH = PREAMBLE_LENGTH + len(MAGIC)

# Fewer bytes than this left in the buffer ends the scan
MIN_ELEMENT_BYTES = 8

IMPLICIT_VR_LITTLE_ENDIAN = "1.2.840.10008.1.2"
EXPLICIT_VR_LITTLE_ENDIAN = "1.2.840.10008.1.2.1"
EXPLICIT_VR_BIG_ENDIAN = "1.2.840.10008.1.2.2"

# uid -> (explicit_vr, little_endian)
TRANSFER_SYNTAXES = {
    IMPLICIT_VR_LITTLE_ENDIAN: (False, True),
    EXPLICIT_VR_LITTLE_ENDIAN: (True, True),
    EXPLICIT_VR_BIG_ENDIAN: (True, False),
}

# VRs written with 2 reserved bytes and a 4-byte length in explicit VR
LONG_LENGTH_VRS = frozenset({
    'OB', 'OW', 'OF', 'SQ', 'UT', 'UN',
    'OD', 'OL', 'OV', 'SV', 'UC', 'UR', 'UV',
})

STRING_VRS = frozenset({
    'AE', 'AS', 'CS', 'DA', 'DS', 'DT', 'IS', 'LO',
    'LT', 'PN', 'SH', 'ST', 'TM', 'UI', 'UT',
})

# VR -> (struct code, exact byte length)
INTEGER_VRS = {
    'US': ('H', 2),
    'SS': ('h', 2),
    'UL': ('I', 4),
    'SL': ('i', 4),
}

FLOAT_VRS = {
    'FL': ('f', 4),
    'FD': ('d', 8),
}

# Implicit VR carries no type information; only these tags get a value.
IMPLICIT_STRING_TAGS = frozenset({PATIENT_NAME, PATIENT_ID})
IMPLICIT_US_TAGS = frozenset({
    ROWS, COLUMNS, BITS_ALLOCATED, BITS_STORED, HIGH_BIT, PIXEL_REPRESENTATION,
})


# ═══════════════════════════════════════════════════════════════════════════════
# LOW-LEVEL READERS
# ═══════════════════════════════════════════════════════════════════════════════

class ElementHeader(NamedTuple):
    """Tag, VR and length of one element as laid out in the buffer."""
    group: int
    element: int
    vr: str
    length: int
    value_offset: int

    @property
    def tag(self):
        return (self.group, self.element)


def has_dicm_preamble(buffer: bytes) -> bool:
    return len(buffer) >= HEADER_LENGTH and buffer[PREAMBLE_LENGTH:HEADER_LENGTH] == MAGIC


def read_tag(buffer: bytes, offset: int, little_endian: bool = True):
    fmt = '<HH' if little_endian else '>HH'
    return struct.unpack_from(fmt, buffer, offset)


def read_header(
    buffer: bytes,
    offset: int,
    explicit_vr: bool = True,
    little_endian: bool = True,
) -> ElementHeader:
    """
    Read the tag, VR and length of the element starting at ``offset``.

    Item and delimiter tags (group FFFE) never carry a VR. Raises
    struct.error when the header runs past the end of the buffer.
    """
    order = '<' if little_endian else '>'
    group, element = struct.unpack_from(order + 'HH', buffer, offset)
    pos = offset + 4

    if group == 0xFFFE or not explicit_vr:
        (length,) = struct.unpack_from(order + 'I', buffer, pos)
        return ElementHeader(group, element, '', length, pos + 4)

    vr = bytes(buffer[pos:pos + 2]).decode('latin-1')
    pos += 2
    if vr in LONG_LENGTH_VRS:
        (length,) = struct.unpack_from(order + 'I', buffer, pos + 2)
        return ElementHeader(group, element, vr, length, pos + 6)

    (length,) = struct.unpack_from(order + 'H', buffer, pos)
    return ElementHeader(group, element, vr, length, pos + 2)


def read_text(buffer: bytes, offset: int, length: int, limit: int) -> str:
    """Read at most ``limit`` bytes of text, dropping NULs and trimming."""
    raw = bytes(buffer[offset:offset + min(length, limit)])
    return raw.replace(b'\x00', b'').decode('latin-1').strip()


def decode_value(
    buffer: bytes,
    header: ElementHeader,
    little_endian: bool = True,
    string_limit: int = DEFAULT_CONFIG.max_string_length,
) -> ElementValue:
    """Decode an explicit-VR value; unknown VRs and length mismatches give NO_VALUE."""
    vr = header.vr
    order = '<' if little_endian else '>'

    if vr in STRING_VRS:
        return StringValue(read_text(buffer, header.value_offset, header.length, string_limit))

    if vr in INTEGER_VRS:
        code, size = INTEGER_VRS[vr]
        if header.length != size:
            return NO_VALUE
        return IntValue(struct.unpack_from(order + code, buffer, header.value_offset)[0])

    if vr in FLOAT_VRS:
        code, size = FLOAT_VRS[vr]
        if header.length != size:
            return NO_VALUE
        return FloatValue(struct.unpack_from(order + code, buffer, header.value_offset)[0])

    return NO_VALUE


def decode_implicit_value(
    buffer: bytes,
    header: ElementHeader,
    little_endian: bool = True,
    string_limit: int = DEFAULT_CONFIG.implicit_string_length,
) -> ElementValue:
    tag = header.tag
    if tag in IMPLICIT_STRING_TAGS:
        return StringValue(read_text(buffer, header.value_offset, header.length, string_limit))
    if tag in IMPLICIT_US_TAGS and header.length >= 2:
        fmt = '<H' if little_endian else '>H'
        return IntValue(struct.unpack_from(fmt, buffer, header.value_offset)[0])
    return NO_VALUE


def skip_undefined_length(
    buffer: bytes,
    offset: int,
    explicit_vr: bool = True,
    little_endian: bool = True,
) -> int:
    """
    Return the offset just past the delimiter closing an undefined-length
    value whose content starts at ``offset``.

    Works for both sequence content (ends with a Sequence Delimitation Item)
    and item content (ends with an Item Delimitation Item). Returns the
    buffer length if no delimiter is found.
    """
    end = len(buffer)
    depth = 0
    while offset + MIN_ELEMENT_BYTES <= end:
        header = read_header(buffer, offset, explicit_vr, little_endian)
        tag = header.tag
        if tag in (SEQUENCE_DELIMITATION, ITEM_DELIMITATION):
            offset = header.value_offset
            if depth == 0:
                return offset
            depth -= 1
        elif header.length == UNDEFINED_LENGTH:
            depth += 1
            offset = header.value_offset
        else:
            offset = header.value_offset + header.length
    return end


# ═══════════════════════════════════════════════════════════════════════════════
# ELEMENT STREAM
# ═══════════════════════════════════════════════════════════════════════════════

class ElementStream:
    """
    Iterates the elements of one DICOM buffer.

    State (explicit_vr, little_endian, transfer_syntax_uid, sequence_depth,
    offset) is readable at any point during or after iteration. The stream
    can be iterated once.
    """

    def __init__(self, buffer: bytes, config: Optional[DecoderConfig] = None):
        self.buffer = buffer if isinstance(buffer, bytes) else bytes(buffer)
        self.config = config or DEFAULT_CONFIG
        self.has_preamble = has_dicm_preamble(self.buffer)
        self.offset = HEADER_LENGTH if self.has_preamble else 0
        # The file meta group is always explicit VR little endian.
        self.explicit_vr = self.has_preamble
        self.little_endian = True
        self.transfer_syntax_uid: Optional[str] = None
        self.sequence_depth = 0
        self.finished = False
        self.recovered_errors = 0
        self._pending_syntax: Optional[str] = None

    def __iter__(self) -> Iterator[Element]:
        end = len(self.buffer)
        while not self.finished and end - self.offset >= MIN_ELEMENT_BYTES:
            start = self.offset
            try:
                element = self._next_element()
            except (struct.error, IndexError, ValueError) as exc:
                self.recovered_errors += 1
                logger.debug("Error parsing DICOM tag at offset %d: %s", start, exc)
                self.offset = start + 2
                continue

            if self.offset <= start:
                logger.warning("Element scan stalled at offset %d; stopping", start)
                break

            if element is not None:
                yield element

    # ─────────────────────────────────────────────────────────────────────────

    def _apply_transfer_syntax(self) -> None:
        uid = self._pending_syntax
        self._pending_syntax = None
        mode = TRANSFER_SYNTAXES.get(uid)
        if mode is None:
            logger.debug("Unsupported transfer syntax %s; keeping current mode", uid)
            return
        self.explicit_vr, self.little_endian = mode

    def _next_element(self) -> Optional[Element]:
        buffer = self.buffer
        start = self.offset

        group, element = read_tag(buffer, start, self.little_endian)
        if self._pending_syntax is not None and group != 0x0002:
            # First element past the meta group: switch mode and re-read.
            self._apply_transfer_syntax()
            group, element = read_tag(buffer, start, self.little_endian)

        if group == 0xFFFE:
            self._consume_framing(start, element)
            return None

        header = read_header(buffer, start, self.explicit_vr, self.little_endian)
        tag = header.tag
        depth = self.sequence_depth

        if tag == TRANSFER_SYNTAX_UID:
            uid = read_text(buffer, header.value_offset, header.length, self.config.max_uid_length)
            self.transfer_syntax_uid = uid
            self._pending_syntax = uid
            self.offset = header.value_offset + header.length
            return Element(group, element, header.vr or 'UI', header.length,
                           StringValue(uid), header.value_offset, depth)

        if tag == PIXEL_DATA and depth == 0:
            self.offset = len(buffer)
            self.finished = True
            return Element(group, element, header.vr, header.length,
                           NO_VALUE, header.value_offset, depth)

        if tag == ENCAPSULATED_DOCUMENT:
            if header.length == UNDEFINED_LENGTH:
                self.offset = len(buffer)
            else:
                self.offset = header.value_offset + header.length
            return Element(group, element, header.vr, header.length,
                           NO_VALUE, header.value_offset, depth)

        if header.vr == 'SQ' or header.length == UNDEFINED_LENGTH:
            if header.length == UNDEFINED_LENGTH:
                self.sequence_depth += 1
                self.offset = header.value_offset
            else:
                self.offset = header.value_offset + header.length
            return Element(group, element, header.vr or 'SQ', header.length,
                           NO_VALUE, header.value_offset, depth)

        if self.explicit_vr:
            value = decode_value(buffer, header, self.little_endian, self.config.max_string_length)
        else:
            value = decode_implicit_value(buffer, header, self.little_endian,
                                          self.config.implicit_string_length)

        self.offset = header.value_offset + header.length
        return Element(group, element, header.vr, header.length, value,
                       header.value_offset, depth)

    def _consume_framing(self, start: int, element: int) -> None:
        (length,) = struct.unpack_from('<I' if self.little_endian else '>I',
                                       self.buffer, start + 4)
        self.offset = start + 8
        if element == ITEM[1]:
            if length != UNDEFINED_LENGTH:
                # Defined-length item: its content is skipped as a whole.
                self.offset += length
        elif element == SEQUENCE_DELIMITATION[1]:
            self.sequence_depth = max(0, self.sequence_depth - 1)
        elif element != ITEM_DELIMITATION[1] and length != UNDEFINED_LENGTH:
            self.offset += length


# ═══════════════════════════════════════════════════════════════════════════════
# DECODE
# ═══════════════════════════════════════════════════════════════════════════════

def decode(buffer: bytes, config: Optional[DecoderConfig] = None) -> Optional[DecodedFile]:
    """
    Decode a DICOM buffer into metadata, pixel payload and sub-documents.

    Args:
        buffer: Complete file contents
        config: Optional DecoderConfig (defaults to DEFAULT_CONFIG)

    Returns:
        DecodedFile, or None when the buffer is too short to hold the
        128-byte preamble and magic. Never raises on malformed content.
    """
    if len(buffer) < HEADER_LENGTH:
        logger.warning("Buffer too small for DICOM format: %d bytes", len(buffer))
        return None

    stream = ElementStream(buffer, config)
    data = stream.buffer
    result = DecodedFile(has_preamble=stream.has_preamble)

    for element in stream:
        result.elements.append(element)
        tag = element.tag

        if tag == PIXEL_DATA and element.depth == 0:
            # pixel_data_length is the declared length, even when the buffer is short
            if element.length == UNDEFINED_LENGTH:
                declared = len(data) - element.value_offset
            else:
                declared = element.length
            result.pixel_bytes = data[element.value_offset:element.value_offset + declared]
            result.metadata[PIXEL_DATA_LENGTH_KEY] = declared
            continue

        if tag == ENCAPSULATED_DOCUMENT:
            length = element.length
            if length == UNDEFINED_LENGTH:
                length = len(data) - element.value_offset
            blob = data[element.value_offset:element.value_offset + length]
            result.sub_documents.append(SubDocument(element.value_offset, len(blob), blob))
            continue

        if not element.has_value:
            continue

        value = element.plain
        result.metadata[element.key] = value

        if tag == TRANSFER_SYNTAX_UID:
            result.metadata[TRANSFER_SYNTAX_KEY] = value
        elif tag in SYNTHETIC_KEYS:
            result.metadata[SYNTHETIC_KEYS[tag]] = value

        if element.depth == 0 and isinstance(value, int):
            if tag == ROWS:
                result.height = value
            elif tag == COLUMNS:
                result.width = value

    result.explicit_vr = stream.explicit_vr
    result.little_endian = stream.little_endian

    logger.info(
        "Decoded %d elements: %dx%d, pixels=%s, documents=%d, recovered=%d",
        len(result.elements), result.width, result.height, result.has_pixels,
        len(result.sub_documents), stream.recovered_errors,
    )
    return result
