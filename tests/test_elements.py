"""
Tests for the element stream decoder
====================================

Covers preamble detection, transfer syntax switching, VR decoding,
sequence framing, bulk payload capture and best-effort recovery.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dicomview_core.config import DecoderConfig
from dicomview_core.documents import PDF
from dicomview_core.elements import (
    HEADER_LENGTH,
    ElementStream,
    decode,
    read_header,
    skip_undefined_length,
)
from dicomview_core.model import (
    NO_VALUE,
    FloatValue,
    IntValue,
    StringValue,
    parse_tag_key,
    tag_key,
)

from dicom_factory import (
    EXPLICIT_VR_BIG_ENDIAN,
    IMPLICIT_VR_LITTLE_ENDIAN,
    JPEG_BASELINE,
    dicom_file,
    element,
    image_body,
    item,
    sequence,
    text,
    uint16_pixels,
    ul,
    us,
)


# ═══════════════════════════════════════════════════════════════════════════════
# TAG KEYS
# ═══════════════════════════════════════════════════════════════════════════════

class TestTagKeys:

    def test_tag_key_is_upper_case_hex(self):
        assert tag_key(0x0028, 0x0010) == "00280010"
        assert tag_key(0x0008, 0x103E) == "0008103E"

    def test_parse_tag_key_accepts_prefix(self):
        assert parse_tag_key("0x0008103e") == (0x0008, 0x103E)
        assert parse_tag_key("7FE00010") == (0x7FE0, 0x0010)

    def test_parse_tag_key_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            parse_tag_key("0028")


# ═══════════════════════════════════════════════════════════════════════════════
# PYDICOM-WRITTEN FILES
# ═══════════════════════════════════════════════════════════════════════════════

class TestPydicomFiles:

    def test_explicit_dimensions_match_rows_and_columns(self, explicit_dicom_bytes):
        decoded = decode(explicit_dicom_bytes)

        assert decoded.has_preamble is True
        assert decoded.width == 6
        assert decoded.height == 4
        assert decoded.explicit_vr is True
        assert decoded.little_endian is True

    def test_explicit_metadata_values(self, explicit_dicom_bytes):
        metadata = decode(explicit_dicom_bytes).metadata

        assert metadata["00100010"] == "Test^Synthetic"
        assert metadata["00100020"] == "TEST_HARNESS"
        assert metadata["00080060"] == "OT"
        assert metadata["00280010"] == 4
        assert metadata["bits_allocated"] == 16
        assert metadata["bits_stored"] == 12
        assert metadata["high_bit"] == 11
        assert metadata["pixel_representation"] == 0
        assert metadata["transfer_syntax_uid"] == "1.2.840.10008.1.2.1"

    def test_explicit_pixel_payload(self, explicit_dicom_bytes):
        decoded = decode(explicit_dicom_bytes)
        expected = (np.arange(24, dtype=np.uint16) * 10).astype('<u2').tobytes()

        assert decoded.pixel_bytes == expected
        assert decoded.metadata["pixel_data_length"] == 48

    def test_truncated_pixel_payload_keeps_declared_length(self):
        body = image_body(2, 2, None)
        body += b"\xe0\x7f\x10\x00OW\x00\x00" + ul(100) + b"\x01" * 10
        decoded = decode(dicom_file(body))

        assert len(decoded.pixel_bytes) == 10
        assert decoded.metadata["pixel_data_length"] == 100

    def test_undefined_pixel_payload_length_is_rest_of_buffer(self):
        body = image_body(2, 2, None)
        body += b"\xe0\x7f\x10\x00OB\x00\x00" + ul(0xFFFFFFFF) + b"\x02" * 12
        decoded = decode(dicom_file(body))

        assert len(decoded.pixel_bytes) == 12
        assert decoded.metadata["pixel_data_length"] == 12

    def test_implicit_file_after_preamble(self, implicit_dicom_bytes):
        decoded = decode(implicit_dicom_bytes)

        assert decoded.explicit_vr is False
        assert decoded.width == 6
        assert decoded.height == 4
        assert decoded.metadata["00100010"] == "Test^Synthetic"
        assert decoded.metadata["bits_allocated"] == 16
        assert decoded.metadata["transfer_syntax_uid"] == "1.2.840.10008.1.2"
        assert len(decoded.pixel_bytes) == 48

    def test_header_only_file_has_no_pixels(self, no_pixel_dicom_bytes):
        decoded = decode(no_pixel_dicom_bytes)

        assert decoded.has_pixels is False
        assert "pixel_data_length" not in decoded.metadata
        assert decoded.width == 6


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSFER SYNTAX
# ═══════════════════════════════════════════════════════════════════════════════

class TestTransferSyntax:

    def test_big_endian_integers(self):
        body = image_body(0x0102, 2, None, little=False)
        decoded = decode(dicom_file(body, EXPLICIT_VR_BIG_ENDIAN))

        assert decoded.little_endian is False
        assert decoded.height == 0x0102
        assert decoded.metadata["00280010"] == 258

    def test_same_bytes_decode_differently_little_endian(self):
        # 01 02 read little endian
        body = image_body(0x0201, 2, None, little=True)
        decoded = decode(dicom_file(body))

        assert decoded.metadata["00280010"] == 513

    def test_big_endian_pixels_keep_declared_length(self):
        pixels = uint16_pixels([1, 2, 3, 4], little=False)
        body = image_body(2, 2, pixels, little=False)
        decoded = decode(dicom_file(body, EXPLICIT_VR_BIG_ENDIAN))

        assert decoded.pixel_bytes == pixels

    def test_unknown_syntax_keeps_explicit_little_endian(self):
        body = image_body(3, 5, uint16_pixels([0] * 15))
        decoded = decode(dicom_file(body, JPEG_BASELINE))

        assert decoded.explicit_vr is True
        assert decoded.little_endian is True
        assert (decoded.width, decoded.height) == (5, 3)
        assert decoded.metadata["transfer_syntax_uid"] == JPEG_BASELINE

    def test_no_preamble_is_read_as_implicit(self):
        body = image_body(2, 3, uint16_pixels(list(range(80))), explicit=False,
                          patient_name="Raw^Implicit")
        assert len(body) >= HEADER_LENGTH

        decoded = decode(body)

        assert decoded.has_preamble is False
        assert decoded.explicit_vr is False
        assert decoded.metadata["00100010"] == "Raw^Implicit"
        assert (decoded.width, decoded.height) == (3, 2)

    def test_implicit_ignores_untyped_tags(self):
        body = image_body(2, 2, uint16_pixels([0] * 4), explicit=False)
        decoded = decode(dicom_file(body, IMPLICIT_VR_LITTLE_ENDIAN))

        # Modality has no type information without a VR
        assert "00080060" not in decoded.metadata
        assert decoded.metadata["00280011"] == 2

    def test_stream_exposes_state(self):
        stream = ElementStream(dicom_file(image_body(2, 2, uint16_pixels([0] * 4))))
        elements = list(stream)

        assert stream.transfer_syntax_uid == "1.2.840.10008.1.2.1"
        assert stream.finished is True
        assert elements[-1].key == "7FE00010"


# ═══════════════════════════════════════════════════════════════════════════════
# VALUE DECODING
# ═══════════════════════════════════════════════════════════════════════════════

class TestValues:

    def test_strings_are_stripped_of_nul_and_spaces(self):
        extra = element((0x0010, 0x0020), "LO", b"ID42\x00\x00")
        extra += element((0x0008, 0x1030), "LO", b"  Chest PA  ")
        decoded = decode(dicom_file(image_body(1, 1, None, extra=extra)))

        assert decoded.metadata["00100020"] == "ID42"
        assert decoded.metadata["00081030"] == "Chest PA"

    def test_string_values_are_capped(self):
        extra = element((0x0008, 0x1030), "LT", b"A" * 400)
        decoded = decode(dicom_file(image_body(1, 1, None, extra=extra)))

        assert decoded.metadata["00081030"] == "A" * 256

    def test_custom_string_cap(self):
        extra = element((0x0008, 0x1030), "LT", b"A" * 40)
        config = DecoderConfig(max_string_length=10)
        decoded = decode(dicom_file(image_body(1, 1, None, extra=extra)), config)

        assert decoded.metadata["00081030"] == "A" * 10

    def test_numeric_vrs(self):
        extra = element((0x0018, 0x0088), "FD", np.array([2.5], dtype='<f8').tobytes())
        extra += element((0x0018, 0x1310), "SS", np.array([-3], dtype='<i2').tobytes())
        extra += element((0x0018, 0x9000), "SL", np.array([-70000], dtype='<i4').tobytes())
        extra += element((0x0018, 0x9001), "FL", np.array([0.5], dtype='<f4').tobytes())
        extra += element((0x0018, 0x9002), "UL", ul(70000))
        decoded = decode(dicom_file(image_body(1, 1, None, extra=extra)))
        values = {e.key: e.value for e in decoded.elements}

        assert values["00180088"] == FloatValue(2.5)
        assert values["00181310"] == IntValue(-3)
        assert values["00189000"] == IntValue(-70000)
        assert values["00189001"] == FloatValue(0.5)
        assert values["00189002"] == IntValue(70000)

    def test_length_mismatch_gives_no_value(self):
        extra = element((0x0018, 0x1310), "US", b"\x01\x00\x02\x00")
        decoded = decode(dicom_file(image_body(1, 1, None, extra=extra)))
        values = {e.key: e.value for e in decoded.elements}

        assert values["00181310"] is NO_VALUE
        assert "00181310" not in decoded.metadata

    def test_string_element_value_variant(self):
        decoded = decode(dicom_file(image_body(1, 1, None)))
        values = {e.key: e.value for e in decoded.elements}

        assert values["00100010"] == StringValue("Factory^Patient")
        assert values["00100010"].value == "Factory^Patient"

    def test_elements_record_value_offsets(self):
        buffer = dicom_file(image_body(7, 1, None))
        decoded = decode(buffer)
        rows = next(e for e in decoded.elements if e.key == "00280010")

        assert buffer[rows.value_offset:rows.value_offset + 2] == us(7)


# ═══════════════════════════════════════════════════════════════════════════════
# SEQUENCES
# ═══════════════════════════════════════════════════════════════════════════════

class TestSequences:

    def _icon_sequence(self, defined_items=False, defined_sequence=False):
        nested = element((0x0028, 0x0010), "US", us(99))
        nested += element((0x0028, 0x0011), "US", us(98))
        nested += element((0x7FE0, 0x0010), "OB", b"\x07" * 4)
        return sequence(
            (0x0088, 0x0200),
            [item(nested, defined=defined_items)],
            defined=defined_sequence,
        )

    def test_nested_pixel_data_does_not_end_scan(self):
        pixels = uint16_pixels([5, 6, 7, 8])
        body = image_body(2, 2, pixels, extra=self._icon_sequence())
        decoded = decode(dicom_file(body))

        assert decoded.pixel_bytes == pixels
        assert (decoded.width, decoded.height) == (2, 2)

    def test_nested_elements_carry_depth(self):
        body = image_body(2, 2, uint16_pixels([0] * 4), extra=self._icon_sequence())
        decoded = decode(dicom_file(body))
        nested = [e for e in decoded.elements if e.depth == 1]

        assert {e.key for e in nested} >= {"00280010", "00280011", "7FE00010"}

    def test_dimensions_only_from_top_level(self):
        # Icon rows come before the top-level rows are written
        body = image_body(0, 0, None, extra=self._icon_sequence())
        decoded = decode(dicom_file(body))

        assert decoded.width == 0
        assert decoded.height == 0

    def test_defined_length_sequence_is_skipped(self):
        body = image_body(2, 2, uint16_pixels([0] * 4),
                          extra=self._icon_sequence(defined_items=True, defined_sequence=True))
        decoded = decode(dicom_file(body))

        assert all(e.depth == 0 for e in decoded.elements)
        assert decoded.metadata["00280010"] == 2

    def test_defined_items_in_undefined_sequence_are_skipped(self):
        body = image_body(2, 2, uint16_pixels([0] * 4),
                          extra=self._icon_sequence(defined_items=True))
        decoded = decode(dicom_file(body))

        assert not any(e.depth == 1 for e in decoded.elements)
        assert decoded.pixel_bytes == uint16_pixels([0] * 4)

    def test_skip_undefined_length_finds_closing_delimiter(self):
        seq = self._icon_sequence()
        header = read_header(seq, 0)
        end = skip_undefined_length(seq, header.value_offset)

        assert end == len(seq)


# ═══════════════════════════════════════════════════════════════════════════════
# BULK PAYLOADS
# ═══════════════════════════════════════════════════════════════════════════════

class TestEncapsulatedDocuments:

    def test_pdf_captured_as_sub_document(self):
        pdf = b"%PDF-1.4 minimal"
        extra = element((0x0042, 0x0011), "OB", pdf)
        decoded = decode(dicom_file(image_body(0, 0, None, extra=extra)))

        assert len(decoded.sub_documents) == 1
        doc = decoded.sub_documents[0]
        assert doc.data == pdf
        assert doc.length == len(pdf)
        assert doc.document_type == PDF
        assert doc.filename() == "document.pdf"

    def test_scan_continues_after_document(self):
        extra = element((0x0042, 0x0011), "OB", b"PK\x03\x04rest")
        decoded = decode(dicom_file(image_body(3, 4, uint16_pixels([0] * 12), extra=extra)))

        assert decoded.sub_documents[0].filename(2) == "document_2.docx"
        assert (decoded.width, decoded.height) == (4, 3)
        assert decoded.has_pixels


# ═══════════════════════════════════════════════════════════════════════════════
# DEGRADED INPUT
# ═══════════════════════════════════════════════════════════════════════════════

class TestDegradedInput:

    @pytest.mark.parametrize("size", [0, 1, 7, 8, 131])
    def test_short_buffers_return_none(self, size):
        assert decode(b"\x00" * size) is None

    def test_truncated_value_is_recovered(self):
        body = element((0x0010, 0x0020), "LO", text("ID01"))
        body += b"\x28\x00\x10\x00US\x02\x00"
        stream = ElementStream(dicom_file(body))
        elements = list(stream)

        assert stream.recovered_errors == 1
        assert elements[-1].key == "00100020"

    def test_truncated_value_does_not_break_decode(self):
        body = element((0x0010, 0x0020), "LO", text("ID01"))
        body += b"\x28\x00\x10\x00US\x02\x00"
        decoded = decode(dicom_file(body))

        assert decoded.metadata["00100020"] == "ID01"
        assert decoded.has_pixels is False

    def test_random_bytes_never_raise(self):
        rng = np.random.default_rng(1234)
        for _ in range(25):
            buffer = rng.integers(0, 256, size=600, dtype=np.uint8).tobytes()
            decoded = decode(buffer)
            assert decoded is not None

    def test_random_bytes_after_preamble_never_raise(self):
        rng = np.random.default_rng(99)
        for _ in range(25):
            buffer = b"\x00" * 128 + b"DICM" + rng.integers(0, 256, size=400, dtype=np.uint8).tobytes()
            decoded = decode(buffer)
            assert decoded.has_preamble is True

    def test_summary_is_logged_lazily(self, caplog):
        with caplog.at_level("INFO", logger="dicomview_core.elements"):
            decode(dicom_file(image_body(2, 3, uint16_pixels([0] * 6))))

        record = next(r for r in caplog.records if r.msg.startswith("Decoded"))
        assert "%d" in record.msg
        assert record.args[1:3] == (3, 2)
        assert "3x2" in record.getMessage()

    def test_bytearray_input(self):
        buffer = bytearray(dicom_file(image_body(2, 2, uint16_pixels([0] * 4))))
        decoded = decode(buffer)

        assert decoded.width == 2
        assert isinstance(decoded.pixel_bytes, bytes)
