"""
Pytest configuration and fixtures for dicomview tests.

Fixtures that need a realistic file on disk are written with pydicom and
handed to the tests as raw bytes, the way the viewer receives them.
"""
import os
import sys

import numpy as np
import pytest
import pydicom
from pydicom.dataset import FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, ImplicitVRLittleEndian

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


def write_dicom_bytes(
    path,
    transfer_syntax=ExplicitVRLittleEndian,
    rows: int = 4,
    columns: int = 6,
    pixels: np.ndarray = None,
    with_pixels: bool = True,
    **attributes,
) -> bytes:
    """
    Write a grayscale DICOM file with pydicom and return its bytes.

    Args:
        path: Target file path (a pytest tmp_path entry)
        transfer_syntax: File meta Transfer Syntax UID
        rows: Rows
        columns: Columns
        pixels: uint16 array of shape (rows, columns); defaults to a ramp
        with_pixels: False leaves Pixel Data out
        **attributes: Extra dataset keywords, e.g. StudyDescription="Chest"

    Returns:
        bytes: Complete file contents
    """
    meta = FileMetaDataset()
    meta.MediaStorageSOPClassUID = pydicom.uid.SecondaryCaptureImageStorage
    meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    meta.TransferSyntaxUID = transfer_syntax

    ds = FileDataset(str(path), {}, file_meta=meta, preamble=b"\x00" * 128)

    ds.PatientName = "Test^Synthetic"
    ds.PatientID = "TEST_HARNESS"
    ds.SOPClassUID = meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = meta.MediaStorageSOPInstanceUID
    ds.StudyInstanceUID = pydicom.uid.generate_uid()
    ds.SeriesInstanceUID = pydicom.uid.generate_uid()
    ds.Modality = "OT"

    ds.Rows = rows
    ds.Columns = columns
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.SamplesPerPixel = 1
    ds.BitsAllocated = 16
    ds.BitsStored = 12
    ds.HighBit = 11
    ds.PixelRepresentation = 0

    for keyword, value in attributes.items():
        setattr(ds, keyword, value)

    if with_pixels:
        if pixels is None:
            pixels = np.arange(rows * columns, dtype=np.uint16).reshape(rows, columns) * 10
        ds.PixelData = pixels.astype('<u2').tobytes()

    ds.save_as(str(path), enforce_file_format=True)
    with open(path, 'rb') as f:
        return f.read()


@pytest.fixture
def explicit_dicom_bytes(tmp_path):
    """4x6 explicit VR little endian image with a ramp of 16-bit samples."""
    return write_dicom_bytes(tmp_path / "explicit.dcm")


@pytest.fixture
def implicit_dicom_bytes(tmp_path):
    """4x6 implicit VR little endian image."""
    return write_dicom_bytes(tmp_path / "implicit.dcm", transfer_syntax=ImplicitVRLittleEndian)


@pytest.fixture
def constant_dicom_bytes(tmp_path):
    """8x8 image where every sample is 1000."""
    pixels = np.full((8, 8), 1000, dtype=np.uint16)
    return write_dicom_bytes(tmp_path / "constant.dcm", rows=8, columns=8, pixels=pixels)


@pytest.fixture
def no_pixel_dicom_bytes(tmp_path):
    """Header-only file: geometry present, Pixel Data absent."""
    return write_dicom_bytes(tmp_path / "header_only.dcm", with_pixels=False)
