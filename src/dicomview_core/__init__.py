# src/dicomview_core/__init__.py
"""
dicomview core - DICOM decoding for the viewer, with no UI code.

Every entry point takes an in-memory byte buffer and returns plain Python
objects. Nothing here reads files, touches the network or keeps state
between calls.

Architecture:
- config.py: DecoderConfig limits shared by all decoders
- model.py: Tags, element value variants, DecodedFile, SubDocument
- elements.py: ElementStream and decode() - tag-by-tag binary decoding
- pixels.py: normalize() raw samples to RGBA, window policies, test pattern
- documents.py: classify() embedded documents by signature
- parser.py: parse_file() - one file to metadata + raster + documents
- directory.py: build_tree() - DICOMDIR records to tree + file path index
- metadata.py: Display categories, body part guess, SOP class names
"""

# Configuration
from .config import DecoderConfig, DEFAULT_CONFIG

# Model types
from .model import (
    DecodedFile,
    Element,
    ElementValue,
    FloatValue,
    IntValue,
    NoValue,
    NO_VALUE,
    StringValue,
    SubDocument,
    parse_tag_key,
    tag_key,
)

# Element stream
from .elements import ElementStream, decode

# Pixels
from .pixels import (
    Raster,
    SampledMinMaxWindow,
    UnsupportedBitDepthError,
    VoiLutWindow,
    WindowPolicy,
    create_test_pattern,
    normalize,
)

# Documents
from .documents import DocumentType, classify, suggested_filename

# File parser
from .parser import ParseResult, parse_file

# DICOMDIR
from .directory import (
    DirectoryResult,
    DirectoryTree,
    FileContext,
    FilePathIndex,
    Image,
    Patient,
    Series,
    Study,
    build_tree,
)

# Metadata organizer
from .metadata import (
    BodyPartInfo,
    MetadataItem,
    identify_body_part,
    media_type_for_sop_class,
    organize_metadata,
)

__all__ = [
    # Config
    'DecoderConfig',
    'DEFAULT_CONFIG',

    # Model
    'DecodedFile',
    'Element',
    'ElementValue',
    'FloatValue',
    'IntValue',
    'NoValue',
    'NO_VALUE',
    'StringValue',
    'SubDocument',
    'parse_tag_key',
    'tag_key',

    # Element stream
    'ElementStream',
    'decode',

    # Pixels
    'Raster',
    'SampledMinMaxWindow',
    'UnsupportedBitDepthError',
    'VoiLutWindow',
    'WindowPolicy',
    'create_test_pattern',
    'normalize',

    # Documents
    'DocumentType',
    'classify',
    'suggested_filename',

    # Parser
    'ParseResult',
    'parse_file',

    # DICOMDIR
    'DirectoryResult',
    'DirectoryTree',
    'FileContext',
    'FilePathIndex',
    'Image',
    'Patient',
    'Series',
    'Study',
    'build_tree',

    # Metadata
    'BodyPartInfo',
    'MetadataItem',
    'identify_body_part',
    'media_type_for_sop_class',
    'organize_metadata',
]
