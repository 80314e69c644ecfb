# src/dicomview_core/metadata.py
"""
Metadata organization for display.

Groups a decoded metadata map into display categories, guesses the body
part and laterality from descriptive text fields, and names SOP classes.
Works on plain metadata maps as produced by decode(); no parsing here.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .model import PIXEL_DATA_LENGTH_KEY, SYNTHETIC_KEYS, TRANSFER_SYNTAX_KEY

# Synthetic keys never appear in the organized output.
SKIPPED_KEYS = frozenset(SYNTHETIC_KEYS.values()) | {TRANSFER_SYNTAX_KEY, PIXEL_DATA_LENGTH_KEY}

OTHER_CATEGORY = "other"


# ═══════════════════════════════════════════════════════════════════════════════
# CATEGORIES
# ═══════════════════════════════════════════════════════════════════════════════

# category -> (title, tag keys). A tag goes to the first category listing it.
CATEGORIES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "patient": ("Patient", (
        "00100010",  # Patient's Name
        "00100020",  # Patient ID
        "00100021",  # Issuer of Patient ID
        "00100030",  # Patient's Birth Date
        "00100040",  # Patient's Sex
        "00101000",  # Other Patient IDs
        "00101010",  # Patient's Age
        "00101020",  # Patient's Size
        "00101030",  # Patient's Weight
    )),
    "study": ("Study", (
        "00080020",  # Study Date
        "00080030",  # Study Time
        "00080050",  # Accession Number
        "00080090",  # Referring Physician's Name
        "00081030",  # Study Description
        "0020000D",  # Study Instance UID
        "00200010",  # Study ID
    )),
    "series": ("Series", (
        "00080021",  # Series Date
        "00080031",  # Series Time
        "0008103E",  # Series Description
        "00180015",  # Body Part Examined
        "00080060",  # Modality
        "00081050",  # Performing Physician's Name
        "0020000E",  # Series Instance UID
        "00200011",  # Series Number
        "00185101",  # View Position
    )),
    "image": ("Image", (
        "00080008",  # Image Type
        "00080023",  # Content Date
        "00080033",  # Content Time
        "00080016",  # SOP Class UID
        "00080018",  # SOP Instance UID
        "00200013",  # Instance Number
    )),
    "acquisition": ("Acquisition", (
        "00180060",  # KVP
        "00181152",  # Exposure
        "00181150",  # Exposure Time
        "00181153",  # Exposure in uAs
        "00181160",  # Filter Type
        "00181170",  # Generator Power
        "00181190",  # Focal Spot(s)
        "00181030",  # Protocol Name
        "00181020",  # Software Versions
        "00181000",  # Device Serial Number
        "00181010",  # Secondary Capture Device ID
        "00181012",  # Date of Secondary Capture
        "00181014",  # Time of Secondary Capture
    )),
    "examination": ("Examination", (
        "00321032",  # Requesting Physician
        "00321060",  # Requested Procedure Description
        "00400254",  # Performed Procedure Step Description
        "00400275",  # Request Attributes Sequence
        "00401001",  # Requested Procedure ID
        "00400007",  # Scheduled Procedure Step Description
        "00400009",  # Scheduled Procedure Step ID
        "00400011",  # Scheduled Procedure Step Location
        "00401002",  # Reason for the Requested Procedure
        "00401400",  # Requested Procedure Comments
    )),
    "anatomy": ("Anatomy & Positioning", (
        "00200060",  # Laterality
        "00200020",  # Patient Orientation
    )),
    "image_quality": ("Image Quality", (
        "00281050",  # Window Center
        "00281051",  # Window Width
        "00281052",  # Rescale Intercept
        "00281053",  # Rescale Slope
        "00281054",  # Rescale Type
    )),
    "technical": ("Technical", (
        "00280002",  # Samples per Pixel
        "00280004",  # Photometric Interpretation
        "00280010",  # Rows
        "00280011",  # Columns
        "00280030",  # Pixel Spacing
        "00280100",  # Bits Allocated
        "00280101",  # Bits Stored
        "00280102",  # High Bit
        "00280103",  # Pixel Representation
        "00280106",  # Smallest Image Pixel Value
        "00280107",  # Largest Image Pixel Value
        "00181050",  # Spatial Resolution
    )),
    "institution": ("Institution", (
        "00080080",  # Institution Name
        "00080081",  # Institution Address
        "00081040",  # Institutional Department Name
        "00081070",  # Operators' Name
    )),
}

_CATEGORY_BY_TAG: Dict[str, str] = {}
for _category, (_title, _tags) in CATEGORIES.items():
    for _tag in _tags:
        _CATEGORY_BY_TAG.setdefault(_tag, _category)


@dataclass(frozen=True)
class MetadataItem:
    tag: str
    value: Any


def category_title(category: str) -> str:
    if category == OTHER_CATEGORY:
        return "Other"
    return CATEGORIES[category][0]


def organize_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, List[MetadataItem]]:
    """
    Split a metadata map into display categories.

    Empty or None input gives {}. Otherwise every category key is present
    (possibly empty). Uncategorized tags land in "other", which only exists
    when something lands there. Items keep the metadata map's order.
    """
    if not metadata:
        return {}

    result: Dict[str, List[MetadataItem]] = {category: [] for category in CATEGORIES}
    for tag, value in metadata.items():
        if tag in SKIPPED_KEYS:
            continue
        category = _CATEGORY_BY_TAG.get(tag.upper(), OTHER_CATEGORY)
        result.setdefault(category, []).append(MetadataItem(tag, value))
    return result


# ═══════════════════════════════════════════════════════════════════════════════
# BODY PART
# ═══════════════════════════════════════════════════════════════════════════════

BODY_PART_TAGS = (
    "00180015",  # Body Part Examined
    "00081030",  # Study Description
    "0008103E",  # Series Description
    "00181030",  # Protocol Name
    "00321060",  # Requested Procedure Description
    "00400254",  # Performed Procedure Step Description
    "00400007",  # Scheduled Procedure Step Description
)
LATERALITY_TAG = "00200060"

# Matched as substrings of the upper-cased text
BODY_PARTS: Dict[str, Tuple[str, ...]] = {
    "HEAD": ("HEAD", "SKULL", "BRAIN", "CEREBR"),
    "NECK": ("NECK", "CERVICAL", "THROAT"),
    "CHEST": ("CHEST", "THORAX", "LUNG", "THORACIC"),
    "ABDOMEN": ("ABDOMEN", "BELLY", "STOMACH"),
    "PELVIS": ("PELVIS", "PELVIC", "HIP"),
    "SPINE": ("SPINE", "VERTEBRA", "SPINAL"),
    "UPPER EXTREMITY": ("ARM", "HAND", "WRIST", "ELBOW", "SHOULDER", "HUMERUS", "ULNA", "RADIUS"),
    "LOWER EXTREMITY": ("LEG", "FOOT", "VOET", "KNEE", "ANKLE", "FEMUR", "TIBIA", "FIBULA"),
    "WHOLE BODY": ("WHOLE BODY", "FULL BODY", "SKELETON"),
    "BREAST": ("BREAST", "MAMMARY"),
}

# Matched as whole words
LATERALITY_TERMS: Dict[str, Tuple[str, ...]] = {
    "LEFT": ("LEFT", "LINKS", "GAUCHE", "SINISTER", "L", "LT"),
    "RIGHT": ("RIGHT", "RECHTS", "DROIT", "DEXTER", "R", "RT"),
}

UNKNOWN_PART = "Unknown"

_WORD = re.compile(r"[A-Z0-9]+")


@dataclass(frozen=True)
class BodyPartInfo:
    part: str = UNKNOWN_PART
    laterality: str = ""
    description: str = ""
    raw_text: str = ""

    @property
    def label(self) -> str:
        return f"{self.part} - {self.laterality}" if self.laterality else self.part


def identify_body_part(metadata: Optional[Mapping[str, Any]]) -> BodyPartInfo:
    """
    Guess the examined body part from descriptive text fields.

    The part with the most matching keywords wins; ties go to the part listed
    first in BODY_PARTS. Laterality is the first side with a whole-word match.
    """
    if not metadata:
        return BodyPartInfo()

    texts = [str(metadata[tag]).upper() for tag in BODY_PART_TAGS if metadata.get(tag)]
    if metadata.get(LATERALITY_TAG):
        texts.append(str(metadata[LATERALITY_TAG]).upper())
    text = " ".join(texts)

    part = UNKNOWN_PART
    best = 0
    for candidate, keywords in BODY_PARTS.items():
        hits = sum(1 for keyword in keywords if keyword in text)
        if hits > best:
            best = hits
            part = candidate

    words = set(_WORD.findall(text))
    laterality = ""
    for side, terms in LATERALITY_TERMS.items():
        if words.intersection(terms):
            laterality = side
            break

    description = ""
    for tag in ("0008103E", "00180015", "00081030"):
        if metadata.get(tag):
            description = str(metadata[tag])
            break

    return BodyPartInfo(part, laterality, description, text)


# ═══════════════════════════════════════════════════════════════════════════════
# SOP CLASSES
# ═══════════════════════════════════════════════════════════════════════════════

UNKNOWN_MEDIA_TYPE = "Unknown Media Type"

SOP_CLASS_NAMES: Dict[str, str] = {
    "1.2.840.10008.5.1.4.1.1.1": "Computed Radiography Image",
    "1.2.840.10008.5.1.4.1.1.1.1": "Digital X-Ray Image - For Presentation",
    "1.2.840.10008.5.1.4.1.1.1.1.1": "Digital X-Ray Image - For Processing",
    "1.2.840.10008.5.1.4.1.1.1.2": "Digital Mammography X-Ray Image - For Presentation",
    "1.2.840.10008.5.1.4.1.1.1.2.1": "Digital Mammography X-Ray Image - For Processing",
    "1.2.840.10008.5.1.4.1.1.2": "CT Image",
    "1.2.840.10008.5.1.4.1.1.2.1": "Enhanced CT Image",
    "1.2.840.10008.5.1.4.1.1.3.1": "Ultrasound Multi-frame Image",
    "1.2.840.10008.5.1.4.1.1.4": "MR Image",
    "1.2.840.10008.5.1.4.1.1.4.1": "Enhanced MR Image",
    "1.2.840.10008.5.1.4.1.1.6.1": "Ultrasound Image",
    "1.2.840.10008.5.1.4.1.1.7": "Secondary Capture Image",
    "1.2.840.10008.5.1.4.1.1.88.11": "Basic Text SR",
    "1.2.840.10008.5.1.4.1.1.88.22": "Enhanced SR",
    "1.2.840.10008.5.1.4.1.1.88.33": "Comprehensive SR",
    "1.2.840.10008.5.1.4.1.1.104.1": "Encapsulated PDF",
    "1.2.840.10008.5.1.4.1.1.130": "Enhanced PET Image",
    "1.2.840.10008.5.1.4.1.1.128": "PET Image",
    "1.2.840.10008.5.1.4.1.1.481.1": "RT Image",
    "1.2.840.10008.5.1.4.1.1.77.1.1": "VL Photographic Image",
    "1.2.840.10008.5.1.4.1.1.77.1.4": "VL Microscopic Image",
    "1.2.840.10008.5.1.4.1.1.77.1.2": "VL Slide-Coordinates Microscopic Image",
    "1.2.840.10008.5.1.4.1.1.77.1.5.1": "Video Photographic Image",
    "1.2.840.10008.5.1.4.1.1.77.1.5.2": "Video Microscopic Image",
    "1.2.840.10008.5.1.4.1.1.77.1.5.4": "Video Endoscopic Image",
    "1.2.840.10008.3.1.2.3.3": "DICOM Directory",
    "1.2.840.10008.5.1.4.1.1.66": "Raw Data",
    "1.2.840.10008.5.1.4.1.1.9.1.1": "Twelve Lead ECG Waveform",
    "1.2.840.10008.5.1.4.1.1.9.1.2": "General ECG Waveform",
    "1.2.840.10008.5.1.4.1.1.9.1.3": "Ambulatory ECG Waveform",
    "1.2.840.10008.5.1.4.1.1.9.2.1": "Hemodynamic Waveform",
    "1.2.840.10008.5.1.4.1.1.9.3.1": "Cardiac Electrophysiology Waveform",
    "1.2.840.10008.5.1.4.1.1.9.4.1": "Basic Voice Audio Waveform",
    "1.2.840.10008.5.1.4.1.1.66.4": "Segmentation",
}


def media_type_for_sop_class(sop_class_uid: Optional[str]) -> str:
    """Readable name for a SOP Class UID."""
    if not sop_class_uid:
        return UNKNOWN_MEDIA_TYPE
    return SOP_CLASS_NAMES.get(sop_class_uid.strip(), UNKNOWN_MEDIA_TYPE)
