# src/dicomview_core/directory.py
"""
DICOMDIR directory tree builder.

A DICOMDIR is a normal DICOM file whose Directory Record Sequence (0004,1220)
holds a flat list of records. Records point at each other by byte offset:
- Lower-Level Directory Entity Offset (0004,1420): first child
- Next Directory Record Offset (0004,1400): next sibling

build_tree() collects the records into an arena keyed by offset, resolves
the offsets into arena indices, then assembles

    Patient -> Study -> Series -> Image

plus a FilePathIndex from each image's Referenced File ID to a flattened
snapshot of its patient/study/series/image.

A pointer may address either the record's Item tag or its first data
element; both resolve to the same record. Every pointer chain is walked
with a visited set, so malformed archives cannot loop.
"""
from __future__ import annotations

import logging
import struct
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Set, Tuple

from .config import DEFAULT_CONFIG, DecoderConfig
from .elements import (
    ElementStream,
    decode,
    decode_value,
    read_header,
    skip_undefined_length,
)
from .model import (
    ITEM,
    ITEM_DELIMITATION,
    SEQUENCE_DELIMITATION,
    UNDEFINED_LENGTH,
    tag_key,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# TAGS
# ═══════════════════════════════════════════════════════════════════════════════

DIRECTORY_RECORD_SEQUENCE = (0x0004, 0x1220)
NEXT_RECORD_OFFSET = (0x0004, 0x1400)
LOWER_LEVEL_OFFSET = (0x0004, 0x1420)
RECORD_TYPE = (0x0004, 0x1430)
REFERENCED_FILE_ID = (0x0004, 0x1500)

ITEM_HEADER_LENGTH = 8

# Field keys read from record field maps
PATIENT_NAME_KEY = "00100010"
PATIENT_ID_KEY = "00100020"
PATIENT_BIRTH_DATE_KEY = "00100030"
PATIENT_SEX_KEY = "00100040"

STUDY_DATE_KEY = "00080020"
STUDY_TIME_KEY = "00080030"
ACCESSION_NUMBER_KEY = "00080050"
STUDY_DESCRIPTION_KEY = "00081030"
STUDY_ID_KEY = "00200010"

SERIES_DATE_KEY = "00080021"
SERIES_TIME_KEY = "00080031"
MODALITY_KEY = "00080060"
SERIES_DESCRIPTION_KEY = "0008103E"
SERIES_NUMBER_KEY = "00200011"

SOP_CLASS_UID_KEY = "00080016"
SOP_INSTANCE_UID_KEY = "00080018"
INSTANCE_NUMBER_KEY = "00200013"
TRANSFER_SYNTAX_UID_KEY = "00020010"
REFERENCED_SOP_CLASS_KEY = "00041510"
REFERENCED_SOP_INSTANCE_KEY = "00041511"
REFERENCED_TRANSFER_SYNTAX_KEY = "00041512"


# ═══════════════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class DirectoryRecord:
    """
    One flat DICOMDIR record.

    offset is the position of the record's Item tag and is unique within an
    arena. child_index / next_index are filled in once the arena is built.
    """
    offset: int
    record_type: str
    next_offset: int = 0
    lower_offset: int = 0
    fields: Dict[str, Any] = field(default_factory=dict)
    child_index: Optional[int] = None
    next_index: Optional[int] = None

    level: ClassVar[Optional[str]] = None

    @property
    def content_offset(self) -> int:
        return self.offset + ITEM_HEADER_LENGTH

    def get(self, key: str, default: Any = None) -> Any:
        value = self.fields.get(key)
        if value is None or value == "":
            return default
        return value


@dataclass
class PatientRecord(DirectoryRecord):
    level: ClassVar[Optional[str]] = "PATIENT"

    @property
    def patient_name(self) -> str:
        return self.get(PATIENT_NAME_KEY, "Unknown")

    @property
    def patient_id(self) -> Optional[str]:
        return self.get(PATIENT_ID_KEY)


@dataclass
class StudyRecord(DirectoryRecord):
    level: ClassVar[Optional[str]] = "STUDY"

    @property
    def study_date(self) -> Optional[str]:
        return self.get(STUDY_DATE_KEY)

    @property
    def study_description(self) -> Optional[str]:
        return self.get(STUDY_DESCRIPTION_KEY)


@dataclass
class SeriesRecord(DirectoryRecord):
    level: ClassVar[Optional[str]] = "SERIES"

    @property
    def modality(self) -> Optional[str]:
        return self.get(MODALITY_KEY)

    @property
    def series_number(self) -> Any:
        return self.get(SERIES_NUMBER_KEY)


@dataclass
class ImageRecord(DirectoryRecord):
    referenced_file_id: Optional[str] = None

    level: ClassVar[Optional[str]] = "IMAGE"


@dataclass
class UnrecognizedRecord(DirectoryRecord):
    """PRIVATE, SR DOCUMENT and any other record type the tree does not use."""


RECORD_CLASSES = {
    cls.level: cls for cls in (PatientRecord, StudyRecord, SeriesRecord, ImageRecord)
}


def make_record(
    offset: int,
    record_type: str,
    next_offset: int = 0,
    lower_offset: int = 0,
    fields: Optional[Dict[str, Any]] = None,
    referenced_file_id: Optional[str] = None,
) -> DirectoryRecord:
    """Build the record variant matching ``record_type``."""
    cls = RECORD_CLASSES.get(record_type.upper(), UnrecognizedRecord)
    record = cls(offset, record_type, next_offset, lower_offset, dict(fields or {}))
    if isinstance(record, ImageRecord):
        record.referenced_file_id = referenced_file_id
    return record


class RecordArena(Sequence):
    """
    Records in file order, addressable by position or by byte offset.

    Both the Item tag offset and the content offset (Item tag + 8) of each
    record map to its index; the Item tag offset always wins a collision.
    """

    def __init__(self):
        self._records: List[DirectoryRecord] = []
        self._item_offsets: Dict[int, int] = {}
        self._content_offsets: Dict[int, int] = {}

    def __getitem__(self, index):
        return self._records[index]

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: DirectoryRecord) -> bool:
        """Append a record; returns False when its offset is already taken."""
        if record.offset in self._item_offsets:
            logger.warning("Rejecting duplicate directory record at offset %d", record.offset)
            return False
        index = len(self._records)
        self._records.append(record)
        self._item_offsets[record.offset] = index
        self._content_offsets.setdefault(record.content_offset, index)
        return True

    def index_of(self, offset: int) -> Optional[int]:
        if not offset:
            return None
        index = self._item_offsets.get(offset)
        if index is None:
            index = self._content_offsets.get(offset)
        return index

    def get(self, offset: int) -> Optional[DirectoryRecord]:
        index = self.index_of(offset)
        return None if index is None else self._records[index]

    def resolve(self) -> None:
        """Turn raw offsets into arena indices."""
        for record in self._records:
            record.child_index = self.index_of(record.lower_offset)
            record.next_index = self.index_of(record.next_offset)
            if record.lower_offset and record.child_index is None:
                logger.debug(
                    "Record at %d points to missing child offset %d",
                    record.offset, record.lower_offset,
                )

    def chain(self, start: Optional[int]) -> Iterator[DirectoryRecord]:
        """Follow next_index from ``start``; each record is visited once."""
        visited: Set[int] = set()
        index = start
        while index is not None and index not in visited:
            visited.add(index)
            record = self._records[index]
            yield record
            index = record.next_index


# ═══════════════════════════════════════════════════════════════════════════════
# TREE
# ═══════════════════════════════════════════════════════════════════════════════

def normalize_path(path: str) -> str:
    """Referenced File IDs use backslashes; the index uses forward slashes."""
    return path.replace("\\", "/")


@dataclass
class Image:
    instance_number: Any = None
    sop_instance_uid: Optional[str] = None
    sop_class_uid: Optional[str] = None
    file_path: Optional[str] = None
    transfer_syntax_uid: Optional[str] = None
    offset: int = 0

    @property
    def normalized_path(self) -> Optional[str]:
        return normalize_path(self.file_path) if self.file_path else None

    @classmethod
    def from_record(cls, record: DirectoryRecord) -> "Image":
        return cls(
            instance_number=record.get(INSTANCE_NUMBER_KEY),
            sop_instance_uid=record.get(SOP_INSTANCE_UID_KEY, record.get(REFERENCED_SOP_INSTANCE_KEY)),
            sop_class_uid=record.get(SOP_CLASS_UID_KEY, record.get(REFERENCED_SOP_CLASS_KEY)),
            file_path=getattr(record, "referenced_file_id", None),
            transfer_syntax_uid=record.get(
                REFERENCED_TRANSFER_SYNTAX_KEY, record.get(TRANSFER_SYNTAX_UID_KEY)
            ),
            offset=record.offset,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "instance_number": self.instance_number,
            "sop_instance_uid": self.sop_instance_uid,
            "sop_class_uid": self.sop_class_uid,
            "file_path": self.file_path,
            "transfer_syntax_uid": self.transfer_syntax_uid,
        }


@dataclass
class Series:
    number: Any = None
    modality: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    offset: int = 0
    images: List[Image] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: DirectoryRecord) -> "Series":
        return cls(
            number=record.get(SERIES_NUMBER_KEY),
            modality=record.get(MODALITY_KEY),
            description=record.get(SERIES_DESCRIPTION_KEY),
            date=record.get(SERIES_DATE_KEY),
            time=record.get(SERIES_TIME_KEY),
            offset=record.offset,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "modality": self.modality,
            "description": self.description,
            "date": self.date,
            "time": self.time,
        }


@dataclass
class Study:
    date: Optional[str] = None
    time: Optional[str] = None
    study_id: Optional[str] = None
    accession_number: Optional[str] = None
    description: Optional[str] = None
    offset: int = 0
    series: List[Series] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: DirectoryRecord) -> "Study":
        return cls(
            date=record.get(STUDY_DATE_KEY),
            time=record.get(STUDY_TIME_KEY),
            study_id=record.get(STUDY_ID_KEY),
            accession_number=record.get(ACCESSION_NUMBER_KEY),
            description=record.get(STUDY_DESCRIPTION_KEY),
            offset=record.offset,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "time": self.time,
            "study_id": self.study_id,
            "accession_number": self.accession_number,
            "description": self.description,
        }


@dataclass
class Patient:
    name: str = "Unknown"
    patient_id: Optional[str] = None
    birth_date: Optional[str] = None
    sex: Optional[str] = None
    offset: int = 0
    studies: List[Study] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: DirectoryRecord) -> "Patient":
        return cls(
            name=record.get(PATIENT_NAME_KEY, "Unknown"),
            patient_id=record.get(PATIENT_ID_KEY),
            birth_date=record.get(PATIENT_BIRTH_DATE_KEY),
            sex=record.get(PATIENT_SEX_KEY),
            offset=record.offset,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "patient_id": self.patient_id,
            "birth_date": self.birth_date,
            "sex": self.sex,
        }


@dataclass
class DirectoryTree:
    patients: List[Patient] = field(default_factory=list)

    def iter_images(self) -> Iterator[Tuple[Patient, Study, Series, Image]]:
        for patient in self.patients:
            for study in patient.studies:
                for series in study.series:
                    for image in series.images:
                        yield patient, study, series, image

    @property
    def image_count(self) -> int:
        return sum(1 for _ in self.iter_images())


# ═══════════════════════════════════════════════════════════════════════════════
# FILE PATH INDEX
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FileContext:
    """Flattened patient/study/series/image fields for one referenced file."""
    path: str
    patient: Dict[str, Any]
    study: Dict[str, Any]
    series: Dict[str, Any]
    image: Dict[str, Any]


class FilePathIndex(Mapping):
    """
    Read-only map from normalized file path to FileContext.

    ``index[path]`` is an exact match after separator normalization;
    lookup() also accepts a path that is a suffix or prefix of a stored one.
    """

    def __init__(self, entries: Optional[Dict[str, FileContext]] = None):
        self._entries: Dict[str, FileContext] = dict(entries or {})

    def __getitem__(self, path: str) -> FileContext:
        return self._entries[normalize_path(path)]

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path) -> bool:
        return isinstance(path, str) and normalize_path(path) in self._entries

    def lookup(self, path: str) -> Optional[FileContext]:
        if not path:
            return None
        wanted = normalize_path(path)
        context = self._entries.get(wanted)
        if context is not None:
            return context
        for key, context in self._entries.items():
            if wanted.endswith(key) or key.endswith(wanted):
                return context
        return None

    @classmethod
    def from_tree(cls, tree: DirectoryTree) -> "FilePathIndex":
        entries: Dict[str, FileContext] = {}
        for patient, study, series, image in tree.iter_images():
            path = image.normalized_path
            if not path:
                continue
            entries[path] = FileContext(
                path=path,
                patient=patient.summary(),
                study=study.summary(),
                series=series.summary(),
                image=image.summary(),
            )
        return cls(entries)


@dataclass
class DirectoryResult:
    tree: DirectoryTree = field(default_factory=DirectoryTree)
    file_path_index: FilePathIndex = field(default_factory=FilePathIndex)
    records: RecordArena = field(default_factory=RecordArena)


# ═══════════════════════════════════════════════════════════════════════════════
# RECORD SCANNING
# ═══════════════════════════════════════════════════════════════════════════════

def find_record_sequence(
    buffer: bytes,
    config: Optional[DecoderConfig] = None,
) -> Optional[Tuple[int, int, bool, bool]]:
    """
    Locate the Directory Record Sequence.

    Returns:
        (content_start, content_end, explicit_vr, little_endian) or None
    """
    stream = ElementStream(buffer, config)
    for element in stream:
        if element.tag != DIRECTORY_RECORD_SEQUENCE or element.depth != 0:
            continue
        start = element.value_offset
        if element.length == UNDEFINED_LENGTH:
            end = len(stream.buffer)
        else:
            end = min(start + element.length, len(stream.buffer))
        return start, end, stream.explicit_vr, stream.little_endian
    return None


def read_record(
    buffer: bytes,
    item_offset: int,
    end: int,
    explicit_vr: bool = True,
    little_endian: bool = True,
    config: Optional[DecoderConfig] = None,
) -> DirectoryRecord:
    """Decode the flat field list of the record whose Item tag is at ``item_offset``."""
    config = config or DEFAULT_CONFIG
    fields: Dict[str, Any] = {}
    record_type = ""
    next_offset = 0
    lower_offset = 0
    file_id = None

    pos = item_offset + ITEM_HEADER_LENGTH
    while pos + ITEM_HEADER_LENGTH <= end:
        try:
            header = read_header(buffer, pos, explicit_vr, little_endian)
            if header.tag == ITEM_DELIMITATION:
                break
            if header.length == UNDEFINED_LENGTH:
                # Nested undefined-length sequence inside the record
                pos = skip_undefined_length(buffer, header.value_offset, explicit_vr, little_endian)
                continue
            if header.vr == "SQ":
                pos = header.value_offset + header.length
                continue
            value = decode_value(buffer, header, little_endian, config.max_string_length)
        except (struct.error, IndexError, ValueError) as exc:
            logger.debug("Stopping record at %d: bad element at %d (%s)", item_offset, pos, exc)
            break

        pos = header.value_offset + header.length
        plain = value.value
        if plain is None:
            continue

        tag = header.tag
        if tag == RECORD_TYPE:
            record_type = str(plain).upper()
        elif tag == NEXT_RECORD_OFFSET:
            next_offset = int(plain)
        elif tag == LOWER_LEVEL_OFFSET:
            lower_offset = int(plain)
        elif tag == REFERENCED_FILE_ID:
            file_id = str(plain)
        fields[tag_key(*tag)] = plain

    return make_record(item_offset, record_type, next_offset, lower_offset, fields, file_id)


def scan_records(
    buffer: bytes,
    start: int,
    end: int,
    explicit_vr: bool = True,
    little_endian: bool = True,
    config: Optional[DecoderConfig] = None,
) -> RecordArena:
    """Read every item of the Directory Record Sequence into a RecordArena."""
    config = config or DEFAULT_CONFIG
    arena = RecordArena()
    pos = start

    while pos + ITEM_HEADER_LENGTH <= end:
        try:
            header = read_header(buffer, pos, explicit_vr, little_endian)
        except struct.error as exc:
            logger.debug("Truncated record item at %d: %s", pos, exc)
            break

        if header.tag == SEQUENCE_DELIMITATION:
            break
        if header.tag != ITEM:
            logger.debug("Expected record item at %d, found %04X,%04X", pos, *header.tag)
            break

        content_start = header.value_offset
        if header.length == UNDEFINED_LENGTH:
            record_end = min(content_start + config.record_search_window, len(buffer))
        else:
            record_end = min(content_start + header.length, len(buffer))

        arena.add(read_record(buffer, pos, record_end, explicit_vr, little_endian, config))

        if header.length == UNDEFINED_LENGTH:
            try:
                next_pos = skip_undefined_length(buffer, content_start, explicit_vr, little_endian)
            except (struct.error, IndexError) as exc:
                logger.debug("Unterminated record item at %d: %s", pos, exc)
                break
        else:
            next_pos = content_start + header.length

        if next_pos <= pos:
            break
        pos = next_pos

    arena.resolve()
    return arena


# ═══════════════════════════════════════════════════════════════════════════════
# TREE ASSEMBLY
# ═══════════════════════════════════════════════════════════════════════════════

def _children(arena: RecordArena, parent: DirectoryRecord, level: str) -> Iterator[DirectoryRecord]:
    """Records of ``level`` on the sibling chain that starts at the parent's child."""
    for record in arena.chain(parent.child_index):
        if record.level == level:
            yield record


def assemble_tree(arena: RecordArena) -> DirectoryTree:
    tree = DirectoryTree()
    for record in arena:
        if not isinstance(record, PatientRecord):
            continue
        patient = Patient.from_record(record)
        for study_record in _children(arena, record, StudyRecord.level):
            study = Study.from_record(study_record)
            for series_record in _children(arena, study_record, SeriesRecord.level):
                series = Series.from_record(series_record)
                for image_record in _children(arena, series_record, ImageRecord.level):
                    series.images.append(Image.from_record(image_record))
                study.series.append(series)
            patient.studies.append(study)
        tree.patients.append(patient)
    return tree


def build_tree(buffer: bytes, config: Optional[DecoderConfig] = None) -> DirectoryResult:
    """
    Parse a DICOMDIR buffer.

    Args:
        buffer: Complete DICOMDIR file contents
        config: Optional DecoderConfig

    Returns:
        DirectoryResult; empty when the buffer is not DICOM or has no
        Directory Record Sequence
    """
    config = config or DEFAULT_CONFIG

    if decode(buffer, config) is None:
        return DirectoryResult()

    located = find_record_sequence(buffer, config)
    if located is None:
        logger.info("No directory record sequence found")
        return DirectoryResult()

    start, end, explicit_vr, little_endian = located
    arena = scan_records(buffer, start, end, explicit_vr, little_endian, config)
    tree = assemble_tree(arena)
    index = FilePathIndex.from_tree(tree)

    logger.info(
        "DICOMDIR: %d records, %d patients, %d indexed files",
        len(arena), len(tree.patients), len(index),
    )
    return DirectoryResult(tree=tree, file_path_index=index, records=arena)
