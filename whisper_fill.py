"""Backfill one Whisper database from another with the same archive layout.

Whisper files start with a metadata block followed by one info block per
archive. Each archive is a ring buffer of (interval, value) points whose
slot 0 defines the base interval of the ring.

    metadata      !2LfL  aggregation type, max retention, x-files-factor, archive count
    archive info  !3L    offset, seconds per point, points
    point         !Ld    interval, value
"""

import fcntl
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Tuple

METADATA_FORMAT = "!2LfL"
ARCHIVE_INFO_FORMAT = "!3L"
POINT_FORMAT = "!Ld"

METADATA_SIZE = struct.calcsize(METADATA_FORMAT)
ARCHIVE_INFO_SIZE = struct.calcsize(ARCHIVE_INFO_FORMAT)
POINT_SIZE = struct.calcsize(POINT_FORMAT)


class WhisperFormatError(ValueError):
    pass


@dataclass(frozen=True)
class ArchiveInfo:
    offset: int
    seconds_per_point: int
    points: int

    @property
    def size(self) -> int:
        return self.points * POINT_SIZE

    @property
    def retention(self) -> int:
        return self.seconds_per_point * self.points


@dataclass(frozen=True)
class WhisperHeader:
    aggregation_type: int
    max_retention: int
    x_files_factor: float
    archives: Tuple[ArchiveInfo, ...]

    def layout(self) -> List[Tuple[int, int]]:
        return [(a.seconds_per_point, a.points) for a in self.archives]


def _read_header(f: BinaryIO, name: str) -> WhisperHeader:
    f.seek(0)
    raw = f.read(METADATA_SIZE)
    if len(raw) < METADATA_SIZE:
        raise WhisperFormatError(f"File too small for Whisper metadata: {name}")
    aggregation_type, max_retention, x_files_factor, archive_count = struct.unpack(METADATA_FORMAT, raw)
    if archive_count == 0:
        raise WhisperFormatError(f"Whisper file has no archives: {name}")

    raw = f.read(archive_count * ARCHIVE_INFO_SIZE)
    if len(raw) < archive_count * ARCHIVE_INFO_SIZE:
        raise WhisperFormatError(f"Truncated archive headers in {name}")
    archives = tuple(ArchiveInfo(*fields) for fields in struct.iter_unpack(ARCHIVE_INFO_FORMAT, raw))

    f.seek(0, os.SEEK_END)
    file_size = f.tell()
    expected_offset = METADATA_SIZE + archive_count * ARCHIVE_INFO_SIZE
    for index, archive in enumerate(archives):
        if archive.seconds_per_point == 0 or archive.points == 0:
            raise WhisperFormatError(f"Archive {index} of {name} is empty")
        if archive.offset != expected_offset:
            raise WhisperFormatError(
                f"Archive {index} of {name} starts at offset {archive.offset}, expected {expected_offset}"
            )
        expected_offset += archive.size
    if file_size < expected_offset:
        raise WhisperFormatError(f"Truncated Whisper file {name}: {file_size} bytes < {expected_offset}")

    return WhisperHeader(aggregation_type, max_retention, x_files_factor, archives)


def read_header(path: str) -> WhisperHeader:
    with open(path, "rb") as f:
        return _read_header(f, path)


def _read_points(f: BinaryIO, archive: ArchiveInfo) -> List[Tuple[int, float]]:
    f.seek(archive.offset)
    raw = f.read(archive.size)
    return list(struct.iter_unpack(POINT_FORMAT, raw))


def _fill_archive(src: BinaryIO, dst: BinaryIO, archive: ArchiveInfo) -> int:
    src_points = _read_points(src, archive)
    dst_points = _read_points(dst, archive)

    base_interval = dst_points[0][0]
    if base_interval == 0:
        written = sum(1 for interval, _ in src_points if interval != 0)
        if written:
            src.seek(archive.offset)
            dst.seek(archive.offset)
            dst.write(src.read(archive.size))
        return written

    step = archive.seconds_per_point
    slots: Dict[int, Tuple[int, float]] = {}
    for interval, value in src_points:
        if interval == 0 or interval % step:
            continue
        slot = ((interval - base_interval) // step) % archive.points
        current = slots.get(slot, dst_points[slot])
        # Never replace a point the destination has for the same or a newer interval.
        if current[0] < interval:
            slots[slot] = (interval, value)

    for slot, point in sorted(slots.items()):
        dst.seek(archive.offset + slot * POINT_SIZE)
        dst.write(struct.pack(POINT_FORMAT, *point))
    return len(slots)


def fill_archives(src_path: str, dst_path: str) -> int:
    """Copy points from ``src_path`` into the gaps of ``dst_path``.

    Both files must share the same archive layout. Points already present
    in the destination are kept, even when the source has a value for the
    same interval. Returns the number of points written.
    """
    with open(src_path, "rb") as src, open(dst_path, "r+b") as dst:
        fcntl.flock(dst.fileno(), fcntl.LOCK_EX)
        src_header = _read_header(src, src_path)
        dst_header = _read_header(dst, dst_path)
        if src_header.layout() != dst_header.layout():
            raise WhisperFormatError(
                f"Archive layout mismatch: {src_path} has {src_header.layout()}, "
                f"{dst_path} has {dst_header.layout()}"
            )

        written = 0
        for archive in dst_header.archives:
            written += _fill_archive(src, dst, archive)
        dst.flush()
        os.fsync(dst.fileno())
    return written
