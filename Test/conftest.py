import struct
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


def _build_whisper(archives, points=None, aggregation_type=1, x_files_factor=0.5):
    """Return the bytes of a Whisper file.

    ``archives`` is a list of (seconds_per_point, points). ``points`` maps an
    archive index to (interval, value) pairs; the first pair becomes the
    base interval stored in slot 0.
    """
    offset = 16 + 12 * len(archives)
    infos = []
    for seconds_per_point, count in archives:
        infos.append((offset, seconds_per_point, count))
        offset += count * 12
    max_retention = max(spp * count for spp, count in archives)

    raw = bytearray(offset)
    struct.pack_into("!2LfL", raw, 0, aggregation_type, max_retention, x_files_factor, len(archives))
    for index, info in enumerate(infos):
        struct.pack_into("!3L", raw, 16 + 12 * index, *info)
    for index, archive_points in (points or {}).items():
        archive_offset, seconds_per_point, count = infos[index]
        base = None
        for interval, value in archive_points:
            if base is None:
                base = interval
            slot = ((interval - base) // seconds_per_point) % count
            struct.pack_into("!Ld", raw, archive_offset + slot * 12, interval, value)
    return bytes(raw)


def _read_whisper_points(path, index=0):
    raw = Path(path).read_bytes()
    archive_offset, _, count = struct.unpack_from("!3L", raw, 16 + 12 * index)
    result = {}
    for slot in range(count):
        interval, value = struct.unpack_from("!Ld", raw, archive_offset + slot * 12)
        if interval:
            result[interval] = value
    return result


@pytest.fixture
def build_whisper():
    return _build_whisper


@pytest.fixture
def read_whisper_points():
    return _read_whisper_points
