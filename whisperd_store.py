"""Single-metric operations against the local Whisper tree.

Metric names map one-to-one onto files below the storage prefix:
``carbon.agents.host.cpu`` lives at ``<prefix>/carbon/agents/host/cpu.wsp``.

Healing a metric uploads a complete Whisper file. The upload is staged in
a temporary file first, then either merged into the existing database or
copied into place when the metric does not exist yet. The staging file is
always removed before the request finishes.
"""

import json
import logging
import os
import shutil
import stat
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import BinaryIO, Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

WHISPER_SUFFIX = ".wsp"
# metadata (16 bytes) plus one archive info (12 bytes)
WHISPER_HEADER_SIZE = 28
OCTET_STREAM = "application/octet-stream"
COPY_CHUNK_SIZE = 64 * 1024

MergeFunc = Callable[[str, str], object]


class InvalidMetricName(ValueError):
    pass


class InvalidUpload(ValueError):
    pass


class HealError(OSError):
    pass


class MetricPaths:
    def __init__(self, prefix: str) -> None:
        self.prefix = os.path.abspath(prefix)

    def metric_to_path(self, metric: str) -> str:
        if not metric:
            raise InvalidMetricName("Metric name missing")
        if "/" in metric or "\x00" in metric:
            raise InvalidMetricName(f"Invalid metric name: {metric!r}")
        parts = metric.split(".")
        if not all(parts):
            raise InvalidMetricName(f"Invalid metric name: {metric!r}")
        return os.path.join(self.prefix, *parts) + WHISPER_SUFFIX

    def path_to_metric(self, path: str) -> str:
        rel = os.path.relpath(os.path.abspath(path), self.prefix)
        if rel == os.curdir or rel.startswith(os.pardir + os.sep) or rel == os.pardir:
            raise ValueError(f"Path is outside of {self.prefix}: {path}")
        if rel.endswith(WHISPER_SUFFIX):
            rel = rel[: -len(WHISPER_SUFFIX)]
        return rel.replace(os.sep, ".")

    @staticmethod
    def is_metric_file(filename: str) -> bool:
        return filename.endswith(WHISPER_SUFFIX)


@dataclass(frozen=True)
class MetricStat:
    Name: str
    Size: int
    Mode: int
    ModTime: int

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_stat_result(cls, metric: str, st: os.stat_result) -> "MetricStat":
        return cls(
            Name=metric,
            Size=st.st_size,
            Mode=stat.S_IMODE(st.st_mode),
            ModTime=int(st.st_mtime),
        )


def stat_metric(metric: str, path: str) -> MetricStat:
    return MetricStat.from_stat_result(metric, os.stat(path))


def delete_metric(path: str, fatal_if_missing: bool) -> bool:
    """Remove a metric file.

    Returns False when the file was already gone and ``fatal_if_missing``
    is not set. Raises FileNotFoundError when it is.
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        if fatal_if_missing:
            raise
        return False
    except OSError as exc:
        logger.error("Error deleting metric %s: %s", path, exc)
        raise
    logger.info("Deleted metric file %s", path)
    return True


class PathLocks:
    """Serializes writers of the same metric path.

    Locks are created on demand and dropped once no request holds or
    waits for them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def hold(self, path: str) -> Iterator[None]:
        with self._lock:
            lock = self._locks.setdefault(path, threading.Lock())
            self._refs[path] = self._refs.get(path, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._lock:
                self._refs[path] -= 1
                if self._refs[path] == 0:
                    del self._refs[path]
                    del self._locks[path]

    def __len__(self) -> int:
        with self._lock:
            return len(self._locks)


def validate_heal_request(content_type: Optional[str], content_length: Optional[str]) -> int:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type != OCTET_STREAM:
        logger.warning("Rejected heal upload with content-type %r", content_type)
        raise InvalidUpload(f"Content-Type must be {OCTET_STREAM}")
    length_raw = (content_length or "").strip()
    # ASCII digits only, int() alone also takes "+40", "2_9" and non-ASCII digits.
    if not (length_raw.isascii() and length_raw.isdigit()):
        logger.warning("Rejected heal upload with content-length %r", content_length)
        raise InvalidUpload("Invalid Content-Length")
    length = int(length_raw)
    if length <= WHISPER_HEADER_SIZE:
        # A Whisper header alone is 28 bytes, the upload needs data as well.
        logger.warning("Whisper data in request too small: %d bytes", length)
        raise InvalidUpload("Whisper data in request too small")
    return length


@dataclass
class HealTransfer:
    staging_path: str
    declared_length: int
    destination_exists: bool


@dataclass(frozen=True)
class HealResult:
    path: str
    merged: bool
    size: int


def _resolve_destination(path: str) -> bool:
    try:
        os.stat(path)
        return True
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Error stat'ing file %s: %s", path, exc)
        raise HealError(f"Cannot stat {path}") from exc

    parent = os.path.dirname(path)
    try:
        os.makedirs(parent, exist_ok=True)
    except OSError as exc:
        logger.error("Error creating %s: %s", parent, exc)
        raise HealError(f"Cannot create {parent}") from exc
    return False


def _copy_exact(src: BinaryIO, dst: BinaryIO, length: int) -> None:
    remaining = length
    while remaining > 0:
        chunk = src.read(min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            raise HealError(f"Request body ended after {length - remaining} of {length} bytes")
        dst.write(chunk)
        remaining -= len(chunk)


def _stage_upload(body: BinaryIO, length: int, staging_dir: str) -> str:
    try:
        tmp = tempfile.NamedTemporaryFile(prefix="whisperd_", suffix=WHISPER_SUFFIX, dir=staging_dir, delete=False)
    except OSError as exc:
        logger.error("Error creating temp file in %s: %s", staging_dir, exc)
        raise HealError("Cannot create staging file") from exc

    staging_path = tmp.name
    try:
        with tmp:
            _copy_exact(body, tmp, length)
            tmp.flush()
            os.fsync(tmp.fileno())
    except OSError as exc:
        logger.error("Error writing to temp file %s: %s", staging_path, exc)
        _remove_file(staging_path)
        if isinstance(exc, HealError):
            raise
        raise HealError("Cannot write staging file") from exc
    return staging_path


def _install_new(staging_path: str, path: str) -> None:
    created = False
    try:
        with open(staging_path, "rb") as src, open(path, "xb") as dst:
            created = True
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
            dst.flush()
            os.fsync(dst.fileno())
    except OSError as exc:
        logger.error("Error copying %s => %s: %s", staging_path, path, exc)
        if created:
            # Do not leave a truncated database behind for the next merge.
            _remove_file(path)
        raise HealError(f"Cannot write {path}") from exc


def _merge_existing(merge: MergeFunc, staging_path: str, path: str) -> None:
    try:
        merge(staging_path, path)
    except Exception as exc:
        logger.error("Error backfilling %s => %s: %s", staging_path, path, exc)
        raise HealError(f"Cannot merge into {path}") from exc


def _remove_file(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Error removing %s: %s", path, exc)


def heal_metric(
    body: BinaryIO,
    content_type: Optional[str],
    content_length: Optional[str],
    path: str,
    staging_dir: str,
    merge: MergeFunc,
) -> HealResult:
    """Backfill the metric at ``path`` from the Whisper file in ``body``.

    An existing database is merged with ``merge(staging_path, path)``. A
    missing one is created as a byte-identical copy of the upload.
    """
    length = validate_heal_request(content_type, content_length)
    destination_exists = _resolve_destination(path)
    transfer = HealTransfer(_stage_upload(body, length, staging_dir), length, destination_exists)
    try:
        if transfer.destination_exists:
            _merge_existing(merge, transfer.staging_path, path)
        else:
            _install_new(transfer.staging_path, path)
    finally:
        _remove_file(transfer.staging_path)

    try:
        size = os.path.getsize(path)
    except OSError as exc:
        raise HealError(f"Cannot stat {path} after heal") from exc
    logger.info(
        "Healed %s (%s, %d bytes uploaded, %d bytes on disk)",
        path,
        "merged" if transfer.destination_exists else "created",
        length,
        size,
    )
    return HealResult(path=path, merged=transfer.destination_exists, size=size)
