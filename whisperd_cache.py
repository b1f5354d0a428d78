"""In-memory inventory of the metrics stored below the Whisper prefix.

Walking a large Whisper tree takes a while, so listing requests are
answered from a snapshot that is rebuilt in a background thread. While a
rebuild runs, readers get a "not ready" answer instead of waiting.
"""

import json
import logging
import os
import re
import threading
import time
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from whisperd_store import MetricPaths

logger = logging.getLogger(__name__)


class PatternError(ValueError):
    pass


class DecodeError(ValueError):
    pass


def _raise_walk_error(exc: OSError) -> None:
    raise exc


def iter_metric_files(root: str) -> Iterator[str]:
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        dirnames.sort()
        for filename in sorted(filenames):
            if MetricPaths.is_metric_file(filename):
                yield os.path.join(dirpath, filename)


class MetricsCache:
    def __init__(
        self,
        paths: MetricPaths,
        walk: Callable[[str], Iterable[str]] = iter_metric_files,
    ) -> None:
        self._paths = paths
        self._walk = walk
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._building = False
        self._snapshot: Optional[Tuple[str, ...]] = None
        self.snapshot_time: Optional[float] = None

    def get_snapshot(self) -> Tuple[Optional[Tuple[str, ...]], bool]:
        with self._lock:
            if self._building or self._snapshot is None:
                return None, False
            return self._snapshot, True

    def is_available(self) -> bool:
        with self._lock:
            return not self._building

    def has_snapshot(self) -> bool:
        with self._lock:
            return self._snapshot is not None

    def trigger_rebuild(self) -> bool:
        with self._lock:
            if self._building:
                return False
            self._building = True
        thread = threading.Thread(target=self._rebuild, name="metrics-cache-rebuild", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._finish(None)
            raise
        return True

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._building, timeout=timeout)

    def _rebuild(self) -> None:
        started = time.monotonic()
        root = self._paths.prefix
        logger.info("Rebuilding metrics cache from %s", root)
        try:
            names = tuple(self._paths.path_to_metric(path) for path in self._walk(root))
        except (OSError, ValueError) as exc:
            logger.error("Metrics cache rebuild of %s aborted: %s", root, exc)
            self._finish(None)
            return
        self._finish(names)
        logger.info("Metrics cache ready: %d metrics in %.3fs", len(names), time.monotonic() - started)

    def _finish(self, names: Optional[Tuple[str, ...]]) -> None:
        with self._idle:
            if names is not None:
                self._snapshot = names
                self.snapshot_time = time.time()
            self._building = False
            self._idle.notify_all()


def filter_regex(pattern: str, names: Sequence[str]) -> List[str]:
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise PatternError(f"Invalid regex {pattern!r}: {exc}") from exc
    return [name for name in names if regex.search(name)]


def filter_list(requested: Iterable[str], names: Sequence[str]) -> List[str]:
    wanted = set(requested)
    return [name for name in names if name in wanted]


def decode_metric_list(raw: str) -> List[str]:
    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(f"Invalid metric list: {exc}") from exc
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise DecodeError("Metric list must be a JSON array of strings")
    return value
