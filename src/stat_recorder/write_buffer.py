"""
Write Buffer - In-memory accumulation of statistics records

Appends never touch the disk. Each (date, name) key owns one text
accumulator; a flush swaps every accumulator out under the map lock and
appends the captured text to <file_dir>/<date>/<name>.csv afterwards, so
appends arriving mid-flush simply start a fresh accumulator.

Failure handling:
    A snapshot that cannot be written is prepended back onto the live
    entry for its key. Nothing already in memory is dropped by a write
    error; it is retried on the next flush. Data that only ever lived in
    memory is lost if the process crashes before a successful flush.

Usage:
    buffer = WriteBuffer(Path('/var/lib/stat-recorder'), max_size=10000)
    buffer.append('20240101', 'metricA', 'v1')
    buffer.flush()
"""

import itertools
import logging
import math
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import PersistenceFailure, ValidationError
from .file_utils import append_text

logger = logging.getLogger(__name__)

LINE_END = '\r\n'

Snapshot = Tuple['BufferKey', Path, str]


@dataclass(frozen=True)
class BufferKey:
    """Composite key: one metric stream on one day"""
    date: str
    name: str

    def file_path(self, file_dir: Path) -> Path:
        return Path(file_dir) / self.date / f"{self.name}.csv"


@dataclass
class CacheStats:
    """Point-in-time cache statistics"""
    size: int
    hits: int
    misses: int
    hit_ratio: float

    def to_dict(self) -> Dict:
        return asdict(self)


class BufferEntry:
    """
    Accumulator for one key plus its destination file.

    Not thread-safe on its own; WriteBuffer calls it under its map lock.
    """

    def __init__(self, key: BufferKey, file_path: Path):
        self.key = key
        self.file_path = file_path
        self._chunks: List[str] = []

    def append(self, value: str) -> None:
        self._chunks.append(value + LINE_END)

    def prepend(self, text: str) -> None:
        self._chunks.insert(0, text)

    def take(self) -> str:
        text = ''.join(self._chunks)
        self._chunks = []
        return text


def _check_component(kind: str, value: str) -> None:
    if not value:
        raise ValidationError(f"{kind} must not be empty")
    if value in ('.', '..') or '/' in value or '\\' in value:
        raise ValidationError(f"{kind} must not contain path separators: {value!r}")


class WriteBuffer:
    """
    Concurrent map from BufferKey to BufferEntry.

    Locks:
        _lock        guards the map, the entries and the hit/miss counters.
                     Never held across I/O.
        _drain_lock  one flush/evict persisting at a time.
    """

    def __init__(
        self,
        file_dir: Path,
        max_size: int = 10000,
        writer: Callable[[Path, str], None] = append_text,
        on_pressure: Optional[Callable[[], None]] = None
    ):
        """
        Args:
            file_dir: Root of the per-day directories
            max_size: Live keys allowed before eviction is requested (0 = unbounded)
            writer: Appends text to a file; raises OSError on failure
            on_pressure: Called (from the appending thread) when max_size is exceeded
        """
        self.file_dir = Path(file_dir)
        self.max_size = max_size
        self._writer = writer
        self._on_pressure = on_pressure

        self._entries: Dict[BufferKey, BufferEntry] = {}
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.writes_completed = 0
        self.writes_failed = 0

    def set_pressure_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_pressure = callback

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, date: str, name: str, value: str) -> None:
        """Buffer one record. Raises ValidationError on empty input."""
        _check_component('date', date)
        _check_component('name', name)
        if not value:
            raise ValidationError("value must not be empty")

        key = BufferKey(date, name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = BufferEntry(key, key.file_path(self.file_dir))
                self._entries[key] = entry
                self.misses += 1
            else:
                self.hits += 1
            entry.append(value)
            over_limit = self.max_size > 0 and len(self._entries) > self.max_size

        if over_limit and self._on_pressure is not None:
            self._on_pressure()

    def _take(self, keys: Optional[Iterable[BufferKey]] = None) -> List[Snapshot]:
        """Swap out accumulators and remove their entries from the map."""
        taken = []
        with self._lock:
            if keys is None:
                keys = list(self._entries)
            for key in keys:
                entry = self._entries.pop(key, None)
                if entry is None:
                    continue
                text = entry.take()
                if text:
                    taken.append((key, entry.file_path, text))
        return taken

    def _requeue(self, key: BufferKey, file_path: Path, text: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = BufferEntry(key, file_path)
                self._entries[key] = entry
            entry.prepend(text)

    def _persist(self, snapshots: List[Snapshot]) -> int:
        written = 0
        for key, file_path, text in snapshots:
            try:
                self._writer(file_path, text)
            except Exception as e:
                failure = PersistenceFailure(file_path, e)
                self._requeue(key, file_path, text)
                with self._lock:
                    self.writes_failed += 1
                logger.error(f"{failure} - {len(text)} chars requeued for retry")
            else:
                written += 1
                with self._lock:
                    self.writes_completed += 1
        return written

    def drain_all(self) -> Dict[BufferKey, str]:
        """
        Capture and remove every live accumulator without writing it.

        The caller owns the returned text from here on.
        """
        with self._drain_lock:
            return {key: text for key, _, text in self._take()}

    def flush(self) -> int:
        """
        Drain every key and append it to disk.

        Returns:
            Number of keys written successfully
        """
        with self._drain_lock:
            snapshots = self._take()
            if not snapshots:
                logger.debug("cache is empty")
                return 0
            written = self._persist(snapshots)

        if written < len(snapshots):
            logger.warning(f"Flushed {written}/{len(snapshots)} keys, "
                           f"{len(snapshots) - written} requeued")
        else:
            logger.info(f"Flushed {written} keys")
        return written

    def evict(self, fraction: float = 0.25) -> int:
        """
        Persist the oldest share of keys when over max_size.

        Keys are taken in creation order. A key re-created after a drain
        moves to the back, so every key is eventually reached.

        Returns:
            Number of keys written successfully
        """
        with self._drain_lock:
            with self._lock:
                live = len(self._entries)
                if self.max_size <= 0 or live <= self.max_size:
                    return 0
                count = max(1, math.ceil(live * fraction))
                keys = list(itertools.islice(self._entries, count))
            snapshots = self._take(keys)
            written = self._persist(snapshots)

        logger.info(f"Evicted {written}/{len(keys)} of {live} keys (max {self.max_size})")
        return written

    def get_stats(self) -> CacheStats:
        with self._lock:
            total = self.hits + self.misses
            return CacheStats(
                size=len(self._entries),
                hits=self.hits,
                misses=self.misses,
                hit_ratio=self.hits / total if total else 0.0
            )
