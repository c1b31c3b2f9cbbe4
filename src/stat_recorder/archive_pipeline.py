"""
Archive Pipeline - Zip completed day directories

Compresses <file_dir>/<label>/ into <file_dir>/<label>.zip, either
synchronously (manual trigger) or on dedicated worker threads so that a
slow compression never delays the flush scheduler.

Design:
    - Scheduler queues labels (fast, non-blocking)
    - Worker threads run the zip (slow disk I/O in background)
    - One lock per label: a label is never zipped concurrently with itself
    - Archives are rewritten atomically, so re-archiving is always safe
"""

import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from .dates import ActiveDate
from .file_utils import has_visible_entries, is_hidden, zip_folder

logger = logging.getLogger(__name__)


class ArchiveStatus(Enum):
    SUCCESS = 'zip success'
    ACTIVE_DATE = 'cannot archive active date'
    NOT_FOUND = 'not found'
    HIDDEN = 'hidden, skipped'
    EMPTY = 'empty, skipped'
    INVALID = 'invalid label'
    FAILED = 'zip file error!'

    @property
    def settled(self) -> bool:
        """True when retrying the same label cannot change the outcome."""
        return self in (ArchiveStatus.SUCCESS, ArchiveStatus.NOT_FOUND,
                        ArchiveStatus.HIDDEN, ArchiveStatus.EMPTY,
                        ArchiveStatus.INVALID)


@dataclass
class ArchiveResult:
    """Outcome of one archive attempt"""
    label: str
    status: ArchiveStatus
    message: str
    entries: int = 0

    @property
    def ok(self) -> bool:
        return self.status is ArchiveStatus.SUCCESS

    def to_dict(self) -> Dict:
        return {
            'label': self.label,
            'status': self.status.name.lower(),
            'message': self.message,
            'entries': self.entries,
        }

    def __str__(self) -> str:
        return self.message


def _valid_label(label: str) -> bool:
    return bool(label) and label not in ('.', '..') and '/' not in label and '\\' not in label


class ArchivePipeline:
    """
    Zips day directories, with an optional pool of worker threads.

    Usage:
        pipeline = ArchivePipeline(file_dir, active_date)
        pipeline.start()

        # Synchronous
        result = pipeline.archive('20240101')

        # Non-blocking, callback runs on the worker thread
        pipeline.submit('20240101', callback=on_done)

        pipeline.stop()
    """

    def __init__(
        self,
        file_dir: Path,
        active_date: ActiveDate,
        num_workers: int = 2,
        max_queue_size: int = 100
    ):
        """
        Args:
            file_dir: Root of the per-day directories; archives land beside them
            active_date: Label that must never be archived
            num_workers: Concurrent archive threads (distinct labels only)
            max_queue_size: Maximum queued labels
        """
        self.file_dir = Path(file_dir)
        self.active_date = active_date
        self.num_workers = num_workers

        self.archive_queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self.workers: list[threading.Thread] = []
        self.running = False

        # Labels queued or in flight, and per-label locks
        self._scheduled: Set[str] = set()
        self._label_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

        self.archives_completed = 0
        self.archives_failed = 0

    def start(self):
        """Start worker threads."""
        if self.running:
            return

        self.running = True
        for i in range(self.num_workers):
            t = threading.Thread(target=self._worker_loop, name=f"ArchiveWorker-{i}", daemon=True)
            t.start()
            self.workers.append(t)

        logger.info(f"ArchivePipeline started with {self.num_workers} worker(s)")

    def stop(self, timeout: float = 5.0):
        """
        Stop worker threads.

        Archives still running after the timeout are abandoned; the .part
        file they leave behind is overwritten on the next attempt.
        """
        self.running = False
        if not self.workers:
            return

        for _ in self.workers:
            try:
                self.archive_queue.put_nowait(None)  # Sentinel
            except queue.Full:
                pass

        for t in self.workers:
            t.join(timeout=timeout / len(self.workers))

        alive = [t.name for t in self.workers if t.is_alive()]
        if alive:
            logger.warning(f"ArchivePipeline stopped with busy workers: {', '.join(alive)}")
        else:
            logger.info(f"ArchivePipeline stopped cleanly. Completed {self.archives_completed} archives")
        self.workers = []

    def is_scheduled(self, label: str) -> bool:
        with self._guard:
            return label in self._scheduled

    def submit(self, label: str, callback: Optional[Callable[[ArchiveResult], None]] = None) -> bool:
        """
        Queue a label for background archiving (non-blocking).

        Returns:
            True if queued, False if already queued/in flight, not running or queue full
        """
        if not self.running:
            logger.warning(f"ArchivePipeline not running, {label} not queued")
            return False

        with self._guard:
            if label in self._scheduled:
                return False
            self._scheduled.add(label)

        try:
            self.archive_queue.put_nowait((label, callback))
        except queue.Full:
            with self._guard:
                self._scheduled.discard(label)
            logger.error(f"Archive queue full! {label} not queued")
            return False
        return True

    def _lock_for(self, label: str) -> threading.Lock:
        with self._guard:
            lock = self._label_locks.get(label)
            if lock is None:
                lock = self._label_locks[label] = threading.Lock()
            return lock

    def archive(self, label: str) -> ArchiveResult:
        """Zip one day directory. Never raises; any failure comes back as FAILED."""
        if not _valid_label(label):
            return ArchiveResult(label, ArchiveStatus.INVALID, ArchiveStatus.INVALID.value)
        if label == self.active_date.get():
            return ArchiveResult(label, ArchiveStatus.ACTIVE_DATE, ArchiveStatus.ACTIVE_DATE.value)

        source = self.file_dir / label
        zip_path = self.file_dir / f"{label}.zip"

        with self._lock_for(label):
            try:
                if not source.is_dir():
                    logger.info(f"zip file {label} not exists")
                    return ArchiveResult(label, ArchiveStatus.NOT_FOUND, ArchiveStatus.NOT_FOUND.value)
                if is_hidden(source):
                    logger.info(f"zip file {label} is hidden")
                    return ArchiveResult(label, ArchiveStatus.HIDDEN, ArchiveStatus.HIDDEN.value)
                if not has_visible_entries(source):
                    logger.info(f"zip file {label} is empty")
                    return ArchiveResult(label, ArchiveStatus.EMPTY, ArchiveStatus.EMPTY.value)

                entries = zip_folder(source, zip_path)
            except Exception as e:
                # OSError, and zipfile's ValueError (pre-1980 mtime) or LargeZipFile
                return self._failed(label, e)

        with self._guard:
            self.archives_completed += 1
        logger.info(f"Archived {label} -> {zip_path} ({entries} entries)")
        return ArchiveResult(label, ArchiveStatus.SUCCESS, ArchiveStatus.SUCCESS.value, entries)

    def _failed(self, label: str, error: Exception) -> ArchiveResult:
        with self._guard:
            self.archives_failed += 1
        logger.error(f"zip {label} failed: {error}")
        return ArchiveResult(label, ArchiveStatus.FAILED, f"{ArchiveStatus.FAILED.value} {error}")

    def _worker_loop(self):
        """Worker thread main loop."""
        while self.running or not self.archive_queue.empty():
            try:
                item = self.archive_queue.get(timeout=0.5)
            except queue.Empty:
                continue

            if item is None:  # Sentinel
                break

            label, callback = item
            try:
                try:
                    result = self.archive(label)
                except Exception as e:
                    result = self._failed(label, e)
                if callback is not None:
                    callback(result)
            except Exception as e:
                logger.error(f"Archive callback error for {label}: {e}")
            finally:
                with self._guard:
                    self._scheduled.discard(label)
                self.archive_queue.task_done()

    def get_stats(self) -> dict:
        with self._guard:
            scheduled = sorted(self._scheduled)
        return {
            'archives_completed': self.archives_completed,
            'archives_failed': self.archives_failed,
            'scheduled': scheduled,
            'running': self.running
        }
