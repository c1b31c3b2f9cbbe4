#!/usr/bin/env python3
"""
Statistics Recorder - Service facade

Wires the write buffer, flush scheduler, archive pipeline and access guard
together and exposes the operations a hosting layer (HTTP glue, CLI) needs:

    append / flush / archive / list_directory / resolve_download
    check_ip / get_cache_stats / status

Responsibilities kept here:
1. Build every component from one AppConfig
2. Explicit start/stop lifecycle (final flush on stop)
3. Daemon mode: block until SIGINT/SIGTERM, optionally ingesting
   "name<TAB>value" lines from a stream
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, TextIO

from .access_guard import AccessDecision, AccessGuard
from .archive_pipeline import ArchivePipeline, ArchiveResult
from .config import AppConfig
from .dates import ActiveDate, label_clock
from .errors import ValidationError
from .file_utils import DirectoryEntry, append_text, list_entries, safe_join
from .flush_scheduler import FlushScheduler
from .write_buffer import CacheStats, WriteBuffer

logger = logging.getLogger(__name__)


class StatisticsRecorder:
    """
    Owns one instance of every core component.

    Usage:
        with StatisticsRecorder(config) as recorder:
            recorder.append('metricA', 'v1')
            recorder.flush()
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Optional[Callable[[], str]] = None,
        writer: Callable[[Path, str], None] = append_text
    ):
        """
        Args:
            config: Application configuration
            clock: Returns today's label (default from recorder.utc_dates)
            writer: File append function used by the write buffer
        """
        self.config = config
        rc = config.recorder
        self.file_dir = Path(rc.file_dir)
        self.file_dir.mkdir(parents=True, exist_ok=True)

        self.clock = clock or label_clock(rc.utc_dates)
        self.active_date = ActiveDate(self.clock())

        self.buffer = WriteBuffer(self.file_dir, max_size=rc.max_cache_size, writer=writer)
        self.pipeline = ArchivePipeline(self.file_dir, self.active_date, num_workers=rc.archive_workers)
        self.scheduler = FlushScheduler(
            self.buffer,
            self.pipeline,
            self.active_date,
            interval=rc.flush_interval,
            clock=self.clock,
            eviction_fraction=rc.eviction_fraction,
            archive_max_attempts=rc.archive_max_attempts
        )

        ipc = config.ip_filter
        self.guard = AccessGuard(
            ipc.config_path,
            allow_localhost=ipc.allow_localhost,
            enabled=ipc.enabled,
            check_interval=ipc.check_interval
        )

        self.running = False
        self._shutdown = threading.Event()

        logger.info(f"StatisticsRecorder initialized: {config.name}, data in {self.file_dir}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self.running:
            return
        self.pipeline.start()
        self.scheduler.start()
        self.guard.start()
        self.running = True
        logger.info(f"{self.config.name} started, active date {self.active_date}")

    def stop(self):
        if not self.running:
            return
        timeout = self.config.recorder.shutdown_timeout
        self.guard.stop(timeout)
        self.scheduler.stop(timeout)
        self.pipeline.stop(timeout)
        self.running = False
        logger.info(f"{self.config.name} stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def request_shutdown(self):
        self._shutdown.set()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        self.request_shutdown()

    def run(self, input_stream: Optional[TextIO] = None):
        """
        Daemon main loop; returns after SIGINT/SIGTERM.

        With input_stream, each "name<TAB>value" line is appended and end
        of stream also shuts the recorder down.
        """
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.start()
        try:
            if input_stream is not None:
                reader = threading.Thread(target=self._ingest, args=(input_stream,),
                                          name="StreamIngest", daemon=True)
                reader.start()
            while not self._shutdown.wait(1.0):
                pass
        finally:
            self.stop()

    def _ingest(self, stream: TextIO):
        for line_number, line in enumerate(stream, 1):
            line = line.rstrip('\r\n')
            if not line:
                continue
            name, sep, value = line.partition('\t')
            if not sep:
                logger.warning(f"line {line_number}: expected name<TAB>value, skipped")
                continue
            try:
                self.append(name, value)
            except ValidationError as e:
                logger.warning(f"line {line_number}: {e}")
        logger.info("Input stream closed")
        self.request_shutdown()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def append(self, name: str, value: str, date: Optional[str] = None) -> None:
        """Buffer one record under date (default: the active date)."""
        self.buffer.append(date or self.active_date.get(), name, value)

    def flush(self) -> int:
        """Manual flush; returns the number of keys written."""
        return self.buffer.flush()

    def archive(self, label: str) -> ArchiveResult:
        """Manual archive with the same rules as the scheduled path."""
        return self.pipeline.archive(label)

    def list_directory(self, path: str = '') -> List[DirectoryEntry]:
        """Sub-directories and CSV files under file_dir/path."""
        return list_entries(safe_join(self.file_dir, path))

    def resolve_download(self, directory: str, file: Optional[str] = None) -> Path:
        """
        Path of a CSV inside a day directory, or of the day's zip.

        Raises:
            ValidationError: path escapes file_dir
            FileNotFoundError: nothing there
        """
        if not directory:
            raise ValidationError("directory must not be empty")
        if file:
            path = safe_join(self.file_dir, directory, file)
        else:
            path = safe_join(self.file_dir, f"{directory}.zip")
        if not path.is_file():
            raise FileNotFoundError(f"file not exists: {path.relative_to(self.file_dir.resolve())}")
        return path

    def check_ip(self, headers: Optional[Mapping[str, str]] = None,
                 remote_addr: Optional[str] = None) -> AccessDecision:
        return self.guard.check_ip(headers, remote_addr)

    def get_cache_stats(self) -> CacheStats:
        return self.buffer.get_stats()

    def status(self) -> Dict:
        return {
            'name': self.config.name,
            'running': self.running,
            'active_date': self.active_date.get(),
            'pending_archives': self.scheduler.pending_labels(),
            'cache': self.buffer.get_stats().to_dict(),
            'archive': self.pipeline.get_stats(),
            'allowed_ips': len(self.guard.allowed_ips),
        }
