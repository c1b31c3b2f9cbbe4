"""
Flush Scheduler - Periodic drain and date rollover

Every tick, strictly in this order:
    1. Flush the WriteBuffer to disk
    2. Rollover check:
         today == active  -> hand pending labels to the ArchivePipeline
         today != active  -> queue the outgoing label, make today active

Flushing first means everything buffered under the outgoing date is on
disk before the date is even considered for archiving. Archiving of the
outgoing label starts on a later tick, after one more flush has caught
any stragglers appended under the old label.

A tick never raises; the loop always reaches its next tick.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from .archive_pipeline import ArchivePipeline, ArchiveResult
from .dates import ActiveDate, label_clock
from .write_buffer import WriteBuffer

logger = logging.getLogger(__name__)


class FlushScheduler:
    """
    Drives WriteBuffer flushes, size-pressure eviction and day archiving.

    The pending-archive set maps label -> failed attempts. A label leaves
    the set when its archive succeeds or settles (missing, hidden, empty),
    or when archive_max_attempts failures have been recorded.
    """

    def __init__(
        self,
        buffer: WriteBuffer,
        pipeline: ArchivePipeline,
        active_date: ActiveDate,
        interval: float = 60.0,
        clock: Optional[Callable[[], str]] = None,
        eviction_fraction: float = 0.25,
        archive_max_attempts: int = 5
    ):
        """
        Args:
            buffer: Buffer to drain
            pipeline: Archive pipeline fed with completed days
            active_date: Shared active label, written only here
            interval: Seconds between ticks
            clock: Returns today's label (default: local calendar day)
            eviction_fraction: Share of keys persisted on size pressure
            archive_max_attempts: Failed archives before a label is dropped (0 = never)
        """
        self.buffer = buffer
        self.pipeline = pipeline
        self.active_date = active_date
        self.interval = interval
        self.clock = clock or label_clock()
        self.eviction_fraction = eviction_fraction
        self.archive_max_attempts = archive_max_attempts

        self._pending: Dict[str, int] = {}
        self._pending_lock = threading.Lock()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._pressure = threading.Event()

        self.ticks = 0
        buffer.set_pressure_callback(self.request_eviction)

    @property
    def active_label(self) -> str:
        return self.active_date.get()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pending_labels(self) -> List[str]:
        with self._pending_lock:
            return list(self._pending)

    def request_eviction(self) -> None:
        """Wake the scheduler thread to evict; safe to call from any thread."""
        self._pressure.set()
        self._wake.set()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="FlushScheduler", daemon=True)
        self._thread.start()
        logger.info(f"FlushScheduler started: interval {self.interval}s, active date {self.active_label}")

    def stop(self, timeout: float = 5.0):
        """
        Stop ticking, then run a final drain bounded by timeout.
        """
        self._stop_event.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

        final = threading.Thread(target=self._final_flush, name="FinalFlush", daemon=True)
        final.start()
        final.join(timeout=timeout)
        if final.is_alive():
            logger.warning(f"Final flush still running after {timeout}s, abandoning it")
        else:
            logger.info("FlushScheduler stopped after final flush")

    def _final_flush(self):
        try:
            self.buffer.flush()
        except Exception as e:
            logger.error(f"final flush failed: {e}")

    def _run(self):
        """Scheduler thread main loop."""
        next_tick = time.monotonic() + self.interval
        while not self._stop_event.is_set():
            self._wake.wait(max(0.0, next_tick - time.monotonic()))
            self._wake.clear()
            if self._stop_event.is_set():
                break

            if self._pressure.is_set():
                self._pressure.clear()
                try:
                    self.buffer.evict(self.eviction_fraction)
                except Exception as e:
                    logger.error(f"eviction failed: {e}")

            if time.monotonic() >= next_tick:
                self.tick()
                next_tick += self.interval
                if next_tick < time.monotonic():
                    next_tick = time.monotonic() + self.interval

    def tick(self):
        """One flush + rollover pass. Never raises."""
        try:
            self.buffer.flush()
        except Exception as e:
            logger.error(f"flush statistics error! {e}")

        try:
            self.check_rollover()
        except Exception as e:
            logger.error(f"rollover check error! {e}")

        self.ticks += 1

    def check_rollover(self):
        today = self.clock()
        active = self.active_date.get()

        if today != active:
            with self._pending_lock:
                self._pending.setdefault(active, 0)
                self._pending.pop(today, None)
            self.active_date.set(today)
            logger.info(f"Date rollover {active} -> {today}, {active} pending archive")
            return

        for label in self.pending_labels():
            if self.pipeline.submit(label, self._on_archived):
                logger.debug(f"Queued {label} for archiving")

    def _on_archived(self, result: ArchiveResult):
        """Pipeline callback, runs on an archive worker thread."""
        label = result.label
        with self._pending_lock:
            if label not in self._pending:
                return

            if result.status.settled:
                del self._pending[label]
                logger.info(f"Archive of {label} settled: {result.message}")
                return

            attempts = self._pending[label] + 1
            if self.archive_max_attempts and attempts >= self.archive_max_attempts:
                del self._pending[label]
                logger.error(f"Giving up archiving {label} after {attempts} attempts: {result.message}")
            else:
                self._pending[label] = attempts
                logger.warning(f"Archive of {label} failed (attempt {attempts}), will retry: {result.message}")
