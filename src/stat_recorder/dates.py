"""
Date labels

A label is a calendar day formatted as YYYYMMDD. It names both the day
directory under file_dir and the archive written for it.
"""

import threading
from datetime import datetime, timezone
from typing import Callable

LABEL_FORMAT = '%Y%m%d'


def today_label(utc: bool = False) -> str:
    """Current calendar day as a label (local time unless utc)."""
    now = datetime.now(timezone.utc) if utc else datetime.now()
    return now.strftime(LABEL_FORMAT)


def label_clock(utc: bool = False) -> Callable[[], str]:
    """Zero-argument clock returning today's label."""
    return lambda: today_label(utc)


class ActiveDate:
    """
    Holds the label considered "today".

    Shared by the scheduler (the only writer), the archive pipeline and the
    recorder facade.
    """

    def __init__(self, label: str):
        self._label = label
        self._lock = threading.Lock()

    def get(self) -> str:
        with self._lock:
            return self._label

    def set(self, label: str) -> None:
        with self._lock:
            self._label = label

    def __str__(self) -> str:
        return self.get()
