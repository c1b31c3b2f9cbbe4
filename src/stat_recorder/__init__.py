"""
Stat Recorder - Buffered per-day statistics logging

Ingests small key-value records, buffers them in memory, appends them to
per-day CSV files on a fixed interval and zips each day once it is over.
An IP allowlist guard with hot reload protects the hosting service.

Layout on disk:

    file_dir/
    ├── 20240101/
    │   ├── metricA.csv      # one record per line, CRLF terminated
    │   └── metricB.csv
    ├── 20240101.zip         # written after the day rolls over
    └── 20240102/            # active day

Quick Start:
    from stat_recorder import StatisticsRecorder, load_config

    with StatisticsRecorder(load_config('config/stat-recorder.toml')) as recorder:
        recorder.append('metricA', 'v1')
"""

__version__ = "1.0.0"

from .errors import ValidationError, ConfigError, ConfigReloadFailure, PersistenceFailure
from .config import AppConfig, RecorderConfig, IpFilterConfig, load_config
from .dates import ActiveDate, today_label
from .write_buffer import WriteBuffer, BufferKey, BufferEntry, CacheStats
from .archive_pipeline import ArchivePipeline, ArchiveResult, ArchiveStatus
from .flush_scheduler import FlushScheduler
from .access_guard import AccessGuard, AccessDecision, extract_client_ip
from .response import ApiResponse
from .recorder import StatisticsRecorder

__all__ = [
    'ValidationError', 'ConfigError', 'ConfigReloadFailure', 'PersistenceFailure',
    'AppConfig', 'RecorderConfig', 'IpFilterConfig', 'load_config',
    'ActiveDate', 'today_label',
    'WriteBuffer', 'BufferKey', 'BufferEntry', 'CacheStats',
    'ArchivePipeline', 'ArchiveResult', 'ArchiveStatus',
    'FlushScheduler',
    'AccessGuard', 'AccessDecision', 'extract_client_ip',
    'ApiResponse',
    'StatisticsRecorder',
]
