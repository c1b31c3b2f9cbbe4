"""
Access Guard - IP allowlist with hot reload

The allowlist lives in a TOML file:

    ips = ["10.0.0.5", "192.168.1.20"]

A watchdog polling observer stats the file every check_interval seconds and
reloads it when its modification time changes. Each reload builds a new
frozenset and swaps it in with a single assignment, so readers never see
a partial set.
A file that fails to load leaves the previous snapshot in place.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import toml
from watchdog.events import FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from .errors import ConfigReloadFailure
from .response import ApiResponse

logger = logging.getLogger(__name__)

# Checked in this order before falling back to the connection address
FORWARDING_HEADERS = (
    'X-Forwarded-For',
    'Proxy-Client-IP',
    'WL-Proxy-Client-IP',
    'HTTP_CLIENT_IP',
    'HTTP_X_FORWARDED_FOR',
)

LOOPBACK_ADDRESSES = frozenset({'127.0.0.1', '::1', '0:0:0:0:0:0:0:1'})

ILLEGAL_IP_MESSAGE = 'illegal ip address'

EMPTY_ALLOWLIST = 'ips = []\n'


def extract_client_ip(headers: Optional[Mapping[str, str]], remote_addr: Optional[str]) -> Optional[str]:
    """
    Client IP as seen through proxies.

    Header names match case-insensitively; empty and "unknown" values are
    skipped. A comma-separated value yields its first entry.
    """
    lowered = {str(name).lower(): value for name, value in (headers or {}).items()}

    ip = remote_addr
    for name in FORWARDING_HEADERS:
        value = lowered.get(name.lower())
        if value and value.strip() and value.strip().lower() != 'unknown':
            ip = value
            break

    if ip and ',' in ip:
        ip = ip.split(',')[0]
    return ip.strip() if ip else ip


@dataclass
class AccessDecision:
    """Allow/deny outcome; a deny carries the payload to send back"""
    allowed: bool
    ip: Optional[str]
    response: Optional[ApiResponse] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'ip': self.ip,
            'response': self.response.to_dict() if self.response else None,
        }


class AllowlistFileHandler(FileSystemEventHandler):
    """Forwards changes to the allowlist file to AccessGuard.poll"""

    def __init__(self, guard: 'AccessGuard'):
        self.guard = guard

    def _targets_allowlist(self, event) -> bool:
        name = self.guard.config_path.name
        paths = [event.src_path, getattr(event, 'dest_path', '')]
        return any(path and os.path.basename(os.fsdecode(path)) == name for path in paths)

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in ('created', 'modified', 'moved'):
            return
        if not self._targets_allowlist(event):
            return
        try:
            self.guard.poll()
        except Exception as e:
            logger.error(f"IP config check failed: {e}")


class AccessGuard:
    """
    Holds the current allowlist snapshot and keeps it in sync with its file.

    One writer (reload, under _reload_lock) replaces the snapshot; readers
    take the attribute without locking.
    """

    def __init__(
        self,
        config_path: Path,
        allow_localhost: bool = True,
        enabled: bool = True,
        check_interval: float = 5.0
    ):
        """
        Args:
            config_path: TOML allowlist file
            allow_localhost: Always allow loopback addresses
            enabled: When False every request is allowed
            check_interval: Seconds between modification checks
        """
        self.config_path = Path(config_path)
        self.allow_localhost = allow_localhost
        self.enabled = enabled
        self.check_interval = check_interval

        self._snapshot: FrozenSet[str] = LOOPBACK_ADDRESSES if allow_localhost else frozenset()
        self._reload_lock = threading.Lock()
        self._last_mtime_ns: Optional[int] = None

        self._observer: Optional[PollingObserver] = None

        self.reloads = 0
        self.reload_failures = 0

    @property
    def allowed_ips(self) -> FrozenSet[str]:
        return self._snapshot

    def _read_allowlist(self) -> FrozenSet[str]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = toml.load(f)
        except (OSError, ValueError) as e:
            raise ConfigReloadFailure(f"cannot load {self.config_path}: {e}") from e

        ips = data.get('ips', [])
        if not isinstance(ips, list) or not all(isinstance(ip, str) for ip in ips):
            raise ConfigReloadFailure(f"'ips' in {self.config_path} must be a list of strings")

        allowed = {ip.strip() for ip in ips if ip.strip()}
        if self.allow_localhost:
            allowed |= LOOPBACK_ADDRESSES
        return frozenset(allowed)

    def reload(self) -> bool:
        """
        Re-read the allowlist and swap in a new snapshot.

        Returns:
            True if the snapshot was replaced
        """
        with self._reload_lock:
            try:
                self._last_mtime_ns = os.stat(self.config_path).st_mtime_ns
                snapshot = self._read_allowlist()
            except (OSError, ConfigReloadFailure) as e:
                self.reload_failures += 1
                logger.error(f"IP config reload failed, keeping {len(self._snapshot)} allowed addresses: {e}")
                return False

            self._snapshot = snapshot
            self.reloads += 1

        logger.info(f"IP config loaded from {self.config_path}: {len(snapshot)} allowed addresses")
        logger.debug(f"Allowed IPs: {sorted(snapshot)}")
        return True

    def poll(self) -> bool:
        """Reload if the file's modification time changed since last seen."""
        try:
            mtime = os.stat(self.config_path).st_mtime_ns
        except FileNotFoundError:
            logger.debug(f"IP config {self.config_path} missing, keeping current snapshot")
            return False

        if mtime == self._last_mtime_ns:
            return False

        logger.info(f"IP config {self.config_path} changed, reloading")
        return self.reload()

    def check_ip(self, headers: Optional[Mapping[str, str]] = None,
                 remote_addr: Optional[str] = None) -> AccessDecision:
        """Classify a request against the current snapshot. Never blocks."""
        ip = extract_client_ip(headers, remote_addr)
        if not self.enabled:
            return AccessDecision(True, ip)

        snapshot = self._snapshot
        if ip is not None and ip in snapshot:
            logger.debug(f"IP [{ip}] allowed")
            return AccessDecision(True, ip)

        logger.warning(f"Rejected request from illegal IP [{ip}]")
        return AccessDecision(False, ip, ApiResponse.error(ILLEGAL_IP_MESSAGE, f"IP: {ip}"))

    def ensure_config_file(self):
        """Create an empty allowlist file if none exists."""
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(EMPTY_ALLOWLIST, encoding='utf-8')
        logger.info(f"Created empty IP config {self.config_path}")

    def start(self):
        """Load the allowlist and start watching its directory."""
        if self._observer is not None and self._observer.is_alive():
            return

        try:
            self.ensure_config_file()
        except OSError as e:
            logger.error(f"Cannot create IP config {self.config_path}: {e}")
        self.reload()

        observer = PollingObserver(timeout=self.check_interval)
        observer.schedule(AllowlistFileHandler(self), path=str(self.config_path.parent), recursive=False)
        try:
            observer.start()
        except OSError as e:
            logger.error(f"Cannot watch IP config {self.config_path}: {e}")
            return
        self._observer = observer
        logger.info(f"AccessGuard started (enabled={self.enabled}, interval {self.check_interval}s)")

    def stop(self, timeout: float = 5.0):
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None
        logger.info("AccessGuard stopped")
