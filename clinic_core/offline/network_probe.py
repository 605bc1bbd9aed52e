# =============================================================================
# clinic_core/offline/network_probe.py
# Connectivity Detection for the Sync Layer
# =============================================================================
"""
NetworkProbe - tracks whether the remote API is usable.

Two signals feed one state:
- passive connectivity reports (report_connectivity), applied immediately
- active health checks against the API, run on an injected Scheduler

Transitions are debounced: callbacks fire only when the effective online
flag actually changes, so one reconnect produces exactly one notification
no matter how many signals report it.
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from clinic_core.offline.scheduler import ScheduledTask, Scheduler
from clinic_core.offline.sync_state import SyncContext

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Network and API reachable
    OFFLINE = "offline"         # No connectivity
    DEGRADED = "degraded"       # Network OK but API unavailable
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


DEFAULT_INTERNET_HOSTS: Tuple[Tuple[str, int], ...] = (
    ("8.8.8.8", 53),        # Google DNS
    ("1.1.1.1", 53),        # Cloudflare DNS
    ("208.67.222.222", 53), # OpenDNS
)


def internet_reachable(
    hosts: Sequence[Tuple[str, int]] = DEFAULT_INTERNET_HOSTS,
    timeout: float = 3.0,
) -> bool:
    """
    Check raw network connectivity by opening a TCP socket to well-known hosts.

    Returns:
        True if any host accepted the connection
    """
    for host, port in hosts:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            continue
    return False


class NetworkProbe:
    """
    Online/offline state source for the Sync Coordinator.

    Usage:
        probe = NetworkProbe(client.health_check, scheduler=ThreadScheduler())
        probe.register_callback(lambda online: ...)
        probe.start()
        probe.is_online()
    """

    CHECK_INTERVAL = 300        # Seconds between active health checks

    def __init__(
        self,
        health_check: Callable[[], bool],
        scheduler: Optional[Scheduler] = None,
        context: Optional[SyncContext] = None,
        check_interval: float = CHECK_INTERVAL,
        connectivity_check: Optional[Callable[[], bool]] = None,
    ):
        """
        Args:
            health_check: Active liveness check of the remote API
            scheduler: Runs the periodic health check
            context: Shared SyncContext; is_online is written here
            check_interval: Seconds between health checks
            connectivity_check: Optional raw network check run before the
                health check (e.g. internet_reachable) to tell OFFLINE
                from DEGRADED
        """
        self._health_check = health_check
        self._connectivity_check = connectivity_check
        self._scheduler = scheduler
        self.context = context or SyncContext()
        self.check_interval = check_interval

        self._state = ConnectionState()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[bool], None]] = []
        self._task: Optional[ScheduledTask] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    def is_online(self) -> bool:
        """Last known connectivity, without performing any I/O."""
        return self._state.status == ConnectionStatus.ONLINE

    def start(self, initial_check: bool = True) -> None:
        """Run an initial check and schedule the periodic ones."""
        if initial_check:
            self.check_now()

        if self._scheduler is not None and self._task is None:
            self._task = self._scheduler.schedule_repeating(
                self.check_interval, self.check_now, name="NetworkProbe"
            )
        logger.info(f"NetworkProbe started. Status: {self._state.status.value}")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.debug("NetworkProbe stopped")

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def report_connectivity(self, online: bool) -> bool:
        """
        Passive signal from the host environment (OS/network events).

        Returns:
            True if this caused a transition
        """
        status = ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE
        return self._update(status)

    def check_now(self) -> bool:
        """
        Active check: raw connectivity (if configured) then API health.

        Returns:
            The resulting online flag
        """
        error = None
        try:
            if self._connectivity_check is not None and not self._connectivity_check():
                status = ConnectionStatus.OFFLINE
            elif self._health_check():
                status = ConnectionStatus.ONLINE
            else:
                status = ConnectionStatus.DEGRADED
        except Exception as e:
            error = str(e)
            logger.debug(f"Health check raised: {e}")
            status = ConnectionStatus.OFFLINE

        self._update(status, error_message=error, checked=True)
        return status == ConnectionStatus.ONLINE

    def force_offline(self) -> None:
        """Force offline mode (for testing or user preference)."""
        self._update(ConnectionStatus.OFFLINE)
        logger.info("Forced offline mode")

    def _update(
        self,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
        checked: bool = False,
    ) -> bool:
        with self._lock:
            now = datetime.now()
            old_status = self._state.status
            was_online = old_status == ConnectionStatus.ONLINE

            self._state.status = status
            if checked:
                self._state.last_check = now
            if status == ConnectionStatus.ONLINE:
                self._state.last_online = now
                self._state.consecutive_failures = 0
                self._state.error_message = None
            else:
                if checked:
                    self._state.consecutive_failures += 1
                self._state.error_message = error_message

            now_online = status == ConnectionStatus.ONLINE
            changed = was_online != now_online
            self.context.set_online(now_online)

        if old_status != status:
            logger.info(f"Connection status changed: {old_status.value} -> {status.value}")

        if changed:
            self._notify_callbacks(now_online)
        return changed

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Register a callback for online/offline transitions.

        Args:
            callback: Called with True on OFFLINE->ONLINE, False on ONLINE->OFFLINE
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[bool], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, online: bool) -> None:
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online(),
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
