# =============================================================================
# clinic_core/offline/sync_state.py
# Process-scoped Sync State
# =============================================================================
"""
SyncContext - the single SyncState instance shared by the Network Probe and
the Sync Coordinator.

Writers:
- NetworkProbe sets is_online
- SyncCoordinator sets pending_count and last_sync_at

Everyone else reads frozen snapshots.
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "sync:last_sync_at"


@dataclass(frozen=True)
class SyncStateSnapshot:
    """Read-only copy of the sync state for status indicators."""
    is_online: bool = False
    pending_count: int = 0
    last_sync_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "pending_count": self.pending_count,
            "last_sync_at": self.last_sync_at,
        }


class SyncContext:
    """
    Holder of the process-wide SyncState.

    Usage:
        context = SyncContext.init(store, pending_count=queue.size())
        context.snapshot().is_online
    """

    def __init__(self, store=None):
        self._state = SyncStateSnapshot()
        self._lock = threading.Lock()
        self._store = store

    @classmethod
    def init(cls, store=None, pending_count: int = 0, is_online: bool = False) -> SyncContext:
        """
        Build the context at startup.

        Args:
            store: KeyValueStore used to persist last_sync_at across restarts
            pending_count: Length of the persisted mutation queue
            is_online: Initial connectivity assumption
        """
        context = cls(store)
        last_sync_at = store.get(LAST_SYNC_KEY) if store is not None else None
        context._state = SyncStateSnapshot(
            is_online=is_online,
            pending_count=pending_count,
            last_sync_at=last_sync_at,
        )
        logger.debug(f"SyncContext initialized: {context._state}")
        return context

    def snapshot(self) -> SyncStateSnapshot:
        with self._lock:
            return self._state

    @property
    def is_online(self) -> bool:
        return self.snapshot().is_online

    def set_online(self, is_online: bool) -> bool:
        """
        Update connectivity.

        Returns:
            True if the value changed
        """
        with self._lock:
            if self._state.is_online == is_online:
                return False
            self._state = replace(self._state, is_online=is_online)
            return True

    def set_pending_count(self, pending_count: int) -> None:
        with self._lock:
            self._state = replace(self._state, pending_count=pending_count)

    def mark_synced(self, when: Optional[datetime] = None) -> str:
        """Record a successful sync and persist the timestamp."""
        stamp = (when or datetime.now()).isoformat()
        with self._lock:
            self._state = replace(self._state, last_sync_at=stamp)
        if self._store is not None:
            self._store.set(LAST_SYNC_KEY, stamp)
        return stamp
