# =============================================================================
# clinic_core/offline/results.py
# Typed Results for Sync Coordinator Operations
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from clinic_core.errors import ClinicSyncError


class ResultStatus(Enum):
    """Outcome of a coordinator call as seen by the application."""
    CONFIRMED = "confirmed"     # Remote system acknowledged the change
    QUEUED = "queued"           # Applied locally, waiting for sync
    FAILED = "failed"           # Nothing usable could be produced


@dataclass
class SyncResult:
    """
    Standard result container for coordinator operations.

    A QUEUED result is a success from the user's point of view: the change
    is visible locally and will be replayed against the remote system.
    """
    status: ResultStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def __bool__(self) -> bool:
        return self.success

    @property
    def success(self) -> bool:
        return self.status != ResultStatus.FAILED

    @property
    def queued(self) -> bool:
        return self.status == ResultStatus.QUEUED

    @property
    def confirmed(self) -> bool:
        return self.status == ResultStatus.CONFIRMED

    @classmethod
    def ok(cls, data: Any = None, metadata: Dict[str, Any] = None) -> SyncResult:
        """Create a confirmed result"""
        return cls(status=ResultStatus.CONFIRMED, data=data, metadata=metadata)

    @classmethod
    def pending(cls, data: Any = None, metadata: Dict[str, Any] = None) -> SyncResult:
        """Create a queued-for-sync result"""
        return cls(status=ResultStatus.QUEUED, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str = "UNKNOWN",
        metadata: Dict[str, Any] = None
    ) -> SyncResult:
        """Create a failed result"""
        return cls(
            status=ResultStatus.FAILED,
            error=error,
            error_code=error_code,
            metadata=metadata,
        )

    @classmethod
    def from_exception(cls, e: Exception) -> SyncResult:
        """Create a failed result from an exception"""
        if isinstance(e, ClinicSyncError):
            return cls(
                status=ResultStatus.FAILED,
                error=e.message,
                error_code=e.code,
                metadata=e.details,
            )
        return cls(
            status=ResultStatus.FAILED,
            error=str(e),
            error_code="EXCEPTION",
        )
