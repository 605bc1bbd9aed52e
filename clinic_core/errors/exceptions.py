# =============================================================================
# clinic_core/errors/exceptions.py
# Custom Exception Hierarchy for the Clinic Sync Layer
# =============================================================================

from typing import Optional, Dict, Any


class ClinicSyncError(Exception):
    """
    Base exception for all sync layer errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "SYNC_NET_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# REMOTE / NETWORK EXCEPTIONS
# =============================================================================

class TransientNetworkError(ClinicSyncError):
    """Timeout, refused connection or 5xx: the call may succeed later"""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="SYNC_NET_001",
            details=details,
            **kwargs,
        )
        self.status_code = status_code


class PermanentRemoteError(ClinicSyncError):
    """The remote system rejected the request (4xx validation and similar)"""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(
            message=message,
            code="SYNC_NET_002",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.status_code = status_code


# =============================================================================
# SOURCE RESOLUTION EXCEPTIONS
# =============================================================================

class SourceValidationError(ClinicSyncError):
    """Raised when a data source payload does not have the expected shape"""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        expected: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if source:
            details["source"] = source
        if expected:
            details["expected"] = expected

        super().__init__(
            message=message,
            code="SYNC_SRC_001",
            details=details,
            **kwargs,
        )


class ExhaustedSourcesError(ClinicSyncError):
    """Raised when every data source failed or returned invalid data"""

    def __init__(
        self,
        message: str,
        attempted: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if attempted:
            details["attempted"] = attempted

        super().__init__(
            message=message,
            code="SYNC_SRC_002",
            details=details,
            **kwargs,
        )
        self.attempted = attempted or []


# Name used by callers that think of the resolver in terms of "valid sources"
NoValidSourceError = ExhaustedSourcesError


# =============================================================================
# QUEUE EXCEPTIONS
# =============================================================================

class QueueCorruptionError(ClinicSyncError):
    """Raised when the persisted mutation queue cannot be read back"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key

        super().__init__(
            message=message,
            code="SYNC_QUEUE_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(ClinicSyncError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
