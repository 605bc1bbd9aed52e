# =============================================================================
# clinic_core/errors/__init__.py
# Centralized Error Handling for the Clinic Sync Layer
# =============================================================================

from .exceptions import (
    ClinicSyncError,
    TransientNetworkError,
    PermanentRemoteError,
    SourceValidationError,
    ExhaustedSourcesError,
    NoValidSourceError,
    QueueCorruptionError,
    ConfigurationError,
)

from .handlers import (
    handle_error,
    error_boundary,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "ClinicSyncError",
    "TransientNetworkError",
    "PermanentRemoteError",
    "SourceValidationError",
    "ExhaustedSourcesError",
    "NoValidSourceError",
    "QueueCorruptionError",
    "ConfigurationError",
    # Handlers
    "handle_error",
    "error_boundary",
    "ErrorContext",
]
