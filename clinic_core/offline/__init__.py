# =============================================================================
# clinic_core/offline/__init__.py
# Offline-First Sync Layer for the Clinic Application
# =============================================================================
"""
Offline-First Sync Layer

The clinic keeps working when the backend is unreachable: writes are
applied locally and queued, then replayed in order once connectivity
returns.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                     OFFLINE-FIRST SYNC LAYER                     │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                  SyncCoordinator                          │  │
│   │        (CRUD per entity - apps use this only)             │  │
│   └──────────────────────────────────────────────────────────┘  │
│              │                │                 │                │
│              ▼                ▼                 ▼                │
│   ┌──────────────┐  ┌────────────────┐  ┌───────────────┐       │
│   │ NetworkProbe │  │ MutationQueue  │  │ RemoteAPI     │       │
│   │ (transitions)│  │ (FIFO, durable)│  │ Client (HTTP) │       │
│   └──────────────┘  └────────────────┘  └───────────────┘       │
│              │                │                                  │
│              ▼                ▼                                  │
│   ┌──────────────┐  ┌────────────────┐  ┌───────────────┐       │
│   │ SyncContext  │  │ KeyValueStore  │◄─│ SourceResolver│       │
│   │ (SyncState)  │  │ (SQLite)       │  │ (cold start)  │       │
│   └──────────────┘  └────────────────┘  └───────────────┘       │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from clinic_core.offline import get_sync_coordinator

coordinator = get_sync_coordinator()
result = coordinator.create("patient", {"name": "X"})
print(result.queued)                       # True while offline
print(coordinator.snapshot().pending_count)
"""

from clinic_core.offline.key_value_store import (
    KeyValueStore,
    CacheRecord,
)

from clinic_core.offline.source_resolver import (
    DataSource,
    ResolvedData,
    SourceResolver,
    normalize_payload,
    validate_payload,
    is_valid_payload,
    remote_source,
    json_file_source,
    json_files_source,
    embedded_source,
    store_source,
    save_snapshot,
)

from clinic_core.offline.mutation_queue import (
    MutationQueue,
    Operation,
    OperationType,
    DrainReport,
)

from clinic_core.offline.network_probe import (
    NetworkProbe,
    ConnectionStatus,
    internet_reachable,
)

from clinic_core.offline.sync_state import (
    SyncContext,
    SyncStateSnapshot,
)

from clinic_core.offline.scheduler import (
    Scheduler,
    ScheduledTask,
    ThreadScheduler,
)

from clinic_core.offline.results import (
    SyncResult,
    ResultStatus,
)

from clinic_core.offline.sync_coordinator import (
    SyncCoordinator,
    SyncEvent,
    SyncEventKind,
    filter_records,
)

from clinic_core.offline.config import (
    SyncSettings,
    load_settings,
    build_sync_coordinator,
    build_patient_sources,
    resolve_patients,
    resolve_patients_with_retry,
    get_sync_coordinator,
)

from clinic_core.offline.patient_records import (
    canonical_patient,
    transform_patient_payload,
)

__all__ = [
    # Durable Store
    "KeyValueStore",
    "CacheRecord",
    # Source Resolution
    "DataSource",
    "ResolvedData",
    "SourceResolver",
    "normalize_payload",
    "validate_payload",
    "is_valid_payload",
    "remote_source",
    "json_file_source",
    "json_files_source",
    "embedded_source",
    "store_source",
    "save_snapshot",
    # Mutation Queue
    "MutationQueue",
    "Operation",
    "OperationType",
    "DrainReport",
    # Connectivity
    "NetworkProbe",
    "ConnectionStatus",
    "internet_reachable",
    # Sync State
    "SyncContext",
    "SyncStateSnapshot",
    # Scheduling
    "Scheduler",
    "ScheduledTask",
    "ThreadScheduler",
    # Results
    "SyncResult",
    "ResultStatus",
    # Coordinator (Main API)
    "SyncCoordinator",
    "SyncEvent",
    "SyncEventKind",
    "filter_records",
    # Settings & Wiring
    "SyncSettings",
    "load_settings",
    "build_sync_coordinator",
    "build_patient_sources",
    "resolve_patients",
    "resolve_patients_with_retry",
    "get_sync_coordinator",
    # Patient Records
    "canonical_patient",
    "transform_patient_payload",
]
