# =============================================================================
# clinic_core/offline/config.py
# Settings, Wiring and Singleton Accessor
# =============================================================================
"""
Sync layer configuration.

Settings are resolved in order:
    defaults -> optional TOML file ([api], [sync]) -> .env -> environment

Expected TOML format:
    [api]
    base_url = "https://clinic.example.com"
    api_key = "your_api_key"
    timeout = 10

    [sync]
    db_path = "local_data/clinic_sync.db"
    health_interval = 300
    drain_interval = 300
    max_attempts = 3
    source_timeout = 5
    snapshot_dir = "data"
    load_attempts = 3
    load_retry_delay = 1
    connectivity_check = false
"""

from __future__ import annotations
import os
import threading
import time
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import logging

import toml
from dotenv import load_dotenv

from clinic_core.api import APIConfig, RemoteAPIClient
from clinic_core.errors import ConfigurationError, ErrorContext
from clinic_core.offline.key_value_store import KeyValueStore
from clinic_core.offline.mutation_queue import MutationQueue
from clinic_core.offline.network_probe import NetworkProbe, internet_reachable
from clinic_core.offline.patient_records import transform_patient_payload
from clinic_core.offline.scheduler import Scheduler, ThreadScheduler
from clinic_core.offline.source_resolver import (
    DataSource,
    ResolvedData,
    SourceResolver,
    embedded_source,
    json_files_source,
    remote_source,
    save_snapshot,
    store_source,
)
from clinic_core.offline.sync_coordinator import SyncCoordinator
from clinic_core.offline.sync_state import SyncContext

logger = logging.getLogger(__name__)

# Bundled snapshots shipped with the application, most specific first
BUNDLED_PATIENT_FILES = (
    "sample-patients-test.json",
    "patients_backup.json",
    "sample-patient-data.json",
    "patients/index.json",
)

# Keys under which earlier versions persisted the patient collection
CACHED_PATIENT_KEYS = ("patientsData", "patients_backup", "stomadiagnosis_patients")
PATIENT_SNAPSHOT_KEY = "patientsData"


@dataclass
class SyncSettings:
    """Resolved sync layer settings."""
    api_base_url: str = "http://localhost:5059"
    api_key: Optional[str] = None
    api_timeout: float = 10.0
    db_path: str = "local_data/clinic_sync.db"
    health_interval: float = 300.0
    drain_interval: float = 300.0
    max_attempts: int = 3
    source_timeout: float = 5.0
    snapshot_dir: Optional[str] = None
    load_attempts: int = 3
    load_retry_delay: float = 1.0
    connectivity_check: bool = False


# Setting -> (environment variable, TOML section, TOML key)
_SETTING_SOURCES = {
    "api_base_url": ("CLINIC_API_BASE_URL", "api", "base_url"),
    "api_key": ("CLINIC_API_KEY", "api", "api_key"),
    "api_timeout": ("CLINIC_API_TIMEOUT", "api", "timeout"),
    "db_path": ("CLINIC_SYNC_DB_PATH", "sync", "db_path"),
    "health_interval": ("CLINIC_HEALTH_INTERVAL", "sync", "health_interval"),
    "drain_interval": ("CLINIC_DRAIN_INTERVAL", "sync", "drain_interval"),
    "max_attempts": ("CLINIC_MAX_ATTEMPTS", "sync", "max_attempts"),
    "source_timeout": ("CLINIC_SOURCE_TIMEOUT", "sync", "source_timeout"),
    "snapshot_dir": ("CLINIC_SNAPSHOT_DIR", "sync", "snapshot_dir"),
    "load_attempts": ("CLINIC_LOAD_ATTEMPTS", "sync", "load_attempts"),
    "load_retry_delay": ("CLINIC_LOAD_RETRY_DELAY", "sync", "load_retry_delay"),
    "connectivity_check": ("CLINIC_CONNECTIVITY_CHECK", "sync", "connectivity_check"),
}

_POSITIVE_SETTINGS = {
    "api_timeout", "health_interval", "drain_interval", "max_attempts",
    "source_timeout", "load_attempts",
}
_NON_NEGATIVE_SETTINGS = {"load_retry_delay"}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return toml.load(str(path))
    except (OSError, toml.TomlDecodeError) as e:
        raise ConfigurationError(
            f"Cannot read settings file {path}: {e}",
            config_key=str(path),
            expected_type="TOML file",
        ) from e


def _coerce(name: str, value: Any, kind: type) -> Any:
    if value is None or value == "":
        return None
    try:
        if kind is bool:
            coerced = _parse_bool(value)
        elif kind is int:
            coerced = int(value)
        elif kind is float:
            coerced = float(value)
        else:
            coerced = str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {name}: {value!r}",
            config_key=name,
            expected_type=kind.__name__,
        ) from e

    if name in _POSITIVE_SETTINGS and coerced <= 0:
        raise ConfigurationError(
            f"{name} must be positive, got {coerced}",
            config_key=name,
            expected_type=f"positive {kind.__name__}",
        )
    if name in _NON_NEGATIVE_SETTINGS and coerced < 0:
        raise ConfigurationError(
            f"{name} must not be negative, got {coerced}",
            config_key=name,
            expected_type=f"non-negative {kind.__name__}",
        )
    return coerced


def load_settings(path: Optional[Union[str, Path]] = None) -> SyncSettings:
    """
    Load settings from an optional TOML file and the environment.

    Args:
        path: TOML settings file; a missing file is an error only when given

    Raises:
        ConfigurationError: unreadable file or invalid value
    """
    file_values: Dict[str, Any] = {}
    if path is not None:
        file_values = _read_toml(Path(path))

    load_dotenv()

    kinds = {
        "api_base_url": str, "api_key": str, "api_timeout": float,
        "db_path": str, "health_interval": float, "drain_interval": float,
        "max_attempts": int, "source_timeout": float, "snapshot_dir": str,
        "load_attempts": int, "load_retry_delay": float, "connectivity_check": bool,
    }

    settings = SyncSettings()
    for setting in fields(SyncSettings):
        env_var, section, key = _SETTING_SOURCES[setting.name]
        raw = os.environ.get(env_var)
        if raw is None:
            raw = (file_values.get(section) or {}).get(key)
        value = _coerce(setting.name, raw, kinds[setting.name])
        if value is not None:
            setattr(settings, setting.name, value)

    logger.debug(
        f"Sync settings: api={settings.api_base_url}, db={settings.db_path}, "
        f"drain every {settings.drain_interval}s"
    )
    return settings


# =============================================================================
# WIRING
# =============================================================================

def build_sync_coordinator(
    settings: Optional[SyncSettings] = None,
    scheduler: Optional[Scheduler] = None,
    remote: Optional[RemoteAPIClient] = None,
    store: Optional[KeyValueStore] = None,
) -> SyncCoordinator:
    """
    Wire store, queue, context, probe and remote into a SyncCoordinator.

    The coordinator is returned unstarted; call start() to begin health
    checks and periodic drains.
    """
    settings = settings or load_settings()
    scheduler = scheduler or ThreadScheduler()
    store = store or KeyValueStore(settings.db_path)
    remote = remote or RemoteAPIClient(
        APIConfig(
            base_url=settings.api_base_url,
            api_key=settings.api_key,
            timeout=settings.api_timeout,
        )
    )

    queue = MutationQueue(store, max_attempts=settings.max_attempts)
    context = SyncContext.init(store, pending_count=queue.size())
    probe = NetworkProbe(
        remote.health_check,
        scheduler=scheduler,
        context=context,
        check_interval=settings.health_interval,
        connectivity_check=internet_reachable if settings.connectivity_check else None,
    )
    return SyncCoordinator(
        store,
        remote,
        probe=probe,
        queue=queue,
        context=context,
        scheduler=scheduler,
        drain_interval=settings.drain_interval,
    )


def build_patient_sources(
    remote,
    store,
    snapshot_dir: Optional[Union[str, Path]] = None,
    embedded: Optional[Callable[[], Any]] = None,
) -> List[DataSource]:
    """
    Cold-start chain for the patient collection.

    Order: remote API, bundled JSON snapshots, embedded data, local cache.
    """
    sources = [remote_source(remote, "patient", collection_key="patients")]
    if snapshot_dir is not None:
        base = Path(snapshot_dir)
        sources.append(json_files_source("bundled", [base / name for name in BUNDLED_PATIENT_FILES]))
    if embedded is not None:
        sources.append(embedded_source(embedded))
    sources.append(store_source(store, CACHED_PATIENT_KEYS))
    return sources


def resolve_patients(
    coordinator: SyncCoordinator,
    settings: Optional[SyncSettings] = None,
    embedded: Optional[Callable[[], Any]] = None,
) -> ResolvedData:
    """
    Load the patient collection from the first usable source.

    Records are brought into the canonical patient shape. A collection
    that did not come from the local cache is saved there for the next
    cold start.

    Raises:
        ExhaustedSourcesError: no source produced a valid collection
    """
    settings = settings or SyncSettings()
    resolver = SourceResolver(timeout=settings.source_timeout, transform=transform_patient_payload)
    try:
        resolved = resolver.resolve(
            build_patient_sources(
                coordinator.remote,
                coordinator.store,
                snapshot_dir=settings.snapshot_dir,
                embedded=embedded,
            )
        )
    finally:
        resolver.shutdown()

    if resolved.source_name != "local_cache":
        save_snapshot(coordinator.store, PATIENT_SNAPSHOT_KEY, resolved)
    return resolved


def resolve_patients_with_retry(
    coordinator: SyncCoordinator,
    settings: Optional[SyncSettings] = None,
    embedded: Optional[Callable[[], Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ResolvedData:
    """
    resolve_patients() retried up to settings.load_attempts times, waiting
    settings.load_retry_delay seconds between attempts.

    Raises:
        ExhaustedSourcesError: the last attempt also found no valid source
    """
    settings = settings or SyncSettings()
    attempts = settings.load_attempts

    for attempt in range(1, attempts + 1):
        last = attempt == attempts
        with ErrorContext(f"Patient load attempt {attempt}/{attempts}", recoverable=not last):
            return resolve_patients(coordinator, settings, embedded)
        logger.info(f"Retrying patient load in {settings.load_retry_delay}s")
        sleep(settings.load_retry_delay)


# Singleton accessor
_sync_coordinator: Optional[SyncCoordinator] = None
_sync_coordinator_lock = threading.Lock()


def get_sync_coordinator() -> SyncCoordinator:
    """
    Get the global SyncCoordinator instance.

    Returns:
        Started SyncCoordinator singleton
    """
    global _sync_coordinator
    if _sync_coordinator is None:
        with _sync_coordinator_lock:
            if _sync_coordinator is None:
                coordinator = build_sync_coordinator()
                coordinator.start()
                _sync_coordinator = coordinator
    return _sync_coordinator
