# =============================================================================
# clinic_core/offline/source_resolver.py
# Prioritized Multi-Source Data Resolution
# =============================================================================
"""
SourceResolver - picks where "the" entity collection comes from.

Sources are tried strictly in list order. Each fetch is bounded by a
timeout, the payload is normalized and validated, and the first valid
payload wins. Invalid payloads are treated exactly like fetch errors.
Payloads from different sources are never merged.

Typical cold-start chain:
    remote API -> bundled JSON snapshots -> embedded data -> local cache
"""

from __future__ import annotations
import json
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging

import pandas as pd

from clinic_core.errors import ExhaustedSourcesError, SourceValidationError

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION_KEY = "patients"
DEFAULT_ID_FIELDS = ("id",)


@dataclass(frozen=True)
class DataSource:
    """A named provider of an entity collection."""
    name: str
    fetch: Callable[[], Any]


@dataclass
class ResolvedData:
    """The winning payload and where it came from."""
    data: Dict[str, Any]
    source_name: str
    collection_key: str = DEFAULT_COLLECTION_KEY
    resolved_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def records(self) -> List[Dict[str, Any]]:
        return self.data[self.collection_key]

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data.get("metadata") or {}

    def to_dataframe(self) -> pd.DataFrame:
        """Collection as a DataFrame, one row per record."""
        return pd.DataFrame(self.records)


# =============================================================================
# VALIDATION
# =============================================================================

def normalize_payload(payload: Any, collection_key: str = DEFAULT_COLLECTION_KEY) -> Any:
    """
    Lift common alternative shapes into {collection_key: [...]}.

    Accepted shapes:
        {collection_key: [...], "metadata": {...}}   (returned as is)
        [...]                                        (bare list)
        {"data": [...], "metadata": {...}}           (generic envelope)

    Anything else is returned unchanged and left to validation.
    """
    if isinstance(payload, list):
        return {
            collection_key: payload,
            "metadata": {"totalRecords": len(payload)},
        }

    if isinstance(payload, dict) and collection_key not in payload:
        if isinstance(payload.get("data"), list):
            normalized = {collection_key: payload["data"]}
            if "metadata" in payload:
                normalized["metadata"] = payload["metadata"]
            return normalized

    return payload


def validate_payload(
    payload: Any,
    collection_key: str = DEFAULT_COLLECTION_KEY,
    id_fields: Sequence[str] = DEFAULT_ID_FIELDS,
) -> None:
    """
    Check the shape of a source payload.

    Rules:
        - payload is a mapping
        - payload[collection_key] is a non-empty list of mappings
        - at least one record carries a non-empty id field

    Raises:
        SourceValidationError describing the first rule that failed
    """
    if not isinstance(payload, dict):
        raise SourceValidationError(
            f"Payload must be an object, got {type(payload).__name__}",
            expected="object",
        )

    records = payload.get(collection_key)
    if not isinstance(records, list):
        raise SourceValidationError(
            f"Missing '{collection_key}' list",
            expected=f"{collection_key}: list",
        )

    if not records:
        raise SourceValidationError(f"'{collection_key}' is empty", expected="non-empty list")

    if not all(isinstance(record, dict) for record in records):
        raise SourceValidationError(
            f"Every entry of '{collection_key}' must be an object",
            expected="list of objects",
        )

    if not any(_has_id(record, id_fields) for record in records):
        raise SourceValidationError(
            f"No record in '{collection_key}' carries any of {list(id_fields)}",
            expected="identified records",
        )


def _has_id(record: Dict[str, Any], id_fields: Sequence[str]) -> bool:
    for name in id_fields:
        value = record.get(name)
        if value is not None and str(value).strip() != "":
            return True
    return False


def is_valid_payload(
    payload: Any,
    collection_key: str = DEFAULT_COLLECTION_KEY,
    id_fields: Sequence[str] = DEFAULT_ID_FIELDS,
) -> bool:
    """Boolean form of validate_payload()."""
    try:
        validate_payload(payload, collection_key, id_fields)
        return True
    except SourceValidationError:
        return False


# =============================================================================
# RESOLVER
# =============================================================================

class SourceResolver:
    """
    First-match-wins resolution over an ordered list of DataSource.

    Usage:
        resolver = SourceResolver(timeout=5)
        resolved = resolver.resolve([
            remote_source(client, "patient"),
            json_file_source("bundled", "data/patients_backup.json"),
            store_source(store, ["patientsData"]),
        ])
        resolved.source_name  # e.g. "bundled"
    """

    DEFAULT_TIMEOUT = 5.0

    def __init__(
        self,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        collection_key: str = DEFAULT_COLLECTION_KEY,
        id_fields: Sequence[str] = DEFAULT_ID_FIELDS,
        max_workers: int = 4,
        transform: Optional[Callable[[Dict[str, Any], str], Dict[str, Any]]] = None,
    ):
        """
        Args:
            timeout: Seconds allowed per fetch (None for no bound)
            collection_key: Key holding the record list
            id_fields: Fields any of which identifies a record
            max_workers: Fetch threads
            transform: Optional transform(payload, source_name) applied to
                the winning payload after validation
        """
        self.timeout = timeout
        self.collection_key = collection_key
        self.id_fields = tuple(id_fields)
        self.transform = transform
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="SourceFetch")
        self.last_source: Optional[str] = None
        self.last_attempts: List[Tuple[str, str]] = []

    def resolve(self, sources: Iterable[DataSource]) -> ResolvedData:
        """
        Return the first validated payload.

        Raises:
            ExhaustedSourcesError: every source errored, timed out or was invalid
        """
        attempts: List[Tuple[str, str]] = []

        for source in sources:
            logger.debug(f"Trying data source: {source.name}")
            try:
                payload = self._fetch(source)
                payload = normalize_payload(payload, self.collection_key)
                validate_payload(payload, self.collection_key, self.id_fields)
                if self.transform is not None:
                    payload = self.transform(payload, source.name)
            except Exception as e:
                logger.warning(f"Data source '{source.name}' unusable: {e}")
                attempts.append((source.name, str(e)))
                continue

            self.last_source = source.name
            self.last_attempts = attempts + [(source.name, "ok")]
            logger.info(
                f"Resolved {len(payload[self.collection_key])} {self.collection_key} "
                f"from '{source.name}'"
            )
            return ResolvedData(
                data=payload,
                source_name=source.name,
                collection_key=self.collection_key,
            )

        self.last_source = None
        self.last_attempts = attempts
        raise ExhaustedSourcesError(
            "No data source produced a valid collection",
            attempted=[name for name, _ in attempts],
            details={"errors": dict(attempts)},
        )

    def _fetch(self, source: DataSource) -> Any:
        if self.timeout is None:
            return source.fetch()

        future = self._executor.submit(source.fetch)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            raise TimeoutError(f"fetch exceeded {self.timeout}s")

    def get_load_info(self) -> Dict[str, Any]:
        """Describe the most recent resolution for diagnostics."""
        return {
            "source": self.last_source,
            "attempts": [
                {"source": name, "result": result} for name, result in self.last_attempts
            ],
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


# =============================================================================
# SOURCE FACTORIES
# =============================================================================

def remote_source(
    client,
    entity: str,
    name: str = "api",
    collection_key: Optional[str] = None,
) -> DataSource:
    """Bulk collection from the remote API, wrapped in the expected envelope."""
    collection_key = collection_key or f"{entity}s"

    def fetch():
        records = client.list(entity)
        return {collection_key: records, "metadata": {"source": name}}

    return DataSource(name=name, fetch=fetch)


def _read_json_file(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def json_file_source(name: str, path: Union[str, Path]) -> DataSource:
    """A bundled JSON snapshot on disk."""
    path = Path(path)
    return DataSource(name=name, fetch=lambda: _read_json_file(path))


def json_files_source(
    name: str,
    paths: Sequence[Union[str, Path]],
    collection_key: str = DEFAULT_COLLECTION_KEY,
    id_fields: Sequence[str] = DEFAULT_ID_FIELDS,
) -> DataSource:
    """
    Several bundled snapshots tried in order as a single source.

    The first file that parses and validates is returned.
    """
    candidates = [Path(p) for p in paths]

    def fetch():
        last_error: Optional[Exception] = None
        for path in candidates:
            try:
                payload = normalize_payload(_read_json_file(path), collection_key)
                validate_payload(payload, collection_key, id_fields)
                logger.debug(f"Loaded bundled snapshot {path}")
                return payload
            except (OSError, ValueError, SourceValidationError) as e:
                logger.debug(f"Bundled snapshot {path} unusable: {e}")
                last_error = e
        raise last_error or FileNotFoundError("no bundled snapshot files configured")

    return DataSource(name=name, fetch=fetch)


def embedded_source(factory: Callable[[], Any], name: str = "embedded") -> DataSource:
    """Data compiled into the application."""
    return DataSource(name=name, fetch=factory)


def store_source(
    store,
    keys: Sequence[str],
    name: str = "local_cache",
    collection_key: str = DEFAULT_COLLECTION_KEY,
    id_fields: Sequence[str] = DEFAULT_ID_FIELDS,
) -> DataSource:
    """
    Previously persisted collections in the KeyValueStore.

    Keys are tried in order; the first usable value wins.
    """
    def fetch():
        for key in keys:
            value = store.get(key)
            if value is None:
                continue
            payload = normalize_payload(value, collection_key)
            if is_valid_payload(payload, collection_key, id_fields):
                logger.debug(f"Loaded cached collection from key '{key}'")
                return payload
            logger.debug(f"Cached value under '{key}' is not a valid collection")
        raise LookupError(f"no valid cached collection under {list(keys)}")

    return DataSource(name=name, fetch=fetch)


def save_snapshot(store, key: str, resolved: ResolvedData) -> bool:
    """
    Persist a resolved collection so store_source can serve the next cold start.

    Returns:
        True if the snapshot was written
    """
    snapshot = dict(resolved.data)
    snapshot["savedAt"] = datetime.now().isoformat()
    snapshot["source"] = resolved.source_name
    saved = store.set(key, snapshot)
    if saved:
        logger.info(f"Saved {resolved.source_name} snapshot to '{key}'")
    else:
        logger.warning(f"Could not save snapshot to '{key}'")
    return saved
