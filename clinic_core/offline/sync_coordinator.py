# =============================================================================
# clinic_core/offline/sync_coordinator.py
# Sync Coordinator - Single CRUD API for Online/Offline Operations
# =============================================================================
"""
SyncCoordinator - the read/write contract used by the rest of the application.

Routing:
- Online writes go to the remote API and are mirrored into the local store.
  If the remote call fails for any reason the write is queued instead and
  the caller still gets a success ("queued for sync").
- Offline writes are applied to the local store and queued.
- Online reads refresh the local cache; failed or offline reads use it.
- Reconnecting (or the periodic timer) drains the queue through the same
  remote calls used by the online path.

Usage:
------
from clinic_core.offline import get_sync_coordinator

coordinator = get_sync_coordinator()
result = coordinator.create("patient", {"name": "X"})
result.queued      # True when offline
coordinator.snapshot().pending_count
"""

from __future__ import annotations
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging

import pandas as pd

from clinic_core.errors import (
    PermanentRemoteError,
    TransientNetworkError,
    error_boundary,
    handle_error,
)
from clinic_core.logging import LogContext
from clinic_core.offline.mutation_queue import (
    DrainReport,
    MutationQueue,
    Operation,
    OperationType,
)
from clinic_core.offline.results import SyncResult
from clinic_core.offline.scheduler import ScheduledTask, Scheduler
from clinic_core.offline.sync_state import SyncContext, SyncStateSnapshot

logger = logging.getLogger(__name__)

ENTITY_KEY_PREFIX = "entities:"
ID_MAP_KEY = "sync:id_map"
TEMP_ID_PREFIX = "temp_"

# Local-only bookkeeping fields never sent to the remote system
PENDING_FLAG = "_pending"
TEMP_ID_FIELD = "tempId"


class SyncEventKind(Enum):
    """Write completion events for sync badges."""
    QUEUED = "queued"
    CONFIRMED = "confirmed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class SyncEvent:
    """Emitted after every write, replay or dead-lettering."""
    kind: SyncEventKind
    entity: str
    operation_type: OperationType
    record_id: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    operation_id: Optional[str] = None


def generate_temp_id() -> str:
    """Transient id for records created before the remote system has seen them."""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def is_temp_id(record_id: Any) -> bool:
    return isinstance(record_id, str) and record_id.startswith(TEMP_ID_PREFIX)


def filter_records(records: List[Dict[str, Any]], filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Case-insensitive substring filtering; empty filter values are ignored.

    Example:
        filter_records(patients, {"name": "pap"}) matches "Papadopoulos"
    """
    active = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
    if not active:
        return list(records)

    def matches(record: Dict[str, Any]) -> bool:
        for key, value in active.items():
            field_value = record.get(key)
            if field_value in (None, ""):
                return False
            if str(value).lower() not in str(field_value).lower():
                return False
        return True

    return [record for record in records if matches(record)]


def _same_id(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def _outgoing(data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a write payload without the local bookkeeping fields."""
    return {k: v for k, v in data.items() if k not in (PENDING_FLAG, TEMP_ID_FIELD)}


def _remote_id_of(record: Any) -> Optional[Any]:
    if isinstance(record, dict) and record.get("id") not in (None, ""):
        return record["id"]
    return None


class SyncCoordinator:
    """
    Online/offline CRUD per entity type backed by a durable mutation queue.

    Args:
        store: KeyValueStore holding the local entity cache
        remote: Remote API client (create/update/delete/list)
        probe: NetworkProbe supplying connectivity and transitions
        queue: MutationQueue for writes that could not reach the remote
        context: Shared SyncContext (defaults to the probe's)
        scheduler: Runs the periodic drain attempt
        drain_interval: Seconds between periodic drain attempts
    """

    DRAIN_INTERVAL = 300

    def __init__(
        self,
        store,
        remote,
        probe=None,
        queue: Optional[MutationQueue] = None,
        context: Optional[SyncContext] = None,
        scheduler: Optional[Scheduler] = None,
        drain_interval: float = DRAIN_INTERVAL,
    ):
        self.store = store
        self.remote = remote
        self.probe = probe
        self.queue = queue or MutationQueue(store)
        if context is None:
            context = probe.context if probe is not None else SyncContext.init(store)
        self.context = context
        self.context.set_pending_count(self.queue.size())

        self._scheduler = scheduler
        self.drain_interval = drain_interval
        self._drain_task: Optional[ScheduledTask] = None

        self._cache_lock = threading.RLock()
        self._callbacks: List[Callable[[SyncEvent], None]] = []
        self._started = False

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def is_online(self) -> bool:
        if self.probe is not None:
            return self.probe.is_online()
        return self.context.is_online

    def start(self, start_probe: bool = True) -> None:
        """
        Subscribe to connectivity transitions and start periodic drains.

        Args:
            start_probe: Also start the probe's own checks
        """
        if self._started:
            return

        if self.probe is not None:
            self.probe.register_callback(self._on_connection_change)
            if start_probe:
                self.probe.start()

        if self._scheduler is not None:
            self._drain_task = self._scheduler.schedule_repeating(
                self.drain_interval, self._periodic_drain, name="SyncCoordinatorDrain"
            )

        self._started = True
        logger.info(
            f"SyncCoordinator started. Online: {self.is_online}, "
            f"pending: {self.queue.size()}"
        )

    def stop(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        if self.probe is not None:
            self.probe.unregister_callback(self._on_connection_change)
            self.probe.stop()
        self._started = False
        logger.info("SyncCoordinator stopped")

    def _on_connection_change(self, online: bool) -> None:
        """Drain once per OFFLINE -> ONLINE transition."""
        if online:
            logger.info("Connection restored, draining mutation queue")
            self.drain()

    @error_boundary(default_return=None)
    def _periodic_drain(self) -> None:
        if self.is_online and self.queue.size() > 0:
            self.drain()

    # =========================================================================
    # WRITES
    # =========================================================================

    def create(self, entity: str, data: Dict[str, Any]) -> SyncResult:
        """
        Create a record.

        Returns:
            CONFIRMED with the remote record, or QUEUED with the optimistic
            local record (carrying a temp id when none was supplied)
        """
        if not isinstance(data, dict):
            return SyncResult.fail(f"{entity} data must be a mapping", error_code="INVALID_INPUT")
        payload = _outgoing(data)
        local_id = payload.get("id") or generate_temp_id()
        op = Operation(OperationType.CREATE, entity, target_id=local_id, payload=payload)

        if self.is_online:
            try:
                remote_record = self.remote.create(entity, payload, idempotency_key=op.id)
            except (TransientNetworkError, PermanentRemoteError) as e:
                logger.warning(f"Remote create failed for {entity}, queuing: {e}")
            else:
                remote_id = _remote_id_of(remote_record)
                if remote_id is None and is_temp_id(local_id):
                    logger.warning(f"Remote create for {entity} returned no id, queuing")
                else:
                    record = self._confirmed_record(remote_record, payload, remote_id or local_id)
                    self._upsert_local(entity, record)
                    self._emit(SyncEventKind.CONFIRMED, op, record)
                    return SyncResult.ok(record, metadata={"source": "remote"})

        record = dict(payload, id=local_id)
        if is_temp_id(local_id):
            record[TEMP_ID_FIELD] = local_id
        record[PENDING_FLAG] = True
        return self._queue_write(op, record)

    def update(self, entity: str, record_id: Any, data: Dict[str, Any]) -> SyncResult:
        """Update a record by id (temp ids of queued creates are accepted)."""
        if not isinstance(data, dict):
            return SyncResult.fail(f"{entity} data must be a mapping", error_code="INVALID_INPUT")
        payload = _outgoing(data)
        op = Operation(OperationType.UPDATE, entity, target_id=str(record_id), payload=payload)

        remote_id = self._resolve_remote_id(record_id)
        if self.is_online and remote_id is not None:
            try:
                remote_record = self.remote.update(entity, remote_id, payload, idempotency_key=op.id)
            except (TransientNetworkError, PermanentRemoteError) as e:
                logger.warning(f"Remote update failed for {entity} {record_id}, queuing: {e}")
            else:
                still_queued = bool(self._queued_for(entity, {record_id, remote_id}))
                record = self._merge_local(entity, record_id, payload, remote_record, pending=still_queued)
                self._emit(SyncEventKind.CONFIRMED, op, record)
                return SyncResult.ok(record, metadata={"source": "remote"})

        record = self._merge_local(entity, record_id, payload, None, pending=True)
        return self._queue_write(op, record, mirror=False)

    def delete(self, entity: str, record_id: Any) -> SyncResult:
        """Delete a record by id."""
        op = Operation(OperationType.DELETE, entity, target_id=str(record_id))

        remote_id = self._resolve_remote_id(record_id)
        if self.is_online and remote_id is not None:
            try:
                self.remote.delete(entity, remote_id, idempotency_key=op.id)
            except (TransientNetworkError, PermanentRemoteError) as e:
                logger.warning(f"Remote delete failed for {entity} {record_id}, queuing: {e}")
            else:
                self._remove_local(entity, {str(record_id), str(remote_id)})
                self._emit(SyncEventKind.CONFIRMED, op, None)
                return SyncResult.ok(None, metadata={"source": "remote"})

        self._remove_local(entity, {str(record_id)})
        return self._queue_write(op, None, mirror=False)

    def _queue_write(
        self,
        op: Operation,
        record: Optional[Dict[str, Any]],
        mirror: bool = True,
    ) -> SyncResult:
        durable = self.queue.enqueue(op)
        if mirror and record is not None:
            self._upsert_local(op.entity, record)
        self.context.set_pending_count(self.queue.size())
        self._emit(SyncEventKind.QUEUED, op, record)
        return SyncResult.pending(
            record,
            metadata={"operation_id": op.id, "durable": durable},
        )

    # =========================================================================
    # READS
    # =========================================================================

    def list(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> SyncResult:
        """
        List records of an entity type.

        Online: remote result, which refreshes the cache. Offline or on
        remote failure: the cached copy, filtered locally.
        """
        filters = filters or {}

        if self.is_online:
            try:
                remote_records = self.remote.list(entity, filters)
            except (TransientNetworkError, PermanentRemoteError) as e:
                logger.warning(f"Online list failed for {entity}, using local cache: {e}")
            else:
                visible, extra = self._refresh_cache(entity, remote_records, partial=bool(filters))
                records = visible + filter_records(extra, filters)
                return SyncResult.ok(
                    records,
                    metadata={"source": "remote", "count": len(records)},
                )

        records = filter_records(self._load_local(entity), filters)
        return SyncResult.ok(records, metadata={"source": "cache", "count": len(records)})

    def list_frame(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
        """list() as a DataFrame; empty frame when nothing is available."""
        result = self.list(entity, filters)
        return pd.DataFrame(result.data or [])

    def get_local(self, entity: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Cached copy of a single record."""
        for record in self._load_local(entity):
            if _same_id(record.get("id"), record_id) or _same_id(record.get(TEMP_ID_FIELD), record_id):
                return record
        return None

    # =========================================================================
    # DRAIN
    # =========================================================================

    def drain(self) -> DrainReport:
        """Replay queued operations against the remote system."""
        if not self.is_online:
            logger.debug("Cannot drain: offline")
            report = DrainReport(skipped=True)
            report.finished_at = datetime.now().isoformat()
            return report

        if self.queue.size() == 0:
            return self.queue.drain(self._apply_operation)

        with LogContext(logger, f"Sync replay ({self.queue.size()} queued)"):
            report = self.queue.drain(self._apply_operation)

        self.context.set_pending_count(self.queue.size())
        for op in report.dead_lettered:
            handle_error(
                PermanentRemoteError(
                    f"{op.type.value} {op.entity} moved to dead-letter after {op.attempts} attempts",
                    details={"operation_id": op.id, "last_error": op.last_error},
                ),
                level=logging.WARNING,
            )
            self._emit(SyncEventKind.DEAD_LETTERED, op, None)
        return report

    def sync_now(self) -> bool:
        """
        Trigger an immediate drain.

        Returns:
            True if every queued operation was acknowledged
        """
        if not self.is_online:
            logger.warning("Cannot sync: offline")
            return False
        return self.drain().all_succeeded

    def _apply_operation(self, op: Operation) -> bool:
        """Re-dispatch a queued operation through the online path."""
        payload = _outgoing(op.payload)

        if op.type == OperationType.CREATE:
            remote_record = self.remote.create(op.entity, payload, idempotency_key=op.id)
            remote_id = self._acknowledged_id(op, remote_record)
            if is_temp_id(op.target_id) and not _same_id(remote_id, op.target_id):
                self._remember_id(op.target_id, remote_id)

            record = self._confirmed_record(remote_record, payload, remote_id)
            followers = self._queued_for(op.entity, {op.target_id, remote_id})
            if any(f.type == OperationType.DELETE for f in followers):
                self._remove_local(op.entity, {str(op.target_id), str(remote_id)})
            elif followers:
                # Later edits are still queued; the local copy already shows them
                record = self._remap_local(op.entity, op.target_id, remote_id, record)
            else:
                self._replace_local(op.entity, op.target_id, record)

        elif op.type == OperationType.UPDATE:
            remote_id = self._require_remote_id(op)
            remote_record = self.remote.update(op.entity, remote_id, payload, idempotency_key=op.id)
            if self._queued_for(op.entity, {op.target_id, remote_id}):
                record = self.get_local(op.entity, remote_id) or self.get_local(op.entity, op.target_id)
            else:
                record = self._merge_local(op.entity, op.target_id, payload, remote_record, pending=False)

        else:
            remote_id = self._require_remote_id(op)
            self.remote.delete(op.entity, remote_id, idempotency_key=op.id)
            self._remove_local(op.entity, {str(op.target_id), str(remote_id)})
            record = None

        self.context.mark_synced()
        self._emit(SyncEventKind.CONFIRMED, op, record)
        return True

    @staticmethod
    def _acknowledged_id(op: Operation, remote_record: Any) -> Any:
        """
        Id the remote system assigned to a replayed CREATE.

        Raises:
            PermanentRemoteError: a temp-id record came back without an id,
                so later operations could never address it
        """
        remote_id = _remote_id_of(remote_record)
        if remote_id is not None:
            return remote_id
        if is_temp_id(op.target_id):
            raise PermanentRemoteError(
                f"CREATE of {op.target_id} was acknowledged without a record id",
                details={"operation_id": op.id},
            )
        return op.target_id

    def _require_remote_id(self, op: Operation) -> str:
        remote_id = self._resolve_remote_id(op.target_id)
        if remote_id is not None:
            return remote_id

        # Target was created offline and its CREATE has not been acknowledged
        if any(
            dead.type == OperationType.CREATE and _same_id(dead.target_id, op.target_id)
            for dead in self.queue.dead_letters()
        ):
            raise PermanentRemoteError(
                f"CREATE for {op.target_id} was dead-lettered",
                details={"operation_id": op.id},
            )
        if any(
            queued.type == OperationType.CREATE and _same_id(queued.target_id, op.target_id)
            for queued in self.queue.pending_operations()
        ):
            raise TransientNetworkError(f"Waiting for CREATE of {op.target_id} to be acknowledged")
        raise PermanentRemoteError(
            f"No CREATE for {op.target_id} is queued, so it has no remote id",
            details={"operation_id": op.id},
        )

    def _queued_for(self, entity: str, record_ids: Set[Any]) -> List[Operation]:
        """Operations still waiting for the remote system that target any of record_ids."""
        ids = {str(record_id) for record_id in record_ids if record_id is not None}
        return [
            op for op in self.queue.pending_operations()
            if op.entity == entity and str(op.target_id) in ids
        ]

    # =========================================================================
    # ID RECONCILIATION
    # =========================================================================

    def _id_map(self) -> Dict[str, Any]:
        mapping = self.store.get(ID_MAP_KEY, {})
        return mapping if isinstance(mapping, dict) else {}

    def _remember_id(self, temp_id: str, remote_id: Any) -> None:
        with self._cache_lock:
            mapping = self._id_map()
            mapping[temp_id] = remote_id
            self.store.set(ID_MAP_KEY, mapping)
        logger.debug(f"Mapped {temp_id} -> {remote_id}")

    def _resolve_remote_id(self, record_id: Any) -> Optional[Any]:
        """Remote id for a record id; None for temp ids not yet acknowledged."""
        if not is_temp_id(record_id):
            return record_id
        return self._id_map().get(record_id)

    # =========================================================================
    # LOCAL CACHE
    # =========================================================================

    @staticmethod
    def _entity_key(entity: str) -> str:
        return f"{ENTITY_KEY_PREFIX}{entity}"

    def _load_local(self, entity: str) -> List[Dict[str, Any]]:
        records = self.store.get(self._entity_key(entity), [])
        if not isinstance(records, list):
            logger.warning(f"Local cache for {entity} is not a list, ignoring it")
            return []
        return [r for r in records if isinstance(r, dict)]

    def _save_local(self, entity: str, records: List[Dict[str, Any]]) -> None:
        if not self.store.set(self._entity_key(entity), records):
            logger.error(f"Failed to mirror {entity} cache ({len(records)} records)")

    def _upsert_local(self, entity: str, record: Dict[str, Any]) -> None:
        with self._cache_lock:
            records = self._load_local(entity)
            for index, existing in enumerate(records):
                if _same_id(existing.get("id"), record.get("id")):
                    records[index] = record
                    break
            else:
                records.append(record)
            self._save_local(entity, records)

    def _replace_local(self, entity: str, old_id: Any, record: Dict[str, Any]) -> None:
        """Swap the optimistic record for the acknowledged one."""
        with self._cache_lock:
            records = [
                r for r in self._load_local(entity)
                if not _same_id(r.get("id"), old_id) and not _same_id(r.get("id"), record.get("id"))
            ]
            records.append(record)
            self._save_local(entity, records)

    def _remap_local(
        self,
        entity: str,
        old_id: Any,
        remote_id: Any,
        confirmed: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Move a still-pending optimistic record to its remote id, keeping local edits."""
        with self._cache_lock:
            records = self._load_local(entity)
            for index, existing in enumerate(records):
                if _same_id(existing.get("id"), old_id):
                    remapped = dict(existing, id=remote_id)
                    records[index] = remapped
                    break
            else:
                remapped = dict(confirmed)
                records.append(remapped)
            if is_temp_id(old_id):
                remapped.setdefault(TEMP_ID_FIELD, old_id)
            remapped[PENDING_FLAG] = True
            self._save_local(entity, records)
        return remapped

    def _merge_local(
        self,
        entity: str,
        record_id: Any,
        changes: Dict[str, Any],
        remote_record: Optional[Dict[str, Any]],
        pending: bool,
    ) -> Dict[str, Any]:
        with self._cache_lock:
            records = self._load_local(entity)
            remote_id = self._resolve_remote_id(record_id)
            index = next(
                (
                    i for i, r in enumerate(records)
                    if _same_id(r.get("id"), record_id) or _same_id(r.get("id"), remote_id)
                ),
                None,
            )
            merged = dict(records[index]) if index is not None else {"id": remote_id or record_id}
            merged.update(changes)
            if isinstance(remote_record, dict):
                merged.update(remote_record)
            if pending:
                merged[PENDING_FLAG] = True
            else:
                merged.pop(PENDING_FLAG, None)
                merged.pop(TEMP_ID_FIELD, None)

            if index is None:
                records.append(merged)
            else:
                records[index] = merged
            self._save_local(entity, records)
        return merged

    def _remove_local(self, entity: str, record_ids: Set[str]) -> None:
        with self._cache_lock:
            records = self._load_local(entity)
            kept = [r for r in records if str(r.get("id")) not in record_ids]
            if len(kept) != len(records):
                self._save_local(entity, kept)

    def _refresh_cache(
        self,
        entity: str,
        remote_records: List[Dict[str, Any]],
        partial: bool,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Mirror a remote listing into the cache.

        Records with queued local changes win over the remote copy and records
        with a queued DELETE stay hidden, until the queue is drained. A
        partial (filtered) listing updates matching records in place.

        Returns:
            (visible remote records, pending local records absent from them)
        """
        pending_deletes, pending_records = self._pending_view(entity)

        with self._cache_lock:
            remote_by_id = {
                str(r.get("id")): r for r in remote_records
                if isinstance(r, dict) and str(r.get("id")) not in pending_deletes
            }
            visible = [
                pending_records.get(record_id, record) for record_id, record in remote_by_id.items()
            ]
            extra = [
                record for record_id, record in pending_records.items()
                if record_id not in remote_by_id
            ]

            if partial:
                base = [r for r in self._load_local(entity) if str(r.get("id")) not in remote_by_id]
                self._save_local(entity, base + visible)
            else:
                self._save_local(entity, visible + extra)
        return visible, extra

    def _pending_view(self, entity: str) -> Tuple[Set[str], Dict[str, Dict[str, Any]]]:
        deletes = {
            str(self._resolve_remote_id(op.target_id) or op.target_id)
            for op in self.queue.pending_operations()
            if op.entity == entity and op.type == OperationType.DELETE
        }
        pending = {
            str(r.get("id")): r for r in self._load_local(entity) if r.get(PENDING_FLAG)
        }
        return deletes, pending

    @staticmethod
    def _confirmed_record(
        remote_record: Optional[Dict[str, Any]],
        payload: Dict[str, Any],
        record_id: Any,
    ) -> Dict[str, Any]:
        """Record as acknowledged by the remote, falling back to what was sent."""
        record = dict(remote_record) if isinstance(remote_record, dict) else dict(payload)
        if record.get("id") in (None, ""):
            record["id"] = record_id
        record.pop(PENDING_FLAG, None)
        record.pop(TEMP_ID_FIELD, None)
        return record

    # =========================================================================
    # DEAD LETTERS
    # =========================================================================

    def dead_letters(self) -> List[Operation]:
        return self.queue.dead_letters()

    def retry_dead_letter(self, operation_id: str) -> bool:
        retried = self.queue.retry_dead_letter(operation_id)
        self.context.set_pending_count(self.queue.size())
        return retried

    def discard_dead_letter(self, operation_id: str) -> bool:
        return self.queue.discard_dead_letter(operation_id)

    # =========================================================================
    # EVENTS & STATUS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncEvent], None]) -> None:
        """Register a callback for write events (queued / confirmed / dead-lettered)."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncEvent], None]) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _emit(self, kind: SyncEventKind, op: Operation, record: Optional[Dict[str, Any]]) -> None:
        record_id = record.get("id") if record else op.target_id
        event = SyncEvent(
            kind=kind,
            entity=op.entity,
            operation_type=op.type,
            record_id=None if record_id is None else str(record_id),
            record=record,
            operation_id=op.id,
        )
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def snapshot(self) -> SyncStateSnapshot:
        """Read-only SyncState for status indicators."""
        return self.context.snapshot()

    def get_status(self) -> Dict[str, Any]:
        """
        Get comprehensive status information.

        Returns:
            Dict with status information for UI display
        """
        status = self.snapshot().to_dict()
        status["dead_letter_count"] = len(self.queue.dead_letters())
        status["queue_corrupted"] = self.queue.corruption_detected
        if self.probe is not None:
            status["connection"] = self.probe.get_status_display()
        return status
