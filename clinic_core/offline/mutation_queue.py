# =============================================================================
# clinic_core/offline/mutation_queue.py
# Durable Mutation Queue
# =============================================================================
"""
MutationQueue - ordered, durable log of pending write operations.

Features:
- FIFO order, persisted on every change
- Snapshot-then-clear drain so enqueues during a drain are never lost
- At-least-once replay: the drained snapshot is parked under an in-flight
  key until each operation is settled, and restored on the next load
- Bounded dead-letter list for operations the remote system keeps rejecting
"""

from __future__ import annotations
import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from clinic_core.errors import (
    PermanentRemoteError,
    QueueCorruptionError,
    handle_error,
)

logger = logging.getLogger(__name__)

QUEUE_KEY = "sync:queue"
DEAD_LETTER_KEY = "sync:dead_letters"

_UNREADABLE = object()


class OperationType(Enum):
    """Kind of queued mutation."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


def _new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex}"


@dataclass
class Operation:
    """A queued mutation against one entity type."""
    type: OperationType
    entity: str
    target_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_operation_id)
    enqueued_at: str = field(default_factory=lambda: datetime.now().isoformat())
    attempts: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "entity": self.entity,
            "targetId": self.target_id,
            "payload": self.payload,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Operation:
        """Rebuild an operation; raises KeyError/ValueError/TypeError on bad input."""
        if not isinstance(data, dict):
            raise TypeError(f"operation must be an object, got {type(data).__name__}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise TypeError("operation payload must be an object")
        return cls(
            type=OperationType(data["type"]),
            entity=str(data["entity"]),
            target_id=data.get("targetId"),
            payload=payload,
            id=str(data["id"]),
            enqueued_at=data.get("enqueuedAt") or datetime.now().isoformat(),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("lastError"),
        )


@dataclass
class DrainReport:
    """Outcome of one drain pass."""
    succeeded: List[Operation] = field(default_factory=list)
    requeued: List[Operation] = field(default_factory=list)
    dead_lettered: List[Operation] = field(default_factory=list)
    skipped: bool = False
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.requeued) + len(self.dead_lettered)

    @property
    def all_succeeded(self) -> bool:
        return not self.skipped and not self.requeued and not self.dead_lettered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": len(self.succeeded),
            "requeued": len(self.requeued),
            "dead_lettered": len(self.dead_lettered),
            "skipped": self.skipped,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class MutationQueue:
    """
    Durable FIFO of pending writes.

    Usage:
        queue = MutationQueue(store)
        queue.enqueue(Operation(OperationType.CREATE, "patient", payload={...}))
        report = queue.drain(apply_fn)

    apply_fn(operation) contract:
        truthy return            -> acknowledged, operation removed
        falsy return / exception -> transient failure, operation re-queued
        PermanentRemoteError     -> rejection; dead-lettered after max_attempts
    """

    DEFAULT_MAX_ATTEMPTS = 3

    def __init__(
        self,
        store,
        key: str = QUEUE_KEY,
        dead_letter_key: str = DEAD_LETTER_KEY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._store = store
        self.key = key
        self.inflight_key = f"{key}:inflight"
        self.dead_letter_key = dead_letter_key
        self.max_attempts = max_attempts

        # Guards the in-memory list and its persisted copy
        self._lock = threading.RLock()
        # Only one drain at a time
        self._drain_lock = threading.Lock()

        self.corruption_detected = False
        # Drained operations not settled yet, excluding the one being applied
        self._unsettled: List[Operation] = []
        self._ops: List[Operation] = self._load()
        self._dead: List[Operation] = self._read_operations(self.dead_letter_key)

    # =========================================================================
    # LOADING
    # =========================================================================

    def _load(self) -> List[Operation]:
        """Load the persisted queue, restoring any unfinished drain first."""
        queued = self._read_operations(self.key)
        inflight = self._read_operations(self.inflight_key)

        if not inflight:
            return queued

        logger.warning(
            f"Restoring {len(inflight)} operations from an interrupted drain"
        )
        inflight_ids = {op.id for op in inflight}
        ops = inflight + [op for op in queued if op.id not in inflight_ids]
        self._write(self.key, ops)
        self._store.delete(self.inflight_key)
        return ops

    def _read_operations(self, key: str) -> List[Operation]:
        if not self._store.has(key):
            return []

        raw = self._store.get(key, _UNREADABLE)
        try:
            if raw is _UNREADABLE:
                raise QueueCorruptionError("Persisted queue is not valid JSON", key=key)
            if not isinstance(raw, list):
                raise QueueCorruptionError(
                    f"Persisted queue has type {type(raw).__name__}, expected list", key=key
                )
            return [Operation.from_dict(item) for item in raw]
        except QueueCorruptionError as e:
            self._discard_corrupt(key, e)
        except (KeyError, TypeError, ValueError) as e:
            self._discard_corrupt(
                key, QueueCorruptionError(f"Unreadable queued operation: {e}", key=key)
            )
        return []

    def _discard_corrupt(self, key: str, error: QueueCorruptionError) -> None:
        # Pending clinical changes are lost here; make that loud
        handle_error(
            error,
            user_message=f"Discarding unreadable mutation queue '{key}'; pending changes lost",
            level=logging.CRITICAL,
        )
        self.corruption_detected = True
        self._store.delete(key)

    def _write(self, key: str, ops: List[Operation]) -> bool:
        persisted = self._store.set(key, [op.to_dict() for op in ops])
        if not persisted:
            logger.error(f"Failed to persist {len(ops)} operations under '{key}'")
        return persisted

    # =========================================================================
    # QUEUE CONTRACT
    # =========================================================================

    def enqueue(self, operation: Operation) -> bool:
        """
        Append an operation and persist the queue before returning.

        Returns:
            True if the queue was durably written
        """
        with self._lock:
            self._ops.append(operation)
            persisted = self._write(self.key, self._ops)

        logger.debug(
            f"Queued {operation.type.value} {operation.entity} "
            f"({operation.id}); queue size {self.size()}"
        )
        return persisted

    def size(self) -> int:
        with self._lock:
            return len(self._ops)

    def peek_all(self) -> List[Operation]:
        """Copies of the queued operations in FIFO order."""
        with self._lock:
            return copy.deepcopy(self._ops)

    def pending_operations(self) -> List[Operation]:
        """
        Every operation still waiting for the remote system.

        During a drain this is the rest of the drained snapshot (including
        operations that already failed in this pass) followed by the queue.
        """
        with self._lock:
            return copy.deepcopy(self._unsettled + self._ops)

    def clear(self) -> None:
        with self._lock:
            self._ops = []
            self._write(self.key, self._ops)

    def drain(self, apply_fn: Callable[[Operation], Any]) -> DrainReport:
        """
        Replay every queued operation through apply_fn.

        The queue is snapshotted and cleared up front; operations enqueued
        while the drain runs stay queued for the next pass. Failed operations
        go back to the head of the queue in their original order.

        Returns:
            DrainReport describing the pass
        """
        report = DrainReport()

        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress, skipping")
            report.skipped = True
            report.finished_at = datetime.now().isoformat()
            return report

        try:
            with self._lock:
                snapshot = self._ops
                self._ops = []
                self._write(self.inflight_key, snapshot)
                self._write(self.key, self._ops)

            if snapshot:
                logger.info(f"Draining {len(snapshot)} queued operations")

            failed: List[Operation] = []
            for index, op in enumerate(snapshot):
                with self._lock:
                    self._unsettled = failed + snapshot[index + 1:]
                self._apply(apply_fn, op, failed, report)
                # Whatever is not settled yet stays durable
                self._write(self.inflight_key, failed + snapshot[index + 1:])

            with self._lock:
                self._ops = failed + self._ops
                self._write(self.key, self._ops)
                self._store.delete(self.inflight_key)

        finally:
            with self._lock:
                self._unsettled = []
            self._drain_lock.release()

        report.finished_at = datetime.now().isoformat()
        if report.attempted:
            logger.info(
                f"Drain complete: {len(report.succeeded)} applied, "
                f"{len(report.requeued)} re-queued, {len(report.dead_lettered)} dead-lettered"
            )
        return report

    def _apply(
        self,
        apply_fn: Callable[[Operation], Any],
        op: Operation,
        failed: List[Operation],
        report: DrainReport,
    ) -> None:
        try:
            if apply_fn(op):
                report.succeeded.append(op)
                return
            op.last_error = "not acknowledged"
        except PermanentRemoteError as e:
            op.attempts += 1
            op.last_error = str(e)
            if op.attempts >= self.max_attempts:
                logger.error(
                    f"Dead-lettering {op.type.value} {op.entity} ({op.id}) "
                    f"after {op.attempts} rejections: {e}"
                )
                with self._lock:
                    self._dead.append(op)
                    self._write(self.dead_letter_key, self._dead)
                report.dead_lettered.append(op)
                return
            logger.warning(f"Operation {op.id} rejected ({op.attempts}/{self.max_attempts}): {e}")
            failed.append(op)
            report.requeued.append(op)
            return
        except Exception as e:
            op.last_error = str(e)
            logger.warning(f"Operation {op.id} failed, re-queuing: {e}")

        failed.append(op)
        report.requeued.append(op)

    # =========================================================================
    # DEAD LETTERS
    # =========================================================================

    def dead_letters(self) -> List[Operation]:
        """Operations set aside for manual inspection."""
        with self._lock:
            return copy.deepcopy(self._dead)

    def retry_dead_letter(self, operation_id: str) -> bool:
        """Move a dead-lettered operation back to the tail of the queue."""
        with self._lock:
            op = self._pop_dead(operation_id)
            if op is None:
                return False
            op.attempts = 0
            op.last_error = None
            self._write(self.dead_letter_key, self._dead)
        return self.enqueue(op)

    def discard_dead_letter(self, operation_id: str) -> bool:
        """Permanently drop a dead-lettered operation."""
        with self._lock:
            op = self._pop_dead(operation_id)
            if op is None:
                return False
            self._write(self.dead_letter_key, self._dead)
        logger.info(f"Discarded dead-lettered operation {operation_id}")
        return True

    def _pop_dead(self, operation_id: str) -> Optional[Operation]:
        for index, op in enumerate(self._dead):
            if op.id == operation_id:
                return self._dead.pop(index)
        return None
