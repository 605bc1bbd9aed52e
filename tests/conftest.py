# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest

from clinic_core.errors import PermanentRemoteError
from clinic_core.offline.key_value_store import KeyValueStore
from clinic_core.offline.network_probe import NetworkProbe
from clinic_core.offline.scheduler import ScheduledTask, Scheduler
from clinic_core.offline.sync_coordinator import SyncCoordinator, filter_records
from clinic_core.offline.sync_state import SyncContext


# =============================================================================
# VIRTUAL TIME
# =============================================================================

class ManualTask(ScheduledTask):
    def __init__(self, interval: float, callback: Callable[[], None], name: str, next_run: float):
        self.interval = interval
        self.callback = callback
        self.name = name
        self.next_run = next_run
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self):
        self.now = 0.0
        self.tasks: List[ManualTask] = []

    def schedule_repeating(self, interval, callback, name="task") -> ScheduledTask:
        task = ManualTask(interval, callback, name, self.now + interval)
        self.tasks.append(task)
        return task

    def active(self) -> List[ManualTask]:
        return [t for t in self.tasks if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = sorted(
                (t for t in self.active() if t.next_run <= target),
                key=lambda t: t.next_run,
            )
            if not due:
                break
            task = due[0]
            self.now = task.next_run
            task.next_run += task.interval
            task.callback()
        self.now = target


# =============================================================================
# FAKE REMOTE SYSTEM
# =============================================================================

class FakeRemote:
    """
    In-memory stand-in for RemoteAPIClient.

    Set `fail_with` to an exception instance to make every call raise it.
    """

    def __init__(self):
        self.records: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.fail_with: Optional[Exception] = None
        self.healthy = True
        self._ids = itertools.count(1)

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def writes(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("create", "update", "delete")]

    def list(self, entity, filters=None):
        self.calls.append(("list", entity, filters))
        self._check()
        return filter_records([dict(r) for r in self.records.get(entity, [])], filters)

    def create(self, entity, data, idempotency_key=None):
        self.calls.append(("create", entity, dict(data), idempotency_key))
        self._check()
        record = dict(data)
        record["id"] = data.get("id") or f"srv_{next(self._ids)}"
        self.records.setdefault(entity, []).append(record)
        return dict(record)

    def update(self, entity, record_id, data, idempotency_key=None):
        self.calls.append(("update", entity, record_id, dict(data), idempotency_key))
        self._check()
        for record in self.records.get(entity, []):
            if str(record["id"]) == str(record_id):
                record.update(data)
                return dict(record)
        raise PermanentRemoteError(f"{entity} {record_id} not found", status_code=404)

    def delete(self, entity, record_id, idempotency_key=None):
        self.calls.append(("delete", entity, record_id, idempotency_key))
        self._check()
        self.records[entity] = [
            r for r in self.records.get(entity, []) if str(r["id"]) != str(record_id)
        ]

    def health_check(self):
        self.calls.append(("health",))
        return self.healthy


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture
def store(tmp_path):
    """SQLite-backed store in a temporary directory"""
    kv = KeyValueStore(tmp_path / "sync.db")
    yield kv
    kv.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def context(store):
    return SyncContext.init(store)


@pytest.fixture
def probe(remote, scheduler, context):
    return NetworkProbe(remote.health_check, scheduler=scheduler, context=context)


@pytest.fixture
def coordinator(store, remote, probe, scheduler):
    """Started coordinator, initially offline"""
    coord = SyncCoordinator(store, remote, probe=probe, scheduler=scheduler)
    coord.start(start_probe=False)
    yield coord
    coord.stop()


@pytest.fixture
def sample_patients():
    return {
        "patients": [
            {"id": "p1", "name": "Maria Papadopoulou", "status": "active"},
            {"id": "p2", "name": "Nikos Georgiou", "status": "discharged"},
        ],
        "metadata": {"totalRecords": 2},
    }
