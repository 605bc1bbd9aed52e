# =============================================================================
# tests/integration/test_offline_reconnect.py
# Integration Tests for the Offline -> Online Workflow
# =============================================================================
"""
End-to-end scenarios wiring the real store, queue, context, probe and
coordinator together; only the remote system and the clock are faked.
"""

from clinic_core.offline.config import SyncSettings, build_sync_coordinator
from clinic_core.offline.key_value_store import KeyValueStore


def build(tmp_path, remote, scheduler, name="clinic.db"):
    settings = SyncSettings(db_path=str(tmp_path / name), health_interval=60, drain_interval=300)
    return build_sync_coordinator(settings, scheduler=scheduler, remote=remote)


class TestOfflineReconnect:
    """Test the full clinic workflow across an outage"""

    def test_two_offline_creates_replayed_on_reconnect(self, tmp_path, remote, scheduler):
        """Exactly two remote creates, in original order, after one transition"""
        remote.healthy = False
        coordinator = build(tmp_path, remote, scheduler)
        coordinator.start()

        first = coordinator.create("patient", {"name": "Maria"})
        second = coordinator.create("patient", {"name": "Nikos"})
        assert first.queued and second.queued
        assert coordinator.snapshot().pending_count == 2

        remote.healthy = True
        scheduler.advance(60)

        creates = [c for c in remote.writes() if c[0] == "create"]
        assert [c[2]["name"] for c in creates] == ["Maria", "Nikos"]
        assert coordinator.snapshot().pending_count == 0
        assert coordinator.snapshot().is_online
        assert coordinator.snapshot().last_sync_at is not None

        # Another health tick while online must not replay anything
        scheduler.advance(60)
        assert len(remote.writes()) == 2
        coordinator.stop()

    def test_queue_survives_restart(self, tmp_path, remote, scheduler):
        """Writes made offline before a restart are replayed after it"""
        remote.healthy = False
        coordinator = build(tmp_path, remote, scheduler)
        coordinator.start()
        coordinator.create("appointment", {"patient": "p1", "when": "09:00"})
        coordinator.stop()
        coordinator.store.close()

        restarted = build(tmp_path, remote, scheduler)
        assert restarted.snapshot().pending_count == 1

        remote.healthy = True
        restarted.start()

        assert [c[0] for c in remote.writes()] == ["create"]
        assert restarted.snapshot().pending_count == 0
        restarted.stop()

    def test_offline_edit_chain_reconciles_ids(self, tmp_path, remote, scheduler):
        """Create, edit and list offline; the server ends with one record"""
        remote.healthy = False
        coordinator = build(tmp_path, remote, scheduler)
        coordinator.start()

        created = coordinator.create("patient", {"name": "Eleni", "status": "new"})
        coordinator.update("patient", created.data["id"], {"status": "seen"})
        offline_view = coordinator.list("patient", {"name": "ele"})
        assert [r["status"] for r in offline_view.data] == ["seen"]

        remote.healthy = True
        scheduler.advance(60)

        assert remote.records["patient"] == [{"name": "Eleni", "status": "seen", "id": "srv_1"}]
        online_view = coordinator.list("patient")
        assert [r["id"] for r in online_view.data] == ["srv_1"]
        coordinator.stop()

    def test_write_during_outage_then_periodic_retry(self, tmp_path, remote, scheduler):
        """A failed replay is retried by the periodic drain, not in a loop"""
        from clinic_core.errors import TransientNetworkError

        coordinator = build(tmp_path, remote, scheduler)
        coordinator.start()
        assert coordinator.is_online

        remote.fail_with = TransientNetworkError("gateway timeout", status_code=504)
        result = coordinator.create("xray", {"patient": "p1", "file": "chest.png"})
        assert result.queued
        attempts_before = len(remote.writes())

        remote.fail_with = None
        scheduler.advance(299)
        assert len(remote.writes()) == attempts_before

        scheduler.advance(1)
        assert coordinator.snapshot().pending_count == 0
        assert coordinator.store.get("entities:xray")[0]["id"] == "srv_1"
        coordinator.stop()

    def test_store_file_is_shared_state(self, tmp_path, remote, scheduler):
        """Everything the layer persists lives in the configured database"""
        remote.healthy = False
        coordinator = build(tmp_path, remote, scheduler, name="shared.db")
        coordinator.start()
        coordinator.create("event", {"kind": "visit"})
        coordinator.stop()
        coordinator.store.close()

        keys = KeyValueStore(tmp_path / "shared.db").keys()

        assert "sync:queue" in keys
        assert "entities:event" in keys
