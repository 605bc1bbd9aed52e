# =============================================================================
# tests/unit/test_network_probe.py
# Unit Tests for NetworkProbe
# =============================================================================

from unittest.mock import MagicMock, patch

from clinic_core.offline.network_probe import (
    DEFAULT_INTERNET_HOSTS,
    ConnectionStatus,
    NetworkProbe,
    internet_reachable,
)
from clinic_core.offline.sync_state import SyncContext


class TestProbeTransitions:
    """Test online/offline state and debouncing"""

    def test_initially_offline(self):
        """Status starts UNKNOWN, which is not online"""
        probe = NetworkProbe(lambda: True)

        assert probe.status == ConnectionStatus.UNKNOWN
        assert not probe.is_online()

    def test_single_notification_per_transition(self):
        """Repeated online signals produce one callback"""
        probe = NetworkProbe(lambda: True)
        callback = MagicMock()
        probe.register_callback(callback)

        probe.report_connectivity(True)
        probe.report_connectivity(True)
        probe.check_now()

        callback.assert_called_once_with(True)

    def test_offline_transition_notifies_false(self):
        """Going offline notifies callbacks with False"""
        probe = NetworkProbe(lambda: True)
        callback = MagicMock()
        probe.report_connectivity(True)
        probe.register_callback(callback)

        assert probe.report_connectivity(False)
        callback.assert_called_once_with(False)

    def test_degraded_counts_as_offline(self):
        """Network up but API unhealthy is not online"""
        probe = NetworkProbe(lambda: False, connectivity_check=lambda: True)

        assert not probe.check_now()
        assert probe.status == ConnectionStatus.DEGRADED
        assert probe.state.consecutive_failures == 1

    def test_no_network_skips_health_check(self):
        """A failed network check means OFFLINE without calling the API"""
        health = MagicMock(return_value=True)
        probe = NetworkProbe(health, connectivity_check=lambda: False)

        probe.check_now()

        assert probe.status == ConnectionStatus.OFFLINE
        health.assert_not_called()

    def test_health_check_exception_means_offline(self):
        """A raising health check is treated as offline"""
        probe = NetworkProbe(MagicMock(side_effect=RuntimeError("dns")))

        assert not probe.check_now()
        assert probe.get_status_display()["error"] == "dns"

    def test_offline_to_degraded_is_not_a_transition(self):
        """Both states are offline to subscribers"""
        probe = NetworkProbe(lambda: False)
        callback = MagicMock()
        probe.register_callback(callback)
        probe.force_offline()

        probe.check_now()

        callback.assert_not_called()

    def test_callback_errors_are_contained(self):
        """A failing callback does not stop the others"""
        probe = NetworkProbe(lambda: True)
        good = MagicMock()
        probe.register_callback(MagicMock(side_effect=ValueError("bad")))
        probe.register_callback(good)

        probe.report_connectivity(True)

        good.assert_called_once_with(True)

    def test_unregister_callback(self):
        """Unregistered callbacks are no longer called"""
        probe = NetworkProbe(lambda: True)
        callback = MagicMock()
        probe.register_callback(callback)
        probe.unregister_callback(callback)

        probe.report_connectivity(True)

        callback.assert_not_called()

    def test_writes_shared_context(self, store):
        """Transitions are written to the shared SyncContext"""
        context = SyncContext.init(store)
        probe = NetworkProbe(lambda: True, context=context)

        probe.report_connectivity(True)

        assert context.snapshot().is_online


class TestProbeScheduling:
    """Test periodic health checks on virtual time"""

    def test_periodic_checks(self, scheduler):
        """Health checks run once per interval"""
        health = MagicMock(return_value=True)
        probe = NetworkProbe(health, scheduler=scheduler, check_interval=300)

        probe.start()
        assert health.call_count == 1

        scheduler.advance(299)
        assert health.call_count == 1

        scheduler.advance(1)
        assert health.call_count == 2

        scheduler.advance(600)
        assert health.call_count == 4

    def test_reconnect_detected_by_timer(self, scheduler):
        """An outage ending between checks is picked up on the next tick"""
        health = MagicMock(return_value=False)
        probe = NetworkProbe(health, scheduler=scheduler, check_interval=60)
        callback = MagicMock()
        probe.register_callback(callback)
        probe.start()

        health.return_value = True
        scheduler.advance(60)

        callback.assert_called_once_with(True)
        assert probe.is_online()

    def test_stop_cancels_timer(self, scheduler):
        """stop() cancels the scheduled check"""
        health = MagicMock(return_value=True)
        probe = NetworkProbe(health, scheduler=scheduler, check_interval=10)
        probe.start(initial_check=False)
        probe.stop()

        scheduler.advance(100)

        health.assert_not_called()
        assert scheduler.active() == []


class TestInternetReachable:
    """Test the socket-level reachability check"""

    def test_first_reachable_host_wins(self):
        """Stops at the first host that accepts a connection"""
        with patch("clinic_core.offline.network_probe.socket.create_connection") as connect:
            connect.side_effect = [OSError("unreachable"), MagicMock()]

            assert internet_reachable(hosts=[("10.0.0.1", 53), ("1.1.1.1", 53), ("8.8.8.8", 53)])

        assert [c.args[0] for c in connect.call_args_list] == [("10.0.0.1", 53), ("1.1.1.1", 53)]

    def test_no_host_reachable(self):
        """Every host refusing means no network"""
        with patch("clinic_core.offline.network_probe.socket.create_connection") as connect:
            connect.side_effect = OSError("unreachable")

            assert internet_reachable() is False

        assert connect.call_count == len(DEFAULT_INTERNET_HOSTS)

    def test_probe_reports_degraded_when_only_api_is_down(self):
        """Network up and API down is DEGRADED, not OFFLINE"""
        probe = NetworkProbe(lambda: False, connectivity_check=internet_reachable)

        with patch("clinic_core.offline.network_probe.socket.create_connection"):
            probe.check_now()

        assert probe.status == ConnectionStatus.DEGRADED
