"""Tests for Finlytic.core.connectivity driven by a fake transport probe."""
import datetime

from PySide6 import QtCore

from Finlytic.core.connectivity import ConnectivityMonitor, NetworkStatus, TransportKind
from tests.base import ServiceTestCase


class ConnectivityMonitorTests(ServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.online_events = []
        self.offline_events = []
        self.changes = []
        self.monitor.wentOnline.connect(lambda: self.online_events.append(True))
        self.monitor.wentOffline.connect(lambda: self.offline_events.append(True))
        self.monitor.connectivityChanged.connect(self.changes.append)

    def test_unknown_before_first_check(self):
        self.assertFalse(self.monitor.is_online)
        self.assertEqual(self.monitor.current_state.status, NetworkStatus.Unknown)

    def test_initialize_checks_and_emits(self):
        self.monitor.initialize()
        self.assertTrue(self.monitor.is_initialized)
        self.assertTrue(self.monitor.is_online)
        self.assertEqual(self.monitor.current_state.transports, frozenset({TransportKind.Wifi}))
        self.assertEqual(len(self.online_events), 1)
        self.assertEqual(len(self.changes), 1)

        # a second initialize is a no-op
        self.monitor.initialize()
        self.assertEqual(len(self.changes), 1)

    def test_first_check_offline_emits_went_offline(self):
        self.transports = {'none'}
        self.monitor.check_connectivity()
        self.assertEqual(self.monitor.current_state.status, NetworkStatus.Disconnected)
        self.assertEqual(len(self.offline_events), 1)
        self.assertEqual(self.online_events, [])

    def test_only_none_is_offline(self):
        cases = [
            ({'none'}, False),
            (set(), False),
            ({'wifi'}, True),
            ({'mobile'}, True),
            ({'vpn'}, True),
            ({'none', 'ethernet'}, True),
        ]
        for kinds, expected in cases:
            with self.subTest(kinds=kinds):
                self.assertEqual(self.monitor.update_state(kinds).is_online, expected)

    def test_transitions(self):
        self.monitor.check_connectivity()
        self.transports = {'none'}
        self.monitor.check_connectivity()
        self.transports = {'ethernet'}
        self.monitor.check_connectivity()

        self.assertEqual(len(self.online_events), 2)
        self.assertEqual(len(self.offline_events), 1)
        self.assertEqual([s.is_online for s in self.changes], [True, False, True])

    def test_transport_change_while_online(self):
        self.monitor.check_connectivity()
        self.transports = {'ethernet'}
        self.monitor.check_connectivity()
        self.assertEqual(len(self.changes), 2)
        self.assertEqual(len(self.online_events), 1)

    def test_unchanged_state_is_silent(self):
        self.monitor.check_connectivity()
        changed_at = self.monitor.current_state.last_changed_at
        self.advance(minutes=1)
        state = self.monitor.check_connectivity()

        self.assertEqual(len(self.changes), 1)
        self.assertEqual(state.last_changed_at, changed_at)
        self.assertEqual(state.last_checked_at, self.now)

    def test_failing_probe_counts_as_offline(self):
        self.monitor.check_connectivity()

        def probe():
            raise OSError('netlink unavailable')

        monitor = ConnectivityMonitor(probe=probe, use_platform_events=False, clock=self.clock)
        self.assertFalse(monitor.check_connectivity().is_online)
        monitor.dispose()

    def test_unrecognised_transport_counts_as_other(self):
        self.transports = {'satellite'}
        state = self.monitor.check_connectivity()
        self.assertTrue(state.is_online)
        self.assertEqual(state.transports, frozenset({TransportKind.Other}))

        self.transports = {'none', 'satellite'}
        self.assertTrue(self.monitor.check_connectivity().is_online)

    def test_offline_too_long(self):
        self.transports = {'none'}
        self.monitor.check_connectivity()
        self.advance(hours=23)
        self.assertFalse(self.monitor.has_been_offline_too_long())
        self.advance(hours=2)
        self.assertTrue(self.monitor.has_been_offline_too_long())

        self.transports = {'wifi'}
        self.monitor.check_connectivity()
        self.assertFalse(self.monitor.has_been_offline_too_long())

    def test_stats(self):
        self.monitor.check_connectivity()
        stats = self.monitor.get_connectivity_stats()
        self.assertEqual(stats['current_status'], 'connected')
        self.assertTrue(stats['is_online'])
        self.assertEqual(stats['connections'], ['wifi'])
        self.assertEqual(stats['last_checked'], self.now.isoformat())
        self.assertFalse(stats['has_been_offline_too_long'])

    def test_polling_picks_up_changes(self):
        monitor = ConnectivityMonitor(
            poll_interval_ms=10,
            probe=lambda: self.transports,
            use_platform_events=False,
            clock=self.clock,
        )
        monitor.initialize()
        self.assertTrue(monitor.is_online)

        self.transports = {'none'}
        self.process_events(100)
        self.assertFalse(monitor.is_online)
        monitor.dispose()
        self.assertFalse(monitor.is_initialized)

    def test_wait_for_connection(self):
        self.monitor.check_connectivity()
        self.monitor.wait_for_connection(timeout_ms=10)

        self.transports = {'none'}
        self.monitor.check_connectivity()
        with self.assertRaises(TimeoutError):
            self.monitor.wait_for_connection(timeout_ms=20)

        QtCore.QTimer.singleShot(10, lambda: self.monitor.update_state({'wifi'}))
        self.monitor.wait_for_connection(timeout_ms=5000)
        self.assertTrue(self.monitor.is_online)

    def test_offline_threshold_is_configurable(self):
        monitor = ConnectivityMonitor(
            offline_threshold=datetime.timedelta(minutes=5),
            probe=lambda: {'none'},
            use_platform_events=False,
            clock=self.clock,
        )
        monitor.check_connectivity()
        self.advance(minutes=6)
        self.assertTrue(monitor.has_been_offline_too_long())
        monitor.dispose()
