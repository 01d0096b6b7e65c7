"""
Tests for BudgetTracker.core.context and BudgetTracker.core.connectivity.

Run:
    python -m unittest tests.test_context
"""
from unittest.mock import patch

from PySide6 import QtNetwork

from BudgetTracker.core import context
from BudgetTracker.core.connectivity import ConnectivityMonitor
from tests.base import BaseTestCase, TEST_EMAIL, TEST_PASSWORD


class ConnectivityMonitorTests(BaseTestCase):
    def test_emits_on_transitions_only(self):
        monitor = ConnectivityMonitor(online=True)
        changes = []
        monitor.onlineChanged.connect(changes.append)

        monitor.set_online(True)
        monitor.set_online(False)
        monitor.set_online(False)
        monitor.set_online(True)

        self.assertEqual(changes, [False, True])
        self.assertTrue(monitor.is_online())

    def test_reachability_mapping(self):
        Reachability = QtNetwork.QNetworkInformation.Reachability
        monitor = ConnectivityMonitor(online=True)

        monitor._on_reachability_changed(Reachability.Disconnected)
        self.assertFalse(monitor.is_online())

        monitor._on_reachability_changed(Reachability.Unknown)
        self.assertFalse(monitor.is_online())

        monitor._on_reachability_changed(Reachability.Site)
        self.assertTrue(monitor.is_online())

    def test_no_backend_keeps_state(self):
        monitor = ConnectivityMonitor(online=True)
        with patch('BudgetTracker.core.connectivity.QtNetwork') as qt_network:
            qt_network.QNetworkInformation.loadDefaultBackend.return_value = False
            self.assertFalse(monitor.start())
        self.assertTrue(monitor.is_online())


class AppContextTests(BaseTestCase):
    def test_create_and_start(self):
        ctx = context.create_context(root=self.root, asynchronous=False, online=False)
        try:
            with patch.object(ConnectivityMonitor, 'start', return_value=False):
                ctx.start()

            self.assertEqual(ctx.store.db_path, self.settings.db_path)
            self.assertIs(ctx.client.session, ctx.session)
            self.assertEqual(ctx.sync_queue.max_retries, 3)
            self.assertEqual(ctx.sync_queue.timer.interval(), 30_000)
            self.assertFalse(ctx.sync_queue.timer.isActive())

            result = ctx.session.register(TEST_EMAIL, TEST_PASSWORD, 'Jane Doe', None, ctx.store)
            ctx.store.create_income(result['user']['id'], {'amount': 100, 'type': 'secondary'})
            self.assertEqual(ctx.sync_queue.pending_count(), 1)
        finally:
            ctx.shutdown()

    def test_session_restores_on_start(self):
        ctx = context.create_context(root=self.root, asynchronous=False, online=False)
        ctx.session.set_session({'id': 1, 'email': TEST_EMAIL}, 'access-1', 'refresh-1')
        ctx.shutdown()

        ctx = context.create_context(root=self.root, asynchronous=False, online=False)
        try:
            with patch.object(ConnectivityMonitor, 'start', return_value=False):
                ctx.start()
            self.assertEqual(ctx.session.access_token, 'access-1')
        finally:
            ctx.shutdown()
