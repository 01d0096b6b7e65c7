"""
Tests for BudgetTracker.core.auth: session persistence, login and registration.

Run:
    python -m unittest tests.test_auth
"""
import json

from BudgetTracker.core import auth
from BudgetTracker.core.auth import SessionContext
from BudgetTracker.core.database import Table
from BudgetTracker.status import status
from tests.base import BaseTestCase, FakeApiClient, TEST_EMAIL, TEST_NAME, TEST_PASSWORD


class SessionTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.session = SessionContext(self.settings.session_path)

    def test_restore_session(self):
        self.session.set_session({'id': 1, 'email': TEST_EMAIL, 'name': TEST_NAME}, 'access-1', 'refresh-1')

        restored = SessionContext(self.settings.session_path)
        self.assertTrue(restored.restore_session())
        self.assertEqual(restored.get_current_user()['email'], TEST_EMAIL)
        self.assertEqual(restored.access_token, 'access-1')
        self.assertEqual(restored.refresh_token, 'refresh-1')

    def test_restore_without_tokens(self):
        self.session.set_session({'id': 1, 'email': TEST_EMAIL})
        restored = SessionContext(self.settings.session_path)
        self.assertTrue(restored.restore_session())
        self.assertIsNone(restored.access_token)

    def test_invalid_session_file_is_removed(self):
        self.settings.session_path.parent.mkdir(parents=True, exist_ok=True)
        with self.settings.session_path.open('w', encoding='utf-8') as f:
            json.dump({'access_token': 'a', 'user': {'name': 'No id'}}, f)

        self.assertFalse(self.session.restore_session())
        self.assertFalse(self.settings.session_path.exists())

    def test_corrupt_session_file_is_removed(self):
        self.settings.session_path.parent.mkdir(parents=True, exist_ok=True)
        self.settings.session_path.write_text('{not json', encoding='utf-8')

        self.assertFalse(self.session.restore_session())
        self.assertFalse(self.settings.session_path.exists())

    def test_no_session(self):
        self.assertFalse(self.session.restore_session())
        with self.assertRaises(status.NotAuthenticatedException):
            self.session.require_user()

    def test_authentication_required_keeps_user(self):
        emitted = []
        self.session.authenticationRequired.connect(lambda: emitted.append(True))
        self.session.set_session({'id': 1, 'email': TEST_EMAIL}, 'access-1', 'refresh-1')

        self.session.notify_authentication_required()

        self.assertEqual(emitted, [True])
        self.assertIsNone(self.session.access_token)
        self.assertTrue(self.session.is_authenticated())

    def test_clear(self):
        changes = []
        self.session.userChanged.connect(changes.append)
        self.session.set_session({'id': 1, 'email': TEST_EMAIL}, 'access-1')
        self.session.clear()

        self.assertFalse(self.session.is_authenticated())
        self.assertFalse(self.settings.session_path.exists())
        self.assertEqual(changes[-1], None)


class LoginTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.session = SessionContext(self.settings.session_path)
        self.client = FakeApiClient()

    def test_local_login(self):
        self.create_user()
        result = self.session.login(TEST_EMAIL.upper(), TEST_PASSWORD, None, self.store)

        self.assertEqual(result['source'], 'local')
        self.assertNotIn('password_hash', result['user'])
        self.assertEqual(self.session.get_current_user()['email'], TEST_EMAIL)
        self.assertIsNone(self.session.access_token)

    def test_wrong_password(self):
        self.create_user()
        with self.assertRaises(status.ValidationException):
            self.session.login(TEST_EMAIL, 'Wrong1234', None, self.store)

    def test_unknown_user(self):
        with self.assertRaises(status.ValidationException):
            self.session.login(TEST_EMAIL, TEST_PASSWORD, None, self.store)

    def test_invalid_email(self):
        with self.assertRaises(status.ValidationException):
            self.session.login('jane', TEST_PASSWORD, None, self.store)

    def test_remote_login_creates_local_user(self):
        result = self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)

        self.assertEqual(result['source'], 'api')
        row = self.store.get_user_by_email(TEST_EMAIL)
        self.assertEqual(row['api_id'], 'user-remote-1')
        self.assertEqual(row['needs_sync'], 0)
        self.assertEqual(row['password_hash'], auth.hash_password(TEST_PASSWORD))
        self.assertEqual(self.session.access_token, 'access-1')

    def test_remote_login_merges_profile(self):
        self.create_user(name='Old Name')
        self.client.remote_user.update({'name': 'Remote Name', 'updatedAt': '2099-01-01T00:00:00Z'})

        result = self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)

        self.assertTrue(result['conflicts_resolved'])
        self.assertEqual(self.store.get_user_by_email(TEST_EMAIL)['name'], 'Remote Name')

    def test_newer_local_profile_is_kept(self):
        self.create_user(name='Local Name')
        self.client.remote_user.update({'name': 'Remote Name', 'updatedAt': '2000-01-01T00:00:00Z'})

        self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)

        self.assertEqual(self.store.get_user_by_email(TEST_EMAIL)['name'], 'Local Name')

    def test_unreachable_backend_falls_back_to_local(self):
        self.create_user()
        self.client.errors['login'] = status.NetworkFailureException('refused')

        result = self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)
        self.assertEqual(result['source'], 'local')

    def test_logout(self):
        self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)
        self.session.logout(self.client)

        self.assertIn('logout', self.client.names())
        self.assertFalse(self.session.is_authenticated())

    def test_logout_offline(self):
        self.session.login(TEST_EMAIL, TEST_PASSWORD, self.client, self.store)
        self.client.errors['logout'] = status.NetworkFailureException('refused')

        self.session.logout(self.client)
        self.assertFalse(self.session.is_authenticated())


class RegisterTests(BaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.session = SessionContext(self.settings.session_path)
        self.client = FakeApiClient()

    def test_register_locally(self):
        result = self.session.register(TEST_EMAIL, TEST_PASSWORD, TEST_NAME, None, self.store)

        self.assertEqual(result['source'], 'local')
        row = self.store.get_user_by_email(TEST_EMAIL)
        self.assertEqual(row['needs_sync'], 1)
        self.assertEqual(self.session.get_current_user()['id'], row['id'])

    def test_register_remotely(self):
        result = self.session.register(TEST_EMAIL, TEST_PASSWORD, TEST_NAME, self.client, self.store)

        self.assertEqual(result['source'], 'api')
        self.assertEqual(self.client.calls[0][1]['confirmPassword'], TEST_PASSWORD)
        self.assertEqual(self.store.get_user_by_id(result['user']['id'])['api_id'], 'user-remote-1')
        self.assertEqual(self.store.get_pending_rows(Table.Users), [])

    def test_weak_password(self):
        with self.assertRaises(status.ValidationException) as ctx:
            self.session.register(TEST_EMAIL, 'weak', TEST_NAME, None, self.store)
        self.assertEqual(len(ctx.exception.errors), 1)

    def test_duplicate_email(self):
        self.create_user()
        with self.assertRaises(status.ValidationException):
            self.session.register(TEST_EMAIL, TEST_PASSWORD, TEST_NAME, None, self.store)

    def test_duplicate_email_on_server(self):
        self.client.errors['register'] = status.RemoteRequestException('exists', status_code=409)
        with self.assertRaises(status.ValidationException):
            self.session.register(TEST_EMAIL, TEST_PASSWORD, TEST_NAME, self.client, self.store)
        self.assertIsNone(self.store.get_user_by_email(TEST_EMAIL))
