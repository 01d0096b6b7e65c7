"""Unittest base class for creating a clean test environment."""
import logging
import os
import pathlib
import shutil
import tempfile
import unittest
from typing import Any, Dict, List, Optional, Tuple

from PySide6 import QtCore

from BudgetTracker.core import auth
from BudgetTracker.core import database
from BudgetTracker.settings import lib

TEST_EMAIL = 'jane@example.com'
TEST_PASSWORD = 'Secret123'
TEST_NAME = 'Jane Doe'


class FakeApiClient:
    """Stand-in for :class:`BudgetTracker.core.service.ApiClient` that records calls.

    Create calls answer with ``{entity: {'_id': 'remote-N'}}``. Set ``errors[method]``
    to an exception instance to make that method raise it on every call.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.errors: Dict[str, Exception] = {}
        self.allocations: List[Dict[str, Any]] = []
        self.remote_expenses: List[Dict[str, Any]] = []
        self.remote_categories: List[Dict[str, Any]] = []
        self.remote_user: Dict[str, Any] = {
            '_id': 'user-remote-1',
            'email': TEST_EMAIL,
            'name': TEST_NAME,
            'currency': 'EUR',
        }
        self._counter = 0

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.errors:
            raise self.errors[name]

    def _next_id(self) -> str:
        self._counter += 1
        return f'remote-{self._counter}'

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def login(self, email: str, password: str) -> Dict[str, Any]:
        self._call('login', email, password)
        return {'user': dict(self.remote_user), 'access_token': 'access-1', 'refresh_token': 'refresh-1'}

    def register(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('register', data)
        user = {**self.remote_user, 'email': data['email'], 'name': data['name']}
        return {'user': user, 'access_token': 'access-1', 'refresh_token': 'refresh-1'}

    def logout(self) -> Dict[str, Any]:
        self._call('logout')
        return {}

    def update_profile(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('update_profile', data)
        return {'user': {**self.remote_user, **data}}

    def get_expenses(self) -> List[Dict[str, Any]]:
        self._call('get_expenses')
        return [dict(e) for e in self.remote_expenses]

    def create_expense(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('create_expense', data)
        return {'success': True, 'expense': {'_id': self._next_id()}}

    def update_expense(self, remote_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('update_expense', remote_id, data)
        return {'success': True}

    def delete_expense(self, remote_id: str) -> Dict[str, Any]:
        self._call('delete_expense', remote_id)
        return {}

    def get_categories(self) -> List[Dict[str, Any]]:
        self._call('get_categories')
        return [dict(c) for c in self.remote_categories]

    def create_income(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('create_income', data)
        return {'success': True, 'income': {'_id': self._next_id()}}

    def update_income(self, remote_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('update_income', remote_id, data)
        return {'success': True}

    def delete_income(self, remote_id: str) -> Dict[str, Any]:
        self._call('delete_income', remote_id)
        return {}

    def get_allocations(self, user_id: Any) -> List[Dict[str, Any]]:
        self._call('get_allocations', user_id)
        return list(self.allocations)

    def create_allocation(self, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('create_allocation', data)
        return {'success': True, 'allocation': {'_id': self._next_id()}}

    def update_allocation(self, remote_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._call('update_allocation', remote_id, data)
        return {'success': True}

    def delete_allocation(self, remote_id: str) -> Dict[str, Any]:
        self._call('delete_allocation', remote_id)
        return {}


class BaseTestCase(unittest.TestCase):
    """Base test case that sets up a temporary config root and an open store."""

    app: Optional[QtCore.QCoreApplication] = None
    root: pathlib.Path
    settings: lib.SettingsAPI
    store: database.Store

    @classmethod
    def setUpClass(cls) -> None:
        # Ensure headless Qt
        if 'QT_QPA_PLATFORM' not in os.environ:
            os.environ['QT_QPA_PLATFORM'] = 'offscreen'

        # Ensure a QCoreApplication is available
        cls.app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])

    def setUp(self) -> None:
        """Create a clean config root and open a fresh database in it."""
        self.root = pathlib.Path(tempfile.mkdtemp(prefix='budgettracker_test_'))
        logging.debug(f'Created test root at {self.root}')

        self.settings = lib.SettingsAPI(root=self.root)
        self.store = database.Store(self.settings.db_path, defaults=self.settings.get_section('defaults'))
        self.store.ensure_initialized()

    def tearDown(self) -> None:
        """Close the database and remove the test root."""
        self.store.close()
        shutil.rmtree(self.root, ignore_errors=True)
        logging.debug(f'Removed test root {self.root}')

    def create_user(self, email: str = TEST_EMAIL, password: str = TEST_PASSWORD,
                    name: str = TEST_NAME) -> Dict[str, Any]:
        return self.store.create_user(email, auth.hash_password(password), name)

    def category_id(self, user_id: int, name: str = 'Food & Dining') -> int:
        for category in self.store.get_categories_by_user(user_id):
            if category['name'] == name:
                return category['id']
        self.fail(f'No category named "{name}"')

    def queue(self) -> List[Dict[str, Any]]:
        return self.store.read_slot(database.SYNC_QUEUE_KEY)
