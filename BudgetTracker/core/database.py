"""
Local SQLite store for users, categories, income, expenses and allocation budgets.

The store is the system of record for the application: every write commits locally
and returns without waiting on the network. Mutations that have to reach the remote
backend write their row and append a sync queue entry in the same SQLite transaction
(a transactional outbox). The queue is a JSON list kept in the ``kv_store`` table and
is drained by :class:`BudgetTracker.core.sync.SyncQueue`.

The schema only ever grows. Columns added after the first release are listed in
:data:`COLUMN_MIGRATIONS` and applied idempotently each time the database is opened.
"""

import contextlib
import datetime
import enum
import json
import logging
import pathlib
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union

import pandas as pd
from PySide6 import QtCore

from . import validator
from ..status import status

INIT_POLL_INITIAL = 0.05
INIT_POLL_MAX = 1.0
INIT_POLL_TIMEOUT = 10.0

SYNC_QUEUE_KEY = 'sync_queue'
DEAD_LETTER_KEY = 'sync_dead_letter'

DEFAULT_CATEGORY_COLOR = '#2196F3'
DEFAULT_CATEGORY_ICON = 'category'

T = TypeVar('T')


class Table(enum.StrEnum):
    """Enum for database tables."""
    Users = 'users'
    Categories = 'categories'
    Income = 'income'
    Expenses = 'expenses'
    AllocationTemplates = 'allocation_templates'
    AllocationBuckets = 'allocation_buckets'
    Preferences = 'user_preferences'
    KeyValue = 'kv_store'


class EntityType(enum.StrEnum):
    """Kinds of record carried by the sync queue."""
    Expense = 'expense'
    Income = 'income'
    Allocation = 'allocation'
    User = 'user'


class Action(enum.StrEnum):
    """Mutation recorded by a sync queue entry."""
    Create = 'create'
    Update = 'update'
    Delete = 'delete'


class ExpenseStatus(enum.StrEnum):
    Pending = 'Pending'
    Confirmed = 'Confirmed'
    Paid = 'Paid'
    OnHold = 'On Hold'
    Ignored = 'Ignored'


class ExpenseType(enum.StrEnum):
    Regular = 'Regular'
    Manual = 'Manual'
    Recurring = 'Recurring'


class IncomeType(enum.StrEnum):
    Primary = 'primary'
    Secondary = 'secondary'


class Frequency(enum.StrEnum):
    Weekly = 'weekly'
    Biweekly = 'biweekly'
    Monthly = 'monthly'
    Quarterly = 'quarterly'
    Yearly = 'yearly'
    Once = 'once'


ENTITY_TABLE: Dict[EntityType, Table] = {
    EntityType.Expense: Table.Expenses,
    EntityType.Income: Table.Income,
    EntityType.Allocation: Table.AllocationBuckets,
    EntityType.User: Table.Users,
}

SYNCED_TABLES: Tuple[Table, ...] = tuple(ENTITY_TABLE.values())

SCHEMA: Tuple[str, ...] = (
    """CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        currency TEXT NOT NULL DEFAULT 'EUR',
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        name TEXT NOT NULL,
        color TEXT DEFAULT '#2196F3',
        icon TEXT DEFAULT 'category',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS income (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        amount REAL NOT NULL,
        type TEXT NOT NULL,
        source TEXT,
        start_date TEXT,
        end_date TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        is_archived INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS expenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        category_id INTEGER NOT NULL REFERENCES categories (id),
        amount REAL NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        due_date TEXT,
        status TEXT NOT NULL DEFAULT 'Pending',
        type TEXT NOT NULL DEFAULT 'Regular',
        is_archived INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS allocation_templates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users (id),
        name TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS allocation_buckets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        template_id INTEGER NOT NULL REFERENCES allocation_templates (id),
        name TEXT,
        percentage REAL NOT NULL,
        target_amount REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS user_preferences (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE REFERENCES users (id),
        notification_due_reminder INTEGER NOT NULL DEFAULT 1,
        notification_allocation_reminder INTEGER NOT NULL DEFAULT 1,
        notification_summary INTEGER NOT NULL DEFAULT 1,
        notification_frequency TEXT NOT NULL DEFAULT 'weekly',
        theme TEXT NOT NULL DEFAULT 'light',
        created_at TEXT,
        updated_at TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT
    )""",
)

# (table, column, definition). Append only: never remove or rename an entry.
COLUMN_MIGRATIONS: Tuple[Tuple[str, str, str], ...] = (
    ('users', 'financial_goals', 'TEXT'),
    ('users', 'needs_sync', 'INTEGER NOT NULL DEFAULT 1'),
    ('users', 'api_id', 'TEXT'),
    ('users', 'synced_at', 'TEXT'),
    ('categories', 'updated_at', 'TEXT'),
    ('income', 'frequency', "TEXT NOT NULL DEFAULT 'monthly'"),
    ('income', 'needs_sync', 'INTEGER NOT NULL DEFAULT 1'),
    ('income', 'api_id', 'TEXT'),
    ('income', 'synced_at', 'TEXT'),
    ('expenses', 'is_recurring', 'INTEGER NOT NULL DEFAULT 0'),
    ('expenses', 'recurrence_end', 'TEXT'),
    ('expenses', 'is_active', 'INTEGER NOT NULL DEFAULT 1'),
    ('expenses', 'needs_sync', 'INTEGER NOT NULL DEFAULT 1'),
    ('expenses', 'api_id', 'TEXT'),
    ('expenses', 'synced_at', 'TEXT'),
    ('allocation_templates', 'updated_at', 'TEXT'),
    ('allocation_buckets', 'category_id', 'INTEGER REFERENCES categories (id)'),
    ('allocation_buckets', 'updated_at', 'TEXT'),
    ('allocation_buckets', 'needs_sync', 'INTEGER NOT NULL DEFAULT 1'),
    ('allocation_buckets', 'api_id', 'TEXT'),
    ('allocation_buckets', 'synced_at', 'TEXT'),
)

FIELD_ALIASES: Dict[str, str] = {
    'categoryId': 'category_id',
    'dueDate': 'due_date',
    'startDate': 'start_date',
    'endDate': 'end_date',
    'isRecurring': 'is_recurring',
    'recurrenceEnd': 'recurrence_end',
    'targetAmount': 'target_amount',
    'financialGoals': 'financial_goals',
}

USER_FIELDS = ('name', 'currency', 'financial_goals')
CATEGORY_FIELDS = ('name', 'color', 'icon', 'is_active')
INCOME_FIELDS = (
    'amount', 'type', 'source', 'frequency', 'start_date', 'end_date', 'is_active', 'is_archived',
)
EXPENSE_FIELDS = (
    'category_id', 'amount', 'title', 'description', 'due_date', 'status', 'type',
    'is_recurring', 'recurrence_end', 'is_active', 'is_archived',
)
BUCKET_FIELDS = ('category_id', 'name', 'percentage', 'target_amount', 'is_active')
PREFERENCE_FIELDS = (
    'notification_due_reminder', 'notification_allocation_reminder', 'notification_summary',
    'notification_frequency', 'theme',
)
BOOL_FIELDS = (
    'is_active', 'is_archived', 'is_recurring',
    'notification_due_reminder', 'notification_allocation_reminder', 'notification_summary',
)

EXPENSE_SELECT = (
    'SELECT e.*, c.name AS category_name, c.color AS category_color '
    'FROM expenses e LEFT JOIN categories c ON e.category_id = c.id'
)
BUCKET_SELECT = (
    'SELECT b.*, t.user_id AS user_id, t.name AS template_name, c.name AS category_name '
    'FROM allocation_buckets b '
    'JOIN allocation_templates t ON b.template_id = t.id '
    'LEFT JOIN categories c ON b.category_id = c.id'
)

DASHBOARD_STATUS_KEYS = ('pending', 'confirmed', 'paid', 'onhold', 'ignored')


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass
class QueueEntry:
    """One pending mutation in the sync queue.

    The payload is a full snapshot of the row taken when the mutation committed; the
    queue never holds references into the store.
    """
    entity_type: str
    action: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: str = field(default_factory=now_str)
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'action': self.action,
            'payload': self.payload,
            'enqueued_at': self.enqueued_at,
            'retry_count': self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueEntry':
        return cls(
            entity_type=data['entity_type'],
            action=data['action'],
            payload=dict(data.get('payload') or {}),
            id=data.get('id') or uuid.uuid4().hex,
            enqueued_at=data.get('enqueued_at') or now_str(),
            retry_count=int(data.get('retry_count') or 0),
        )


def _values(enum_cls: type) -> List[str]:
    return [member.value for member in enum_cls]


def _pick_fields(fields: Dict[str, Any], allowed: Tuple[str, ...]) -> Dict[str, Any]:
    """Return the allowed fields, translating camelCase aliases to column names."""
    picked: Dict[str, Any] = {}
    for key, value in fields.items():
        key = FIELD_ALIASES.get(key, key)
        if key not in allowed:
            logging.warning(f'Ignoring unknown field "{key}".')
            continue
        picked[key] = value
    return picked


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert Python values to their column representation."""
    coerced = dict(values)
    for key in BOOL_FIELDS:
        if key in coerced and coerced[key] is not None:
            coerced[key] = int(bool(coerced[key]))
    for key in ('amount', 'percentage', 'target_amount'):
        if coerced.get(key) is not None:
            number = validator.to_number(coerced[key])
            if number is not None:
                coerced[key] = number
    goals = coerced.get('financial_goals')
    if goals is not None and not isinstance(goals, str):
        coerced['financial_goals'] = json.dumps(goals)
    return coerced


def _check_positive_amount(record: Dict[str, Any], errors: List[str]) -> None:
    number = validator.to_number(record.get('amount'))
    if number is None:
        errors.append('Amount is required and must be a number')
    elif number <= 0:
        errors.append('Amount must be greater than 0')


def _raise_if(errors: List[str]) -> None:
    if errors:
        raise status.ValidationException(errors=errors)


def _check_expense(record: Dict[str, Any]) -> None:
    errors: List[str] = []
    _check_positive_amount(record, errors)
    if not str(record.get('title') or '').strip():
        errors.append('Title is required')
    if record.get('category_id') is None:
        errors.append('Category is required')
    description = record.get('description')
    if description and len(str(description)) > validator.DESCRIPTION_MAX_LENGTH:
        errors.append(f'Description must be {validator.DESCRIPTION_MAX_LENGTH} characters or less')
    if (record.get('status') or ExpenseStatus.Pending) not in _values(ExpenseStatus):
        errors.append(f'Unknown expense status "{record.get("status")}"')
    if (record.get('type') or ExpenseType.Regular) not in _values(ExpenseType):
        errors.append(f'Unknown expense type "{record.get("type")}"')
    _raise_if(errors)


def _check_income(record: Dict[str, Any]) -> None:
    errors: List[str] = []
    _check_positive_amount(record, errors)
    if record.get('type') not in _values(IncomeType):
        errors.append(f'Income type must be one of {_values(IncomeType)}')
    if (record.get('frequency') or Frequency.Monthly) not in _values(Frequency):
        errors.append(f'Unknown income frequency "{record.get("frequency")}"')
    _raise_if(errors)


def _check_bucket(record: Dict[str, Any]) -> None:
    errors: List[str] = []
    percentage = validator.to_number(record.get('percentage'))
    if percentage is None or not 0 <= percentage <= 100:
        errors.append('Percentage must be a number between 0 and 100')
    target = record.get('target_amount')
    if target is not None:
        number = validator.to_number(target)
        if number is None or number < 0:
            errors.append('Target amount must be a non-negative number')
    if record.get('category_id') is None and not str(record.get('name') or '').strip():
        errors.append('A bucket needs a category or a label')
    _raise_if(errors)


def _public_user(row: Dict[str, Any]) -> Dict[str, Any]:
    """Return a user row without credentials."""
    return {k: v for k, v in row.items() if k != 'password_hash'}


class Store(QtCore.QObject):
    """Local SQLite store with sync-aware CRUD.

    A single connection is shared by the application and guarded by a re-entrant
    lock, so the sync worker thread and the main thread can both use the store.

    Signals:
        outboxAppended (str): Emitted with the entity type after a committed mutation
            appended an entry to the sync queue.
    """
    outboxAppended = QtCore.Signal(str)

    def __init__(
            self,
            db_path: Union[str, pathlib.Path],
            defaults: Optional[Dict[str, Any]] = None,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent=parent)
        self.db_path: pathlib.Path = pathlib.Path(db_path)
        self.defaults: Dict[str, Any] = dict(defaults or {})

        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_lock = threading.Lock()
        self._initializing = False

    # Connection lifecycle

    def ensure_initialized(self) -> bool:
        """Make sure a live, verified connection exists.

        Opens the database, creates missing tables and applies column migrations when
        there is no usable connection. A caller arriving while another thread is
        initializing polls with exponential backoff instead of initializing twice.

        Returns:
            bool: True once a verified connection is available.

        Raises:
            status.DatabaseUnavailableException: If the database cannot be opened.
        """
        delay = INIT_POLL_INITIAL
        waited = 0.0
        while True:
            if self._is_alive():
                return True
            with self._init_lock:
                if not self._initializing and self._conn is None:
                    self._initializing = True
                    break
                initializing = self._initializing
            if not initializing:
                continue
            if waited >= INIT_POLL_TIMEOUT:
                raise status.DatabaseUnavailableException(
                    f'Timed out after {waited:.1f}s waiting for database initialization.'
                )
            logging.debug(f'Database initialization in progress, retrying in {delay:.2f}s')
            time.sleep(delay)
            waited += delay
            delay = min(delay * 2, INIT_POLL_MAX)

        try:
            self._open()
        finally:
            with self._init_lock:
                self._initializing = False
        return True

    def _is_alive(self) -> bool:
        with self._lock:
            if self._conn is None:
                return False
            try:
                self._conn.execute('SELECT 1').fetchone()
                return True
            except sqlite3.Error as ex:
                logging.warning(f'Database connection failed its health check: {ex}')
                self._discard_connection()
                return False

    def _open(self) -> None:
        """Open the database file, create the schema and apply migrations."""
        logging.debug(f'Opening database "{self.db_path}"')
        conn: Optional[sqlite3.Connection] = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=2.0, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA foreign_keys = ON')
            for statement in SCHEMA:
                conn.execute(statement)
            self._apply_migrations(conn)
            conn.commit()
        except (sqlite3.Error, OSError) as ex:
            if conn is not None:
                conn.close()
            raise status.DatabaseUnavailableException(f'{self.db_path}: {ex}') from ex

        self._conn = conn
        logging.info(f'Database ready: {self.db_path}')

    @staticmethod
    def _apply_migrations(conn: sqlite3.Connection) -> None:
        applied = 0
        for table, column, definition in COLUMN_MIGRATIONS:
            try:
                conn.execute(f'ALTER TABLE {table} ADD COLUMN {column} {definition}')
                applied += 1
            except sqlite3.OperationalError as ex:
                if 'duplicate column name' not in str(ex).lower():
                    raise
        if applied:
            logging.info(f'Applied {applied} column migration(s).')

    def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except sqlite3.Error as ex:
            logging.debug(f'Error closing discarded connection: {ex}')

    def close(self) -> None:
        """Close the shared connection. The next operation reopens it."""
        with self._lock:
            logging.debug('Closing database connection.')
            self._discard_connection()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.ensure_initialized()
        return self._conn

    @staticmethod
    def _rollback_quietly(conn: sqlite3.Connection) -> None:
        try:
            conn.rollback()
        except sqlite3.Error as ex:
            logging.debug(f'Rollback failed: {ex}')

    @staticmethod
    def _integrity_exception(ex: sqlite3.IntegrityError) -> status.BaseStatusException:
        if 'FOREIGN KEY' in str(ex).upper():
            return status.InvalidReferenceException(str(ex))
        return status.ValidationException(str(ex))

    def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn in a transaction on the shared connection and commit.

        A statement failing on a closed or broken connection is retried once on a
        fresh connection.

        Raises:
            status.DatabaseUnavailableException: If the retry fails as well.
            status.InvalidReferenceException: On a foreign key violation.
            status.ValidationException: On other constraint violations.
        """
        with self._lock:
            retried = False
            while True:
                conn = self._connection()
                try:
                    result = fn(conn)
                    conn.commit()
                    return result
                except sqlite3.IntegrityError as ex:
                    self._rollback_quietly(conn)
                    raise self._integrity_exception(ex) from ex
                except (sqlite3.OperationalError, sqlite3.ProgrammingError, sqlite3.InterfaceError) as ex:
                    self._rollback_quietly(conn)
                    if retried:
                        raise status.DatabaseUnavailableException(str(ex)) from ex
                    logging.warning(f'Database statement failed, reconnecting: {ex}')
                    self._discard_connection()
                    retried = True
                except Exception:
                    self._rollback_quietly(conn)
                    raise

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and yield the connection inside one transaction.

        Commits on success and rolls back on any exception.
        """
        with self._lock:
            conn = self._connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as ex:
                self._rollback_quietly(conn)
                raise self._integrity_exception(ex) from ex
            except sqlite3.Error as ex:
                self._rollback_quietly(conn)
                self._discard_connection()
                raise status.DatabaseUnavailableException(str(ex)) from ex
            except BaseException:
                self._rollback_quietly(conn)
                raise

    # Helpers

    @staticmethod
    def _fetch_one(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
        row = conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    @staticmethod
    def _fetch_all(conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _require(self, conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...], label: str) -> Dict[str, Any]:
        row = self._fetch_one(conn, sql, params)
        if row is None:
            raise status.InvalidReferenceException(f'{label} does not exist.')
        return row

    def _check_user(self, conn: sqlite3.Connection, user_id: int) -> None:
        self._require(conn, 'SELECT id FROM users WHERE id = ?', (user_id,), f'User {user_id}')

    def _check_category_owner(self, conn: sqlite3.Connection, category_id: Any, user_id: int) -> None:
        row = self._require(
            conn, 'SELECT id, user_id FROM categories WHERE id = ?', (category_id,), f'Category {category_id}'
        )
        if row['user_id'] != user_id:
            raise status.InvalidReferenceException(f'Category {category_id} belongs to another user.')

    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, values: Dict[str, Any]) -> int:
        columns = ', '.join(values)
        placeholders = ', '.join('?' for _ in values)
        cursor = conn.execute(
            f'INSERT INTO {table} ({columns}) VALUES ({placeholders})', tuple(values.values())
        )
        return cursor.lastrowid

    @staticmethod
    def _update(conn: sqlite3.Connection, table: str, row_id: int, values: Dict[str, Any]) -> None:
        assignments = ', '.join(f'{column} = ?' for column in values)
        conn.execute(f'UPDATE {table} SET {assignments} WHERE id = ?', (*values.values(), row_id))

    def _enqueue(
            self,
            conn: sqlite3.Connection,
            entity_type: EntityType,
            action: Action,
            payload: Dict[str, Any]
    ) -> QueueEntry:
        entry = QueueEntry(entity_type=entity_type.value, action=action.value, payload=payload)
        self.append_to_slot(SYNC_QUEUE_KEY, entry.to_dict(), conn=conn)
        logging.debug(f'Queued {entry.action} {entry.entity_type} (entry {entry.id})')
        return entry

    # Key-value slots

    def read_slot(self, key: str, conn: Optional[sqlite3.Connection] = None) -> List[Any]:
        """Return the JSON list stored under key, or an empty list."""

        def _read(c: sqlite3.Connection) -> List[Any]:
            row = c.execute('SELECT value FROM kv_store WHERE key = ?', (key,)).fetchone()
            if row is None or not row['value']:
                return []
            try:
                data = json.loads(row['value'])
            except json.JSONDecodeError as ex:
                logging.error(f'Slot "{key}" holds invalid JSON, treating it as empty: {ex}. Raw: {row["value"]}')
                return []
            if not isinstance(data, list):
                logging.error(f'Slot "{key}" does not hold a list, treating it as empty. Raw: {row["value"]}')
                return []
            return data

        if conn is not None:
            return _read(conn)
        return self._run(_read)

    def write_slot(self, key: str, items: List[Any], conn: Optional[sqlite3.Connection] = None) -> None:
        """Replace the JSON list stored under key."""

        def _write(c: sqlite3.Connection) -> None:
            c.execute(
                'INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)',
                (key, json.dumps(items), now_str())
            )

        if conn is not None:
            _write(conn)
            return
        self._run(_write)

    def append_to_slot(self, key: str, item: Any, conn: Optional[sqlite3.Connection] = None) -> None:
        """Append an item to the JSON list stored under key."""

        def _append(c: sqlite3.Connection) -> None:
            items = self.read_slot(key, conn=c)
            items.append(item)
            self.write_slot(key, items, conn=c)

        if conn is not None:
            _append(conn)
            return
        self._run(_append)

    def enqueue(self, entity_type: Union[str, EntityType], action: Union[str, Action],
                payload: Dict[str, Any]) -> QueueEntry:
        """Append a sync queue entry in its own transaction.

        Raises:
            ValueError: If entity_type or action is unknown.
        """
        entity_type = EntityType(entity_type)
        action = Action(action)
        entry = self._run(lambda conn: self._enqueue(conn, entity_type, action, dict(payload)))
        self.outboxAppended.emit(entity_type.value)
        return entry

    # Users

    def create_user(
            self,
            email: str,
            password_hash: str,
            name: str,
            currency: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a user with the default categories and a preferences row.

        Returns:
            dict: The new user row without the password hash.

        Raises:
            status.ValidationException: If the email or name is invalid, or the email is taken.
        """
        email = (email or '').strip().lower()
        result = validator.validate_user({'email': email, 'name': name})
        _raise_if(result.errors)
        if not password_hash:
            raise status.ValidationException('Password hash is required')

        currency = currency or self.defaults.get('currency') or 'EUR'
        categories = self.defaults.get('categories') or []

        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            ts = now_str()
            user_id = self._insert(conn, 'users', {
                'email': email,
                'password_hash': password_hash,
                'name': name.strip(),
                'currency': currency,
                'created_at': ts,
                'updated_at': ts,
            })
            for category in categories:
                self._insert(conn, 'categories', {
                    'user_id': user_id,
                    'name': category['name'],
                    'color': category.get('color') or DEFAULT_CATEGORY_COLOR,
                    'icon': category.get('icon') or DEFAULT_CATEGORY_ICON,
                    'created_at': ts,
                })
            self._insert(conn, 'user_preferences', {'user_id': user_id, 'created_at': ts, 'updated_at': ts})
            return self._fetch_one(conn, 'SELECT * FROM users WHERE id = ?', (user_id,))

        row = self._run(_create)
        logging.info(f'Created user {row["id"]} with {len(categories)} default categories')
        return _public_user(row)

    def get_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        email = (email or '').strip().lower()
        return self._run(lambda conn: self._fetch_one(conn, 'SELECT * FROM users WHERE email = ?', (email,)))

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: self._fetch_one(conn, 'SELECT * FROM users WHERE id = ?', (user_id,)))

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update the user's profile and queue the change for sync.

        Args:
            user_id: Local user id.
            fields: Any of ``name``, ``currency`` and ``financial_goals``.

        Returns:
            dict: The updated user row without the password hash.
        """
        values = _pick_fields(fields, USER_FIELDS)

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._require(conn, 'SELECT * FROM users WHERE id = ?', (user_id,), f'User {user_id}')
            record = {**current, **values}
            result = validator.validate_user({'email': record['email'], 'name': record['name']})
            _raise_if(result.errors)

            self._update(conn, 'users', user_id, {**_coerce(values), 'needs_sync': 1, 'updated_at': now_str()})
            snapshot = _public_user(self._fetch_one(conn, 'SELECT * FROM users WHERE id = ?', (user_id,)))
            self._enqueue(conn, EntityType.User, Action.Update, snapshot)
            return snapshot

        snapshot = self._run(_update)
        self.outboxAppended.emit(EntityType.User.value)
        return snapshot

    def apply_remote_user(
            self,
            user_id: int,
            profile: Dict[str, Any],
            remote_id: Optional[str] = None,
            password_hash: Optional[str] = None
    ) -> None:
        """Write a profile received from the backend and mark the user as synced.

        Nothing is queued: the data came from the server.
        """
        profile = {FIELD_ALIASES.get(k, k): v for k, v in profile.items()}
        values = {k: profile[k] for k in USER_FIELDS if profile.get(k) is not None}
        if password_hash:
            values['password_hash'] = password_hash

        def _apply(conn: sqlite3.Connection) -> None:
            self._check_user(conn, user_id)
            self._update(conn, 'users', user_id, {**_coerce(values), 'updated_at': now_str()})
            self.mark_as_synced(Table.Users, user_id, remote_id, conn=conn)

        self._run(_apply)

    def update_user_password(self, user_id: int, password_hash: str) -> None:
        """Replace the stored password hash. Credentials are never synchronized."""

        def _update(conn: sqlite3.Connection) -> None:
            self._check_user(conn, user_id)
            self._update(conn, 'users', user_id, {'password_hash': password_hash, 'updated_at': now_str()})

        self._run(_update)
        logging.info(f'Password updated for user {user_id}')

    # Categories

    def create_category(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, CATEGORY_FIELDS)
        result = validator.validate_category(values)
        _raise_if(result.errors)
        if values.get('color') and 'Invalid color format, using default' in result.warnings:
            values['color'] = DEFAULT_CATEGORY_COLOR

        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            ts = now_str()
            category_id = self._insert(conn, 'categories', {
                'color': DEFAULT_CATEGORY_COLOR,
                'icon': DEFAULT_CATEGORY_ICON,
                **_coerce(values),
                'name': values['name'].strip(),
                'user_id': user_id,
                'created_at': ts,
                'updated_at': ts,
            })
            return self._fetch_one(conn, 'SELECT * FROM categories WHERE id = ?', (category_id,))

        return self._run(_create)

    def update_category(self, category_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, CATEGORY_FIELDS)

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._require(
                conn, 'SELECT * FROM categories WHERE id = ?', (category_id,), f'Category {category_id}'
            )
            result = validator.validate_category({**current, **values})
            _raise_if(result.errors)
            self._update(conn, 'categories', category_id, {**_coerce(values), 'updated_at': now_str()})
            return self._fetch_one(conn, 'SELECT * FROM categories WHERE id = ?', (category_id,))

        return self._run(_update)

    def deactivate_category(self, category_id: int) -> None:
        """Hide a category. Categories are never deleted while expenses reference them."""
        self.update_category(category_id, {'is_active': False})

    def get_categories_by_user(self, user_id: int, include_inactive: bool = False) -> List[Dict[str, Any]]:
        sql = 'SELECT * FROM categories WHERE user_id = ?'
        if not include_inactive:
            sql += ' AND is_active = 1'
        sql += ' ORDER BY name COLLATE NOCASE ASC'
        return self._run(lambda conn: self._fetch_all(conn, sql, (user_id,)))

    @staticmethod
    def merge_categories(
            user_categories: List[Dict[str, Any]],
            default_categories: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Combine user and default categories, dropping defaults whose name the user already has.

        Names are compared case-insensitively. User categories come first.
        """
        seen = {str(c.get('name') or '').strip().casefold() for c in user_categories}
        merged = list(user_categories)
        for category in default_categories:
            key = str(category.get('name') or '').strip().casefold()
            if not key or key in seen:
                continue
            seen.add(key)
            merged.append(category)
        return merged

    # Income

    def _income(self, conn: sqlite3.Connection, income_id: int) -> Dict[str, Any]:
        return self._require(conn, 'SELECT * FROM income WHERE id = ?', (income_id,), f'Income {income_id}')

    def create_income(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create an income record and queue it for sync in the same transaction.

        Raises:
            status.ValidationException: If amount, type or frequency is invalid.
            status.InvalidReferenceException: If the user does not exist.
        """
        values = _pick_fields(fields, INCOME_FIELDS)
        values.setdefault('frequency', Frequency.Monthly.value)
        _check_income(values)

        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            ts = now_str()
            income_id = self._insert(conn, 'income', {
                **_coerce(values),
                'user_id': user_id,
                'needs_sync': 1,
                'created_at': ts,
                'updated_at': ts,
            })
            snapshot = self._income(conn, income_id)
            self._enqueue(conn, EntityType.Income, Action.Create, snapshot)
            return snapshot

        snapshot = self._run(_create)
        self.outboxAppended.emit(EntityType.Income.value)
        return snapshot

    def update_income(self, income_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, INCOME_FIELDS)

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._income(conn, income_id)
            _check_income({**current, **values})
            self._update(conn, 'income', income_id, {**_coerce(values), 'needs_sync': 1, 'updated_at': now_str()})
            snapshot = self._income(conn, income_id)
            self._enqueue(conn, EntityType.Income, Action.Update, snapshot)
            return snapshot

        snapshot = self._run(_update)
        self.outboxAppended.emit(EntityType.Income.value)
        return snapshot

    def delete_income(self, income_id: int) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            snapshot = self._income(conn, income_id)
            conn.execute('DELETE FROM income WHERE id = ?', (income_id,))
            self._enqueue(conn, EntityType.Income, Action.Delete, snapshot)

        self._run(_delete)
        self.outboxAppended.emit(EntityType.Income.value)

    def get_income(self, income_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: self._fetch_one(conn, 'SELECT * FROM income WHERE id = ?', (income_id,)))

    def get_income_by_user(self, user_id: int, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the user's income, newest first.

        Args:
            user_id: Local user id.
            filters: Optional ``type``, ``frequency``, ``include_archived`` and ``include_inactive``.
        """
        filters = dict(filters or {})
        clauses = ['user_id = ?']
        params: List[Any] = [user_id]
        if not filters.get('include_archived'):
            clauses.append('is_archived = 0')
        if not filters.get('include_inactive'):
            clauses.append('is_active = 1')
        for key in ('type', 'frequency'):
            if filters.get(key):
                clauses.append(f'{key} = ?')
                params.append(filters[key])

        sql = f'SELECT * FROM income WHERE {" AND ".join(clauses)} ORDER BY created_at DESC, id DESC'
        return self._run(lambda conn: self._fetch_all(conn, sql, tuple(params)))

    # Expenses

    def _expense(self, conn: sqlite3.Connection, expense_id: int) -> Dict[str, Any]:
        return self._require(conn, f'{EXPENSE_SELECT} WHERE e.id = ?', (expense_id,), f'Expense {expense_id}')

    def create_expense(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create an expense and queue it for sync in the same transaction.

        Args:
            user_id: Local user id.
            fields: Expense columns; camelCase aliases such as ``categoryId`` are accepted.

        Returns:
            dict: The new row including ``category_name`` and ``category_color``.

        Raises:
            status.ValidationException: If a required field is missing or invalid.
            status.InvalidReferenceException: If the category does not belong to the user.
        """
        values = _pick_fields(fields, EXPENSE_FIELDS)
        values.setdefault('status', ExpenseStatus.Pending.value)
        values.setdefault('type', ExpenseType.Regular.value)
        _check_expense(values)

        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            self._check_category_owner(conn, values['category_id'], user_id)
            ts = now_str()
            expense_id = self._insert(conn, 'expenses', {
                **_coerce(values),
                'user_id': user_id,
                'needs_sync': 1,
                'created_at': ts,
                'updated_at': ts,
            })
            snapshot = self._expense(conn, expense_id)
            self._enqueue(conn, EntityType.Expense, Action.Create, snapshot)
            return snapshot

        snapshot = self._run(_create)
        self.outboxAppended.emit(EntityType.Expense.value)
        return snapshot

    def update_expense(self, expense_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, EXPENSE_FIELDS)

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._expense(conn, expense_id)
            _check_expense({**current, **values})
            if 'category_id' in values:
                self._check_category_owner(conn, values['category_id'], current['user_id'])
            self._update(
                conn, 'expenses', expense_id, {**_coerce(values), 'needs_sync': 1, 'updated_at': now_str()}
            )
            snapshot = self._expense(conn, expense_id)
            self._enqueue(conn, EntityType.Expense, Action.Update, snapshot)
            return snapshot

        snapshot = self._run(_update)
        self.outboxAppended.emit(EntityType.Expense.value)
        return snapshot

    def delete_expense(self, expense_id: int) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            snapshot = self._expense(conn, expense_id)
            conn.execute('DELETE FROM expenses WHERE id = ?', (expense_id,))
            self._enqueue(conn, EntityType.Expense, Action.Delete, snapshot)

        self._run(_delete)
        self.outboxAppended.emit(EntityType.Expense.value)

    def get_expense(self, expense_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: self._fetch_one(conn, f'{EXPENSE_SELECT} WHERE e.id = ?', (expense_id,)))

    def get_expenses_by_user(self, user_id: int, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the user's expenses ordered by due date.

        Args:
            user_id: Local user id.
            filters: Optional ``status``, ``category_id``, ``start_date`` with ``end_date``,
                ``include_archived`` and ``include_inactive``.
        """
        filters = {FIELD_ALIASES.get(k, k): v for k, v in (filters or {}).items()}
        clauses = ['e.user_id = ?']
        params: List[Any] = [user_id]
        if not filters.get('include_archived'):
            clauses.append('e.is_archived = 0')
        if not filters.get('include_inactive'):
            clauses.append('e.is_active = 1')
        if filters.get('status'):
            clauses.append('e.status = ?')
            params.append(filters['status'])
        if filters.get('category_id') is not None:
            clauses.append('e.category_id = ?')
            params.append(filters['category_id'])
        if filters.get('start_date') and filters.get('end_date'):
            clauses.append('e.due_date BETWEEN ? AND ?')
            params.extend((filters['start_date'], filters['end_date']))

        sql = f'{EXPENSE_SELECT} WHERE {" AND ".join(clauses)} ORDER BY e.due_date ASC, e.id ASC'
        return self._run(lambda conn: self._fetch_all(conn, sql, tuple(params)))

    def save_remote_expense(self, user_id: int, fields: Dict[str, Any], remote_id: str) -> Dict[str, Any]:
        """Insert an expense received from the backend and mark it as synced.

        Nothing is queued: the data came from the server.

        Raises:
            status.ValidationException: If a required field is missing or invalid.
            status.InvalidReferenceException: If the category does not belong to the user.
        """
        values = _pick_fields(fields, EXPENSE_FIELDS)
        values.setdefault('status', ExpenseStatus.Pending.value)
        values.setdefault('type', ExpenseType.Regular.value)
        _check_expense(values)

        def _save(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            self._check_category_owner(conn, values['category_id'], user_id)
            ts = now_str()
            expense_id = self._insert(conn, 'expenses', {
                **_coerce(values),
                'user_id': user_id,
                'created_at': ts,
                'updated_at': ts,
            })
            self.mark_as_synced(Table.Expenses, expense_id, remote_id, conn=conn)
            return self._expense(conn, expense_id)

        return self._run(_save)

    def apply_remote_expense(
            self,
            expense_id: int,
            fields: Dict[str, Any],
            remote_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Overwrite an expense with the server's version and mark it as synced. Nothing is queued."""
        values = _pick_fields(fields, EXPENSE_FIELDS)

        def _apply(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._expense(conn, expense_id)
            _check_expense({**current, **values})
            if 'category_id' in values:
                self._check_category_owner(conn, values['category_id'], current['user_id'])
            self._update(conn, 'expenses', expense_id, {**_coerce(values), 'updated_at': now_str()})
            self.mark_as_synced(Table.Expenses, expense_id, remote_id, conn=conn)
            return self._expense(conn, expense_id)

        return self._run(_apply)

    # Allocations

    def _bucket(self, conn: sqlite3.Connection, bucket_id: int) -> Dict[str, Any]:
        return self._require(conn, f'{BUCKET_SELECT} WHERE b.id = ?', (bucket_id,), f'Allocation bucket {bucket_id}')

    def _insert_bucket(self, conn: sqlite3.Connection, template: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, BUCKET_FIELDS)
        _check_bucket(values)
        if values.get('category_id') is not None:
            self._check_category_owner(conn, values['category_id'], template['user_id'])
        ts = now_str()
        bucket_id = self._insert(conn, 'allocation_buckets', {
            **_coerce(values),
            'template_id': template['id'],
            'needs_sync': 1,
            'created_at': ts,
            'updated_at': ts,
        })
        snapshot = self._bucket(conn, bucket_id)
        self._enqueue(conn, EntityType.Allocation, Action.Create, snapshot)
        return snapshot

    def create_allocation_template(
            self,
            user_id: int,
            name: str,
            buckets: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, Any]:
        """Create a template with its buckets. Each bucket is queued for sync.

        Bucket percentages are not required to add up to 100; see :meth:`get_allocation_total`.
        """
        if not str(name or '').strip():
            raise status.ValidationException('Template name is required')

        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            ts = now_str()
            template_id = self._insert(conn, 'allocation_templates', {
                'user_id': user_id, 'name': name.strip(), 'created_at': ts, 'updated_at': ts,
            })
            template = self._fetch_one(conn, 'SELECT * FROM allocation_templates WHERE id = ?', (template_id,))
            template['buckets'] = [self._insert_bucket(conn, template, b) for b in (buckets or [])]
            return template

        template = self._run(_create)
        if template['buckets']:
            self.outboxAppended.emit(EntityType.Allocation.value)
        return template

    def get_allocation_templates(self, user_id: int) -> List[Dict[str, Any]]:
        """Return active templates with their active buckets.

        Each bucket carries a ``label``: its category name, or the legacy free-text name
        for buckets without a category row.
        """

        def _read(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
            templates = self._fetch_all(
                conn,
                'SELECT * FROM allocation_templates WHERE user_id = ? AND is_active = 1 ORDER BY id ASC',
                (user_id,)
            )
            for template in templates:
                buckets = self._fetch_all(
                    conn, f'{BUCKET_SELECT} WHERE b.template_id = ? AND b.is_active = 1 ORDER BY b.id ASC',
                    (template['id'],)
                )
                for bucket in buckets:
                    bucket['label'] = bucket['category_name'] or bucket['name']
                template['buckets'] = buckets
            return templates

        return self._run(_read)

    def create_allocation_bucket(self, template_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        def _create(conn: sqlite3.Connection) -> Dict[str, Any]:
            template = self._require(
                conn, 'SELECT * FROM allocation_templates WHERE id = ?', (template_id,),
                f'Allocation template {template_id}'
            )
            return self._insert_bucket(conn, template, fields)

        snapshot = self._run(_create)
        self.outboxAppended.emit(EntityType.Allocation.value)
        return snapshot

    def update_allocation_bucket(self, bucket_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _pick_fields(fields, BUCKET_FIELDS)

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            current = self._bucket(conn, bucket_id)
            _check_bucket({**current, **values})
            if values.get('category_id') is not None:
                self._check_category_owner(conn, values['category_id'], current['user_id'])
            self._update(
                conn, 'allocation_buckets', bucket_id, {**_coerce(values), 'needs_sync': 1, 'updated_at': now_str()}
            )
            snapshot = self._bucket(conn, bucket_id)
            self._enqueue(conn, EntityType.Allocation, Action.Update, snapshot)
            return snapshot

        snapshot = self._run(_update)
        self.outboxAppended.emit(EntityType.Allocation.value)
        return snapshot

    def delete_allocation_bucket(self, bucket_id: int) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            snapshot = self._bucket(conn, bucket_id)
            conn.execute('DELETE FROM allocation_buckets WHERE id = ?', (bucket_id,))
            self._enqueue(conn, EntityType.Allocation, Action.Delete, snapshot)

        self._run(_delete)
        self.outboxAppended.emit(EntityType.Allocation.value)

    def deactivate_allocation_template(self, template_id: int) -> None:
        """Deactivate a template and its buckets, queueing a remote delete per active bucket."""

        def _deactivate(conn: sqlite3.Connection) -> int:
            self._require(
                conn, 'SELECT id FROM allocation_templates WHERE id = ?', (template_id,),
                f'Allocation template {template_id}'
            )
            buckets = self._fetch_all(
                conn, f'{BUCKET_SELECT} WHERE b.template_id = ? AND b.is_active = 1', (template_id,)
            )
            ts = now_str()
            self._update(conn, 'allocation_templates', template_id, {'is_active': 0, 'updated_at': ts})
            for bucket in buckets:
                self._update(conn, 'allocation_buckets', bucket['id'], {'is_active': 0, 'needs_sync': 1, 'updated_at': ts})
                self._enqueue(conn, EntityType.Allocation, Action.Delete, {**bucket, 'is_active': 0})
            return len(buckets)

        if self._run(_deactivate):
            self.outboxAppended.emit(EntityType.Allocation.value)

    def get_allocation_bucket(self, bucket_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: self._fetch_one(conn, f'{BUCKET_SELECT} WHERE b.id = ?', (bucket_id,)))

    def get_allocation_total(self, template_id: int) -> float:
        """Return the sum of active bucket percentages of a template."""
        row = self._run(lambda conn: self._fetch_one(
            conn,
            'SELECT COALESCE(SUM(percentage), 0) AS total FROM allocation_buckets WHERE template_id = ? AND is_active = 1',
            (template_id,)
        ))
        return float(row['total'])

    # Preferences

    def get_preferences(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self._run(lambda conn: self._fetch_one(
            conn, 'SELECT * FROM user_preferences WHERE user_id = ?', (user_id,)
        ))

    def update_preferences(self, user_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = _coerce(_pick_fields(fields, PREFERENCE_FIELDS))

        def _update(conn: sqlite3.Connection) -> Dict[str, Any]:
            self._check_user(conn, user_id)
            ts = now_str()
            current = self._fetch_one(conn, 'SELECT id FROM user_preferences WHERE user_id = ?', (user_id,))
            if current is None:
                self._insert(conn, 'user_preferences', {**values, 'user_id': user_id, 'created_at': ts, 'updated_at': ts})
            elif values:
                self._update(conn, 'user_preferences', current['id'], {**values, 'updated_at': ts})
            return self._fetch_one(conn, 'SELECT * FROM user_preferences WHERE user_id = ?', (user_id,))

        return self._run(_update)

    # Sync metadata

    def mark_as_synced(
            self,
            table: Union[str, Table],
            local_id: int,
            remote_id: Optional[str] = None,
            conn: Optional[sqlite3.Connection] = None
    ) -> None:
        """Clear ``needs_sync``, stamp ``synced_at`` and store ``api_id`` when given.

        This is the only place ``api_id`` is written. Only the sync queue calls it.

        Args:
            table: One of the synced tables.
            local_id: Local row id.
            remote_id: The remote identifier, if the remote call returned one.
            conn: Run on this connection inside the caller's transaction.

        Raises:
            ValueError: If table does not carry sync metadata.
        """
        table = Table(table)
        if table not in SYNCED_TABLES:
            raise ValueError(f'Table "{table.value}" does not carry sync metadata.')

        def _mark(c: sqlite3.Connection) -> None:
            c.execute(
                f'UPDATE {table.value} SET needs_sync = 0, synced_at = ?, api_id = COALESCE(?, api_id) WHERE id = ?',
                (now_str(), remote_id, local_id)
            )

        if conn is not None:
            _mark(conn)
        else:
            self._run(_mark)
        logging.debug(f'Marked {table.value} {local_id} as synced (remote id: {remote_id})')

    def get_pending_rows(self, table: Union[str, Table]) -> List[Dict[str, Any]]:
        """Return rows of a synced table that still have ``needs_sync`` set."""
        table = Table(table)
        if table not in SYNCED_TABLES:
            raise ValueError(f'Table "{table.value}" does not carry sync metadata.')
        return self._run(lambda conn: self._fetch_all(
            conn, f'SELECT * FROM {table.value} WHERE needs_sync = 1 ORDER BY id ASC'
        ))

    def validate_local_data_integrity(self, user_id: Optional[int] = None) -> Dict[str, Dict[str, int]]:
        """Run the validators over the stored users, categories and expenses.

        Args:
            user_id: Limit the check to one user's rows. All rows when None.

        Returns:
            dict: ``valid``, ``invalid`` and ``warnings`` counts per ``users``, ``categories``
            and ``expenses``.
        """
        scope = ('', ()) if user_id is None else (' WHERE {column} = ?', (user_id,))

        def _read(conn: sqlite3.Connection) -> Tuple[List[Dict[str, Any]], ...]:
            where, params = scope
            return (
                self._fetch_all(conn, 'SELECT id, email, name FROM users' + where.format(column='id'), params),
                self._fetch_all(conn, 'SELECT * FROM categories' + where.format(column='user_id'), params),
                self._fetch_all(conn, EXPENSE_SELECT + where.format(column='e.user_id'), params),
            )

        users, categories, expenses = self._run(_read)
        checks = (
            ('users', users, validator.validate_user),
            ('categories', categories, validator.validate_category),
            ('expenses', expenses, lambda row: validator.validate_expense({
                'amount': row['amount'],
                'title': row['title'],
                'description': row['description'],
                'categoryId': row['category_id'],
                'category': row['category_name'],
                'date': row['due_date'],
            })),
        )

        results: Dict[str, Dict[str, int]] = {}
        for name, rows, validate in checks:
            counts = {'valid': 0, 'invalid': 0, 'warnings': 0}
            for row in rows:
                result = validate(row)
                if result.is_valid:
                    counts['valid'] += 1
                else:
                    counts['invalid'] += 1
                    logging.warning(f'Invalid {name} row {row["id"]}: {"; ".join(result.errors)}')
                counts['warnings'] += len(result.warnings)
            results[name] = counts

        logging.info(f'Data integrity check completed: {results}')
        return results

    # Reporting

    def get_expense_frame(self, user_id: int) -> pd.DataFrame:
        """Load the user's non-archived expenses into a DataFrame.

        ``due_date`` is parsed to datetimes; unparseable dates become NaT.
        """

        def _read(conn: sqlite3.Connection) -> pd.DataFrame:
            return pd.read_sql_query(
                f'{EXPENSE_SELECT} WHERE e.user_id = ? AND e.is_archived = 0 ORDER BY e.due_date ASC',
                conn, params=(user_id,)
            )

        df = self._run(_read)
        df['due_date'] = pd.to_datetime(df['due_date'], errors='coerce', format='ISO8601')
        logging.debug(f'Loaded {len(df)} expense rows for user {user_id}.')
        return df

    def get_dashboard_totals(
            self,
            user_id: int,
            month: Optional[int] = None,
            year: Optional[int] = None
    ) -> Dict[str, Any]:
        """Summarize one month: income, expenses by status and what remains.

        Income counts by the month it was recorded in, expenses by their due date.
        ``remaining`` is income minus paid expenses.

        Args:
            user_id: Local user id.
            month: 1-12, defaults to the current month.
            year: Defaults to the current year.
        """
        today = datetime.date.today()
        month = month or today.month
        year = year or today.year

        def _read(conn: sqlite3.Connection) -> Tuple[pd.DataFrame, pd.DataFrame]:
            income = pd.read_sql_query(
                'SELECT amount, created_at FROM income WHERE user_id = ? AND is_archived = 0',
                conn, params=(user_id,)
            )
            expenses = pd.read_sql_query(
                'SELECT amount, status, due_date FROM expenses WHERE user_id = ? AND is_archived = 0',
                conn, params=(user_id,)
            )
            return income, expenses

        income, expenses = self._run(_read)

        created = pd.to_datetime(income['created_at'], errors='coerce', utc=True, format='ISO8601')
        in_month = (created.dt.month == month) & (created.dt.year == year)
        total_income = float(income.loc[in_month, 'amount'].sum())

        due = pd.to_datetime(expenses['due_date'], errors='coerce', utc=True, format='ISO8601')
        in_month = (due.dt.month == month) & (due.dt.year == year)
        by_status = expenses.loc[in_month].groupby('status')['amount'].sum()

        totals = {key: 0.0 for key in DASHBOARD_STATUS_KEYS}
        for status_name, amount in by_status.items():
            key = str(status_name).lower().replace(' ', '')
            if key in totals:
                totals[key] = float(amount)

        total_expenses = sum(totals.values())
        return {
            'income': total_income,
            'expenses': totals,
            'total_expenses': total_expenses,
            'remaining': total_income - totals['paid'],
            'month': month,
            'year': year,
        }
