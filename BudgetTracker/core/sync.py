"""Durable sync queue draining local changes to the remote backend.

Every committed local mutation leaves a :class:`~BudgetTracker.core.database.QueueEntry`
in the store's ``sync_queue`` slot. :class:`SyncQueue` drains the queue whenever the
network is available and the session holds an access token: on the offline to online
transition, after a sign-in, on a periodic timer and right after new entries are appended.

A drain pass:

- takes a snapshot of the queue and processes the entries in enqueue order
- dispatches each entry to the handler of its entity type (:meth:`SyncQueue.sync_expense`,
  :meth:`SyncQueue.sync_income`, :meth:`SyncQueue.sync_allocation`, :meth:`SyncQueue.sync_user`)
- on success, removes the entry and marks the row synced in one transaction
- on failure, increments the entry's ``retry_count``; once it reaches ``max_retries``
  the entry is moved to the ``sync_dead_letter`` slot and logged with its full payload
- on an expired session, stops without charging the entry and pauses the queue until
  the user signs in again

Entry outcomes are written one by one, so entries appended during a drain are never
overwritten and are picked up by the next pass.

Handlers translate local snapshots to the remote request shapes and bridge the two id
spaces. An ``update`` whose snapshot has no ``api_id`` is sent as a create; when the
create entry of the same row is still waiting in the queue this produces a second
remote record. A ``delete`` queued behind the create of the same row receives the new
remote id when the create succeeds; a ``delete`` that never gets one is skipped, and a
remote record created by any other path stays on the server.

:meth:`SyncQueue.pull` is the other direction: it fetches remote categories and
expenses and reconciles them with the local rows, using ``local_wins`` for categories
and the recommended ``newer_wins`` strategy for expenses.
"""
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from PySide6 import QtCore

from . import conflict
from . import validator
from .database import (
    Action,
    DEAD_LETTER_KEY,
    ENTITY_TABLE,
    EntityType,
    ExpenseStatus,
    QueueEntry,
    SYNC_QUEUE_KEY,
    Store,
    Table,
    now_str,
)
from .service import extract_remote_id
from ..status import status

DEFAULT_INTERVAL_SECONDS: int = 30
MAX_RETRIES: int = 3
WORKER_WAIT_MS: int = 5000

#: Local category names the backend knows under a different name.
EXPENSE_CATEGORY_MAPPING: Dict[str, str] = {
    'House Rent': 'Housing',
    'Food & Dining': 'Food',
    'Transportation': 'Transportation',
    'Utilities': 'Utilities',
    'Healthcare': 'Healthcare',
    'Entertainment': 'Entertainment',
    'Shopping': 'Shopping',
    'Travel': 'Travel',
}

#: Backend category names mapped back to the local names.
REMOTE_CATEGORY_NAMES: Dict[str, str] = {
    remote: local for local, remote in EXPENSE_CATEGORY_MAPPING.items() if local != remote
}

FALLBACK_CATEGORY = 'Other'

__all__ = [
    'DrainReport',
    'DrainWorker',
    'PullReport',
    'QueueEntry',
    'SyncQueue',
    'SyncResult',
    'to_local_expense',
    'to_remote_allocation',
    'to_remote_expense',
    'to_remote_income',
    'to_remote_user',
]


@dataclass
class SyncResult:
    """Outcome of a handler call that did not raise."""
    remote_id: Optional[str] = None
    skipped: bool = False  # nothing had to be sent
    fallback: bool = False  # an update was sent as a create


@dataclass
class DrainReport:
    """Summary of one drain pass."""
    total: int = 0
    synced: int = 0
    skipped: int = 0
    retried: int = 0
    dropped: int = 0
    stopped_by_auth: bool = False
    busy: bool = False
    remaining: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class PullReport:
    """Summary of pulling one kind of record from the backend."""
    fetched: int = 0
    created: int = 0  # saved locally from the server
    updated: int = 0  # local row overwritten by a newer remote version
    queued: int = 0  # newer local version queued to be sent again
    conflicts: int = 0
    unchanged: int = 0
    skipped: int = 0  # local changes or deletes still waiting in the queue
    invalid: int = 0
    busy: bool = False


def _map_expense_category(name: Optional[str]) -> str:
    if not name:
        return 'other'
    return EXPENSE_CATEGORY_MAPPING.get(name, name)


def _remote_category(remote: Dict[str, Any]) -> Optional[str]:
    value = remote.get('category') or remote.get('categoryName') or remote.get('categoryId')
    return str(value).strip() if value else None


def _local_category_name(remote_name: Optional[str]) -> str:
    if not remote_name or remote_name.casefold() == FALLBACK_CATEGORY.casefold():
        return FALLBACK_CATEGORY
    return REMOTE_CATEGORY_NAMES.get(remote_name, remote_name)


def _comparable_expense(data: Dict[str, Any], category: Optional[str]) -> Dict[str, Any]:
    """Return the fields both sides of an expense can be compared on."""
    due = validator.parse_timestamp(data.get('due_date') or data.get('dueDate') or data.get('date'))
    return {
        'title': str(data.get('title') or '').strip(),
        'amount': validator.to_number(data.get('amount')),
        'description': str(data.get('description') or '').strip() or None,
        'status': data.get('status') or ExpenseStatus.Pending.value,
        'category': category,
        'dueDate': validator.to_iso(due) if due is not None else None,
        'updatedAt': data.get('updatedAt') or data.get('updated_at'),
        'createdAt': data.get('createdAt') or data.get('created_at'),
    }


def to_remote_expense(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'title': payload.get('title'),
        'amount': payload.get('amount'),
        'description': payload.get('description'),
        'dueDate': payload.get('due_date') or payload.get('dueDate'),
        'status': payload.get('status'),
        'category': _map_expense_category(payload.get('category_name')),
    }


def to_local_expense(remote: Dict[str, Any]) -> Dict[str, Any]:
    """Map a remote expense to local columns. The category is resolved separately."""
    remote_status = remote.get('status')
    if remote_status not in [member.value for member in ExpenseStatus]:
        remote_status = ExpenseStatus.Pending.value
    return {
        'title': remote.get('title') or remote.get('description') or 'Expense',
        'amount': remote.get('amount'),
        'description': remote.get('description'),
        'due_date': remote.get('dueDate') or remote.get('date'),
        'status': remote_status,
    }


def to_remote_income(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'source': payload.get('source'),
        'amount': payload.get('amount'),
        'frequency': payload.get('frequency'),
        'startDate': payload.get('start_date') or payload.get('startDate'),
        'category': 'salary' if payload.get('type') == 'primary' else 'freelance',
        'isRecurring': True,
        'description': payload.get('source'),
    }


def to_remote_allocation(payload: Dict[str, Any], user_id: Any) -> Dict[str, Any]:
    template_id = payload.get('template_id') or payload.get('templateId')
    return {
        'userId': user_id,
        'categoryId': payload.get('category_id'),
        'categoryName': payload.get('category_name') or payload.get('name'),
        'percentage': payload.get('percentage'),
        'budgetLimit': payload.get('target_amount'),
        'templateId': str(template_id) if template_id is not None else None,
        'bucketName': payload.get('name') or payload.get('category_name'),
    }


def to_remote_user(payload: Dict[str, Any]) -> Dict[str, Any]:
    goals = payload.get('financial_goals')
    if isinstance(goals, str):
        try:
            goals = json.loads(goals)
        except json.JSONDecodeError:
            pass
    return {
        'email': payload.get('email'),
        'name': payload.get('name'),
        'currency': payload.get('currency'),
        'financial_goals': goals,
    }


class DrainWorker(QtCore.QThread):
    """Runs a drain pass off the main thread. Results are reported by :class:`SyncQueue` signals."""

    def __init__(self, func: Callable[[], DrainReport], parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.func = func

    def run(self) -> None:
        try:
            self.func()
        except Exception:
            logging.exception('Sync drain failed.')


class SyncQueue(QtCore.QObject):
    """Drain the store's sync queue against the remote API.

    Args:
        store: The local store owning the durable queue.
        client: :class:`~BudgetTracker.core.service.ApiClient`.
        session: :class:`~BudgetTracker.core.auth.SessionContext`.
        connectivity: :class:`~BudgetTracker.core.connectivity.ConnectivityMonitor`, or None to assume online.
        interval_seconds: Period of the drain timer while online.
        max_retries: Attempts per entry before it is dropped.
        asynchronous: Run drains in a :class:`DrainWorker` thread; when False drains run inline.

    Signals:
        queueChanged (int): Emitted with the number of pending entries.
        entrySynced (dict): Emitted with the entry and its ``remote_id`` after a successful sync.
        entryDropped (dict, str): Emitted with the entry and the reason when it is dead-lettered.
        drainFinished (object): Emitted with the :class:`DrainReport` of each pass.
    """
    queueChanged = QtCore.Signal(int)
    entrySynced = QtCore.Signal(dict)
    entryDropped = QtCore.Signal(dict, str)
    drainFinished = QtCore.Signal(object)

    def __init__(
            self,
            store: Store,
            client: Any,
            session: Any = None,
            connectivity: Any = None,
            interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
            max_retries: int = MAX_RETRIES,
            asynchronous: bool = True,
            parent: Optional[QtCore.QObject] = None
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.client = client
        self.session = session
        self.connectivity = connectivity
        self.max_retries = max_retries
        self.asynchronous = asynchronous

        self._state_lock = threading.Lock()
        self._draining = False
        self._worker: Optional[DrainWorker] = None
        self._last_drain: Optional[str] = None

        self.handlers: Dict[str, Callable[[Action, Dict[str, Any]], SyncResult]] = {
            EntityType.Expense: self.sync_expense,
            EntityType.Income: self.sync_income,
            EntityType.Allocation: self.sync_allocation,
            EntityType.User: self.sync_user,
        }

        self.timer = QtCore.QTimer(self)
        self.timer.setInterval(int(interval_seconds * 1000))
        self.timer.timeout.connect(self.request_drain)

        self._connect_signals()

    def _connect_signals(self) -> None:
        self.store.outboxAppended.connect(self.on_outbox_appended)
        if self.connectivity is not None:
            self.connectivity.onlineChanged.connect(self.on_online_changed)
        if self.session is not None:
            self.session.authenticationRequired.connect(self.on_authentication_required)
            self.session.userChanged.connect(self.on_user_changed)

    def is_online(self) -> bool:
        return self.connectivity is None or self.connectivity.is_online()

    def has_credentials(self) -> bool:
        """Return False while the session holds no access token."""
        return self.session is None or bool(self.session.access_token)

    def is_draining(self) -> bool:
        with self._state_lock:
            return self._draining

    def _acquire(self) -> bool:
        with self._state_lock:
            if self._draining:
                return False
            self._draining = True
            return True

    def _release(self) -> None:
        with self._state_lock:
            self._draining = False

    def _resume(self) -> None:
        if not self.is_online():
            return
        if not self.has_credentials():
            logging.info('Sign-in required before the queue can be drained.')
            return
        self.timer.start()
        self.request_drain()

    def start(self) -> None:
        """Queue dirty rows that have no entry yet and start draining if possible."""
        self.reconcile()
        self._resume()

    def stop(self) -> None:
        """Stop the timer and wait for a running drain to finish."""
        self.timer.stop()
        if not self.wait():
            logging.warning(f'Drain still running after {WORKER_WAIT_MS} ms.')

    def wait(self, msecs: int = WORKER_WAIT_MS) -> bool:
        """Block until the drain worker finishes.

        Returns:
            bool: False if the worker is still running after msecs.
        """
        if self._worker is None or not self._worker.isRunning():
            return True
        logging.debug('Waiting for the running drain to finish.')
        return self._worker.wait(msecs)

    @QtCore.Slot(bool)
    def on_online_changed(self, online: bool) -> None:
        if online:
            logging.info('Back online, starting periodic sync.')
            self._resume()
        else:
            logging.info('Offline, periodic sync stopped.')
            self.timer.stop()

    @QtCore.Slot()
    def on_authentication_required(self) -> None:
        logging.info('Periodic sync paused until the user signs in again.')
        self.timer.stop()

    @QtCore.Slot(object)
    def on_user_changed(self, user: Optional[Dict[str, Any]]) -> None:
        if user is None:
            self.timer.stop()
            return
        self._resume()

    @QtCore.Slot(str)
    def on_outbox_appended(self, entity_type: str) -> None:
        self.queueChanged.emit(self.pending_count())
        if self.is_online() and not self.is_draining():
            self.request_drain()

    @QtCore.Slot()
    def request_drain(self) -> None:
        """Start a drain without waiting for it.

        Does nothing while offline, while signed out or while a drain is running.
        """
        if not self.is_online():
            logging.debug('Offline, drain request ignored.')
            return
        if not self.has_credentials():
            logging.debug('No access token, drain request ignored.')
            return
        if self.is_draining():
            logging.debug('Drain already running, request ignored.')
            return

        if not self.asynchronous:
            self.drain()
            return

        if self._worker is not None:
            if self._worker.isRunning():
                return
            self._worker.setParent(None)
        self._worker = DrainWorker(self.drain, parent=self)
        self._worker.start()

    def queue_for_sync(self, entity_type: str, action: str, payload: Dict[str, Any]) -> QueueEntry:
        """Append an entry to the durable queue.

        A drain is requested right away when online; the caller never waits for it.

        Raises:
            ValueError: If entity_type or action is unknown.
        """
        entry = self.store.enqueue(entity_type, action, payload)
        logging.debug(f'Queued {entry.action} {entry.entity_type} for sync (entry {entry.id})')
        return entry

    def pending_entries(self) -> List[QueueEntry]:
        return [QueueEntry.from_dict(item) for item in self.store.read_slot(SYNC_QUEUE_KEY)]

    def pending_count(self) -> int:
        return len(self.store.read_slot(SYNC_QUEUE_KEY))

    def get_dead_letters(self) -> List[Dict[str, Any]]:
        return self.store.read_slot(DEAD_LETTER_KEY)

    def clear_dead_letters(self) -> int:
        """Remove all dead letters and return how many there were.

        Rows whose entries were dropped are queued again by the next :meth:`reconcile`.
        """
        with self.store.transaction() as conn:
            count = len(self.store.read_slot(DEAD_LETTER_KEY, conn=conn))
            self.store.write_slot(DEAD_LETTER_KEY, [], conn=conn)
        logging.info(f'Cleared {count} dead letter(s).')
        return count

    def get_status(self) -> Dict[str, Any]:
        return {
            'online': self.is_online(),
            'authenticated': self.has_credentials(),
            'draining': self.is_draining(),
            'pending': self.pending_count(),
            'dead_letters': len(self.get_dead_letters()),
            'last_drain': self._last_drain,
        }

    def manual_sync(self) -> DrainReport:
        """Drain now and return the report.

        Raises:
            status.NetworkFailureException: If offline.
            status.NotAuthenticatedException: If the session holds no access token.
        """
        if not self.is_online():
            raise status.NetworkFailureException('Cannot sync while offline.')
        if not self.has_credentials():
            raise status.NotAuthenticatedException('Sign in again to sync.')
        return self.drain()

    def reconcile(self) -> int:
        """Queue rows flagged ``needs_sync`` that have no queue entry and no dead letter.

        Returns:
            int: The number of entries added.
        """
        known = {(e.entity_type, e.payload.get('id')) for e in self.pending_entries()}
        known.update(
            (letter.get('entity_type'), (letter.get('payload') or {}).get('id'))
            for letter in self.get_dead_letters()
        )
        readers = {
            EntityType.Expense: self.store.get_expense,
            EntityType.Income: self.store.get_income,
            EntityType.Allocation: self.store.get_allocation_bucket,
        }
        added = 0
        for entity_type, read in readers.items():
            for row in self.store.get_pending_rows(ENTITY_TABLE[entity_type]):
                if (entity_type.value, row['id']) in known:
                    continue
                snapshot = read(row['id'])
                if snapshot is None:
                    continue
                action = Action.Update if snapshot.get('api_id') else Action.Create
                self.store.enqueue(entity_type, action, snapshot)
                added += 1
        if added:
            logging.info(f'Queued {added} unsynced row(s) that had no queue entry.')
        return added

    # Draining

    def drain(self) -> DrainReport:
        """Process a snapshot of the queue in enqueue order.

        At most one drain or pull runs at a time; a concurrent call returns a report
        with ``busy`` set.
        """
        if not self._acquire():
            logging.debug('Drain already in progress.')
            return DrainReport(busy=True)

        try:
            report = self._drain()
        finally:
            self._release()

        self._last_drain = now_str()
        self.queueChanged.emit(report.remaining)
        self.drainFinished.emit(report)
        return report

    def _drain(self) -> DrainReport:
        entries = self.pending_entries()
        report = DrainReport(total=len(entries))
        if not entries:
            return report

        logging.info(f'Draining {len(entries)} sync queue entries.')
        for queued in entries:
            # Earlier outcomes in this pass can rewrite a later entry's payload
            entry = self._stored(queued.id)
            if entry is None:
                continue
            if not self.has_credentials():
                report.stopped_by_auth = True
                logging.info('Sign-in required, leaving the remaining entries queued.')
                break
            try:
                result = self.process_entry(entry)
            except status.AuthenticationExpiredException as ex:
                report.stopped_by_auth = True
                if self.session is None:
                    self._record_failure(entry, ex, report)
                    break
                report.errors[entry.id] = f'{type(ex).__name__}: {ex}'
                logging.warning(f'Sync of {entry.action} {entry.entity_type} needs a new sign-in, pausing the queue.')
                self.session.notify_authentication_required()
                break
            except status.ValidationException as ex:
                self._drop(entry, f'Validation failed: {"; ".join(ex.errors) or ex}', report)
            except Exception as ex:
                self._record_failure(entry, ex, report)
            else:
                self._complete(entry, result, report)

        report.remaining = self.pending_count()
        logging.info(
            f'Drain finished: {report.synced} synced, {report.skipped} skipped, '
            f'{report.retried} to retry, {report.dropped} dropped, {report.remaining} pending.'
        )
        return report

    def process_entry(self, entry: QueueEntry) -> SyncResult:
        """Dispatch one entry to its handler.

        Raises:
            status.ValidationException: If the entry's type or action is unknown.
        """
        try:
            entity_type = EntityType(entry.entity_type)
            action = Action(entry.action)
        except ValueError as ex:
            raise status.ValidationException(f'Unknown queue entry {entry.entity_type}/{entry.action}') from ex
        return self.handlers[entity_type](action, entry.payload)

    def _stored(self, entry_id: str) -> Optional[QueueEntry]:
        for item in self.store.read_slot(SYNC_QUEUE_KEY):
            if item.get('id') == entry_id:
                return QueueEntry.from_dict(item)
        return None

    @staticmethod
    def _without(items: List[Dict[str, Any]], entry_id: str) -> List[Dict[str, Any]]:
        return [item for item in items if item.get('id') != entry_id]

    @staticmethod
    def _bridge_deletes(items: List[Dict[str, Any]], entity_type: str, local_id: Any, remote_id: str) -> None:
        """Give queued deletes of a just-created row the new remote id."""
        for item in items:
            payload = item.get('payload')
            if not isinstance(payload, dict) or payload.get('api_id'):
                continue
            if item.get('entity_type') == entity_type and item.get('action') == Action.Delete \
                    and payload.get('id') == local_id:
                payload['api_id'] = remote_id
                logging.debug(f'Queued delete of {entity_type} {local_id} now targets remote id {remote_id}')

    def _complete(self, entry: QueueEntry, result: SyncResult, report: DrainReport) -> None:
        table: Table = ENTITY_TABLE[EntityType(entry.entity_type)]
        local_id = entry.payload.get('id')
        created = result.remote_id and (entry.action == Action.Create or result.fallback)

        with self.store.transaction() as conn:
            # Deleted rows are gone; deactivated buckets still need their flag cleared
            if local_id is not None:
                self.store.mark_as_synced(table, local_id, result.remote_id, conn=conn)
            items = self._without(self.store.read_slot(SYNC_QUEUE_KEY, conn=conn), entry.id)
            if created and local_id is not None:
                self._bridge_deletes(items, entry.entity_type, local_id, result.remote_id)
            self.store.write_slot(SYNC_QUEUE_KEY, items, conn=conn)

        if result.skipped:
            report.skipped += 1
        else:
            report.synced += 1
        logging.debug(f'Synced {entry.action} {entry.entity_type} {local_id} (remote id: {result.remote_id})')
        self.entrySynced.emit({**entry.to_dict(), 'remote_id': result.remote_id})

    def _record_failure(self, entry: QueueEntry, ex: Exception, report: DrainReport) -> None:
        entry.retry_count += 1
        reason = f'{type(ex).__name__}: {ex}'
        report.errors[entry.id] = reason
        if entry.retry_count >= self.max_retries:
            self._drop(entry, reason, report)
            return

        with self.store.transaction() as conn:
            items = self.store.read_slot(SYNC_QUEUE_KEY, conn=conn)
            for item in items:
                if item.get('id') == entry.id:
                    item['retry_count'] = entry.retry_count
            self.store.write_slot(SYNC_QUEUE_KEY, items, conn=conn)

        report.retried += 1
        logging.warning(
            f'Sync of {entry.action} {entry.entity_type} failed '
            f'(attempt {entry.retry_count}/{self.max_retries}): {reason}'
        )

    def _drop(self, entry: QueueEntry, reason: str, report: DrainReport) -> None:
        letter = {**entry.to_dict(), 'reason': reason, 'dropped_at': now_str()}
        with self.store.transaction() as conn:
            items = self.store.read_slot(SYNC_QUEUE_KEY, conn=conn)
            self.store.write_slot(SYNC_QUEUE_KEY, self._without(items, entry.id), conn=conn)
            self.store.append_to_slot(DEAD_LETTER_KEY, letter, conn=conn)

        report.dropped += 1
        # Constructing the exception logs it with the payload
        ex = status.SyncExhaustedException(
            f'{entry.action} {entry.entity_type} (entry {entry.id}, {entry.retry_count} attempt(s)): {reason}. '
            f'Payload: {json.dumps(entry.payload, default=str)}'
        )
        report.errors[entry.id] = str(ex)
        self.entryDropped.emit(entry.to_dict(), reason)

    # Handlers

    @staticmethod
    def _prepare(entity_type: str, data: Dict[str, Any], candidate: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Validate a remote payload and return its sanitized form.

        Raises:
            status.ValidationException: If validation reports errors.
        """
        result = validator.validate(entity_type, candidate if candidate is not None else data)
        if not result.is_valid:
            raise status.ValidationException(errors=result.errors)
        for warning in result.warnings:
            logging.debug(f'{entity_type} validation warning: {warning}')
        return validator.sanitize(data, entity_type)

    def sync_expense(self, action: Action, payload: Dict[str, Any]) -> SyncResult:
        remote_id = payload.get('api_id')
        if action == Action.Delete:
            if not remote_id:
                logging.debug(f'Expense {payload.get("id")} was never pushed, nothing to delete remotely.')
                return SyncResult(skipped=True)
            self.client.delete_expense(remote_id)
            return SyncResult(remote_id=remote_id)

        data = to_remote_expense(payload)
        candidate = {**data, 'date': data['dueDate']}
        data = self._prepare('expense', data, candidate)

        if action == Action.Update and remote_id:
            self.client.update_expense(remote_id, data)
            return SyncResult(remote_id=remote_id)

        fallback = action == Action.Update
        if fallback:
            logging.warning(f'Expense {payload.get("id")} has no remote id, sending the update as a create.')
        body = self.client.create_expense(data)
        return SyncResult(remote_id=extract_remote_id('expense', body), fallback=fallback)

    def sync_income(self, action: Action, payload: Dict[str, Any]) -> SyncResult:
        remote_id = payload.get('api_id')
        if action == Action.Delete:
            if not remote_id:
                logging.debug(f'Income {payload.get("id")} was never pushed, nothing to delete remotely.')
                return SyncResult(skipped=True)
            self.client.delete_income(remote_id)
            return SyncResult(remote_id=remote_id)

        data = self._prepare('income', to_remote_income(payload), {
            'amount': payload.get('amount'), 'type': payload.get('type'),
        })

        if action == Action.Update and remote_id:
            self.client.update_income(remote_id, data)
            return SyncResult(remote_id=remote_id)

        fallback = action == Action.Update
        if fallback:
            logging.warning(f'Income {payload.get("id")} has no remote id, sending the update as a create.')
        body = self.client.create_income(data)
        return SyncResult(remote_id=extract_remote_id('income', body), fallback=fallback)

    def _find_allocation(self, user_id: Any, data: Dict[str, Any]) -> Optional[str]:
        """Look up a remote allocation by template id and bucket label."""
        for allocation in self.client.get_allocations(user_id):
            if str(allocation.get('templateId')) != data['templateId']:
                continue
            if allocation.get('bucketName') not in (None, data['bucketName']):
                continue
            remote_id = allocation.get('_id') or allocation.get('id')
            if remote_id:
                return str(remote_id)
        return None

    def sync_allocation(self, action: Action, payload: Dict[str, Any]) -> SyncResult:
        """Sync an allocation bucket.

        Raises:
            status.NotAuthenticatedException: If no user is signed in.
        """
        if self.session is None:
            raise status.NotAuthenticatedException('Allocations are synced for the signed-in user.')
        user = self.session.require_user()
        user_id = user.get('api_id') or user.get('id')

        data = self._prepare('allocation', to_remote_allocation(payload, user_id))
        remote_id = payload.get('api_id')

        if action == Action.Create:
            body = self.client.create_allocation(data)
            return SyncResult(remote_id=extract_remote_id('allocation', body, required=False))

        if not remote_id:
            remote_id = self._find_allocation(user_id, data)

        if action == Action.Delete:
            if not remote_id:
                logging.debug(f'No remote allocation for bucket {payload.get("id")}, nothing to delete.')
                return SyncResult(skipped=True)
            self.client.delete_allocation(remote_id)
            return SyncResult(remote_id=remote_id)

        if remote_id:
            self.client.update_allocation(remote_id, data)
            return SyncResult(remote_id=remote_id)

        logging.warning(f'No remote allocation for bucket {payload.get("id")}, sending the update as a create.')
        body = self.client.create_allocation(data)
        return SyncResult(remote_id=extract_remote_id('allocation', body, required=False), fallback=True)

    def sync_user(self, action: Action, payload: Dict[str, Any]) -> SyncResult:
        """Send a profile update.

        A 404 means the account was deleted on the server: the session is signed out
        and the entry is discarded, since there is no account left to update.
        """
        if action != Action.Update:
            raise status.ValidationException(f'User entries only support updates, got "{action}"')
        data = self._prepare('user', to_remote_user(payload))
        try:
            body = self.client.update_profile(data)
        except status.RemoteRequestException as ex:
            if ex.status_code != 404 and 'user not found' not in str(ex).lower():
                raise
            logging.warning(f'Account {payload.get("email")} no longer exists on the server, signing out.')
            if self.session is not None:
                self.session.clear()
            return SyncResult(skipped=True)
        return SyncResult(remote_id=extract_remote_id('user', body, required=False))

    # Pulling

    def _pull_user(self) -> Dict[str, Any]:
        if not self.is_online():
            raise status.NetworkFailureException('Cannot pull while offline.')
        if self.session is None:
            raise status.NotAuthenticatedException('Pulling needs a signed-in user.')
        if not self.has_credentials():
            raise status.NotAuthenticatedException('Sign in again to pull remote changes.')
        return self.session.require_user()

    def pull(self) -> Dict[str, PullReport]:
        """Fetch remote categories and expenses and reconcile them with the local store.

        Runs on the calling thread and never alongside a drain. Local rows with queued
        changes are left alone; the queue sends them.

        Returns:
            dict: ``categories`` and ``expenses`` :class:`PullReport` instances.

        Raises:
            status.NetworkFailureException: If offline or the server cannot be reached.
            status.NotAuthenticatedException: If nobody is signed in with a valid token.
            status.AuthenticationExpiredException: If the server rejected the session.
            status.ProtocolException: If a list response has an unexpected shape.
        """
        user = self._pull_user()
        if not self._acquire():
            logging.debug('Drain in progress, pull skipped.')
            return {'categories': PullReport(busy=True), 'expenses': PullReport(busy=True)}

        try:
            categories = self._pull_categories(user['id'])
            expenses = self._pull_expenses(user['id'])
        except status.AuthenticationExpiredException:
            self.session.notify_authentication_required()
            raise
        finally:
            self._release()

        if expenses.queued:
            self.request_drain()
        return {'categories': categories, 'expenses': expenses}

    def _pull_categories(self, user_id: int) -> PullReport:
        remote_categories = self.client.get_categories()
        report = PullReport(fetched=len(remote_categories))
        local_by_name = {
            str(c['name']).strip().casefold(): c
            for c in self.store.get_categories_by_user(user_id, include_inactive=True)
        }

        for remote in remote_categories:
            result = validator.validate_category(remote)
            if not result.is_valid:
                logging.warning(f'Remote category rejected: {"; ".join(result.errors)}')
                report.invalid += 1
                continue

            name = _local_category_name(str(remote['name']).strip())
            local = local_by_name.get(name.casefold())
            if local is None:
                fields = {k: remote[k] for k in ('color', 'icon') if remote.get(k)}
                local_by_name[name.casefold()] = self.store.create_category(user_id, {**fields, 'name': name})
                report.created += 1
            elif conflict.has_conflict(local, {**remote, 'name': name}, conflict.CATEGORY_COMPARE_FIELDS):
                resolved = conflict.resolve_conflict(local, remote, conflict.ConflictStrategy.LocalWins)
                logging.debug(f'Kept the local version of category "{local["name"]}" ({resolved["syncStatus"]})')
                report.conflicts += 1
            else:
                report.unchanged += 1

        logging.info(f'Category pull finished: {report}')
        return report

    def _category_id(self, user_id: int, remote_name: Optional[str], cache: Dict[str, int]) -> int:
        name = _local_category_name(remote_name)
        key = name.strip().casefold()
        if key not in cache:
            created = self.store.create_category(user_id, {'name': name.strip()})
            cache[key] = created['id']
        return cache[key]

    def _pull_expenses(self, user_id: int) -> PullReport:
        remote_expenses = self.client.get_expenses()
        report = PullReport(fetched=len(remote_expenses))

        rows = self.store.get_expenses_by_user(user_id, {'include_archived': True, 'include_inactive': True})
        local_by_remote = {row['api_id']: row for row in rows if row.get('api_id')}
        pending_deletes = {
            e.payload.get('api_id') for e in self.pending_entries()
            if e.entity_type == EntityType.Expense and e.action == Action.Delete and e.payload.get('api_id')
        }
        categories = {
            str(c['name']).strip().casefold(): c['id']
            for c in self.store.get_categories_by_user(user_id, include_inactive=True)
        }

        for remote in remote_expenses:
            remote_id = remote.get('_id') or remote.get('id')
            if remote_id in (None, ''):
                report.invalid += 1
                continue
            remote_id = str(remote_id)
            if remote_id in pending_deletes:
                report.skipped += 1
                continue

            result = validator.validate_expense(remote)
            if not result.is_valid:
                logging.warning(f'Remote expense {remote_id} rejected: {"; ".join(result.errors)}')
                report.invalid += 1
                continue

            try:
                local = local_by_remote.get(remote_id)
                if local is None:
                    fields = to_local_expense(remote)
                    fields['category_id'] = self._category_id(user_id, _remote_category(remote), categories)
                    self.store.save_remote_expense(user_id, fields, remote_id)
                    report.created += 1
                else:
                    self._merge_expense(user_id, local, remote, remote_id, categories, report)
            except (status.ValidationException, status.InvalidReferenceException) as ex:
                logging.warning(f'Remote expense {remote_id} could not be stored: {ex}')
                report.invalid += 1

        logging.info(f'Expense pull finished: {report}')
        return report

    def _merge_expense(
            self,
            user_id: int,
            local: Dict[str, Any],
            remote: Dict[str, Any],
            remote_id: str,
            categories: Dict[str, int],
            report: PullReport
    ) -> None:
        local_view = _comparable_expense(local, _map_expense_category(local.get('category_name')))
        remote_view = _comparable_expense(remote, _remote_category(remote))
        if not conflict.has_conflict(local_view, remote_view, conflict.EXPENSE_COMPARE_FIELDS):
            report.unchanged += 1
            return
        if local['needs_sync']:
            logging.debug(f'Expense {local["id"]} has queued changes, keeping the local version.')
            report.skipped += 1
            return

        report.conflicts += 1
        strategy = conflict.get_recommended_strategy(local_view, remote_view, 'expense')
        resolved = conflict.resolve_conflict(local_view, remote_view, strategy)
        if resolved['syncStatus'] in ('local_newer', 'local_wins'):
            # Send the local version again
            self.store.update_expense(local['id'], {})
            report.queued += 1
            return

        fields = to_local_expense(remote)
        fields['category_id'] = self._category_id(user_id, _remote_category(remote), categories)
        self.store.apply_remote_expense(local['id'], fields, remote_id)
        report.updated += 1
