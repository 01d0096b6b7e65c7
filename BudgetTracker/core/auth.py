"""
Session state and user authentication.

:class:`SessionContext` holds the access and refresh tokens and a snapshot of the
signed-in user. The session is persisted to a JSON file so the application can
restore it on the next start without a network round trip.

Login and registration try the remote backend first and fall back to the local
store when the backend cannot be reached. When both sides know the user, their
profiles are reconciled with :mod:`BudgetTracker.core.conflict`.
"""

import hashlib
import json
import logging
import pathlib
import threading
from typing import Any, Dict, Optional, Union

from PySide6 import QtCore

from . import conflict
from . import validator
from .database import Table
from .service import extract_remote_id
from ..status import status


def hash_password(password: str) -> str:
    """Return the hex SHA-256 digest used to store passwords locally."""
    return hashlib.sha256(password.encode('utf-8')).hexdigest()


def _profile_view(row: Dict[str, Any]) -> Dict[str, Any]:
    """Return a user row shaped for comparison with a remote profile."""
    view = {k: v for k, v in row.items() if k != 'password_hash'}
    goals = view.get('financial_goals')
    if isinstance(goals, str):
        try:
            view['financial_goals'] = json.loads(goals)
        except json.JSONDecodeError:
            pass
    if view.get('updated_at'):
        view['updatedAt'] = view['updated_at']
    if view.get('created_at'):
        view['createdAt'] = view['created_at']
    return view


class SessionContext(QtCore.QObject):
    """The signed-in user and their API tokens.

    Signals:
        authenticationRequired (): Emitted when the tokens were rejected and the user must sign in again.
        userChanged (object): Emitted with the new user dict, or None after logout.
    """
    authenticationRequired = QtCore.Signal()
    userChanged = QtCore.Signal(object)

    def __init__(self, session_path: Union[str, pathlib.Path], parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.session_path = pathlib.Path(session_path)

        self._lock = threading.Lock()
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._user: Optional[Dict[str, Any]] = None

    @property
    def access_token(self) -> Optional[str]:
        with self._lock:
            return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._refresh_token

    def get_current_user(self) -> Optional[Dict[str, Any]]:
        """Return a copy of the signed-in user, or None."""
        with self._lock:
            return dict(self._user) if self._user else None

    def require_user(self) -> Dict[str, Any]:
        """Return the signed-in user.

        Raises:
            status.NotAuthenticatedException: If nobody is signed in.
        """
        user = self.get_current_user()
        if user is None:
            raise status.NotAuthenticatedException()
        return user

    def is_authenticated(self) -> bool:
        with self._lock:
            return self._user is not None

    def restore_session(self) -> bool:
        """Load the cached session from disk.

        A session file without a valid user snapshot is removed.

        Returns:
            bool: True if a user was restored.
        """
        if not self.session_path.exists():
            logging.debug('No cached session found.')
            return False

        try:
            with self.session_path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as ex:
            logging.warning(f'Cached session is unreadable, discarding it: {ex}')
            self._remove_session_file()
            return False

        user = data.get('user') if isinstance(data, dict) else None
        if not isinstance(user, dict) or not user.get('id') or not user.get('email'):
            logging.warning('Cached session has no valid user, discarding it.')
            self._remove_session_file()
            return False

        with self._lock:
            self._user = user
            self._access_token = data.get('access_token')
            self._refresh_token = data.get('refresh_token')

        logging.info(f'Restored session for {user["email"]}')
        self.userChanged.emit(dict(user))
        return True

    def save(self) -> None:
        """Write the session to disk."""
        with self._lock:
            data = {
                'access_token': self._access_token,
                'refresh_token': self._refresh_token,
                'user': self._user,
            }
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        with self.session_path.open('w', encoding='utf-8') as f:
            json.dump(data, f, indent=4)
        logging.debug(f'Session saved to {self.session_path}')

    def _remove_session_file(self) -> None:
        try:
            self.session_path.unlink(missing_ok=True)
        except OSError as ex:
            logging.error(f'Could not remove session file {self.session_path}: {ex}')

    def clear(self) -> None:
        """Forget the user and the tokens, in memory and on disk."""
        with self._lock:
            self._user = None
            self._access_token = None
            self._refresh_token = None
        self._remove_session_file()
        self.userChanged.emit(None)

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        with self._lock:
            self._access_token = access_token
            self._refresh_token = refresh_token
        self.save()

    def set_session(
            self,
            user: Dict[str, Any],
            access_token: Optional[str] = None,
            refresh_token: Optional[str] = None
    ) -> None:
        """Replace the signed-in user and tokens and persist them."""
        with self._lock:
            self._user = dict(user)
            self._access_token = access_token
            self._refresh_token = refresh_token
        self.save()
        self.userChanged.emit(dict(user))

    @QtCore.Slot()
    def notify_authentication_required(self) -> None:
        """Drop the rejected tokens and ask for a new sign-in. The user snapshot is kept."""
        logging.warning('Authentication expired, sign-in required.')
        with self._lock:
            self._access_token = None
            self._refresh_token = None
        self.save()
        self.authenticationRequired.emit()

    def _apply_remote_user(self, store: Any, email: str, password: str, remote_user: Dict[str, Any]) -> Dict[str, Any]:
        """Create or reconcile the local copy of a user the backend returned.

        Returns:
            dict: ``user`` (local row without credentials) and ``conflicts_resolved``.
        """
        remote_id = extract_remote_id('user', {'user': remote_user}, required=False)
        local = store.get_user_by_email(email)

        if local is None:
            created = store.create_user(
                email, hash_password(password), remote_user.get('name') or email.split('@')[0],
                remote_user.get('currency')
            )
            store.mark_as_synced(Table.Users, created['id'], remote_id)
            return {'user': store.get_user_by_id(created['id']), 'conflicts_resolved': False}

        local_view = _profile_view(local)
        conflicts = conflict.has_conflict(local_view, remote_user)
        if conflicts:
            strategy = conflict.get_recommended_strategy(local_view, remote_user, 'profile')
            resolved = conflict.resolve_conflict(local_view, remote_user, strategy)
            logging.info(f'Resolved profile conflict for {email} ({resolved["syncStatus"]})')
        else:
            resolved = remote_user

        store.apply_remote_user(local['id'], resolved, remote_id=remote_id, password_hash=hash_password(password))
        return {'user': store.get_user_by_id(local['id']), 'conflicts_resolved': conflicts}

    def login(self, email: str, password: str, client: Any, store: Any) -> Dict[str, Any]:
        """Sign in, trying the backend first and the local store second.

        Args:
            email: The user's email.
            password: The plain-text password.
            client: :class:`~BudgetTracker.core.service.ApiClient`, or None to sign in locally only.
            store: :class:`~BudgetTracker.core.database.Store`.

        Returns:
            dict: ``user``, ``source`` (``api`` or ``local``) and, for api logins, ``conflicts_resolved``.

        Raises:
            status.ValidationException: On missing or wrong credentials.
        """
        if not email or not password:
            raise status.ValidationException('Email and password are required')
        email = email.strip().lower()
        if not validator.EMAIL_PATTERN.match(email):
            raise status.ValidationException('Invalid email format')

        if client is not None:
            try:
                result = client.login(email, password)
            except (status.NetworkFailureException, status.ProtocolException) as ex:
                logging.warning(f'Remote login failed, trying the local database: {ex}')
            else:
                applied = self._apply_remote_user(store, email, password, result['user'])
                user = {k: v for k, v in applied['user'].items() if k != 'password_hash'}
                self.set_session(user, result['access_token'], result['refresh_token'])
                return {'user': user, 'source': 'api', 'conflicts_resolved': applied['conflicts_resolved']}

        row = store.get_user_by_email(email)
        if row is None:
            raise status.ValidationException('User not found. Please register first.')
        if hash_password(password) != row['password_hash']:
            raise status.ValidationException('Invalid email or password')

        user = {k: v for k, v in row.items() if k != 'password_hash'}
        self.set_session(user)
        logging.info(f'Signed in {email} from the local database')
        return {'user': user, 'source': 'local'}

    def register(
            self,
            email: str,
            password: str,
            name: str,
            client: Any,
            store: Any,
            currency: Optional[str] = None,
            monthly_budget: Optional[float] = None,
            monthly_income: Optional[float] = None
    ) -> Dict[str, Any]:
        """Register a user with the backend, or locally when the backend is unreachable.

        Returns:
            dict: ``user`` and ``source`` (``api`` or ``local``).

        Raises:
            status.ValidationException: If the data is invalid or the email is already registered.
        """
        email = (email or '').strip().lower()
        result = validator.validate_user({
            'email': email,
            'name': name,
            'password': password,
            'monthlyBudget': monthly_budget,
            'monthlyIncome': monthly_income,
        })
        if not password:
            result.errors.append('Password is required')
        if result.errors:
            raise status.ValidationException(errors=result.errors)

        if client is not None:
            try:
                response = client.register({
                    'email': email,
                    'password': password,
                    'confirmPassword': password,
                    'name': name.strip(),
                    'currency': currency,
                    'monthlyBudget': monthly_budget or 0,
                    'monthlyIncome': monthly_income or 0,
                })
            except status.RemoteRequestException as ex:
                if ex.status_code == 409 or 'already exists' in str(ex).lower():
                    raise status.ValidationException('User with this email already exists') from ex
                logging.warning(f'Remote registration failed, registering locally: {ex}')
            except (status.NetworkFailureException, status.ProtocolException) as ex:
                logging.warning(f'Remote registration failed, registering locally: {ex}')
            else:
                applied = self._apply_remote_user(store, email, password, response['user'])
                user = {k: v for k, v in applied['user'].items() if k != 'password_hash'}
                self.set_session(user, response['access_token'], response['refresh_token'])
                return {'user': user, 'source': 'api'}

        if store.get_user_by_email(email) is not None:
            raise status.ValidationException('User with this email already exists')

        user = store.create_user(email, hash_password(password), name, currency)
        self.set_session(user)
        logging.info(f'Registered {email} locally; the profile will sync when online')
        return {'user': user, 'source': 'local'}

    def logout(self, client: Any = None) -> None:
        """Sign out. The backend is told when reachable; the local session is always cleared."""
        if client is not None and self.access_token:
            try:
                client.logout()
            except (status.NetworkFailureException, status.AuthenticationExpiredException,
                    status.ProtocolException) as ex:
                logging.warning(f'Remote logout failed: {ex}')
        self.clear()
        logging.info('Signed out.')
