"""REST client for the remote BudgetTracker backend.

Wraps a :class:`requests.Session` with the configured base URL and a fixed timeout.
Authenticated calls carry the session's bearer token; an HTTP 401 triggers exactly
one token refresh followed by one retry of the original request.

Remote ids are read from create responses by :func:`extract_remote_id`, using the
paths documented in :data:`REMOTE_ID_PATHS` (response schema v1). Any other response
shape is a :class:`~BudgetTracker.status.status.ProtocolException`.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..status import status

DEFAULT_TIMEOUT: int = 30

RESPONSE_SCHEMA_VERSION: int = 1

#: Where schema v1 create/update responses carry the new remote id, in lookup order.
REMOTE_ID_PATHS: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    'expense': (('expense', '_id'), ('expense', 'id'), ('_id',), ('id',)),
    'income': (('income', '_id'), ('income', 'id'), ('_id',), ('id',)),
    'allocation': (('allocation', '_id'), ('allocation', 'id'), ('_id',), ('id',)),
    'user': (('user', '_id'), ('user', 'id'), ('_id',), ('id',)),
}


def _lookup(body: Any, path: Tuple[str, ...]) -> Any:
    value = body
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def extract_remote_id(entity_type: str, body: Any, required: bool = True) -> Optional[str]:
    """Return the remote id from a response body.

    Args:
        entity_type: ``expense``, ``income``, ``allocation`` or ``user``.
        body: The decoded JSON response.
        required: When False, a missing id returns None instead of raising.

    Returns:
        The remote id as a string.

    Raises:
        ValueError: If entity_type has no documented id paths.
        status.ProtocolException: If the id is required and none of the documented paths holds one.
    """
    if entity_type not in REMOTE_ID_PATHS:
        raise ValueError(f'No remote id paths documented for "{entity_type}"')

    for path in REMOTE_ID_PATHS[entity_type]:
        value = _lookup(body, path)
        if value not in (None, ''):
            return str(value)

    if not required:
        return None
    raise status.ProtocolException(
        f'No {entity_type} id in response (schema v{RESPONSE_SCHEMA_VERSION}): {str(body)[:200]}'
    )


def extract_list(key: str, body: Any) -> List[Dict[str, Any]]:
    """Return the record list from a list response.

    Accepted shapes are a bare list, ``{"data": [...]}``, ``{key: [...]}`` and
    ``{"data": {key: [...]}}``.

    Raises:
        status.ProtocolException: If none of the shapes holds a list.
    """
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for container in (body, body.get('data')):
            if isinstance(container, list):
                return container
            if isinstance(container, dict) and isinstance(container.get(key), list):
                return container[key]
    raise status.ProtocolException(f'List response has no {key}: {str(body)[:200]}')


def normalize_login_response(body: Any) -> Dict[str, Any]:
    """Normalize a login or registration response.

    Two shapes are accepted::

        {"success": true, "data": {"user": {...}, "tokens": {"accessToken": "...", "refreshToken": "..."}}}
        {"user": {...}, "token": "...", "refreshToken": "..."}

    Returns:
        dict: ``user``, ``access_token`` and ``refresh_token`` (may be None).

    Raises:
        status.RemoteRequestException: If the server reports ``success: false``.
        status.ProtocolException: If neither shape matches.
    """
    if not isinstance(body, dict):
        raise status.ProtocolException(f'Login response is not an object: {str(body)[:200]}')
    if body.get('success') is False:
        raise status.RemoteRequestException(body.get('message') or 'Login rejected by server', status_code=200)

    data = body.get('data') if isinstance(body.get('data'), dict) else None
    if data is not None and data.get('user'):
        tokens = data.get('tokens') if isinstance(data.get('tokens'), dict) else {}
        user = data['user']
        access_token = tokens.get('accessToken') or data.get('token') or body.get('token')
        refresh_token = tokens.get('refreshToken') or data.get('refreshToken') or body.get('refreshToken')
    else:
        user = body.get('user')
        access_token = body.get('token') or body.get('accessToken')
        refresh_token = body.get('refreshToken')

    if not isinstance(user, dict) or not access_token:
        raise status.ProtocolException(f'Login response has no user or token: {sorted(body)}')

    return {'user': user, 'access_token': access_token, 'refresh_token': refresh_token}


class ApiClient:
    """Thin HTTP wrapper around the backend's REST endpoints.

    Args:
        base_url: Base URL, e.g. ``http://localhost:3000/api/v1``.
        session: The :class:`~BudgetTracker.core.auth.SessionContext` providing tokens.
        timeout: Per-request timeout in seconds.
        http: Optional :class:`requests.Session` to use.
    """

    def __init__(
            self,
            base_url: str,
            session: Any = None,
            timeout: float = DEFAULT_TIMEOUT,
            http: Optional[requests.Session] = None
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.session = session
        self.timeout = timeout
        self.http = http or requests.Session()
        self.http.headers.update({'Content-Type': 'application/json', 'Accept': 'application/json'})

    @classmethod
    def from_settings(cls, settings: Any, session: Any = None) -> 'ApiClient':
        """Create a client from the ``api`` config section."""
        config = settings.get_section('api')
        return cls(config['base_url'], session=session, timeout=config.get('timeout', DEFAULT_TIMEOUT))

    def close(self) -> None:
        self.http.close()

    def _headers(self, auth: bool) -> Dict[str, str]:
        if not auth or self.session is None or not self.session.access_token:
            return {}
        return {'Authorization': f'Bearer {self.session.access_token}'}

    def _send(self, method: str, path: str, auth: bool, **kwargs: Any) -> requests.Response:
        url = f'{self.base_url}{path}'
        logging.debug(f'API request: {method} {url}')
        try:
            return self.http.request(method, url, headers=self._headers(auth), timeout=self.timeout, **kwargs)
        except requests.Timeout as ex:
            raise status.RequestTimeoutException(f'{method} {path} after {self.timeout}s') from ex
        except requests.ConnectionError as ex:
            raise status.NetworkFailureException(f'{method} {path}: {ex}') from ex
        except requests.RequestException as ex:
            raise status.NetworkFailureException(f'{method} {path}: {ex}') from ex

    @staticmethod
    def _decode(method: str, path: str, response: requests.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as ex:
            raise status.ProtocolException(f'{method} {path} returned a non-JSON body') from ex

    def refresh_access_token(self) -> bool:
        """Exchange the refresh token for a new access token.

        Returns:
            bool: True if the session now holds a new access token.

        Raises:
            status.NetworkFailureException: If the server cannot be reached.
        """
        refresh_token = self.session.refresh_token if self.session is not None else None
        if not refresh_token:
            logging.debug('No refresh token available, cannot refresh.')
            return False

        response = self._send('POST', '/auth/refresh', auth=False, json={'refreshToken': refresh_token})
        if not response.ok:
            logging.warning(f'Token refresh rejected with status {response.status_code}')
            return False

        body = self._decode('POST', '/auth/refresh', response)
        data = body.get('data') if isinstance(body, dict) and isinstance(body.get('data'), dict) else body
        if not isinstance(data, dict):
            raise status.ProtocolException('Token refresh response is not an object')
        token = data.get('token') or data.get('accessToken')
        if not token:
            raise status.ProtocolException('Token refresh response has no token')

        self.session.set_tokens(token, data.get('refreshToken') or refresh_token)
        logging.info('Access token refreshed.')
        return True

    def request(
            self,
            method: str,
            path: str,
            json: Any = None,
            params: Optional[Dict[str, Any]] = None,
            auth: bool = True
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            status.RequestTimeoutException: On timeout.
            status.NetworkFailureException: If the server cannot be reached.
            status.AuthenticationExpiredException: If the request is still unauthorized after one refresh.
            status.RemoteRequestException: On any other non-2xx response.
            status.ProtocolException: If the body is not JSON.
        """
        kwargs: Dict[str, Any] = {}
        if json is not None:
            kwargs['json'] = json
        if params:
            kwargs['params'] = params

        response = self._send(method, path, auth, **kwargs)
        if response.status_code == 401 and auth:
            logging.debug(f'{method} {path} unauthorized, refreshing token once')
            if self.refresh_access_token():
                response = self._send(method, path, auth, **kwargs)
            if response.status_code == 401:
                raise status.AuthenticationExpiredException(f'{method} {path}')

        if not response.ok:
            raise status.RemoteRequestException(
                f'{method} {path} returned {response.status_code}: {response.text[:200]}',
                status_code=response.status_code
            )
        return self._decode(method, path, response)

    # Authentication

    def login(self, email: str, password: str) -> Dict[str, Any]:
        body = self.request('POST', '/auth/login', json={'email': email, 'password': password}, auth=False)
        return normalize_login_response(body)

    def register(self, data: Dict[str, Any]) -> Dict[str, Any]:
        body = self.request('POST', '/auth/register', json=data, auth=False)
        return normalize_login_response(body)

    def logout(self) -> Any:
        return self.request('POST', '/auth/logout')

    def get_profile(self) -> Any:
        return self.request('GET', '/auth/profile')

    def update_profile(self, data: Dict[str, Any]) -> Any:
        return self.request('PUT', '/auth/profile', json=data)

    # Expenses

    def get_expenses(self, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the signed-in user's remote expenses.

        Raises:
            status.ProtocolException: If the response holds no expense list.
        """
        return extract_list('expenses', self.request('GET', '/expenses', params=params))

    def create_expense(self, data: Dict[str, Any]) -> Any:
        return self.request('POST', '/expenses', json=data)

    def update_expense(self, remote_id: str, data: Dict[str, Any]) -> Any:
        return self.request('PUT', f'/expenses/{remote_id}', json=data)

    def delete_expense(self, remote_id: str) -> Any:
        return self.request('DELETE', f'/expenses/{remote_id}')

    # Categories

    def get_categories(self) -> List[Dict[str, Any]]:
        return extract_list('categories', self.request('GET', '/categories'))

    # Income

    def create_income(self, data: Dict[str, Any]) -> Any:
        return self.request('POST', '/income', json=data)

    def update_income(self, remote_id: str, data: Dict[str, Any]) -> Any:
        return self.request('PUT', f'/income/{remote_id}', json=data)

    def delete_income(self, remote_id: str) -> Any:
        return self.request('DELETE', f'/income/{remote_id}')

    # Allocations

    def get_allocations(self, user_id: Any) -> List[Dict[str, Any]]:
        """Return the user's remote allocations.

        Raises:
            status.ProtocolException: If the response holds no allocation list.
        """
        return extract_list('allocations', self.request('GET', '/allocations', params={'userId': user_id}))

    def create_allocation(self, data: Dict[str, Any]) -> Any:
        return self.request('POST', '/allocations', json=data)

    def update_allocation(self, remote_id: str, data: Dict[str, Any]) -> Any:
        return self.request('PUT', f'/allocations/{remote_id}', json=data)

    def delete_allocation(self, remote_id: str) -> Any:
        return self.request('DELETE', f'/allocations/{remote_id}')
