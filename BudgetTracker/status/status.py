"""Status definitions and exceptions for BudgetTracker.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions for the local commit path (validation, database, references)
      and the sync path (network, authentication, protocol, retry exhaustion)
"""
import enum
import logging
from typing import Dict, List, Optional


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    ConfigNotFound = enum.auto()
    ConfigInvalid = enum.auto()

    # Local commit path
    ValidationFailed = enum.auto()
    DatabaseUnavailable = enum.auto()
    InvalidReference = enum.auto()

    # Sync path
    NetworkFailure = enum.auto()
    RequestTimeout = enum.auto()
    RemoteRequestFailed = enum.auto()
    AuthenticationExpired = enum.auto()
    NotAuthenticated = enum.auto()
    ProtocolError = enum.auto()
    SyncExhausted = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status.',
    Status.Okay: 'Everything is okay.',

    Status.ConfigNotFound: 'Could not find the configuration file.',
    Status.ConfigInvalid: 'The configuration seems to be incomplete, or contains invalid values.',

    Status.ValidationFailed: 'The record failed validation.',
    Status.DatabaseUnavailable: 'The local database is unavailable.',
    Status.InvalidReference: 'The record references a row that does not exist.',

    Status.NetworkFailure: 'The server could not be reached. Please check your connection.',
    Status.RequestTimeout: 'The server did not respond in time.',
    Status.RemoteRequestFailed: 'The server rejected the request.',
    Status.AuthenticationExpired: 'Your session has expired. Please sign in again.',
    Status.NotAuthenticated: 'No user is signed in.',
    Status.ProtocolError: 'The server response did not have the expected shape.',
    Status.SyncExhausted: 'A change could not be synchronized and was dropped after all retries.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in BudgetTracker.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): Message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)


class ConfigNotFoundException(BaseStatusException):
    """Exception raised when the configuration file cannot be found."""
    status = Status.ConfigNotFound


class ConfigInvalidException(BaseStatusException):
    """Exception raised when the configuration is invalid or malformed."""
    status = Status.ConfigInvalid


class ValidationException(BaseStatusException):
    """Raised before a write when a record fails local validation.

    Attributes:
        errors (list[str]): The individual validation errors.
    """
    status = Status.ValidationFailed

    def __init__(self, message: str = None, errors: Optional[List[str]] = None):
        self.errors: List[str] = list(errors or ([message] if message else []))
        super().__init__(message or '; '.join(self.errors) or None)


class DatabaseUnavailableException(BaseStatusException):
    """Raised when the database connection cannot be (re)established."""
    status = Status.DatabaseUnavailable


class InvalidReferenceException(BaseStatusException):
    """Raised on a foreign-key shaped violation, e.g. an expense pointing at a missing category."""
    status = Status.InvalidReference


class NetworkFailureException(BaseStatusException):
    """Raised by the API client when the server cannot be reached."""
    status = Status.NetworkFailure


class RequestTimeoutException(NetworkFailureException):
    """Raised by the API client when a request exceeds its timeout."""
    status = Status.RequestTimeout


class RemoteRequestException(NetworkFailureException):
    """Raised when the server answers with a non-success status code.

    Attributes:
        status_code (int): The HTTP status code returned by the server.
    """
    status = Status.RemoteRequestFailed

    def __init__(self, message: str = None, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationExpiredException(BaseStatusException):
    """Raised when a request is still unauthorized after a token refresh attempt."""
    status = Status.AuthenticationExpired


class NotAuthenticatedException(BaseStatusException):
    """Raised when an operation requires a signed-in user and there is none."""
    status = Status.NotAuthenticated


class ProtocolException(BaseStatusException):
    """Raised when a server response does not match the documented response schema."""
    status = Status.ProtocolError


class SyncExhaustedException(BaseStatusException):
    """Describes a queue entry that was dropped after exhausting its retry budget."""
    status = Status.SyncExhausted
