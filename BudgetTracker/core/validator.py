"""Data validation and sanitization for records leaving the local store.

Validators are pure functions: they inspect a candidate record and report errors
(which block a sync) and warnings (which do not). Nothing here touches the
database. :func:`sanitize` normalizes a record without ever rejecting it.

Candidates use the field names of the remote representation (``categoryId``,
``date``, ``monthlyBudget``); the sync queue builds them from local snapshots.
"""
import datetime
import enum
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from ..settings.lib import is_valid_hex_color

DESCRIPTION_MAX_LENGTH = 200
CATEGORY_NAME_MAX_LENGTH = 50
ICON_NAME_MAX_LENGTH = 20
LARGE_EXPENSE_AMOUNT = 10_000

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PASSWORD_PATTERN = re.compile(r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).{8,}$')

NUMERIC_FIELDS = (
    'amount', 'monthlyBudget', 'monthlyIncome', 'percentage', 'target_amount', 'budgetLimit',
)
DATE_FIELDS = (
    'date', 'createdAt', 'updatedAt', 'created_at', 'updated_at',
    'due_date', 'dueDate', 'start_date', 'startDate', 'end_date', 'recurrence_end',
)
UNTOUCHED_STRING_FIELDS = ('password', 'password_hash')


class ValidationStatus(enum.StrEnum):
    """Overall outcome of a validation."""
    Valid = 'valid'
    Invalid = 'invalid'
    Warning = 'warning'


@dataclass
class ValidationResult:
    """Outcome of validating one candidate record."""
    status: ValidationStatus
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    data: Optional[Dict[str, Any]] = None


def _result(errors: List[str], warnings: List[str], data: Dict[str, Any]) -> ValidationResult:
    if errors:
        result_status = ValidationStatus.Invalid
    elif warnings:
        result_status = ValidationStatus.Warning
    else:
        result_status = ValidationStatus.Valid
    return ValidationResult(result_status, not errors, errors, warnings, data)


def to_number(value: Any) -> Optional[float]:
    """Return value as a finite float, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_timestamp(value: Any) -> Optional[pd.Timestamp]:
    """Parse a date-like value into a UTC timestamp.

    Numbers are read as epoch milliseconds. Naive values are taken as UTC.

    Returns:
        The parsed timestamp, or None if the value cannot be parsed.
    """
    if value is None or isinstance(value, bool) or value == '':
        return None
    try:
        if isinstance(value, (int, float)):
            ts = pd.to_datetime(value, unit='ms', utc=True)
        else:
            ts = pd.to_datetime(value, utc=True)
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts


def to_iso(ts: pd.Timestamp) -> str:
    """Format a timestamp as an ISO-8601 UTC string with millisecond precision."""
    return ts.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def _check_amount(data: Dict[str, Any], errors: List[str]) -> Optional[float]:
    amount = data.get('amount')
    if amount is None or amount == '':
        errors.append('Amount must be greater than 0')
        return None
    number = to_number(amount)
    if number is None:
        errors.append('Amount must be a valid number')
        return None
    if number <= 0:
        errors.append('Amount must be greater than 0')
    return number


def validate_expense(data: Dict[str, Any]) -> ValidationResult:
    """Validate an expense before it is pushed to the server.

    Args:
        data: Candidate with ``amount``, ``description``, ``category``/``categoryId``/``title``
            and an optional ``date``.

    Returns:
        ValidationResult: Errors block the sync, warnings are informational.
    """
    errors: List[str] = []
    warnings: List[str] = []

    amount = _check_amount(data, errors)

    description = data.get('description')
    if description and len(str(description)) > DESCRIPTION_MAX_LENGTH:
        errors.append(f'Description must be {DESCRIPTION_MAX_LENGTH} characters or less')

    if not data.get('categoryId') and not data.get('category') and not data.get('title'):
        errors.append('Either category, categoryId, or title is required')

    date_value = data.get('date')
    if date_value:
        ts = parse_timestamp(date_value)
        if ts is None:
            warnings.append('Invalid date format, will use current date')
        elif ts > pd.Timestamp.now(tz='UTC'):
            warnings.append('Expense date is in the future')

    if amount is not None and amount > LARGE_EXPENSE_AMOUNT:
        warnings.append('Large expense amount detected')

    result = _result(errors, warnings, data)
    logging.debug(f'Expense validation: {result.status.value} errors={errors} warnings={warnings}')
    return result


def validate_income(data: Dict[str, Any]) -> ValidationResult:
    """Validate an income record before it is pushed to the server."""
    errors: List[str] = []
    warnings: List[str] = []

    _check_amount(data, errors)
    income_type = data.get('type')
    if income_type and income_type not in ('primary', 'secondary'):
        warnings.append(f'Unknown income type "{income_type}"')

    return _result(errors, warnings, data)


def validate_allocation(data: Dict[str, Any]) -> ValidationResult:
    """Validate an allocation bucket in its remote shape."""
    errors: List[str] = []
    warnings: List[str] = []

    percentage = to_number(data.get('percentage'))
    if percentage is None or not 0 <= percentage <= 100:
        errors.append('Percentage must be between 0 and 100')
    if not data.get('categoryName') and not data.get('bucketName'):
        errors.append('Either categoryName or bucketName is required')
    if not data.get('templateId'):
        errors.append('templateId is required')

    budget_limit = data.get('budgetLimit')
    if budget_limit is not None:
        number = to_number(budget_limit)
        if number is None or number < 0:
            errors.append('Budget limit must be a non-negative number')

    return _result(errors, warnings, data)


def validate_user(data: Dict[str, Any]) -> ValidationResult:
    """Validate user profile data (registration or profile update)."""
    errors: List[str] = []
    warnings: List[str] = []

    email = data.get('email')
    if not email or not EMAIL_PATTERN.match(str(email)):
        errors.append('Valid email address is required')

    name = data.get('name')
    if not name or len(str(name).strip()) < 2:
        errors.append('Name must be at least 2 characters long')

    password = data.get('password')
    if password and not PASSWORD_PATTERN.match(str(password)):
        errors.append('Password must contain at least 8 characters with uppercase, lowercase, and number')

    for key, label in (('monthlyBudget', 'Monthly budget'), ('monthlyIncome', 'Monthly income')):
        value = data.get(key)
        if value is None or value == '':
            continue
        number = to_number(value)
        if number is None or number < 0:
            errors.append(f'{label} must be a non-negative number')

    return _result(errors, warnings, data)


def validate_category(data: Dict[str, Any]) -> ValidationResult:
    """Validate a category. Only the name can make a category invalid."""
    errors: List[str] = []
    warnings: List[str] = []

    name = data.get('name')
    if not name or not str(name).strip():
        errors.append('Category name is required')
    elif len(str(name)) > CATEGORY_NAME_MAX_LENGTH:
        errors.append(f'Category name cannot exceed {CATEGORY_NAME_MAX_LENGTH} characters')

    color = data.get('color')
    if color and not is_valid_hex_color(str(color)):
        warnings.append('Invalid color format, using default')

    icon = data.get('icon')
    if icon and len(str(icon)) > ICON_NAME_MAX_LENGTH:
        warnings.append('Icon name too long')

    return _result(errors, warnings, data)


def validate_sync_metadata(data: Dict[str, Any]) -> ValidationResult:
    """Check the identity and timestamps a record needs before it can be reconciled."""
    errors: List[str] = []

    if not data.get('id'):
        errors.append('ID is required for sync')
    if not data.get('createdAt'):
        errors.append('createdAt timestamp is required')
    if not data.get('updatedAt'):
        errors.append('updatedAt timestamp is required')

    created = parse_timestamp(data.get('createdAt')) if data.get('createdAt') else None
    updated = parse_timestamp(data.get('updatedAt')) if data.get('updatedAt') else None
    if data.get('createdAt') and created is None:
        errors.append('Invalid createdAt timestamp')
    if data.get('updatedAt') and updated is None:
        errors.append('Invalid updatedAt timestamp')
    if created is not None and updated is not None and created > updated:
        errors.append('updatedAt cannot be before createdAt')

    return _result(errors, [], data)


VALIDATORS: Dict[str, Callable[[Dict[str, Any]], ValidationResult]] = {
    'expense': validate_expense,
    'income': validate_income,
    'allocation': validate_allocation,
    'user': validate_user,
    'category': validate_category,
}


def validate(entity_type: str, candidate: Dict[str, Any]) -> ValidationResult:
    """Validate a candidate record of the given entity type.

    Raises:
        ValueError: If there is no validator for entity_type.
    """
    try:
        validator = VALIDATORS[entity_type]
    except KeyError:
        raise ValueError(f'No validator for entity type "{entity_type}"') from None
    return validator(candidate)


def sanitize(entity: Dict[str, Any], entity_type: str = 'expense') -> Dict[str, Any]:
    """Return a normalized copy of a record.

    Drops None values, trims and collapses whitespace in strings, lower-cases emails,
    coerces numeric fields to floats and date fields to ISO-8601 UTC strings. Values that
    cannot be coerced are kept as they are.
    """
    logging.debug(f'Sanitizing {entity_type} record')
    sanitized: Dict[str, Any] = {k: v for k, v in entity.items() if v is not None}

    for key, value in list(sanitized.items()):
        if not isinstance(value, str) or key in UNTOUCHED_STRING_FIELDS:
            continue
        if key == 'email':
            sanitized[key] = value.strip().lower()
        else:
            sanitized[key] = ' '.join(value.split())

    for key in NUMERIC_FIELDS:
        if key not in sanitized:
            continue
        number = to_number(sanitized[key])
        if number is not None:
            sanitized[key] = number

    for key in DATE_FIELDS:
        value = sanitized.get(key)
        if value is None or value == '':
            continue
        if isinstance(value, (datetime.date, datetime.datetime)):
            value = value.isoformat()
        ts = parse_timestamp(value)
        if ts is not None:
            sanitized[key] = to_iso(ts)

    return sanitized
