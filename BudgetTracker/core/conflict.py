"""Reconciliation of local and remote versions of the same record.

All functions are pure. Resolved records are tagged with ``syncStatus`` and
``conflictResolvedAt`` so callers can tell how a record was produced.
"""
import enum
import logging
from typing import Any, Dict, Optional, Tuple

import pandas as pd

from .validator import parse_timestamp, to_iso

MERGE_FIELDS = ('name', 'currency', 'financial_goals')
COMPARE_FIELDS = MERGE_FIELDS + ('updatedAt',)
EXPENSE_COMPARE_FIELDS = ('title', 'amount', 'description', 'status', 'category', 'dueDate')
CATEGORY_COMPARE_FIELDS = ('name', 'color', 'icon')

TIMESTAMP_KEYS = {
    'updatedAt': ('updatedAt', 'updated_at'),
    'createdAt': ('createdAt', 'created_at'),
}


class ConflictStrategy(enum.StrEnum):
    LocalWins = 'local_wins'
    RemoteWins = 'remote_wins'
    NewerWins = 'newer_wins'
    Merge = 'merge'


def _field(data: Dict[str, Any], name: str) -> Any:
    for key in TIMESTAMP_KEYS.get(name, (name,)):
        if data.get(key) is not None:
            return data[key]
    return None


def _timestamp(data: Dict[str, Any]) -> Optional[pd.Timestamp]:
    """Return the record's last-modified time, falling back to its creation time."""
    value = _field(data, 'updatedAt') or _field(data, 'createdAt')
    return parse_timestamp(value)


def _is_local_newer(local: Dict[str, Any], remote: Dict[str, Any]) -> bool:
    local_time = _timestamp(local)
    remote_time = _timestamp(remote)
    if local_time is None or remote_time is None:
        return False
    return local_time > remote_time


def _tag(data: Dict[str, Any], sync_status: str) -> Dict[str, Any]:
    return {
        **data,
        'syncStatus': sync_status,
        'conflictResolvedAt': to_iso(pd.Timestamp.now(tz='UTC')),
    }


def has_conflict(
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        fields: Tuple[str, ...] = COMPARE_FIELDS
) -> bool:
    """Return True if any of the compared fields differ.

    By default the profile fields and the modification time are compared.
    A missing side is never a conflict.
    """
    if not local or not remote:
        return False
    return any(_field(local, name) != _field(remote, name) for name in fields)


def resolve_conflict(
        local: Dict[str, Any],
        remote: Dict[str, Any],
        strategy: str = ConflictStrategy.NewerWins
) -> Dict[str, Any]:
    """Reconcile two versions of a record.

    Args:
        local: The local snapshot.
        remote: The remote snapshot.
        strategy: A :class:`ConflictStrategy` value. Unknown values fall back to ``newer_wins``.

    Returns:
        dict: A new, tagged record. Inputs are not modified.
    """
    try:
        strategy = ConflictStrategy(strategy)
    except ValueError:
        logging.warning(f'Unknown conflict strategy "{strategy}", using newer_wins')
        strategy = ConflictStrategy.NewerWins

    if strategy == ConflictStrategy.LocalWins:
        return _tag(local, 'local_wins')
    if strategy == ConflictStrategy.RemoteWins:
        return _tag(remote, 'remote_wins')

    local_newer = _is_local_newer(local, remote)
    if strategy == ConflictStrategy.NewerWins:
        if local_newer:
            return _tag(local, 'local_newer')
        return _tag(remote, 'remote_newer')

    # Field-level last writer wins over the user-editable fields only
    merged = dict(remote)
    for name in MERGE_FIELDS:
        if name in local and local[name] != remote.get(name) and local_newer:
            merged[name] = local[name]
    return _tag(merged, 'merged')


def get_recommended_strategy(
        local: Optional[Dict[str, Any]],
        remote: Optional[Dict[str, Any]],
        data_type: str = 'profile'
) -> ConflictStrategy:
    """Return ``merge`` for user profiles and ``newer_wins`` for everything else."""
    if data_type == 'profile':
        return ConflictStrategy.Merge
    return ConflictStrategy.NewerWins
