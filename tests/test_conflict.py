"""
Tests for BudgetTracker.core.conflict.

Run:
    python -m unittest tests.test_conflict
"""
import unittest

from BudgetTracker.core import conflict
from BudgetTracker.core.conflict import ConflictStrategy

EARLIER = '2024-03-01T10:00:00.000Z'
LATER = '2024-03-02T10:00:00.000Z'


def _profile(name: str, updated_at: str) -> dict:
    return {
        'email': 'jane@example.com',
        'name': name,
        'currency': 'EUR',
        'financial_goals': {'save': 100},
        'updatedAt': updated_at,
    }


class ResolveConflictTests(unittest.TestCase):
    def test_merge_takes_newer_local_name(self):
        local = _profile('Local Name', LATER)
        remote = {**_profile('Remote Name', EARLIER), 'currency': 'USD', 'plan': 'pro'}

        merged = conflict.resolve_conflict(local, remote, ConflictStrategy.Merge)
        self.assertEqual(merged['name'], 'Local Name')
        self.assertEqual(merged['plan'], 'pro')
        self.assertEqual(merged['updatedAt'], EARLIER)
        self.assertEqual(merged['syncStatus'], 'merged')
        self.assertIn('conflictResolvedAt', merged)

    def test_merge_keeps_remote_name_when_remote_is_newer(self):
        local = _profile('Local Name', EARLIER)
        remote = _profile('Remote Name', LATER)

        merged = conflict.resolve_conflict(local, remote, 'merge')
        self.assertEqual(merged['name'], 'Remote Name')
        self.assertEqual(merged['currency'], 'EUR')

    def test_merge_with_equal_timestamps_keeps_remote(self):
        merged = conflict.resolve_conflict(_profile('A', LATER), _profile('B', LATER), 'merge')
        self.assertEqual(merged['name'], 'B')

    def test_snake_case_timestamps(self):
        local = {'name': 'Local', 'updated_at': LATER}
        remote = {'name': 'Remote', 'updatedAt': EARLIER}
        self.assertEqual(conflict.resolve_conflict(local, remote, 'merge')['name'], 'Local')

    def test_newer_wins(self):
        local = _profile('Local', LATER)
        remote = _profile('Remote', EARLIER)

        result = conflict.resolve_conflict(local, remote, ConflictStrategy.NewerWins)
        self.assertEqual(result['name'], 'Local')
        self.assertEqual(result['syncStatus'], 'local_newer')

        result = conflict.resolve_conflict(remote, local, ConflictStrategy.NewerWins)
        self.assertEqual(result['syncStatus'], 'remote_newer')

    def test_fixed_winners(self):
        local = _profile('Local', EARLIER)
        remote = _profile('Remote', LATER)
        self.assertEqual(conflict.resolve_conflict(local, remote, 'local_wins')['name'], 'Local')
        self.assertEqual(conflict.resolve_conflict(local, remote, 'remote_wins')['syncStatus'], 'remote_wins')

    def test_unknown_strategy_uses_newer_wins(self):
        result = conflict.resolve_conflict(_profile('Local', LATER), _profile('Remote', EARLIER), 'coin_flip')
        self.assertEqual(result['syncStatus'], 'local_newer')

    def test_inputs_are_not_modified(self):
        local = _profile('Local', LATER)
        remote = _profile('Remote', EARLIER)
        conflict.resolve_conflict(local, remote, 'merge')
        self.assertNotIn('syncStatus', local)
        self.assertEqual(remote['name'], 'Remote')


class HasConflictTests(unittest.TestCase):
    def test_has_conflict(self):
        self.assertFalse(conflict.has_conflict(_profile('A', LATER), _profile('A', LATER)))
        self.assertTrue(conflict.has_conflict(_profile('A', LATER), _profile('B', LATER)))
        self.assertTrue(conflict.has_conflict(_profile('A', LATER), _profile('A', EARLIER)))

    def test_compared_fields(self):
        local = {'name': 'Food', 'color': '#FF6384', 'icon': 'restaurant', 'updatedAt': LATER}
        remote = {**local, 'updatedAt': EARLIER}
        self.assertFalse(conflict.has_conflict(local, remote, conflict.CATEGORY_COMPARE_FIELDS))
        self.assertTrue(conflict.has_conflict(local, {**remote, 'color': '#000000'}, conflict.CATEGORY_COMPARE_FIELDS))

    def test_missing_side_is_not_a_conflict(self):
        self.assertFalse(conflict.has_conflict(None, _profile('A', LATER)))
        self.assertFalse(conflict.has_conflict(_profile('A', LATER), {}))

    def test_recommended_strategy(self):
        self.assertEqual(conflict.get_recommended_strategy({}, {}, 'profile'), ConflictStrategy.Merge)
        self.assertEqual(conflict.get_recommended_strategy({}, {}, 'expense'), ConflictStrategy.NewerWins)


if __name__ == '__main__':
    unittest.main()
