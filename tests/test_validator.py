"""
Tests for BudgetTracker.core.validator.

Run:
    python -m unittest tests.test_validator
"""
import datetime
import unittest

from BudgetTracker.core import validator
from BudgetTracker.core.validator import ValidationStatus


def _future(days: int = 30) -> str:
    return (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days)).isoformat()


class ExpenseValidationTests(unittest.TestCase):
    def test_zero_amount_is_invalid(self):
        result = validator.validate_expense({'amount': 0, 'title': 'Lunch'})
        self.assertFalse(result.is_valid)
        self.assertEqual(result.status, ValidationStatus.Invalid)
        self.assertIn('Amount must be greater than 0', result.errors)

    def test_missing_amount_is_invalid(self):
        result = validator.validate_expense({'title': 'Lunch'})
        self.assertIn('Amount must be greater than 0', result.errors)

    def test_non_numeric_amount(self):
        result = validator.validate_expense({'amount': 'abc', 'title': 'Lunch'})
        self.assertIn('Amount must be a valid number', result.errors)

    def test_future_date_is_a_warning(self):
        result = validator.validate_expense({'amount': 50, 'title': 'Concert', 'date': _future()})
        self.assertTrue(result.is_valid)
        self.assertEqual(result.status, ValidationStatus.Warning)
        self.assertEqual(result.errors, [])
        self.assertIn('Expense date is in the future', result.warnings)

    def test_long_description_with_large_amount(self):
        result = validator.validate_expense({
            'amount': 15000, 'title': 'Car', 'description': 'x' * 201,
        })
        self.assertFalse(result.is_valid)
        self.assertIn('Description must be 200 characters or less', result.errors)
        self.assertIn('Large expense amount detected', result.warnings)

    def test_needs_category_or_title(self):
        result = validator.validate_expense({'amount': 5})
        self.assertIn('Either category, categoryId, or title is required', result.errors)
        self.assertTrue(validator.validate_expense({'amount': 5, 'categoryId': 3}).is_valid)

    def test_malformed_date(self):
        result = validator.validate_expense({'amount': 5, 'title': 'Tea', 'date': 'someday'})
        self.assertTrue(result.is_valid)
        self.assertIn('Invalid date format, will use current date', result.warnings)

    def test_valid_expense(self):
        result = validator.validate_expense({'amount': 12.5, 'category': 'Food', 'date': '2024-05-01'})
        self.assertEqual(result.status, ValidationStatus.Valid)
        self.assertEqual(result.warnings, [])


class OtherValidationTests(unittest.TestCase):
    def test_user(self):
        self.assertTrue(validator.validate_user({'email': 'a@b.co', 'name': 'Al'}).is_valid)

        result = validator.validate_user({
            'email': 'nope', 'name': ' A ', 'password': 'weak', 'monthlyBudget': -1,
        })
        self.assertIn('Valid email address is required', result.errors)
        self.assertIn('Name must be at least 2 characters long', result.errors)
        self.assertEqual(len(result.errors), 4)

    def test_strong_password(self):
        result = validator.validate_user({'email': 'a@b.co', 'name': 'Al', 'password': 'Secret123'})
        self.assertTrue(result.is_valid)

    def test_category(self):
        self.assertIn('Category name is required', validator.validate_category({'name': '  '}).errors)

        result = validator.validate_category({'name': 'Pets', 'color': 'red', 'icon': 'x' * 21})
        self.assertTrue(result.is_valid)
        self.assertIn('Invalid color format, using default', result.warnings)
        self.assertIn('Icon name too long', result.warnings)

    def test_income(self):
        self.assertTrue(validator.validate_income({'amount': 10, 'type': 'primary'}).is_valid)
        self.assertFalse(validator.validate_income({'amount': -10}).is_valid)

    def test_allocation(self):
        valid = {'percentage': 40, 'bucketName': 'Savings', 'templateId': '1'}
        self.assertTrue(validator.validate_allocation(valid).is_valid)
        self.assertFalse(validator.validate_allocation({**valid, 'percentage': 140}).is_valid)
        self.assertFalse(validator.validate_allocation({**valid, 'templateId': None}).is_valid)

    def test_sync_metadata(self):
        ok = {'id': 1, 'createdAt': '2024-01-01T00:00:00Z', 'updatedAt': '2024-01-02T00:00:00Z'}
        self.assertTrue(validator.validate_sync_metadata(ok).is_valid)

        result = validator.validate_sync_metadata({**ok, 'updatedAt': '2023-12-31T00:00:00Z'})
        self.assertIn('updatedAt cannot be before createdAt', result.errors)

    def test_unknown_entity_type(self):
        with self.assertRaises(ValueError):
            validator.validate('invoice', {})


class SanitizeTests(unittest.TestCase):
    def test_sanitize(self):
        result = validator.sanitize({
            'title': '  Weekly   groceries ',
            'email': ' Jane@Example.COM ',
            'password': ' keep me ',
            'amount': '42.50',
            'dueDate': '2024-05-01',
            'description': None,
        })
        self.assertEqual(result['title'], 'Weekly groceries')
        self.assertEqual(result['email'], 'jane@example.com')
        self.assertEqual(result['password'], ' keep me ')
        self.assertEqual(result['amount'], 42.5)
        self.assertEqual(result['dueDate'], '2024-05-01T00:00:00.000Z')
        self.assertNotIn('description', result)

    def test_sanitize_never_rejects(self):
        result = validator.sanitize({'amount': 'lots', 'date': 'whenever'})
        self.assertEqual(result, {'amount': 'lots', 'date': 'whenever'})

    def test_epoch_milliseconds(self):
        result = validator.sanitize({'updatedAt': 0})
        self.assertEqual(result['updatedAt'], '1970-01-01T00:00:00.000Z')


if __name__ == '__main__':
    unittest.main()
