# tests/test_settings.py
"""
Unit tests for BudgetTracker.settings.lib
(covers helpers, validators, ConfigPaths and SettingsAPI).

Run with:
    python -m unittest tests.test_settings
"""
import copy
import json
import unittest

from BudgetTracker.settings import lib
from BudgetTracker.settings.lib import SettingsAPI, _validate_default_categories, is_valid_hex_color
from BudgetTracker.status import status
from tests.base import BaseTestCase


class HelperFunctionTests(unittest.TestCase):
    def test_hex_colour_validation(self):
        self.assertTrue(is_valid_hex_color('#FFF'))
        self.assertTrue(is_valid_hex_color('#a1b2c3'))
        self.assertFalse(is_valid_hex_color('FFF'))
        self.assertFalse(is_valid_hex_color('#GGGGGG'))

    def test_validate_default_categories(self):
        _validate_default_categories([{'name': 'Food', 'color': '#123456'}])
        with self.assertRaises(ValueError):
            _validate_default_categories([{'color': '#123456'}])
        with self.assertRaises(ValueError):
            _validate_default_categories([{'name': 'Food', 'color': 'blue'}])
        with self.assertRaises(TypeError):
            _validate_default_categories(['Food'])


class RealTemplateSmokeTest(BaseTestCase):
    def test_templates_exist(self):
        self.assertTrue(self.settings.config_template.exists())
        self.assertTrue(self.settings.config_path.exists())
        self.assertTrue(self.settings.db_dir.is_dir())
        self.assertTrue(self.settings.auth_dir.is_dir())

    def test_paths_live_under_root(self):
        self.assertEqual(self.settings.db_path, self.root / 'config' / 'db' / 'budgettracker.db')
        self.assertEqual(self.settings.session_path, self.root / 'config' / 'auth' / 'session.json')


class SettingsAPIBehaviour(BaseTestCase):
    def _write_config(self, data) -> None:
        with self.settings.config_path.open('w', encoding='utf-8') as f:
            json.dump(data, f)

    def test_template_is_valid(self):
        self.settings.validate_config_data()
        self.assertEqual(self.settings.get_section('sync')['max_retries'], 3)
        self.assertEqual(self.settings.get_section('api')['timeout'], 30)

    def test_get_section_returns_copy(self):
        section = self.settings.get_section('api')
        section['base_url'] = 'http://elsewhere'
        self.assertNotEqual(self.settings.get_section('api')['base_url'], 'http://elsewhere')

    def test_set_section_persists(self):
        self.settings.set_section('sync', {'interval_seconds': 60, 'max_retries': 5})

        reloaded = SettingsAPI(root=self.root)
        self.assertEqual(reloaded.get_section('sync'), {'interval_seconds': 60, 'max_retries': 5})

    def test_set_section_invalid_value_rollback(self):
        before = self.settings.get_section('sync')
        with self.assertRaises(status.ConfigInvalidException):
            self.settings.set_section('sync', {'interval_seconds': 'often', 'max_retries': 3})
        self.assertEqual(self.settings.get_section('sync'), before)

    def test_bool_is_not_a_number(self):
        with self.assertRaises(status.ConfigInvalidException):
            self.settings.set_section('sync', {'interval_seconds': True, 'max_retries': 3})

    def test_set_section_unknown(self):
        with self.assertRaises(ValueError):
            self.settings.set_section('spreadsheet', {})

    def test_missing_section(self):
        data = copy.deepcopy(self.settings.config_data)
        del data['database']
        self._write_config(data)
        with self.assertRaises(status.ConfigInvalidException):
            self.settings.load_config()

    def test_malformed_json(self):
        self.settings.config_path.write_text('{', encoding='utf-8')
        with self.assertRaises(status.ConfigInvalidException):
            self.settings.load_config()

    def test_missing_config(self):
        self.settings.config_path.unlink()
        with self.assertRaises(status.ConfigNotFoundException):
            self.settings.load_config()

    def test_revert_config(self):
        self.settings.set_section('api', {'base_url': 'http://elsewhere', 'timeout': 5})
        self.settings.revert_config()
        self.assertEqual(self.settings.get_section('api')['base_url'], 'http://localhost:3000/api/v1')

    def test_database_name(self):
        self.settings.set_section('database', {'name': 'other.db'})
        self.assertEqual(self.settings.db_path.name, 'other.db')

    def test_app_name(self):
        self.assertEqual(lib.app_name, 'BudgetTracker')
