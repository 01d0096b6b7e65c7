"""Settings library for the application configuration.

Provides:
    - Schema validation and enforcement for the config.json structure.
    - Loading, saving and reverting the configuration.
    - Application paths for the local database and the cached session.
"""

import json
import logging
import pathlib
import re
import shutil
from typing import Any, Dict, List, Optional, Union

from PySide6 import QtCore

from ..status import status

app_name: str = 'BudgetTracker'


def is_valid_hex_color(value: str) -> bool:
    """Check if a string is a valid hexadecimal color in #RRGGBB or #RGB format.

    Args:
        value (str): Color string to validate.

    Returns:
        bool: True if value matches '#RRGGBB' or '#RGB', False otherwise.
    """
    return bool(re.fullmatch(r'#([0-9A-Fa-f]{6}|[0-9A-Fa-f]{3})', value))


CONFIG_SCHEMA: Dict[str, Any] = {
    'api': {
        'type': dict,
        'required': True,
        'item_schema': {
            'base_url': {'type': str, 'required': True},
            'timeout': {'type': (int, float), 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'interval_seconds': {'type': int, 'required': True},
            'max_retries': {'type': int, 'required': True},
        }
    },
    'database': {
        'type': dict,
        'required': True,
        'item_schema': {
            'name': {'type': str, 'required': True},
        }
    },
    'defaults': {
        'type': dict,
        'required': True,
        'item_schema': {
            'currency': {'type': str, 'required': True},
            'categories': {'type': list, 'required': True},
        }
    },
}


def _validate_items(section: str, section_dict: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the fields of a configuration section against its item schema.

    Args:
        section: Name of the section, used in error messages.
        section_dict: The section data.
        item_schema: Mapping of field names to their type and required flag.

    Raises:
        ValueError: If a required field is missing.
        TypeError: If a field has the wrong type.
    """
    logging.debug(f'Validating "{section}" section.')
    for field, field_specs in item_schema.items():
        if field not in section_dict:
            if field_specs['required']:
                msg = f'Section "{section}" is missing "{field}".'
                logging.error(msg)
                raise ValueError(msg)
            continue

        value = section_dict[field]
        # bool is an int subclass; never accept it for numeric fields
        if isinstance(value, bool) or not isinstance(value, field_specs['type']):
            msg = f'Section "{section}" field "{field}" must be {field_specs["type"]}, got {type(value)}.'
            logging.error(msg)
            raise TypeError(msg)


def _validate_default_categories(categories: List[Any]) -> None:
    """Validate the default category list.

    Raises:
        TypeError: If an item is not a dict.
        ValueError: If an item has no name or an invalid color.
    """
    for item in categories:
        if not isinstance(item, dict):
            msg = f'Default category "{item}" must be a dict.'
            logging.error(msg)
            raise TypeError(msg)
        if not item.get('name'):
            msg = f'Default category {item} is missing a name.'
            logging.error(msg)
            raise ValueError(msg)
        if 'color' in item and not is_valid_hex_color(item['color']):
            msg = f'Default category "{item["name"]}" has an invalid color "{item["color"]}".'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default config exists.

    Paths live in the Qt application data directory unless an explicit root is given.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None) -> None:
        """Set up application paths and ensure required directories and templates exist.

        Args:
            root: Optional directory to use instead of the Qt app data location.
        """
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        if root is None:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = pathlib.Path(p)
        else:
            app_data_dir = pathlib.Path(root)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.config_template: pathlib.Path = self.template_dir / 'config.json.template'

        self.app_data_dir: pathlib.Path = app_data_dir
        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.config_path: pathlib.Path = self.config_dir / 'config.json'
        self.session_path: pathlib.Path = self.auth_dir / 'session.json'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare the configuration directories and files.

        Raises:
            FileNotFoundError: If the config template is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.config_template.exists():
            msg: str = f'Missing config template: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir, self.db_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Copying default config from template to {self.config_path}')
            shutil.copy(self.config_template, self.config_path)

    def revert_config_to_template(self) -> None:
        """Restore config.json from the default template file."""
        logging.debug(f'Reverting config to template: {self.config_template}')
        shutil.copy(self.config_template, self.config_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save config.json sections.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None) -> None:
        super().__init__(root=root)

        self.config_data: Dict[str, Any] = {k: {} for k in CONFIG_SCHEMA}
        self.load_config()

    @property
    def db_path(self) -> pathlib.Path:
        """Path of the local SQLite database file."""
        name = self.config_data.get('database', {}).get('name') or 'budgettracker.db'
        return self.db_dir / name

    def load_config(self) -> Dict[str, Any]:
        """Load config.json from disk and validate against schema.

        Returns:
            The loaded config data dictionary.

        Raises:
            status.ConfigNotFoundException: If config.json is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.ConfigNotFoundException(str(self.config_path))

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_config_data(data)
        except status.ConfigInvalidException:
            raise
        except Exception as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

        self.config_data = data
        return self.config_data

    def validate_config_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate config data against the defined CONFIG_SCHEMA.

        Args:
            data (dict, optional): Config data to validate. Defaults to self.config_data.

        Raises:
            status.ConfigInvalidException: If a required section is missing or validation fails.
        """
        if data is None:
            data = self.config_data
        if not isinstance(data, dict) or not data:
            raise status.ConfigInvalidException('Config data is empty.')

        for section, specs in CONFIG_SCHEMA.items():
            if specs.get('required') and section not in data:
                raise status.ConfigInvalidException(f'Missing required section: {section}')

            if not isinstance(data[section], specs['type']):
                raise status.ConfigInvalidException(
                    f'Section "{section}" must be {specs["type"]}, got {type(data[section])}.'
                )
            try:
                _validate_items(section, data[section], specs['item_schema'])
                if section == 'defaults':
                    _validate_default_categories(data[section]['categories'])
            except (TypeError, ValueError) as ex:
                raise status.ConfigInvalidException(str(ex)) from ex

        logging.debug('Config data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a configuration section.

        Raises:
            KeyError: If section_name is not a known section.
        """
        return dict(self.config_data[section_name])

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a configuration section.

        Raises:
            ValueError: If section_name is not part of the schema.
            status.ConfigInvalidException: If the new data fails validation.
        """
        if section_name not in CONFIG_SCHEMA:
            raise ValueError(f'Unknown config section: {section_name}')

        candidate = dict(self.config_data)
        candidate[section_name] = new_data
        self.validate_config_data(candidate)

        self.config_data = candidate
        self.save_config()

    def save_config(self) -> None:
        """Write the current configuration to config.json."""
        logging.debug(f'Saving config to "{self.config_path}"')
        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(self.config_data, f, indent=4)

    def revert_config(self) -> None:
        """Restore the template configuration and reload it."""
        self.revert_config_to_template()
        self.load_config()
