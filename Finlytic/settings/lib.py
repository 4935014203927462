"""Application settings and data paths.

``settings.json`` lives in the application data directory and is seeded from
the bundled template on first run. Every section is checked against
:data:`SETTINGS_SCHEMA` when it is loaded and before it is written back.

The cache databases are kept under ``<app data>/config/db`` and the remote
store credentials under ``<app data>/config/auth``.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, Union

from PySide6 import QtCore

from ..status import status

app_name: str = 'Finlytic'

SETTINGS_SCHEMA: Dict[str, Any] = {
    'firestore': {
        'type': dict,
        'required': True,
        'item_schema': {
            'project_id': {'type': str, 'required': True},
            'database': {'type': str, 'required': True, 'non_empty': True},
            'credentials': {'type': str, 'required': True},
            'timeout': {'type': (int, float), 'required': True, 'min': 1},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'max_retries': {'type': int, 'required': True, 'min': 1},
            'debounce_ms': {'type': int, 'required': True, 'min': 0},
            'interval_ms': {'type': int, 'required': True, 'min': 1000},
            'persist_queue': {'type': bool, 'required': True},
        }
    },
    'connectivity': {
        'type': dict,
        'required': True,
        'item_schema': {
            'poll_interval_ms': {'type': int, 'required': True, 'min': 1000},
            'offline_threshold_hours': {'type': (int, float), 'required': True, 'min': 0},
            'use_platform_events': {'type': bool, 'required': True},
        }
    },
    'errors': {
        'type': dict,
        'required': True,
        'item_schema': {
            'burst_window_seconds': {'type': (int, float), 'required': True, 'min': 0},
            'burst_threshold': {'type': int, 'required': True, 'min': 1},
            'max_history': {'type': int, 'required': True, 'min': 1},
        }
    },
    'cache': {
        'type': dict,
        'required': True,
        'item_schema': {
            'delete_attempts': {'type': int, 'required': True, 'min': 1},
        }
    },
}


def _fail(exc_type: type, msg: str) -> None:
    logging.error(msg)
    raise exc_type(msg)


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Check one settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Field name to ``type``, ``required``, ``min`` and ``non_empty`` rules.

    Raises:
        TypeError: If the section is not a dict or a field has the wrong type.
        ValueError: If a required field is missing or a value is out of range.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section, dict):
        _fail(TypeError, f'"{section_name}" must be a dict.')

    for field, rules in item_schema.items():
        where = f'{section_name}.{field}'
        if field not in section:
            if rules['required']:
                _fail(ValueError, f'Missing required setting "{where}".')
            continue

        value = section[field]
        expected = rules['type']
        # bool is an int subclass
        wrong_type = not isinstance(value, expected) or (isinstance(value, bool) and expected is not bool)
        if wrong_type:
            _fail(TypeError, f'"{where}" must be {expected}, got {type(value).__name__}.')
        if 'min' in rules and value < rules['min']:
            _fail(ValueError, f'"{where}" must be at least {rules["min"]}, got {value}.')
        if rules.get('non_empty') and not value:
            _fail(ValueError, f'"{where}" must not be empty.')


class ConfigPaths:
    """Application data paths.

    The directories are created, and the settings file is seeded from the
    template, on construction.

    Args:
        root: Application data directory. Defaults to Qt's writable AppDataLocation.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        if root is None:
            root = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        data_dir = pathlib.Path(root)
        logging.debug(f'{app_name} data directory: {data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'credentials.json'
        self.error_log_path: pathlib.Path = self.config_dir / 'error_log.txt'

        self._prepare()

    def _prepare(self) -> None:
        """
        Raises:
            FileNotFoundError: If the bundled settings template is missing.
        """
        if not self.settings_template.exists():
            _fail(FileNotFoundError, f'Missing settings template: {self.settings_template}')

        for d in (self.config_dir, self.auth_dir, self.db_dir):
            d.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.info(f'No settings found, seeding {self.settings_path} from the template')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Overwrite settings.json with the bundled template."""
        if not self.settings_template.exists():
            _fail(FileNotFoundError, f'Settings template not found: {self.settings_template}')
        logging.info('Reverting all settings to the template')
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """Read and write access to the sections of settings.json.

    Values can be read with a dotted key, e.g. ``settings['sync.max_retries']``.

    Args:
        root: Application data directory.
        settings_path: Use this settings file instead of the default one.
    """

    def __init__(self, root: Optional[Union[str, pathlib.Path]] = None,
                 settings_path: Optional[str] = None) -> None:
        super().__init__(root=root)

        if settings_path:
            self.settings_path = pathlib.Path(settings_path)

        self.settings_data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.load_settings()

    def __getitem__(self, key: str) -> Any:
        section_name, _, field = key.partition('.')
        if section_name not in SETTINGS_SCHEMA:
            raise KeyError(f'Invalid section: {section_name}, must be one of {list(SETTINGS_SCHEMA)}')
        return self.settings_data[section_name][field]

    @property
    def credentials_path(self) -> pathlib.Path:
        """Configured credentials file, or the default location in the auth directory."""
        p = self.settings_data.get('firestore', {}).get('credentials', '')
        return pathlib.Path(p) if p else self.creds_path

    def _read(self, path: pathlib.Path) -> Dict[str, Any]:
        with path.open('r', encoding='utf-8') as f:
            return json.load(f)

    def _write(self, data: Dict[str, Any]) -> None:
        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(data, f, indent=4, ensure_ascii=False)

    def _check_section_name(self, section_name: str) -> None:
        if section_name not in self.settings_data:
            _fail(ValueError, f'Unknown settings section "{section_name}"')

    def load_settings(self) -> Dict[str, Any]:
        """Load and validate settings.json.

        Raises:
            status.SettingsNotFoundException: If settings.json is missing.
            status.SettingsInvalidException: If the file can't be parsed or fails validation.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException

        try:
            data = self._read(self.settings_path)
            self.validate_settings_data(data)
        except status.SettingsInvalidException:
            raise
        except Exception as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def validate_settings_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate ``data``, or the current settings, against :data:`SETTINGS_SCHEMA`.

        Raises:
            RuntimeError: If there is no data to validate.
            status.SettingsInvalidException: If a section is missing or is not a dict.
            TypeError: If a field has the wrong type.
            ValueError: If a field is missing or out of range.
        """
        data = self.settings_data if data is None else data
        if not data:
            raise RuntimeError('Settings data is empty.')

        for section_name, specs in SETTINGS_SCHEMA.items():
            if section_name not in data:
                if specs.get('required'):
                    raise status.SettingsInvalidException(f'Missing required section: {section_name}')
                continue

            section = data[section_name]
            if not isinstance(section, specs['type']):
                raise status.SettingsInvalidException(
                    f'Section "{section_name}" must be {specs["type"]}, got {type(section).__name__}.'
                )
            _validate_section(section_name, section, specs['item_schema'])

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Return a copy of a settings section.

        Raises:
            KeyError: If the section does not exist.
        """
        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Validate and save a section. The previous value is kept if validation fails.

        Raises:
            ValueError: If the section is unknown or a value is out of range.
            TypeError: If a field has the wrong type.
        """
        self._check_section_name(section_name)

        previous = self.settings_data[section_name]
        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
        except (ValueError, TypeError, status.SettingsInvalidException):
            self.settings_data[section_name] = previous
            raise
        self.save_section(section_name)

    def reload_section(self, section_name: str) -> None:
        """Discard in-memory changes to a section and read it back from disk."""
        self._check_section_name(section_name)

        logging.debug(f'Reloading section "{section_name}" from disk.')
        data = self._read(self.settings_path)
        self.validate_settings_data(data=data)
        self.settings_data[section_name] = data[section_name]

    def revert_section(self, section_name: str) -> None:
        """Reset a section to the template values and save it."""
        self._check_section_name(section_name)

        defaults = self._read(self.settings_template)
        if section_name not in defaults:
            _fail(ValueError, f'The settings template has no "{section_name}" section.')

        self.settings_data[section_name] = defaults[section_name]
        self.save_section(section_name)

    def save_section(self, section_name: str) -> None:
        """Write one section to settings.json, leaving the other sections on disk untouched."""
        self._check_section_name(section_name)

        on_disk = self._read(self.settings_path)
        on_disk[section_name] = self.settings_data[section_name]
        self._write(on_disk)

    def save_all(self) -> None:
        """Validate and write every section.

        Nothing is written if validation fails.
        """
        logging.debug('Saving all settings.')
        self.validate_settings_data()
        self._write(self.settings_data)
