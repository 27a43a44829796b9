"""
Configuration Management

Handles loading and validating the operator configuration file and
environment overrides.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from decouple import config as env_config

from .constants import FileConstants, NetworkConstants
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_NUMBER = (int, float)


class ConfigManager:
    """Manages configuration loading and validation"""

    # Configuration schema - defines expected structure and types
    CONFIG_SCHEMA = {
        'cluster': {
            'type': dict,
            'required': False,
            'fields': {
                'api_url': {'type': str, 'required': False},
                'token': {'type': str, 'required': False},
                'skip_tls': {'type': bool, 'required': False},
            }
        },
        'discovery': {
            'type': dict,
            'required': False,
            'fields': {
                'refresh_interval': {'type': _NUMBER, 'required': False},
            }
        },
        'controllers': {
            'type': dict,
            'required': False,
            'fields': {
                'resync_interval': {'type': _NUMBER, 'required': False},
                'role_definition': {
                    'type': dict,
                    'required': False,
                    'fields': {'concurrency': {'type': int, 'required': False}}
                },
                'bind_definition': {
                    'type': dict,
                    'required': False,
                    'fields': {'concurrency': {'type': int, 'required': False}}
                },
                'webhook_authorizer': {
                    'type': dict,
                    'required': False,
                    'fields': {'concurrency': {'type': int, 'required': False}}
                },
                'retry': {
                    'type': dict,
                    'required': False,
                    'fields': {
                        'base_delay': {'type': _NUMBER, 'required': False},
                        'max_delay': {'type': _NUMBER, 'required': False},
                    }
                },
            }
        },
        'webhook': {
            'type': dict,
            'required': False,
            'fields': {
                'enabled': {'type': bool, 'required': False},
                'host': {'type': str, 'required': False},
                'port': {'type': int, 'required': False},
                'cert_file': {'type': str, 'required': False},
                'key_file': {'type': str, 'required': False},
            }
        },
        'metrics': {
            'type': dict,
            'required': False,
            'fields': {
                'port': {'type': int, 'required': False},
            }
        },
        'global': {
            'type': dict,
            'required': False,
            'fields': {
                'debug': {'type': bool, 'required': False},
            }
        },
    }

    DEFAULT_CONFIG = {
        'cluster': {
            'api_url': None,
            'token': None,
            'skip_tls': False,
        },
        'discovery': {
            'refresh_interval': NetworkConstants.DISCOVERY_REFRESH_INTERVAL,
        },
        'controllers': {
            'resync_interval': NetworkConstants.RESYNC_INTERVAL,
            'role_definition': {'concurrency': NetworkConstants.DEFAULT_CONCURRENCY},
            'bind_definition': {'concurrency': NetworkConstants.DEFAULT_CONCURRENCY},
            'webhook_authorizer': {'concurrency': NetworkConstants.DEFAULT_CONCURRENCY},
            'retry': {
                'base_delay': NetworkConstants.RETRY_BASE_DELAY,
                'max_delay': NetworkConstants.RETRY_MAX_DELAY,
            },
        },
        'webhook': {
            'enabled': True,
            'host': NetworkConstants.DEFAULT_WEBHOOK_HOST,
            'port': NetworkConstants.DEFAULT_WEBHOOK_PORT,
            'cert_file': None,
            'key_file': None,
        },
        'metrics': {
            'port': 0,
        },
        'global': {
            'debug': False,
        },
    }

    # Environment variables overriding configuration values
    ENV_OVERRIDES = {
        'AUTH_OPERATOR_API_URL': ('cluster.api_url', str),
        'AUTH_OPERATOR_TOKEN': ('cluster.token', str),
        'AUTH_OPERATOR_SKIP_TLS': ('cluster.skip_tls', bool),
        'AUTH_OPERATOR_DISCOVERY_INTERVAL': ('discovery.refresh_interval', float),
        'AUTH_OPERATOR_RESYNC_INTERVAL': ('controllers.resync_interval', float),
        'AUTH_OPERATOR_ROLE_CONCURRENCY': ('controllers.role_definition.concurrency', int),
        'AUTH_OPERATOR_BIND_CONCURRENCY': ('controllers.bind_definition.concurrency', int),
        'AUTH_OPERATOR_AUTHORIZER_CONCURRENCY': ('controllers.webhook_authorizer.concurrency', int),
        'AUTH_OPERATOR_WEBHOOK_ENABLED': ('webhook.enabled', bool),
        'AUTH_OPERATOR_WEBHOOK_PORT': ('webhook.port', int),
        'AUTH_OPERATOR_WEBHOOK_CERT': ('webhook.cert_file', str),
        'AUTH_OPERATOR_WEBHOOK_KEY': ('webhook.key_file', str),
        'AUTH_OPERATOR_METRICS_PORT': ('metrics.port', int),
        'AUTH_OPERATOR_DEBUG': ('global.debug', bool),
    }

    # Default configuration file locations (in order of precedence)
    DEFAULT_CONFIG_LOCATIONS = [
        FileConstants.DEFAULT_CONFIG_FILE,
        "/etc/auth-operator/" + FileConstants.DEFAULT_CONFIG_FILE,
    ]

    def __init__(self):
        """Initialize configuration manager"""
        self.config_data = copy.deepcopy(self.DEFAULT_CONFIG)
        self.config_file_path = None

    def load_config(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Load configuration from a YAML file and the environment

        Args:
            config_path: Path to configuration file (optional)

        Returns:
            Dict containing the merged configuration

        Raises:
            ConfigurationError: If configuration file cannot be loaded or is invalid
        """
        config_path = config_path or env_config('AUTH_OPERATOR_CONFIG', default=None)
        if config_path is None:
            config_path = self._find_config_file()
        elif not Path(config_path).exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        file_data = {}
        if config_path:
            file_data = self._read_file(config_path)
            self._validate_against_schema(file_data, self.CONFIG_SCHEMA, "")
            self.config_file_path = str(config_path)
            logger.info(f"Loaded configuration from {config_path}")
        else:
            logger.debug("No configuration file found, using defaults")

        self.config_data = self._merge(copy.deepcopy(self.DEFAULT_CONFIG), file_data)
        self._apply_env_overrides()
        return self.get_config()

    def _find_config_file(self) -> Optional[str]:
        for location in self.DEFAULT_CONFIG_LOCATIONS:
            candidate = Path(os.path.expanduser(location))
            if candidate.is_file():
                return str(candidate)
        return None

    def _read_file(self, config_path: str) -> Dict[str, Any]:
        config_file = Path(config_path)
        if not config_file.is_file():
            raise ConfigurationError(f"Configuration path is not a file: {config_path}")
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                content = os.path.expandvars(f.read())
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a dictionary")
        return data

    def _validate_against_schema(self, data: Dict[str, Any], schema: Dict[str, Any], path: str = "") -> None:
        """
        Validate data against schema definition

        Args:
            data: Data to validate
            schema: Schema definition
            path: Current path for error reporting

        Raises:
            ConfigurationError: If data doesn't match schema
        """
        for key in data:
            if key not in schema:
                logger.warning(f"Ignoring unknown configuration key {path + '.' if path else ''}{key}")

        for key, field_schema in schema.items():
            current_path = f"{path}.{key}" if path else key

            if key in data:
                value = data[key]

                if value is None and not field_schema.get('required', False):
                    continue

                expected_type = field_schema['type']
                # bool is a subclass of int; reject it for numeric fields
                if isinstance(value, bool) and expected_type is not bool:
                    raise ConfigurationError(f"{current_path} must be a {self._type_name(expected_type)}")
                if not isinstance(value, expected_type):
                    raise ConfigurationError(f"{current_path} must be a {self._type_name(expected_type)}")

                if 'choices' in field_schema and value not in field_schema['choices']:
                    choices_str = ', '.join(f"'{c}'" for c in field_schema['choices'])
                    raise ConfigurationError(f"{current_path} must be one of: {choices_str}")

                if expected_type is dict and 'fields' in field_schema:
                    self._validate_against_schema(value, field_schema['fields'], current_path)

            elif field_schema.get('required', False):
                raise ConfigurationError(f"Required field {current_path} is missing")

    @staticmethod
    def _type_name(expected_type) -> str:
        if isinstance(expected_type, tuple):
            return "number"
        return expected_type.__name__

    def _merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key] = self._merge(base[key], value)
            elif value is not None:
                base[key] = value
        return base

    def _apply_env_overrides(self) -> None:
        for env_name, (key, cast) in self.ENV_OVERRIDES.items():
            if env_config(env_name, default=None) is None:
                continue
            try:
                value = env_config(env_name, cast=cast)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_name}: {e}")
            self._set_value(key, value)
            logger.debug(f"Configuration {key} overridden by {env_name}")

    def _set_value(self, key: str, value: Any) -> None:
        keys = key.split('.')
        target = self.config_data
        for k in keys[:-1]:
            target = target.setdefault(k, {})
        target[keys[-1]] = value

    def get_config(self) -> Dict[str, Any]:
        """
        Get current configuration data

        Returns:
            Dict containing configuration data
        """
        return copy.deepcopy(self.config_data)

    def get_section(self, section: str) -> Dict[str, Any]:
        """
        Get specific configuration section

        Args:
            section: Section name (e.g., 'discovery', 'webhook')

        Returns:
            Dict containing section data, empty dict if section doesn't exist
        """
        return copy.deepcopy(self.config_data.get(section, {}))

    def get_value(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key

        Args:
            key: Configuration key (supports dot notation like 'webhook.port')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value = self.config_data
        try:
            for k in key.split('.'):
                value = value[k]
        except (KeyError, TypeError):
            return default
        return default if value is None else value
