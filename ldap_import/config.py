"""
Configuration loading and management for LDAP User Import.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DIRECTORY_TYPES = ('auto', 'active_directory', 'generic')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'database.url': 'DATABASE_URL',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        directory_type = ldap_config.get('directory_type', 'auto')
        if directory_type not in DIRECTORY_TYPES:
            errors.append(f"Invalid ldap.directory_type '{directory_type}' (expected one of {', '.join(DIRECTORY_TYPES)})")

        database_config = self.config.get('database') or {}
        if not database_config.get('url'):
            errors.append("Missing required database field: url")

        import_config = self.config.get('import') or {}
        sync_attributes = import_config.get('sync_attributes')
        if not sync_attributes or not isinstance(sync_attributes, dict):
            errors.append("import.sync_attributes must map at least one local column to a directory attribute")
        else:
            for column, spec in sync_attributes.items():
                prefix = f"import.sync_attributes.{column}"
                if isinstance(spec, str):
                    continue
                if not isinstance(spec, dict):
                    errors.append(f"{prefix} must be an attribute name or a mapping")
                elif bool(spec.get('attribute')) == bool(spec.get('template')):
                    errors.append(f"{prefix} needs exactly one of 'attribute' or 'template'")

        for flag in ['restore_enabled_users', 'trash_disabled_users', 'delete_missing', 'logging']:
            if flag in import_config and not isinstance(import_config[flag], bool):
                errors.append(f"import.{flag} must be true or false")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'user_filter': '(objectClass=person)',
            'import_filter': '',
            'directory_type': 'auto',
            'guid_attribute': None,
            'page_size': 1000,
            'attributes': ['*']
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        database_defaults = {
            'table': 'users',
            'soft_deletes': True,
            'domain': 'default'
        }
        database_config = self.config.setdefault('database', {})
        for key, value in database_defaults.items():
            database_config.setdefault(key, value)

        import_defaults = {
            'restore_enabled_users': False,
            'trash_disabled_users': False,
            'delete_missing': False,
            'logging': True
        }
        import_config = self.config.setdefault('import', {})
        for key, value in import_defaults.items():
            import_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # The LDAP client reads its retry settings from its own section
        ldap_config.setdefault('error_handling', dict(error_config))

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
