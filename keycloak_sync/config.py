"""
Configuration loading and management for Keycloak Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

USER_IDENTITIES = ('id', 'username')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class Credentials:
    """Connection settings for one Keycloak realm."""

    server_url: str
    realm: str
    client_id: str
    client_secret: str

    def __repr__(self):
        return (f"Credentials(server_url={self.server_url!r}, realm={self.realm!r}, "
                f"client_id={self.client_id!r}, client_secret='****')")


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings, applied over the file
    ENV_OVERRIDES = {
        'keycloak.server_url': 'KEYCLOAK_SERVER_URL',
        'keycloak.realm': 'KEYCLOAK_REALM',
        'keycloak.client_id': 'KEYCLOAK_CLIENT_ID',
        'keycloak.client_secret': 'KEYCLOAK_CLIENT_SECRET',
    }

    REQUIRED_KEYCLOAK_FIELDS = ['server_url', 'realm', 'client_id', 'client_secret']

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
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
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

        keycloak_config = self.config.get('keycloak')
        if not isinstance(keycloak_config, dict):
            errors.append("Missing required section: keycloak")
            keycloak_config = {}

        for field in self.REQUIRED_KEYCLOAK_FIELDS:
            value = keycloak_config.get(field)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"Missing required Keycloak field: {field}")

        server_url = keycloak_config.get('server_url')
        if isinstance(server_url, str) and server_url.strip():
            parsed = urlparse(server_url)
            if parsed.scheme not in ('http', 'https') or not parsed.netloc:
                errors.append(f"Invalid Keycloak server_url: {server_url}")

        page_size = keycloak_config.get('page_size')
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            errors.append(f"keycloak.page_size must be a positive integer, got {page_size!r}")

        timeout = keycloak_config.get('timeout')
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append(f"keycloak.timeout must be a positive number, got {timeout!r}")

        user_identity = self.config.get('sync', {}).get('user_identity')
        if user_identity not in USER_IDENTITIES:
            errors.append(f"sync.user_identity must be one of {', '.join(USER_IDENTITIES)}, "
                          f"got {user_identity!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        keycloak_defaults = {
            'page_size': 300,
            'timeout': 30,
            'verify_ssl': True,
            'ca_cert_file': None
        }
        keycloak_config = self.config.setdefault('keycloak', {})
        if isinstance(keycloak_config, dict):
            for key, value in keycloak_defaults.items():
                keycloak_config.setdefault(key, value)

        for section in ('sync', 'logging'):
            if not isinstance(self.config.get(section), dict):
                self.config[section] = {}

        sync_config = self.config['sync']
        sync_config.setdefault('user_identity', 'id')

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config['logging']
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


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


def credentials_from_config(config: Dict[str, Any]) -> Credentials:
    """
    Build the immutable connection credentials from a loaded configuration.

    Raises:
        ConfigurationError: If a required field is missing or empty
    """
    keycloak_config = config.get('keycloak') or {}
    missing = [field for field in ConfigLoader.REQUIRED_KEYCLOAK_FIELDS
               if not keycloak_config.get(field)]
    if missing:
        raise ConfigurationError(f"Missing required Keycloak fields: {', '.join(missing)}")

    return Credentials(
        server_url=keycloak_config['server_url'].rstrip('/'),
        realm=keycloak_config['realm'],
        client_id=keycloak_config['client_id'],
        client_secret=keycloak_config['client_secret'],
    )
