"""
ScreenConnect Maintenance - Configuration Module
Copyright (c) 2025 Kiefer Networks

Provides configuration loading and validation for a maintenance run.
"""

import os
import re
import json
import logging
import platform

from registry_utils import normalize_datto_field, parse_version
from service_utils import MaintenanceError

INSTALL_DIR_WINDOWS_NAME = 'ScreenConnectMaintenance'
INSTALL_DIR_UNIX = '/var/lib/screenconnect-maintenance'
CONFIG_FILENAME = 'maintenance_config.json'
ENV_PREFIX = 'SCM_'

DEFAULT_CONFIG = {
    "service_name": "",
    "server_domain": "",
    "company_name": "",
    "friendly_name": "",
    "max_age_days": 180,
    "min_version": "",
    "start_wait_seconds": 30,
    "poll_interval_seconds": 3,
    "url_field": "",
    "alert_category": "ScreenConnect",
    "force_reinstall": False,
    "check_only": False,
    "log_dir": "",
}

INT_KEYS = ('max_age_days', 'start_wait_seconds', 'poll_interval_seconds')
BOOL_KEYS = ('force_reinstall', 'check_only')
TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off', '')


class ConfigError(MaintenanceError):
    """Raised when the run configuration is missing or invalid."""
    pass


def get_install_dir():
    """Get the data directory for the current platform."""
    system = platform.system()
    if system == 'Windows':
        return os.path.join(os.environ.get('ProgramData', r'C:\ProgramData'), INSTALL_DIR_WINDOWS_NAME)
    elif system in ['Linux', 'Darwin']:
        return INSTALL_DIR_UNIX
    else:
        raise ConfigError(f"Unsupported OS: {system}")


def get_config_path():
    """Get the full path to the default configuration file."""
    return os.path.join(get_install_dir(), CONFIG_FILENAME)


def _coerce(key, value):
    if key in INT_KEYS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
    if key in BOOL_KEYS:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ConfigError(f"{key} must be a boolean, got {value!r}")
    return "" if value is None else str(value).strip()


def _read_config_file(path):
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    logging.info(f"Loaded config from {path}")
    return data


def _env_overrides(env):
    values = {}
    for key in DEFAULT_CONFIG:
        env_key = ENV_PREFIX + key.upper()
        if env_key in env:
            values[key] = env[env_key]
    return values


def load_config(path=None, env=None, overrides=None):
    """
    Build the run configuration.

    Sources are merged in order: built-in defaults, the JSON config file,
    SCM_* environment variables, then explicit overrides (command line).

    Args:
        path: Config file path. Defaults to the file in the data directory;
            a missing default file is not an error, a missing explicit one is.
        env: Environment mapping. Defaults to os.environ.
        overrides: Values taken from the command line.

    Returns:
        dict: A new configuration dictionary.

    Raises:
        ConfigError: If a source cannot be read or a value has the wrong type.
    """
    env = os.environ if env is None else env
    config = dict(DEFAULT_CONFIG)

    if path is not None:
        if not os.path.exists(path):
            raise ConfigError(f"Configuration file not found at {path}")
        config.update(_read_config_file(path))
    else:
        default_path = get_config_path()
        if os.path.exists(default_path):
            config.update(_read_config_file(default_path))

    config.update(_env_overrides(env))
    config.update({k: v for k, v in (overrides or {}).items() if v is not None})

    unknown = set(config) - set(DEFAULT_CONFIG)
    for key in sorted(unknown):
        logging.warning(f"Ignoring unknown config key: {key}")
        config.pop(key)

    return {key: _coerce(key, value) for key, value in config.items()}


def validate_config(config, rmm_platform=None):
    """
    Validate a loaded configuration.

    Raises:
        ConfigError: On the first invalid value found.
    """
    for key in ('service_name', 'server_domain'):
        if not config.get(key):
            raise ConfigError(f"Missing required setting: {key}")

    if re.match(r'^[a-z]+://', config['server_domain'], re.IGNORECASE) or '/' in config['server_domain']:
        raise ConfigError(f"server_domain must be a bare host name, got {config['server_domain']!r}")

    for key in INT_KEYS:
        if config[key] < 0:
            raise ConfigError(f"{key} must not be negative")
    if config['poll_interval_seconds'] == 0:
        raise ConfigError("poll_interval_seconds must be greater than zero")

    if config['min_version']:
        try:
            parse_version(config['min_version'])
        except ValueError:
            raise ConfigError(f"min_version must be dotted integers, got {config['min_version']!r}")

    if rmm_platform == 'datto' and config['url_field']:
        try:
            normalize_datto_field(config['url_field'])
        except ValueError as e:
            raise ConfigError(str(e))

    if config['check_only'] and config['force_reinstall']:
        raise ConfigError("check_only and force_reinstall cannot be combined")

    return config
