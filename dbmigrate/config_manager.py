"""Configuration management for dbmigrate.

This module provides:
- YAML configuration loading with override files
- Configuration schema validation
- Environment variable overrides for connection settings and credentials
- Secrets redaction for display
"""

import os
import logging
from copy import deepcopy
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from jsonschema import validate, ValidationError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = "^[A-Za-z_][A-Za-z0-9_]*(\\.[A-Za-z_][A-Za-z0-9_]*)?$"
REGISTRY_PATTERN = "^[A-Za-z_][A-Za-z0-9_.]*:[A-Za-z_][A-Za-z0-9_]*$"

# Schema of the migration configuration file
CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["database", "migration"],
    "properties": {
        "database": {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "driver": {"type": "string"},
                "user": {"type": "string"},
                "password": {"type": "string"},
                "engine_args": {"type": "object"}
            }
        },
        "migration": {
            "type": "object",
            "required": ["namespace"],
            "properties": {
                "namespace": {"type": "string", "pattern": "^[A-Za-z0-9_./-]+$"},
                "version": {"type": "integer", "minimum": 0},
                "auto": {"type": "boolean"},
                "table": {"type": "string", "pattern": IDENTIFIER_PATTERN},
                "commit_on_failure": {"type": "boolean"},
                "script_dir": {"type": ["string", "null"]},
                "registry": {"type": ["string", "null"], "pattern": REGISTRY_PATTERN}
            }
        },
        "locks": {
            "type": "object",
            "propertyNames": {"pattern": "^(lock|unlock)_[a-z0-9_]+$"},
            "additionalProperties": {"type": ["string", "null"]}
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "log_file": {"type": "string"},
                "max_log_size_mb": {"type": "integer", "minimum": 1},
                "backup_count": {"type": "integer", "minimum": 0}
            }
        }
    }
}


# Keys whose values are masked when the configuration is shown
SENSITIVE_KEYS = ('password', 'secret', 'token', 'credential')
REDACTED = '***REDACTED***'


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base, recursing into nested sections."""
    merged = deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = deepcopy(value)
    return merged


def get_path(config: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    """Look up 'section.key' in a nested mapping."""
    node: Any = config
    for part in dotted.split('.'):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(config: Dict[str, Any], dotted: str, value: Any) -> None:
    """Assign 'section.key' in a nested mapping, creating sections as needed."""
    *sections, leaf = dotted.split('.')
    node = config
    for part in sections:
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    node[leaf] = value


def redact(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of config with sensitive values masked."""
    masked = {}
    for key, value in config.items():
        if any(word in key.lower() for word in SENSITIVE_KEYS):
            masked[key] = REDACTED
        elif isinstance(value, dict):
            masked[key] = redact(value)
        else:
            masked[key] = deepcopy(value)
    return masked


def read_yaml(path: Path) -> Dict[str, Any]:
    """
    Read a configuration mapping from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
        ValueError: If the document is not a mapping
    """
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        document = yaml.safe_load(path.read_text(encoding='utf-8'))
    except yaml.YAMLError as e:
        logger.error(f"Could not parse {path}: {e}")
        raise

    if not isinstance(document, dict):
        raise ValueError(f"{path} must contain a mapping, not {type(document).__name__}")
    return document


class ConfigManager:
    """
    Migration configuration assembled from a base file, optional override
    files, environment variables and explicit settings, in that order of
    increasing precedence (explicit settings win over the environment).
    """

    # Dotted config path -> environment variable
    ENV_MAPPINGS = {
        'database.url': 'DBMIGRATE_URL',
        'database.user': 'DBMIGRATE_USER',
        'database.password': 'DBMIGRATE_PASSWORD',
        'migration.namespace': 'DBMIGRATE_NAMESPACE'
    }

    def __init__(self, base_config_path: Union[str, Path]):
        """
        Args:
            base_config_path: Base YAML configuration file
        """
        self.base_config_path = Path(base_config_path)
        self.base_config = read_yaml(self.base_config_path)
        self.merged_config = self._with_environment(self.base_config)

    def merge_override(self, override_path: Union[str, Path]) -> None:
        """Deep-merge another YAML file over the current configuration."""
        override_path = Path(override_path)
        override = read_yaml(override_path)

        self.merged_config = self._with_environment(deep_merge(self.merged_config, override))
        logger.info(f"Applied config override {override_path}")

    def _with_environment(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of config with DBMIGRATE_* variables applied."""
        result = deepcopy(config)
        for dotted, variable in self.ENV_MAPPINGS.items():
            value = os.environ.get(variable)
            if value:
                set_path(result, dotted, value)
                logger.debug(f"{variable} overrides {dotted}")
        return result

    def set(self, path: str, value: Any) -> None:
        """Set a value by dotted path (used for command line options)."""
        set_path(self.merged_config, path, value)

    def get(self, path: str, default: Any = None) -> Any:
        """Get a value by dotted path, e.g. 'migration.table'."""
        return get_path(self.merged_config, path, default)

    def validate(self, schema: Optional[Dict[str, Any]] = None) -> None:
        """
        Check the configuration against CONFIG_SCHEMA (or the given schema).

        Raises:
            ValidationError: If the configuration does not match
        """
        try:
            validate(self.merged_config, schema or CONFIG_SCHEMA)
        except ValidationError as e:
            location = '.'.join(str(p) for p in e.path) or '<root>'
            logger.error(f"Invalid configuration at {location}: {e.message}")
            raise
        logger.debug("Configuration is valid")

    def get_config(self, redact_secrets: bool = True) -> Dict[str, Any]:
        """
        Get a copy of the configuration.

        Args:
            redact_secrets: Mask passwords and other secrets (for display)
        """
        if redact_secrets:
            return redact(self.merged_config)
        return deepcopy(self.merged_config)


def load_config(base_path: Union[str, Path],
                override_path: Optional[Union[str, Path]] = None,
                validate_schema: bool = True) -> Dict[str, Any]:
    """
    Load, merge and validate a configuration in one call.

    Returns:
        Unredacted configuration dictionary
    """
    manager = ConfigManager(base_path)
    if override_path:
        manager.merge_override(override_path)
    if validate_schema:
        manager.validate()
    return manager.get_config(redact_secrets=False)
