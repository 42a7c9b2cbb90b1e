"""
DocJobs Configuration Management

This module provides configuration management for DocJobs.
"""

import os
import copy
import yaml
import logging
from typing import Dict, Any, Optional
from pathlib import Path

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'default_config.yaml'


class DocJobsConfig:
    """
    Manages system-wide configuration for DocJobs

    Defaults come from the packaged ``default_config.yaml`` and are deep-merged
    with the user file (``$DOCJOBS_CONFIG`` or ``~/.docjobs/config.yaml``).
    ``DocJobsConfig.instance()`` returns the process-wide configuration; plain
    construction gives an independent copy (useful for tests and workers).
    """

    _instance = None

    def __init__(self, config: Optional[Dict[str, Any]] = None, load_user_file: bool = False):
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            self.config: Dict[str, Any] = yaml.safe_load(f)

        env_path = os.getenv('DOCJOBS_CONFIG')
        self.config_file = Path(env_path) if env_path else Path.home() / '.docjobs' / 'config.yaml'
        if load_user_file and self.config_file.exists():
            self._load_config()

        if config:
            self._update_config_recursive(self.config, config)

    @classmethod
    def instance(cls) -> 'DocJobsConfig':
        """Process-wide configuration, loaded once from the user file"""
        if cls._instance is None:
            cls._instance = cls(load_user_file=True)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    @classmethod
    def from_file(cls, config_path: str) -> 'DocJobsConfig':
        """Load configuration from file

        Args:
            config_path: Path to configuration file

        Returns:
            DocJobsConfig instance
        """
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise
        instance = cls(file_config)
        instance.config_file = Path(config_path)
        instance._validate_config()
        return instance

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'DocJobsConfig':
        """Build a configuration from defaults overridden by ``config``"""
        instance = cls(config)
        instance._validate_config()
        return instance

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def _load_config(self) -> None:
        """Load configuration from the user file"""
        try:
            with open(self.config_file, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Invalid YAML in configuration file: {str(e)}")
        if file_config is None:
            raise RuntimeError("Configuration file is empty")
        self._update_config_recursive(self.config, file_config)
        self._validate_config()
        logger.info(f"Configuration loaded from {self.config_file}")

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise RuntimeError("Configuration must be a dictionary")

        required_sections = ['database', 'storage', 'cache', 'queue', 'pool', 'logging']
        for section in required_sections:
            if section not in self.config:
                raise RuntimeError(f"Missing required configuration section: {section}")

        db_type = self.config['database'].get('type')
        if db_type not in ('sqlite', 'postgresql', 'postgres'):
            raise RuntimeError(f"Unsupported database type: {db_type}")

        storage_type = self.config['storage'].get('type')
        if storage_type not in ('filesystem', 's3'):
            raise RuntimeError(f"Unsupported storage type: {storage_type}")

        cache_type = self.config['cache'].get('type')
        if cache_type not in ('memory', 'redis'):
            raise RuntimeError(f"Unsupported cache type: {cache_type}")

        if int(self.config['queue'].get('max_attempts', 0)) < 1:
            raise RuntimeError("queue.max_attempts must be at least 1")

        if self.config['pool'].get('mode') not in ('process', 'thread'):
            raise RuntimeError(f"Unsupported pool mode: {self.config['pool'].get('mode')}")

    def save(self, path: Optional[Path] = None) -> Path:
        """Save configuration to file"""
        target = Path(path) if path else self.config_file
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, 'w') as f:
            yaml.safe_dump(self.config, f, default_flow_style=False)
        logger.info(f"Configuration saved to {target}")
        return target

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value

    def get_database_config(self) -> Dict[str, Any]:
        return self.config.get('database', {})

    def get_storage_config(self) -> Dict[str, Any]:
        """Flattened config for the selected storage backend"""
        storage = self.config.get('storage', {})
        storage_type = storage.get('type', 'filesystem')
        return {'type': storage_type, **storage.get(storage_type, {})}

    def get_cache_config(self) -> Dict[str, Any]:
        cache = self.config.get('cache', {})
        cache_type = cache.get('type', 'memory')
        return {'type': cache_type, **(cache.get(cache_type) or {})}

    def get_logging_config(self) -> Dict[str, Any]:
        return self.config.get('logging', {})

    def validate(self) -> bool:
        """Validate configuration"""
        try:
            self._validate_config()
            return True
        except RuntimeError as e:
            logger.error(f"Configuration validation failed: {str(e)}")
            return False

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration"""
        return copy.deepcopy(self.config)
