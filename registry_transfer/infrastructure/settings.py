"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
"""

import os
from typing import Optional

from registry_transfer.infrastructure.config_manager import ConfigManager, StoreConfig

# Application metadata
APP_NAME = "Registry-Transfer"
APP_VERSION = "1.0.0"

# Default resource selection when none is given to the trigger
DEFAULT_RESOURCES = "all"

# Default chunk size for CSV imports
DEFAULT_CHUNK_SIZE = 10000


class Settings:
    """Application settings loaded from configuration manager and environment.

    Security Impact:
        - Endpoint credentials are managed via EndpointConfig (SecretStr)
        - Settings are validated before use
    """

    def __init__(self, config_file: Optional[str] = None):
        """Initialize settings from environment.

        Parameters:
            config_file: Optional JSON configuration file (RT_CONFIG_FILE otherwise)
        """
        self._config_manager: Optional[ConfigManager] = None
        self.config_file = config_file or os.getenv("RT_CONFIG_FILE")

        self.app_name = os.getenv("RT_APP_NAME", APP_NAME)
        self.log_level = os.getenv("RT_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("RT_LOG_JSON", "false").lower() == "true"
        self.resources = os.getenv("RT_RESOURCES", DEFAULT_RESOURCES)
        self.chunk_size = int(os.getenv("RT_CHUNK_SIZE", str(DEFAULT_CHUNK_SIZE)))

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance (file when configured, else environment)."""
        if self._config_manager is None:
            if self.config_file:
                self._config_manager = ConfigManager.from_file(self.config_file)
            else:
                self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def store_config(self) -> StoreConfig:
        return self.config_manager.get_store_config()

    def get_db_path(self) -> str:
        """Get database path for DuckDB.

        Returns:
            Database path or ':memory:' for in-memory database
        """
        if self.store_config.db_type == "duckdb":
            return self.store_config.db_path or ":memory:"
        raise ValueError(f"Store type '{self.store_config.db_type}' does not use db_path")
