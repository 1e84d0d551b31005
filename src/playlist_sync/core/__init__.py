"""Core infrastructure layer - no business logic dependencies.

This module provides foundation-level services:
- Configuration management (TOML)
- Database operations (SQLite)
- Error taxonomy shared by every layer
"""

from .config import (
    Config,
    create_default_config,
    ensure_directories,
    get_config_dir,
    get_config_path,
    get_data_dir,
    load_config,
)
from .database import (
    get_database_path,
    get_db_connection,
    init_database,
    set_database_path,
    transaction,
)

__all__ = [
    "Config",
    "create_default_config",
    "ensure_directories",
    "get_config_dir",
    "get_config_path",
    "get_data_dir",
    "load_config",
    "get_database_path",
    "get_db_connection",
    "init_database",
    "set_database_path",
    "transaction",
]
