"""
Configuration management for playlist-sync
"""

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from .errors import ConfigError


@dataclass
class LibraryConfig:
    """Configuration for the local folder library."""

    root_folder: str = field(default_factory=lambda: str(Path.home() / "Music"))
    # Folders (relative to root_folder or absolute) allowed to become playlists.
    # Empty means every folder below root_folder.
    whitelist: List[str] = field(default_factory=list)
    file_extensions: List[str] = field(
        default_factory=lambda: ["mp3", "flac", "ogg", "wav", "mp4", "m4a"]
    )

    def validate(self) -> None:
        """Validate library configuration values.

        Raises:
            ValueError: If configuration values are invalid
        """
        if not self.root_folder:
            raise ValueError("library.root_folder must be set")
        if not self.file_extensions:
            raise ValueError("library.file_extensions must not be empty")


@dataclass
class PlaylistConfig:
    """Configuration for local playlist files and remote playlist naming."""

    local_playlist_template: str = "${folder_name}.m3u"
    remote_playlist_template: str = "${relative_path}"
    remote_path_delimiter: str = "| "
    playlist_description_template: str = ""
    playlist_mode: str = "flat"  # 'flat' or 'linked'
    playlist_order_mode: str = "append"  # 'append', 'alphabetical' or 'modified'
    linked_reference_format: str = "relative"  # 'relative' or 'absolute'

    def validate(self) -> None:
        """Validate playlist configuration values.

        Raises:
            ValueError: If configuration values are invalid
        """
        if self.playlist_mode not in {"flat", "linked"}:
            raise ValueError(
                f"Invalid playlist_mode: {self.playlist_mode!r}. "
                "Valid modes are: 'flat', 'linked'"
            )
        if self.playlist_order_mode not in {"append", "alphabetical", "modified"}:
            raise ValueError(
                f"Invalid playlist_order_mode: {self.playlist_order_mode!r}. "
                "Valid modes are: 'append', 'alphabetical', 'modified'"
            )
        if self.linked_reference_format not in {"relative", "absolute"}:
            raise ValueError(
                f"Invalid linked_reference_format: {self.linked_reference_format!r}. "
                "Valid formats are: 'relative', 'absolute'"
            )
        if not self.local_playlist_template or not self.remote_playlist_template:
            raise ValueError("Playlist templates must not be empty")


@dataclass
class WatcherConfig:
    """Configuration for the filesystem watcher."""

    debounce_ms: int = 250


@dataclass
class WorkerConfig:
    """Configuration for the worker and reconciler."""

    provider: str = "spotify"
    lease_ttl_seconds: int = 600
    max_retries_on_error: int = 3
    max_retry_wait_seconds: int = 60
    max_batch_size: int = 100
    # Skip remote sync while more than this many events are unsynced (0 disables)
    queue_length_stop_cloud_sync_threshold: int = 0
    unresolved_retry_hours: int = 24
    reconcile_delete_orphans: bool = False
    credential_wait_seconds: int = 30

    def validate(self) -> None:
        """Validate worker configuration values.

        Raises:
            ValueError: If configuration values are invalid
        """
        if self.lease_ttl_seconds <= 0:
            raise ValueError("worker.lease_ttl_seconds must be positive")
        if self.max_retries_on_error < 0:
            raise ValueError("worker.max_retries_on_error must not be negative")
        if not 1 <= self.max_batch_size <= 100:
            raise ValueError("worker.max_batch_size must be between 1 and 100")


@dataclass
class DatabaseConfig:
    """Configuration for the sync state database."""

    path: Optional[str] = None  # Default: ~/.local/share/playlist-sync/playlist-sync.db


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_file: Optional[str] = (
        None  # Custom log file path (default: ~/.local/share/playlist-sync/playlist-sync.log)
    )
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False


@dataclass
class SpotifyConfig:
    """Configuration for Spotify provider integration."""

    client_id: str = ""
    client_secret: str = ""


@dataclass
class TidalConfig:
    """Configuration for Tidal provider integration."""

    client_id: str = ""
    client_secret: str = ""
    country_code: str = "US"


@dataclass
class Config:
    """Main configuration object."""

    library: LibraryConfig = field(default_factory=LibraryConfig)
    playlists: PlaylistConfig = field(default_factory=PlaylistConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    spotify: SpotifyConfig = field(default_factory=SpotifyConfig)
    tidal: TidalConfig = field(default_factory=TidalConfig)

    def validate(self) -> None:
        """Validate every section.

        Raises:
            ValueError: If any section is invalid
        """
        self.library.validate()
        self.playlists.validate()
        self.worker.validate()

    @property
    def root_folder(self) -> Path:
        return Path(self.library.root_folder).expanduser()


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        return Path(config_home) / "playlist-sync"
    return Path.home() / ".config" / "playlist-sync"


def get_data_dir() -> Path:
    """Get the data directory path."""
    data_home = os.environ.get("XDG_DATA_HOME")
    if data_home:
        return Path(data_home) / "playlist-sync"
    return Path.home() / ".local" / "share" / "playlist-sync"


def get_config_path() -> Path:
    """Get the main configuration file path.

    Checks for config.toml in the following order:
    1. Current working directory
    2. XDG_CONFIG_HOME/playlist-sync (or ~/.config/playlist-sync)
    """
    local_config = Path.cwd() / "config.toml"
    if local_config.exists():
        return local_config

    return get_config_dir() / "config.toml"


def create_default_config() -> str:
    """Create a default configuration TOML content."""
    return """
# playlist-sync configuration

[library]
# Folder whose subfolders become playlists
root_folder = "~/Music"

# Only these folders (relative to root_folder) become playlists; empty = all
whitelist = []

# Audio file extensions that count as tracks
file_extensions = ["mp3", "flac", "ogg", "wav", "mp4", "m4a"]

[playlists]
# Local playlist file name, written inside each folder
# Placeholders: ${folder_name}, ${path_to_parent}, ${relative_path}
local_playlist_template = "${folder_name}.m3u"

# Remote playlist name; nested folders are joined with remote_path_delimiter
remote_playlist_template = "${relative_path}"
remote_path_delimiter = "| "

# Remote playlist description (same placeholders)
playlist_description_template = ""

# flat: a folder's playlist holds every track below it
# linked: a folder's playlist holds its own tracks and links child playlists
playlist_mode = "flat"

# append: keep the order you edited into the playlist file, new tracks go last
# alphabetical: sort by file path
# modified: sort by file modification time
playlist_order_mode = "append"

# How linked playlists reference child playlist files (relative or absolute)
linked_reference_format = "relative"

[watcher]
# Quiet period before rewriting local playlist files
debounce_ms = 250

[worker]
# Remote provider: spotify or tidal
provider = "spotify"

# How long a worker may hold a playlist before others can reclaim it
lease_ttl_seconds = 600

# Retries for network failures and rate limits per call
max_retries_on_error = 3

# Longest single wait between retries (seconds)
max_retry_wait_seconds = 60

# Tracks per remote request (provider maximum is 100)
max_batch_size = 100

# Skip remote sync while the unsynced queue is longer than this (0 = never skip)
queue_length_stop_cloud_sync_threshold = 0

# Hours before a track that had no search match is searched again
unresolved_retry_hours = 24

# Delete remote playlists whose local folder is gone during reconcile
reconcile_delete_orphans = false

# How long to wait for another process refreshing the same credentials
credential_wait_seconds = 30

[database]
# Custom database path (default: ~/.local/share/playlist-sync/playlist-sync.db)
# path = "/path/to/playlist-sync.db"

[logging]
# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
level = "INFO"

# Custom log file path (default: ~/.local/share/playlist-sync/playlist-sync.log)
# log_file = "/path/to/playlist-sync.log"

# Maximum log file size in MB before rotation
max_file_size_mb = 10

# Number of rotated log files to keep
backup_count = 5

# Also log to stderr
console_output = false

[spotify]
# Register an app at https://developer.spotify.com/dashboard
# Or set SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET in the environment
# client_id = "your-client-id-here"
# client_secret = "your-client-secret-here"

[tidal]
# Register an app at https://developer.tidal.com
# Or set TIDAL_CLIENT_ID / TIDAL_CLIENT_SECRET in the environment
# client_id = "your-client-id-here"
# client_secret = "your-client-secret-here"
country_code = "US"
""".strip()


def _merge_section(section: Any, data: Dict[str, Any], name: str) -> Any:
    """Return a copy of a section dataclass with TOML values applied."""
    known = {f.name for f in fields(section)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in [{name}]: {', '.join(sorted(unknown))}")
    return replace(section, **{k: v for k, v in data.items() if k in known})


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from file or create default.

    Environment variables override TOML values:
    - SPOTIFY_CLIENT_ID
    - SPOTIFY_CLIENT_SECRET
    - TIDAL_CLIENT_ID
    - TIDAL_CLIENT_SECRET

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values
    """
    # Load .env file from config directory if it exists
    from dotenv import load_dotenv

    env_path = get_config_dir() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    if config_path is None:
        config_path = get_config_path()

    config = Config()

    if not config_path.exists():
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_default_config())
        logger.info(f"Created default configuration at: {config_path}")
    else:
        try:
            with open(config_path, "rb") as f:
                toml_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Cannot read configuration {config_path}: {e}") from e

        for section_name in (
            "library",
            "playlists",
            "watcher",
            "worker",
            "database",
            "logging",
            "spotify",
            "tidal",
        ):
            if section_name in toml_data:
                merged = _merge_section(
                    getattr(config, section_name), toml_data[section_name], section_name
                )
                setattr(config, section_name, merged)

        config.logging.level = config.logging.level.upper()
        if config.logging.log_file:
            config.logging.log_file = str(Path(config.logging.log_file).expanduser())
        if config.database.path:
            config.database.path = str(Path(config.database.path).expanduser())

    # Override provider credentials with environment variables if present
    for env_name, section, attr in (
        ("SPOTIFY_CLIENT_ID", config.spotify, "client_id"),
        ("SPOTIFY_CLIENT_SECRET", config.spotify, "client_secret"),
        ("TIDAL_CLIENT_ID", config.tidal, "client_id"),
        ("TIDAL_CLIENT_SECRET", config.tidal, "client_secret"),
    ):
        value = os.environ.get(env_name)
        if value:
            setattr(section, attr, value)

    try:
        config.validate()
    except ValueError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    return config


def ensure_directories() -> None:
    """Ensure all necessary directories exist."""
    get_config_dir().mkdir(parents=True, exist_ok=True)
    get_data_dir().mkdir(parents=True, exist_ok=True)
