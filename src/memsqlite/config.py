"""
memsqlite Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_data_dir() -> str:
    """
    Get XDG-compliant data directory for the memsqlite database.

    Follows XDG Base Directory Specification:
    - Uses $XDG_DATA_HOME/memsqlite if XDG_DATA_HOME is set
    - Falls back to $HOME/.local/share/memsqlite if not set
    - Returns relative path .memsqlite_data if HOME not available (dev/testing)

    Returns:
        str: Path to data directory
    """
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "memsqlite")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "share" / "memsqlite")

    # Fallback for development/testing environments without HOME
    return ".memsqlite_data"


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for memsqlite logs.

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "memsqlite" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "memsqlite" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_path: str = ""  # SQLite file (defaults to XDG data dir if empty)
    busy_timeout_ms: int = 30_000  # SQLite busy_timeout on every handle

    # Connection pool
    pool_min_size: int = 2
    pool_max_size: int = 10
    pool_idle_timeout: float = 60.0  # Close idle handles older than this (seconds)
    pool_acquire_timeout: float = 30.0  # Max wait for a free handle (seconds)
    pool_sweep_interval: float = 10.0  # Idle sweep period (seconds)

    # Cross-process locks
    lock_dir: str = ""  # Marker file directory (defaults to <db dir>/locks)
    lock_timeout: float = 30.0  # Default acquisition timeout (seconds)
    lock_stale_after: float = 300.0  # Markers older than this are abandoned
    lock_poll_interval: float = 0.1

    # Sync pipeline
    sync_batch_size: int = 100  # Lines per write transaction
    sync_streaming_threshold: int = 10 * 1024 * 1024  # Stream files above 10MB
    sync_max_line_length: int = 10 * 1024 * 1024  # Longer lines are skipped
    sync_chunk_size: int = 64 * 1024  # Read size for streamed files
    sync_busy_max_attempts: int = 5  # Attempts when the store reports busy
    sync_busy_base_delay_ms: int = 50
    sync_busy_max_delay_ms: int = 1000
    sync_fk_max_retries: int = 3  # Placeholder-parent repairs per record
    audit_log_path: str = ""  # Defaults to <db dir>/memories_db_changes.jsonl

    # Watch daemon
    projects_path: str = "~/.claude/projects"  # Claude Code projects directory
    watch_debounce_seconds: float = 1.0  # Wait time after file event before processing
    watch_workers: int = 4  # Concurrent file passes
    watch_retry_interval: int = 30  # Base retry delay for failed passes (seconds)
    watch_max_retries: int = 3  # Maximum number of retry attempts before giving up
    watch_initial_scan: bool = True  # Process existing files on startup

    # Query surface
    query_default_limit: int = 100
    query_max_limit: int = 1000
    query_timeout_ms: int = 30_000
    query_rate_limit_per_minute: int = 100
    query_rate_limit_strategy: str = "token_bucket"  # token_bucket or sliding_window
    query_rate_limit_cleanup_interval: float = 60.0  # Idle-client sweep period (seconds)
    query_rate_limit_idle_timeout: float = 3600.0  # Forget clients idle this long

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True  # Enable console (stderr) logging
    log_file_enabled: bool = True  # Enable file-based logging
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5  # Keep 5 backup files

    @property
    def database_file(self) -> Path:
        """Get the database file path, using XDG default if not specified."""
        if self.database_path:
            return Path(self.database_path).expanduser()
        return Path(get_xdg_data_dir()) / "claude_code.db"

    @property
    def lock_directory(self) -> Path:
        if self.lock_dir:
            return Path(self.lock_dir).expanduser()
        return self.database_file.parent / "locks"

    @property
    def audit_log_file(self) -> Path:
        if self.audit_log_path:
            return Path(self.audit_log_path).expanduser()
        return self.database_file.parent / "memories_db_changes.jsonl"

    @property
    def projects_directory(self) -> Path:
        return Path(self.projects_path).expanduser()

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
