"""Run log persistence.

Two interchangeable backends implement `LogStore`: SQLite (default) and flat
files with a JSON sidecar per run. `open_log_store` picks one from config.
"""

from __future__ import annotations

from pathlib import Path

from runbox.config.load_config import AppConfig
from runbox.storage.base import LogNotFoundError, LogStore, RunLog, StoreError
from runbox.storage.file_store import FileLogStore
from runbox.storage.sqlite_store import SQLiteLogStore


def open_log_store(config: AppConfig) -> LogStore:
    if config.log_backend == "files":
        return FileLogStore(config.logs_dir)
    return SQLiteLogStore(config.sqlite_path)


def run_lock_path(config: AppConfig) -> Path:
    """Lock file guarding the configured store against concurrent runners."""
    if config.log_backend == "files":
        return config.logs_dir / ".runbox.lock"
    return config.sqlite_path.with_name(config.sqlite_path.name + ".lock")


__all__ = [
    "FileLogStore",
    "LogNotFoundError",
    "LogStore",
    "RunLog",
    "SQLiteLogStore",
    "StoreError",
    "open_log_store",
    "run_lock_path",
]
