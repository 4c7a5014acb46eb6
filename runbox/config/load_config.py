from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


LOG_BACKENDS = ("sqlite", "files")


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_patterns(value: Any, *, key: str) -> tuple[str, ...]:
    """Parse exclusion globs from either a comma-separated string or a list."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [_as_str(v, key=key) for v in value]
    else:
        raise ConfigError(f"Invalid pattern list for {key}: {value!r}")
    return tuple(p.strip() for p in items if p.strip())


def _resolve_path(value: Any, *, key: str, base_dir: Path) -> Path:
    raw = _as_str(value, key=key)
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


@dataclass(frozen=True)
class AppConfig:
    """Process-wide settings, resolved once at startup and never mutated."""

    commands_dir: Path
    exclude_patterns: tuple[str, ...]
    log_backend: str
    sqlite_path: Path
    logs_dir: Path
    static_dir: Path | None
    host: str
    port: int
    page_size: int
    drain_grace_s: float
    default_user: str
    reconcile_on_startup: bool


_DEFAULTS: dict[str, Any] = {
    "commands_dir": "./cmds",
    "exclude": "",
    "log_backend": "sqlite",
    "sqlite_path": "data/runbox.db",
    "logs_dir": "./logs",
    "static_dir": "./static",
    "host": "127.0.0.1",
    "port": 8000,
    "page_size": 50,
    "drain_grace_s": 5.0,
    "default_user": "Anonymous",
    "reconcile_on_startup": True,
}

# env var -> config key
_ENV_KEYS: dict[str, str] = {
    "RUNBOX_COMMANDS_DIR": "commands_dir",
    "RUNBOX_EXCLUDE": "exclude",
    "RUNBOX_LOG_BACKEND": "log_backend",
    "RUNBOX_SQLITE_PATH": "sqlite_path",
    "RUNBOX_LOGS_DIR": "logs_dir",
    "RUNBOX_STATIC_DIR": "static_dir",
    "RUNBOX_HOST": "host",
    "RUNBOX_PORT": "port",
    "RUNBOX_PAGE_SIZE": "page_size",
    "RUNBOX_DRAIN_GRACE_S": "drain_grace_s",
    "RUNBOX_DEFAULT_USER": "default_user",
    "RUNBOX_RECONCILE_ON_STARTUP": "reconcile_on_startup",
}


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def default_config_path() -> Path:
    return Path(os.getenv("RUNBOX_CONFIG_PATH", "config/default.toml")).expanduser().resolve()


def load_app_config(path: Path | None = None, overrides: dict[str, Any] | None = None) -> AppConfig:
    """Build the AppConfig from defaults, an optional TOML file, env vars and overrides.

    Later sources win. A missing file is only an error when `path` was given
    explicitly; the default location is optional.
    """
    raw: dict[str, Any] = dict(_DEFAULTS)
    base_dir = Path.cwd()

    cfg_path = path or default_config_path()
    if cfg_path.exists():
        import tomllib

        try:
            parsed = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
        server = parsed.get("server", {})
        jobs = parsed.get("jobs", {})
        logs = parsed.get("logs", {})
        raw.update({k: v for k, v in server.items() if k in _DEFAULTS})
        raw.update({k: v for k, v in jobs.items() if k in _DEFAULTS})
        raw.update({k: v for k, v in logs.items() if k in _DEFAULTS})
        # Relative paths in a config file are relative to that file.
        base_dir = cfg_path.parent
    elif path is not None:
        raise ConfigError(f"Config file not found: {cfg_path}")

    env_base = Path.cwd()
    env_paths: set[str] = set()
    for env_name, key in _ENV_KEYS.items():
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            raw[key] = value.strip()
            env_paths.add(key)

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key not in _DEFAULTS:
            raise ConfigError(f"Unknown config key: {key}")
        raw[key] = value
        env_paths.add(key)

    def _path(key: str) -> Path:
        return _resolve_path(raw[key], key=key, base_dir=env_base if key in env_paths else base_dir)

    log_backend = _as_str(raw["log_backend"], key="log_backend").strip().lower()
    if log_backend not in LOG_BACKENDS:
        raise ConfigError(f"Invalid log_backend: {log_backend!r} (expected one of {', '.join(LOG_BACKENDS)})")

    page_size = _as_int(raw["page_size"], key="page_size")
    if page_size < 1:
        raise ConfigError(f"Invalid page_size: must be >= 1, got {page_size}")

    port = _as_int(raw["port"], key="port")
    if not 0 <= port <= 65535:
        raise ConfigError(f"Invalid port: {port}")

    static_raw = raw.get("static_dir")
    static_dir = _path("static_dir") if static_raw else None

    return AppConfig(
        commands_dir=_path("commands_dir"),
        exclude_patterns=_as_patterns(raw["exclude"], key="exclude"),
        log_backend=log_backend,
        sqlite_path=_path("sqlite_path"),
        logs_dir=_path("logs_dir"),
        static_dir=static_dir,
        host=_as_str(raw["host"], key="host"),
        port=port,
        page_size=page_size,
        drain_grace_s=_as_float(raw["drain_grace_s"], key="drain_grace_s"),
        default_user=_as_str(raw["default_user"], key="default_user"),
        reconcile_on_startup=_as_bool(raw["reconcile_on_startup"], key="reconcile_on_startup"),
    )
