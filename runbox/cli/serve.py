from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from runbox.config.load_config import ConfigError, LOG_BACKENDS, load_app_config
from runbox.utils.log import configure_logging


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve allowlisted jobs over HTTP.")
    parser.add_argument("--config", default="", help="TOML config file (default: env RUNBOX_CONFIG_PATH or config/default.toml).")
    parser.add_argument("--dir", dest="commands_dir", default=None, help="Commands dir.")
    parser.add_argument(
        "--exclude",
        default=None,
        help="Excluded job name patterns, comma separated. Ex: *.pyc,a.out",
    )
    parser.add_argument("--backend", dest="log_backend", choices=LOG_BACKENDS, default=None, help="Log store backend.")
    parser.add_argument("--db", dest="sqlite_path", default=None, help="Logs database (sqlite backend).")
    parser.add_argument("--logs-dir", dest="logs_dir", default=None, help="Logs directory (files backend).")
    parser.add_argument("--static-dir", dest="static_dir", default=None, help="Web UI directory served at /.")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default="info", help="debug, info, warning, error.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.log_level)

    overrides: dict[str, Any] = {
        "commands_dir": args.commands_dir,
        "exclude": args.exclude,
        "log_backend": args.log_backend,
        "sqlite_path": args.sqlite_path,
        "logs_dir": args.logs_dir,
        "static_dir": args.static_dir,
        "host": args.host,
        "port": args.port,
    }
    try:
        config = load_app_config(Path(args.config) if args.config else None, overrides=overrides)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    import uvicorn

    from runbox.api.app import create_app

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
