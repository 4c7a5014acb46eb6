from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

from runbox.config.load_config import ConfigError, load_app_config
from runbox.runtime.catalog import JobCatalog
from runbox.runtime.controller import RunController
from runbox.runtime.run_lock import RunLockFile
from runbox.storage import StoreError, open_log_store, run_lock_path
from runbox.utils.log import configure_logging


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run one allowlisted job locally and record it in the log store. "
            "Waits while a runbox server or another runbox-run is running a job on the same store."
        )
    )
    parser.add_argument("job", help="Job name (an entry of the commands dir).")
    parser.add_argument("--config", default="", help="TOML config file.")
    parser.add_argument("--user", default="", help="Identity recorded with the run (default: login name).")
    parser.add_argument("--log-level", default="warning")
    return parser.parse_args(argv)


async def _run(controller: RunController, job: str, user: str) -> str | None:
    async def emit(chunk: str | None) -> None:
        if chunk is not None:
            sys.stdout.write(chunk)
            sys.stdout.flush()

    return await controller.execute(job, user, emit)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging(args.log_level)

    try:
        config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        open_log_store(config).close()
    except StoreError as e:
        print(f"Log store unavailable: {e}", file=sys.stderr)
        return 2

    controller = RunController(
        JobCatalog(config.commands_dir, config.exclude_patterns),
        lambda: open_log_store(config),
        drain_grace_s=config.drain_grace_s,
        run_lock=RunLockFile(run_lock_path(config)),
    )
    user = args.user.strip() or getpass.getuser()
    run_id = asyncio.run(_run(controller, args.job, user))
    if run_id is None:
        return 1

    store = open_log_store(config)
    try:
        status = store.get(run_id).exit_status
    finally:
        store.close()
    print(f"log id: {run_id}", file=sys.stderr)
    return 0 if status == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
