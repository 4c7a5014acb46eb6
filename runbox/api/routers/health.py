from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from runbox.api.dependencies import get_app_config, get_run_controller
from runbox.config.load_config import AppConfig
from runbox.runtime.controller import RunController
from runbox.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "runbox",
        "version": _pkg_version("runbox"),
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/runner")
def system_runner(
    request: Request,
    controller: RunController = Depends(get_run_controller),
    config: AppConfig = Depends(get_app_config),
) -> dict[str, Any]:
    # Minimal runtime observability for the operator UI.
    return {
        "ts": time.time(),
        "runner": controller.status_snapshot(),
        "config": {
            "commands_dir": str(config.commands_dir),
            "exclude_patterns": list(config.exclude_patterns),
            "log_backend": config.log_backend,
            "page_size": config.page_size,
        },
        "startup": {
            "reconciled_open_runs": getattr(request.app.state, "reconciled_open_runs", 0),
        },
    }
