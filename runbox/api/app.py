from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.staticfiles import StaticFiles

from runbox.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from runbox.config.load_config import AppConfig, load_app_config
from runbox.runtime.catalog import JobCatalog
from runbox.runtime.controller import RunController
from runbox.runtime.run_lock import RunLockFile
from runbox.storage import LogStore, open_log_store, run_lock_path

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.logs import router as logs_router
from .routers.runs import router as runs_router


logger = logging.getLogger(__name__)


class AccessLogMiddleware:
    """Logs `client method url` for every HTTP request.

    Plain ASGI so streamed responses pass through untouched.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] == "http":
            client = scope.get("client")
            host = client[0] if client else "-"
            query = scope.get("query_string", b"").decode("latin-1")
            path = scope.get("path", "") + (f"?{query}" if query else "")
            logger.info(f"{host} {scope.get('method', '-')} {path}")
        await self.app(scope, receive, send)


def _reconcile(store: LogStore, config: AppConfig) -> int:
    """Close runs left open by a dead process, unless another runner is live."""
    startup_lock = RunLockFile(run_lock_path(config))
    try:
        if not startup_lock.try_acquire():
            logger.info(f"Another runbox process holds {startup_lock.path}; leaving open runs alone")
            return 0
    except OSError as e:
        logger.warning(f"Cannot check run lock {startup_lock.path}: {e}")
    try:
        reconciled = store.reconcile_open_runs()
    finally:
        startup_lock.release()
    if reconciled:
        logger.warning(f"Closed {reconciled} run(s) left open by a previous process")
    return int(reconciled)


def create_app(config: AppConfig | None = None) -> FastAPI:
    config = config or load_app_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Failing to open the log store is the one fatal startup error.
        store = open_log_store(config)
        try:
            app.state.reconciled_open_runs = _reconcile(store, config) if config.reconcile_on_startup else 0
        finally:
            store.close()

        logger.info(
            f"Serving jobs from {config.commands_dir} (exclude={','.join(config.exclude_patterns) or '-'}), "
            f"logs in {config.log_backend} backend"
        )
        try:
            yield
        finally:
            await app.state.run_controller.aclose()

    app = FastAPI(title="runbox", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.catalog = JobCatalog(config.commands_dir, config.exclude_patterns)
    app.state.run_controller = RunController(
        app.state.catalog,
        lambda: open_log_store(config),
        drain_grace_s=config.drain_grace_s,
        run_lock=RunLockFile(run_lock_path(config)),
    )

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(AccessLogMiddleware)

    app.include_router(health_router, tags=["system"])
    app.include_router(jobs_router, tags=["jobs"])
    app.include_router(logs_router, tags=["logs"])
    app.include_router(runs_router, tags=["runs"])

    # Web UI last: the mount at "/" only sees paths no route claimed.
    if config.static_dir is not None and config.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(config.static_dir), html=True), name="static")

    return app
