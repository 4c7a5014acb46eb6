from __future__ import annotations

from fastapi import Request

from runbox.api.errors import APIError
from runbox.config.load_config import AppConfig
from runbox.runtime.catalog import JobCatalog
from runbox.runtime.controller import RunController
from runbox.storage import LogStore, StoreError, open_log_store


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_catalog(request: Request) -> JobCatalog:
    return request.app.state.catalog


def get_run_controller(request: Request) -> RunController:
    return request.app.state.run_controller


def open_request_store(request: Request) -> LogStore:
    """Open a log store for one request; the caller closes it.

    SQLite connections are bound to the thread that opened them, so stores are
    never shared between requests.
    """
    try:
        return open_log_store(get_app_config(request))
    except StoreError as e:
        raise APIError(status_code=503, code="store_unavailable", message=str(e)) from e
