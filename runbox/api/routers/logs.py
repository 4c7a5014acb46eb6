from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from runbox.api.dependencies import get_app_config, open_request_store
from runbox.api.errors import APIError, error_payload
from runbox.storage import LogNotFoundError, StoreError


router = APIRouter()


class LogEntry(BaseModel):
    id: str
    name: str
    user: str
    start: float
    end: float | None = None
    duration: float | None = None
    status: int | None = None


class LogListResponse(BaseModel):
    entries: list[LogEntry] = Field(default_factory=list)
    length: int = 0


class LogBodyResponse(BaseModel):
    body: str = ""
    error: dict[str, Any] | None = None


@router.get("/logs")
def get_logs(
    request: Request,
    log_id: str | None = Query(default=None, alias="id"),
    name: str | None = Query(default=None, description="Legacy alias of `id`."),
    job: str = Query(default="", description="Only list runs of this job."),
    page: int = Query(default=0),
) -> dict[str, Any]:
    """One transcript (`id`/`name`) or a page of runs, most recent first."""
    wanted = (log_id or name or "").strip()
    store = open_request_store(request)
    try:
        if wanted:
            try:
                return LogBodyResponse(body=store.get(wanted).body).model_dump(exclude_none=True)
            except LogNotFoundError as e:
                # In-band like every other operator-facing failure.
                return LogBodyResponse(
                    body="", error=error_payload(code="not_found", message=str(e))
                ).model_dump(exclude_none=True)

        page_size = get_app_config(request).page_size
        entries, total = store.list_runs(job_name=job.strip(), page=page, page_size=page_size)
        return LogListResponse(
            entries=[LogEntry(**e.to_summary()) for e in entries],
            length=total,
        ).model_dump()
    except StoreError as e:
        raise APIError(status_code=503, code="store_unavailable", message=str(e)) from e
    finally:
        store.close()
