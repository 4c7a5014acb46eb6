from __future__ import annotations

import html
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from runbox.api.dependencies import get_app_config, get_run_controller
from runbox.config.load_config import AppConfig
from runbox.runtime.controller import RunController


router = APIRouter()

USER_HEADER = "X-Runbox-User"

TRANSCRIPT_OPEN = "<pre>"
TRANSCRIPT_CLOSE = "</pre>"

# Chrome treats text/plain chunked output as a download, so the transcript is
# sent as HTML wrapped in <pre>.
STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Connection": "close",
    "Vary": "User-Agent",
    "X-Accel-Buffering": "no",
}


async def _transcript_html(controller: RunController, job_name: str, user: str) -> AsyncIterator[bytes]:
    yield TRANSCRIPT_OPEN.encode("utf-8")
    async for chunk in controller.stream(job_name, user):
        yield html.escape(chunk, quote=False).encode("utf-8")
    yield TRANSCRIPT_CLOSE.encode("utf-8")


@router.api_route("/run/{job_name:path}", methods=["GET", "POST"])
async def run_job(
    job_name: str,
    request: Request,
    controller: RunController = Depends(get_run_controller),
    config: AppConfig = Depends(get_app_config),
) -> StreamingResponse:
    """Run a catalog job and stream its merged stdout/stderr.

    Always answers 200: a failing or unknown job is reported inside the
    transcript. Concurrent requests wait for the run lock.
    """
    # Identity is informational only; nothing verifies it.
    user = (request.headers.get(USER_HEADER) or "").strip() or config.default_user
    return StreamingResponse(
        _transcript_html(controller, job_name, user),
        media_type="text/html; charset=UTF-8",
        headers=STREAM_HEADERS,
    )
