from __future__ import annotations

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any

from runbox.storage.base import (
    DEFAULT_PAGE_SIZE,
    INTERRUPTED_STATUS,
    LogNotFoundError,
    LogStore,
    RunLog,
    StoreError,
    _utc_ts,
    page_bounds,
)


logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^run_[0-9a-f]{32}$")


def _new_id() -> str:
    return f"run_{uuid.uuid4().hex}"


class FileLogStore(LogStore):
    """Flat-file run log.

    Each run is two files in `logs_dir` sharing an opaque, immutable id:

    - `<id>.log`  transcript, append-only
    - `<id>.json` metadata sidecar (name, user, start, end, status), rewritten
      atomically via `os.replace` on finalize

    Nothing mutable is encoded in a filename, so the id handed out by
    `create_run` keeps working after finalize.

    `list_runs` reads every sidecar and sorts in memory: O(n log n) per call,
    fine for the small log volume this backend is meant for.
    """

    def __init__(self, logs_dir: str | Path) -> None:
        self.logs_dir = Path(logs_dir).expanduser().resolve()
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create logs dir {self.logs_dir}: {e}") from e
        if not os.access(self.logs_dir, os.W_OK):
            raise StoreError(f"Logs dir is not writable: {self.logs_dir}")

    def _meta_path(self, run_id: str) -> Path:
        return self.logs_dir / f"{run_id}.json"

    def _body_path(self, run_id: str) -> Path:
        return self.logs_dir / f"{run_id}.log"

    def _check_id(self, run_id: str) -> None:
        # Ids double as filenames; anything else must not reach the filesystem.
        if not _ID_RE.match(run_id or ""):
            raise LogNotFoundError(run_id)

    def _write_meta(self, run_id: str, meta: dict[str, Any]) -> None:
        path = self._meta_path(run_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(meta, ensure_ascii=False, separators=(",", ":")), encoding="utf-8")
        os.replace(tmp, path)

    def _read_meta(self, run_id: str) -> dict[str, Any]:
        try:
            meta = json.loads(self._meta_path(run_id).read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise LogNotFoundError(run_id) from e
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read log metadata {run_id}: {e}") from e
        if not isinstance(meta, dict):
            raise StoreError(f"Log metadata {run_id} is not an object")
        return meta

    @staticmethod
    def _meta_to_log(run_id: str, meta: dict[str, Any], body: str = "") -> RunLog:
        end = meta.get("end")
        status = meta.get("status")
        try:
            return RunLog(
                id=run_id,
                job_name=str(meta["name"]),
                user=str(meta["user"]),
                start_time=float(meta["start"]),
                end_time=float(end) if end is not None else None,
                exit_status=int(status) if status is not None else None,
                body=body,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed log metadata {run_id}: {e!r}") from e

    def create_run(self, job_name: str, user: str, start_time: float | None = None) -> str:
        run_id = _new_id()
        start = _utc_ts() if start_time is None else float(start_time)
        try:
            self._body_path(run_id).touch(exist_ok=False)
            self._write_meta(run_id, {"name": job_name, "user": user, "start": start, "end": None, "status": None})
        except OSError as e:
            raise StoreError(f"Cannot create log for {job_name!r}: {e}") from e
        return run_id

    def append(self, run_id: str, chunk: str) -> None:
        if not chunk:
            return
        try:
            self._check_id(run_id)
            with self._body_path(run_id).open("a", encoding="utf-8", newline="") as fh:
                fh.write(chunk)
        except (OSError, LogNotFoundError) as e:
            logger.warning(f"Dropped {len(chunk)} chars for log {run_id}: {e}")

    def finalize(self, run_id: str, end_time: float, exit_status: int) -> None:
        self._check_id(run_id)
        meta = self._read_meta(run_id)
        meta["end"] = float(end_time)
        meta["status"] = int(exit_status)
        try:
            self._write_meta(run_id, meta)
        except OSError as e:
            raise StoreError(f"Cannot finalize log {run_id}: {e}") from e

    def get(self, run_id: str) -> RunLog:
        self._check_id(run_id)
        meta = self._read_meta(run_id)
        try:
            body = self._body_path(run_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            body = ""
        except OSError as e:
            raise StoreError(f"Cannot read log {run_id}: {e}") from e
        return self._meta_to_log(run_id, meta, body)

    def _scan(self) -> list[RunLog]:
        entries: list[RunLog] = []
        for path in self.logs_dir.glob("run_*.json"):
            run_id = path.stem
            if not _ID_RE.match(run_id):
                continue
            try:
                entries.append(self._meta_to_log(run_id, self._read_meta(run_id)))
            except (LogNotFoundError, StoreError) as e:
                logger.warning(f"Skipping unreadable log metadata {path.name}: {e}")
        return entries

    def list_runs(
        self, job_name: str = "", page: int = 0, page_size: int = DEFAULT_PAGE_SIZE
    ) -> tuple[list[RunLog], int]:
        entries = self._scan()
        if job_name:
            entries = [e for e in entries if e.job_name == job_name]
        entries.sort(key=lambda e: (e.start_time, e.id), reverse=True)
        start, end = page_bounds(page, page_size, len(entries))
        return entries[start:end], len(entries)

    def reconcile_open_runs(self, *, end_time: float | None = None, status: int = INTERRUPTED_STATUS) -> int:
        ts = _utc_ts() if end_time is None else float(end_time)
        closed = 0
        for entry in self._scan():
            if entry.is_open:
                self.finalize(entry.id, ts, status)
                closed += 1
        return closed
