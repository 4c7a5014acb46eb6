from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable

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

SCHEMA_VERSION = 1


class SQLiteLogStore(LogStore):
    """SQLite-backed run log.

    One `log` table keyed by an autoincrement integer. Timestamps are REAL
    unix seconds (UTC). `append` concatenates in a single UPDATE and
    `finalize` never writes the body column, so the two cannot clobber each
    other.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._conn.execute("PRAGMA synchronous = NORMAL;")
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open log database {self.db_path}: {e}") from e

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS log (
              id INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL,
              user TEXT NOT NULL,
              start_dt REAL NOT NULL,
              end_dt REAL DEFAULT NULL,
              body TEXT NOT NULL DEFAULT '',
              status INTEGER DEFAULT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_log_start ON log(start_dt DESC, id DESC);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_log_name_start ON log(name, start_dt DESC);")
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", str(SCHEMA_VERSION)),
        )
        self._conn.commit()

    @staticmethod
    def _row_to_log(row: sqlite3.Row, *, with_body: bool = True) -> RunLog:
        return RunLog(
            id=str(row["id"]),
            job_name=row["name"],
            user=row["user"],
            start_time=float(row["start_dt"]),
            end_time=float(row["end_dt"]) if row["end_dt"] is not None else None,
            exit_status=int(row["status"]) if row["status"] is not None else None,
            body=row["body"] if with_body else "",
        )

    def create_run(self, job_name: str, user: str, start_time: float | None = None) -> str:
        start = _utc_ts() if start_time is None else float(start_time)
        try:
            cur = self._conn.execute(
                "INSERT INTO log(name, user, start_dt) VALUES(?, ?, ?);",
                (job_name, user, start),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot create log for {job_name!r}: {e}") from e
        return str(cur.lastrowid)

    def append(self, run_id: str, chunk: str) -> None:
        if not chunk:
            return
        try:
            self._conn.execute("UPDATE log SET body = body || ? WHERE id = ?;", (chunk, run_id))
            self._conn.commit()
        except sqlite3.Error as e:
            logger.warning(f"Dropped {len(chunk)} chars for log {run_id}: {e}")

    def finalize(self, run_id: str, end_time: float, exit_status: int) -> None:
        try:
            cur = self._conn.execute(
                "UPDATE log SET end_dt = ?, status = ? WHERE id = ?;",
                (float(end_time), int(exit_status), run_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot finalize log {run_id}: {e}") from e
        if cur.rowcount == 0:
            raise LogNotFoundError(run_id)

    def get(self, run_id: str) -> RunLog:
        try:
            row = self._conn.execute(
                "SELECT id, name, user, start_dt, end_dt, body, status FROM log WHERE id = ?;",
                (run_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot read log {run_id}: {e}") from e
        if row is None:
            raise LogNotFoundError(run_id)
        return self._row_to_log(row)

    def list_runs(
        self, job_name: str = "", page: int = 0, page_size: int = DEFAULT_PAGE_SIZE
    ) -> tuple[list[RunLog], int]:
        where = ["1=1"]
        params: list[object] = []
        if job_name:
            where.append("name = ?")
            params.append(job_name)
        where_sql = " AND ".join(where)

        try:
            total = int(self._conn.execute(f"SELECT COUNT(*) FROM log WHERE {where_sql};", params).fetchone()[0])
            start, end = page_bounds(page, page_size, total)
            if start >= end:
                return [], total
            rows = self._conn.execute(
                f"""
                SELECT id, name, user, start_dt, end_dt, status, '' AS body
                FROM log
                WHERE {where_sql}
                ORDER BY start_dt DESC, id DESC
                LIMIT ? OFFSET ?;
                """,
                (*params, end - start, start),
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot list logs: {e}") from e
        return [self._row_to_log(r, with_body=False) for r in rows], total

    def reconcile_open_runs(self, *, end_time: float | None = None, status: int = INTERRUPTED_STATUS) -> int:
        ts = _utc_ts() if end_time is None else float(end_time)
        with self.transaction():
            cur = self._conn.execute(
                "UPDATE log SET end_dt = ?, status = ? WHERE end_dt IS NULL;",
                (ts, int(status)),
            )
        return int(cur.rowcount)
