from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


DEFAULT_PAGE_SIZE = 50

# Status written by reconcile_open_runs for runs interrupted by a restart.
INTERRUPTED_STATUS = -1


class StoreError(RuntimeError):
    """Persistence failure in a log store backend."""


class LogNotFoundError(LookupError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Log not found: {run_id}")
        self.run_id = run_id


def _utc_ts() -> float:
    return time.time()


@dataclass(frozen=True)
class RunLog:
    """One persisted run: metadata plus the merged transcript."""

    id: str
    job_name: str
    user: str
    start_time: float
    end_time: float | None = None
    exit_status: int | None = None
    body: str = ""

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return max(0.0, self.end_time - self.start_time)

    def to_summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.job_name,
            "user": self.user,
            "start": self.start_time,
            "end": self.end_time,
            "duration": self.duration_seconds,
            "status": self.exit_status,
        }


def page_bounds(page: int, page_size: int, total: int) -> tuple[int, int]:
    """Offset slice for `page`, clamped to [0, total] at both ends."""
    size = max(1, int(page_size))
    start = min(max(0, int(page)) * size, total)
    end = min(start + size, total)
    return start, end


class LogStore(ABC):
    """Contract shared by every log backend.

    A run is created "open", grows by `append`, and is closed exactly once by
    `finalize`. The id returned by `create_run` stays valid for the whole
    lifetime of the run, before and after finalize.
    """

    @abstractmethod
    def create_run(self, job_name: str, user: str, start_time: float | None = None) -> str:
        ...

    @abstractmethod
    def append(self, run_id: str, chunk: str) -> None:
        """Add `chunk` to the run's body. Backend errors are logged, not raised."""

    @abstractmethod
    def finalize(self, run_id: str, end_time: float, exit_status: int) -> None:
        ...

    @abstractmethod
    def get(self, run_id: str) -> RunLog:
        ...

    @abstractmethod
    def list_runs(
        self, job_name: str = "", page: int = 0, page_size: int = DEFAULT_PAGE_SIZE
    ) -> tuple[list[RunLog], int]:
        ...

    @abstractmethod
    def reconcile_open_runs(self, *, end_time: float | None = None, status: int = INTERRUPTED_STATUS) -> int:
        """Close runs left open by a previous process. Returns how many were closed."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "LogStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
