from __future__ import annotations

import fnmatch
import os
from dataclasses import dataclass
from pathlib import Path


class CatalogError(OSError):
    """The commands directory could not be read."""


class JobNotFoundError(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Job not found: {name}")
        self.name = name


@dataclass(frozen=True)
class JobCatalog:
    """Allowlist of runnable jobs: the entries of one directory minus exclusions.

    The listing is re-read on every call so a job added or removed on disk is
    picked up without a restart.
    """

    commands_dir: Path
    exclude_patterns: tuple[str, ...] = ()

    def _excluded(self, name: str) -> bool:
        for pattern in self.exclude_patterns:
            if fnmatch.fnmatchcase(name, pattern):
                return True
        return False

    def list_jobs(self) -> list[str]:
        try:
            names = os.listdir(self.commands_dir)
        except OSError as e:
            raise CatalogError(f"Cannot read commands dir {self.commands_dir}: {e}") from e
        return sorted(n for n in names if not self._excluded(n))

    def resolve(self, name: str) -> Path:
        # Exact match against bare directory entries; a name carrying a path
        # separator can never be one of them.
        if name in self.list_jobs():
            return self.commands_dir / name
        raise JobNotFoundError(name)
