from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest


# Ensure `import runbox...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from runbox.config.load_config import AppConfig, load_app_config  # noqa: E402


@pytest.fixture
def commands_dir(tmp_path: Path) -> Path:
    d = tmp_path / "cmds"
    d.mkdir()
    return d


@pytest.fixture
def make_job(commands_dir: Path) -> Callable[..., Path]:
    """Write an executable /bin/sh job into the commands dir."""

    def _make(name: str, script: str, *, executable: bool = True) -> Path:
        path = commands_dir / name
        path.write_text("#!/bin/sh\n" + script + "\n", encoding="utf-8")
        path.chmod(0o755 if executable else 0o644)
        return path

    return _make


@pytest.fixture
def app_config(tmp_path: Path, commands_dir: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    # Keep the repo's config/default.toml out of tests.
    monkeypatch.setenv("RUNBOX_CONFIG_PATH", str(tmp_path / "absent.toml"))
    return load_app_config(
        overrides={
            "commands_dir": str(commands_dir),
            "exclude": "*.pyc,.*",
            "sqlite_path": str(tmp_path / "runbox.db"),
            "logs_dir": str(tmp_path / "logs"),
            "static_dir": "",
            "drain_grace_s": 1.0,
        }
    )
