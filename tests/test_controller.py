from __future__ import annotations

import asyncio
import os
import sqlite3
import time
from pathlib import Path
from typing import Callable

import pytest

from runbox.runtime import controller as controller_mod
from runbox.runtime.catalog import JobCatalog
from runbox.runtime.controller import (
    JOB_NOT_FOUND_STATUS,
    LAUNCH_FAILED_STATUS,
    RunController,
    RunState,
)
from runbox.runtime.launcher import IS_WINDOWS
from runbox.runtime.run_lock import RunLockFile
from runbox.storage import SQLiteLogStore, StoreError


pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="jobs are /bin/sh scripts")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "runbox.db"


@pytest.fixture
def controller(commands_dir: Path, db_path: Path) -> RunController:
    catalog = JobCatalog(commands_dir, ("*.pyc",))
    return RunController(catalog, lambda: SQLiteLogStore(db_path), drain_grace_s=0.5)


async def _collect(ctrl: RunController, job: str, user: str = "tester") -> list[str]:
    return [chunk async for chunk in ctrl.stream(job, user)]


def _runs(db_path: Path):
    with SQLiteLogStore(db_path) as store:
        entries, _ = store.list_runs("", 0, 100)
        return [store.get(e.id) for e in reversed(entries)]


@pytest.mark.asyncio
async def test_run_streams_output_and_records_exit_status(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("build.sh", "echo compiling\necho warn >&2\nexit 2")

    chunks = await asyncio.wait_for(_collect(controller, "build.sh", "alice"), timeout=15)

    (run,) = _runs(db_path)
    assert run.job_name == "build.sh"
    assert run.user == "alice"
    assert run.exit_status == 2
    assert run.end_time is not None and run.end_time >= run.start_time
    # What the client saw is exactly what was stored.
    assert run.body == "".join(chunks)
    assert "compiling\n" in run.body
    assert "warn\n" in run.body
    assert "[build.sh finished: exit status 2 in" in run.body
    assert controller.state is RunState.IDLE
    assert not controller.busy


@pytest.mark.asyncio
async def test_unknown_job_is_reported_in_band_and_recorded(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    chunks = await asyncio.wait_for(_collect(controller, "nonexistent"), timeout=15)
    assert "Job not found: nonexistent" in "".join(chunks)

    # The lock was released: a later run proceeds normally.
    make_job("ok.sh", "echo fine")
    await asyncio.wait_for(_collect(controller, "ok.sh"), timeout=15)

    missing, ok = _runs(db_path)
    assert missing.job_name == "nonexistent"
    assert missing.exit_status == JOB_NOT_FOUND_STATUS
    assert not missing.is_open
    assert ok.exit_status == 0
    assert "fine\n" in ok.body


@pytest.mark.asyncio
async def test_excluded_job_is_not_runnable(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("tool.pyc", "echo should-not-run")
    chunks = await asyncio.wait_for(_collect(controller, "tool.pyc"), timeout=15)

    assert "should-not-run" not in "".join(chunks)
    (run,) = _runs(db_path)
    assert run.exit_status == JOB_NOT_FOUND_STATUS


@pytest.mark.asyncio
async def test_non_executable_job_fails_to_launch(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("plain.sh", "echo hi", executable=False)
    chunks = await asyncio.wait_for(_collect(controller, "plain.sh"), timeout=15)

    (run,) = _runs(db_path)
    assert run.exit_status == LAUNCH_FAILED_STATUS
    assert "Cannot start" in "".join(chunks)


@pytest.mark.asyncio
async def test_concurrent_runs_do_not_overlap(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("slow.sh", "echo begin\nsleep 0.3\necho done")

    a, b = await asyncio.wait_for(
        asyncio.gather(_collect(controller, "slow.sh", "a"), _collect(controller, "slow.sh", "b")),
        timeout=20,
    )

    first, second = _runs(db_path)
    assert second.start_time >= first.end_time
    assert first.user == "a"
    assert second.user == "b"
    assert first.body == "".join(a)
    assert second.body == "".join(b)


@pytest.mark.asyncio
async def test_client_disconnect_lets_the_run_finish(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("long.sh", "echo start\nsleep 0.5\necho end")

    gen = controller.stream("long.sh", "leaver")
    first = await asyncio.wait_for(gen.__anext__(), timeout=10)
    assert first.startswith("Started at ")
    await gen.aclose()

    await asyncio.wait_for(controller.wait_idle(), timeout=15)

    (run,) = _runs(db_path)
    assert run.exit_status == 0
    assert not run.is_open
    assert "end\n" in run.body


@pytest.mark.asyncio
async def test_multibyte_character_split_across_reads(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("utf8.sh", "printf '\\303'\nsleep 0.2\nprintf '\\251\\n'")

    chunks = await asyncio.wait_for(_collect(controller, "utf8.sh"), timeout=15)

    (run,) = _runs(db_path)
    assert "\né\n" in run.body
    assert "\ufffd" not in run.body
    assert run.body == "".join(chunks)


@pytest.mark.asyncio
async def test_background_child_holding_pipe_does_not_block_the_run(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("detach.sh", "(sleep 3 &)\necho hi")

    started = time.monotonic()
    await asyncio.wait_for(_collect(controller, "detach.sh"), timeout=15)
    elapsed = time.monotonic() - started

    assert elapsed < 2.5
    (run,) = _runs(db_path)
    assert run.exit_status == 0
    assert "\nhi\n" in run.body


@pytest.mark.asyncio
async def test_run_proceeds_when_store_is_unavailable(
    commands_dir: Path, make_job: Callable[..., Path]
) -> None:
    def broken_store() -> SQLiteLogStore:
        raise StoreError("disk on fire")

    ctrl = RunController(JobCatalog(commands_dir), broken_store)
    make_job("hello.sh", "echo hello")

    chunks: list[str] = []

    async def emit(chunk: str | None) -> None:
        if chunk is not None:
            chunks.append(chunk)

    run_id = await asyncio.wait_for(ctrl.execute("hello.sh", "u", emit), timeout=15)

    assert run_id is None
    text = "".join(chunks)
    assert "not being recorded" in text
    assert "hello\n" in text


class _FlakyFinalizeStore(SQLiteLogStore):
    failures_left = 2

    def finalize(self, run_id: str, end_time: float, exit_status: int) -> None:
        if _FlakyFinalizeStore.failures_left > 0:
            _FlakyFinalizeStore.failures_left -= 1
            raise StoreError("database is locked")
        super().finalize(run_id, end_time, exit_status)


@pytest.mark.asyncio
async def test_finalize_is_retried(
    commands_dir: Path, make_job: Callable[..., Path], db_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(controller_mod, "FINALIZE_BACKOFF_S", 0.0)
    monkeypatch.setattr(_FlakyFinalizeStore, "failures_left", 2)
    ctrl = RunController(JobCatalog(commands_dir), lambda: _FlakyFinalizeStore(db_path))
    make_job("fail.sh", "exit 4")

    run_id = await asyncio.wait_for(ctrl.execute("fail.sh", "u"), timeout=15)

    assert run_id is not None
    (run,) = _runs(db_path)
    assert run.exit_status == 4


@pytest.mark.asyncio
async def test_finalize_failure_is_reported_to_the_client(
    commands_dir: Path, make_job: Callable[..., Path], db_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(controller_mod, "FINALIZE_BACKOFF_S", 0.0)
    monkeypatch.setattr(_FlakyFinalizeStore, "failures_left", 10)
    ctrl = RunController(JobCatalog(commands_dir), lambda: _FlakyFinalizeStore(db_path))
    make_job("ok.sh", "echo ok")

    chunks = await asyncio.wait_for(_collect(ctrl, "ok.sh"), timeout=15)

    assert "final status could not be saved" in chunks[-1]
    (run,) = _runs(db_path)
    assert run.is_open


@pytest.mark.asyncio
async def test_closed_controller_refuses_new_runs(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("hello.sh", "echo hello")
    await controller.aclose()

    chunks = await asyncio.wait_for(_collect(controller, "hello.sh"), timeout=10)

    assert chunks == ["Server is shutting down; run not started.\n"]
    assert not db_path.exists() or _runs(db_path) == []


@pytest.mark.asyncio
async def test_transcript_starts_with_header(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("hello.sh", "echo hello")

    chunks = await asyncio.wait_for(_collect(controller, "hello.sh", "alice"), timeout=15)

    (run,) = _runs(db_path)
    first_line, rule, blank, output = run.body.split("\n", 4)[:4]
    assert first_line.startswith("Started at ")
    assert first_line.endswith(" UTC " + time.strftime("%Y", time.gmtime(run.start_time)) + " by alice")
    assert rule == "=" * 26
    assert blank == ""
    assert output == "hello"
    assert chunks[0] == run.body[: len(chunks[0])]


@pytest.mark.asyncio
async def test_locked_database_does_not_stall_the_event_loop(
    controller: RunController, make_job: Callable[..., Path], db_path: Path
) -> None:
    make_job("two.sh", "echo one\nsleep 0.2\necho two")
    SQLiteLogStore(db_path).close()

    blocker = sqlite3.connect(str(db_path), isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")

    gaps: list[float] = []
    stop = asyncio.Event()

    async def ticker() -> None:
        last = time.monotonic()
        while not stop.is_set():
            await asyncio.sleep(0.05)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    async def release_later() -> None:
        await asyncio.sleep(1.0)
        blocker.execute("COMMIT")

    tick_task = asyncio.create_task(ticker())
    release_task = asyncio.create_task(release_later())
    try:
        await asyncio.wait_for(_collect(controller, "two.sh"), timeout=20)
    finally:
        stop.set()
        await tick_task
        await release_task
        blocker.close()

    assert max(gaps) < 0.5
    (run,) = _runs(db_path)
    assert run.exit_status == 0
    assert "one\n" in run.body
    assert "two\n" in run.body


@pytest.mark.asyncio
async def test_job_is_terminated_when_streaming_fails(
    controller: RunController, make_job: Callable[..., Path], db_path: Path, tmp_path: Path
) -> None:
    pid_file = tmp_path / "job.pid"
    make_job("hang.sh", f"echo $$ > {pid_file}\necho ready-marker\nsleep 30")

    raised = False

    async def emit(chunk: str | None) -> None:
        nonlocal raised
        if chunk is not None and "ready-marker" in chunk and not raised:
            raised = True
            raise RuntimeError("relay broke")

    started = time.monotonic()
    await asyncio.wait_for(controller.execute("hang.sh", "u", emit), timeout=20)

    assert time.monotonic() - started < 15
    pid = int(pid_file.read_text(encoding="utf-8").strip())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    (run,) = _runs(db_path)
    assert run.exit_status == LAUNCH_FAILED_STATUS
    assert "Internal error: RuntimeError: relay broke" in run.body


@pytest.mark.asyncio
async def test_run_waits_for_another_process_holding_the_run_lock(
    commands_dir: Path, make_job: Callable[..., Path], db_path: Path, tmp_path: Path
) -> None:
    lock_path = tmp_path / "runbox.db.lock"
    other = RunLockFile(lock_path)
    assert other.try_acquire()

    ctrl = RunController(
        JobCatalog(commands_dir), lambda: SQLiteLogStore(db_path), run_lock=RunLockFile(lock_path)
    )
    make_job("hello.sh", "echo hello")
    task = asyncio.create_task(ctrl.execute("hello.sh", "u"))
    try:
        await asyncio.sleep(0.5)
        assert not task.done()
        # Nothing is recorded until the lock is ours.
        assert not db_path.exists()
    finally:
        other.release()

    run_id = await asyncio.wait_for(task, timeout=15)
    assert run_id is not None
    (run,) = _runs(db_path)
    assert run.exit_status == 0
    # Released again after the run.
    assert other.try_acquire()
    other.release()
