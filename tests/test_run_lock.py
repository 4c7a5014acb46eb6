from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from runbox.runtime.run_lock import RunLockFile


def test_second_holder_is_refused_until_release(tmp_path: Path) -> None:
    path = tmp_path / "locks" / "runbox.lock"
    first, second = RunLockFile(path), RunLockFile(path)

    assert first.try_acquire()
    assert first.held
    assert not second.try_acquire()
    assert not second.held

    first.release()
    assert not first.held
    assert second.try_acquire()
    second.release()


def test_release_without_holding_is_a_noop(tmp_path: Path) -> None:
    lock = RunLockFile(tmp_path / "runbox.lock")
    lock.release()
    assert lock.try_acquire()
    lock.release()
    lock.release()


def test_reacquiring_a_held_lock_is_an_error(tmp_path: Path) -> None:
    lock = RunLockFile(tmp_path / "runbox.lock")
    assert lock.try_acquire()
    try:
        with pytest.raises(RuntimeError):
            lock.try_acquire()
    finally:
        lock.release()


@pytest.mark.asyncio
async def test_acquire_waits_for_release(tmp_path: Path) -> None:
    path = tmp_path / "runbox.lock"
    holder, waiter = RunLockFile(path), RunLockFile(path)
    assert holder.try_acquire()

    task = asyncio.create_task(waiter.acquire(poll_interval=0.02))
    await asyncio.sleep(0.2)
    assert not task.done()

    holder.release()
    await asyncio.wait_for(task, timeout=5)
    assert waiter.held
    waiter.release()
