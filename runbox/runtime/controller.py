from __future__ import annotations

import asyncio
import codecs
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable

from runbox.runtime.catalog import CatalogError, JobCatalog, JobNotFoundError
from runbox.runtime.launcher import ExitResult, LaunchedProcess, LaunchError, ProcessLauncher
from runbox.runtime.multiplexer import OutputMultiplexer
from runbox.runtime.run_lock import RunLockFile
from runbox.storage.base import INTERRUPTED_STATUS, LogNotFoundError, LogStore, StoreError


logger = logging.getLogger(__name__)

# Statuses recorded for runs that never produced a process exit code
# (shell conventions for "not found" / "cannot execute").
JOB_NOT_FOUND_STATUS = 127
LAUNCH_FAILED_STATUS = 126

FINALIZE_ATTEMPTS = 3
FINALIZE_BACKOFF_S = 0.2

HEADER_TIME_FORMAT = "%a %b %d %H:%M:%S UTC %Y"
HEADER_RULE = "=" * 26

Emit = Callable[[str | None], Awaitable[None]]
StoreFactory = Callable[[], LogStore]


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RUNNING = "running"
    DRAINING = "draining"
    FINALIZING = "finalizing"


async def _discard(_chunk: str | None) -> None:
    return None


def _header(start: float, user: str) -> str:
    started = time.strftime(HEADER_TIME_FORMAT, time.gmtime(start))
    return f"Started at {started} by {user}\n{HEADER_RULE}\n\n"


class _ClientRelay:
    """One-slot hand-off between a run and the HTTP response streaming it.

    `None` marks the end of the transcript. Once detached (the client went
    away) every further chunk is dropped so the run can keep going.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=1)
        self._detached = False

    async def put(self, chunk: str | None) -> None:
        if self._detached:
            return
        await self._queue.put(chunk)

    async def get(self) -> str | None:
        return await self._queue.get()

    def detach(self) -> None:
        self._detached = True
        # Free the slot so a producer blocked in put() wakes up.
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break


class _StoreWorker:
    """Runs every call on one run's log store from a dedicated thread.

    The store is opened on that thread too, so sqlite3's thread affinity
    holds, and a locked database stalls the worker instead of the event loop.
    """

    def __init__(self, factory: StoreFactory) -> None:
        self._factory = factory
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="runbox-store")
        self._store: LogStore | None = None

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def open(self) -> None:
        self._store = await self._call(self._factory)

    async def create_run(self, job_name: str, user: str, start: float) -> str:
        assert self._store is not None
        return await self._call(self._store.create_run, job_name, user, start)

    async def append(self, run_id: str, chunk: str) -> None:
        assert self._store is not None
        await self._call(self._store.append, run_id, chunk)

    async def finalize(self, run_id: str, end: float, status: int) -> None:
        assert self._store is not None
        await self._call(self._store.finalize, run_id, end, status)

    async def close(self) -> None:
        try:
            if self._store is not None:
                await self._call(self._store.close)
        finally:
            self._executor.shutdown(wait=False)


class _Transcript:
    """Writes each chunk to the log store first, then to the client."""

    def __init__(self, store: _StoreWorker | None, run_id: str | None, emit: Emit) -> None:
        self.store = store
        self.run_id = run_id
        self._emit = emit
        self.at_line_start = True

    async def write(self, text: str) -> None:
        if not text:
            return
        if self.store is not None and self.run_id is not None:
            await self.store.append(self.run_id, text)
        self.at_line_start = text.endswith("\n")
        await self._emit(text)

    async def line(self, text: str) -> None:
        prefix = "" if self.at_line_start else "\n"
        await self.write(f"{prefix}{text}\n")


class RunController:
    """Serializes job runs and streams their merged output.

    A single `asyncio.Lock` is held from validation until the log record is
    finalized, so at most one run is ever past IDLE. Waiting requests get the
    lock in arrival order. An optional `RunLockFile` extends this to other
    runbox processes writing the same store.

    Store calls run on a per-run worker thread; see `_StoreWorker`.

    States: IDLE -> VALIDATING -> RUNNING -> DRAINING -> FINALIZING -> IDLE.
    Validation or launch failures jump straight to FINALIZING.

    If the HTTP client disconnects, the run is not aborted: the process runs
    to completion and its log is finalized; only the relay to the client stops.
    """

    def __init__(
        self,
        catalog: JobCatalog,
        store_factory: StoreFactory,
        *,
        launcher: ProcessLauncher | None = None,
        drain_grace_s: float = 5.0,
        run_lock: RunLockFile | None = None,
    ) -> None:
        self._catalog = catalog
        self._store_factory = store_factory
        self._launcher = launcher or ProcessLauncher()
        self._drain_grace_s = float(drain_grace_s)
        self._run_lock = run_lock
        self._lock = asyncio.Lock()
        self._state = RunState.IDLE
        self._active_job: str | None = None
        self._active_process: LaunchedProcess | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def active_job(self) -> str | None:
        return self._active_job

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def status_snapshot(self) -> dict[str, Any]:
        process = self._active_process
        return {
            "state": self._state.value,
            "busy": self.busy,
            "active_job": self._active_job,
            "pid": process.pid if process is not None else None,
            "pending_runs": len(self._tasks),
            "drain_grace_s": self._drain_grace_s,
        }

    def _set_state(self, state: RunState) -> None:
        if state is not self._state:
            logger.debug(f"Run state {self._state.value} -> {state.value} job={self._active_job}")
        self._state = state

    async def stream(self, job_name: str, user: str) -> AsyncIterator[str]:
        """Start a run in the background and yield its transcript as it is produced."""
        relay = _ClientRelay()
        task = asyncio.create_task(self.execute(job_name, user, relay.put), name=f"run-{job_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        try:
            while True:
                chunk = await relay.get()
                if chunk is None:
                    break
                yield chunk
            await task
        finally:
            if not task.done():
                relay.detach()
                logger.info(f"Client left while {job_name!r} was running; continuing without it")

    async def execute(self, job_name: str, user: str, emit: Emit | None = None) -> str | None:
        """Run one job under the run lock. Returns the log id, if one was recorded."""
        emit = emit or _discard
        try:
            async with self._lock:
                if self._closing:
                    await emit("Server is shutting down; run not started.\n")
                    return None
                self._active_job = job_name
                locked = await self._acquire_run_lock()
                try:
                    return await self._execute_locked(job_name, user, emit)
                finally:
                    if locked:
                        assert self._run_lock is not None
                        self._run_lock.release()
                    self._active_job = None
                    self._active_process = None
                    self._set_state(RunState.IDLE)
        finally:
            await emit(None)

    async def _acquire_run_lock(self) -> bool:
        """Wait for runs started by other runbox processes on the same store."""
        if self._run_lock is None:
            return False
        try:
            if not self._run_lock.try_acquire():
                logger.info(f"Waiting for another runbox process holding {self._run_lock.path}")
                await self._run_lock.acquire()
        except OSError as e:
            logger.warning(f"Run lock {self._run_lock.path} unavailable, serializing in-process only: {e}")
            return False
        return True

    async def _open_store(self) -> _StoreWorker | None:
        worker = _StoreWorker(self._store_factory)
        try:
            await worker.open()
        except StoreError as e:
            logger.error(f"Log store unavailable: {e}")
            await worker.close()
            return None
        return worker

    async def _execute_locked(self, job_name: str, user: str, emit: Emit) -> str | None:
        self._set_state(RunState.VALIDATING)
        start = time.time()
        store = await self._open_store()
        run_id: str | None = None
        if store is not None:
            try:
                run_id = await store.create_run(job_name, user, start)
            except StoreError as e:
                logger.error(f"Cannot record run of {job_name!r}: {e}")

        transcript = _Transcript(store, run_id, emit)
        if run_id is None:
            await emit("[warning: this run is not being recorded in the log store]\n")
        logger.info(f"Started job: {run_id}: {job_name} user={user}")

        status = INTERRUPTED_STATUS
        try:
            try:
                await transcript.write(_header(start, user))
                status = await self._run_job(job_name, start, transcript)
            except (asyncio.CancelledError, KeyboardInterrupt):
                raise
            except Exception as e:
                logger.exception(f"Unexpected failure running {job_name!r}")
                await transcript.line(f"Internal error: {type(e).__name__}: {e}")
                status = LAUNCH_FAILED_STATUS
        finally:
            self._set_state(RunState.FINALIZING)
            end = time.time()
            if store is not None:
                try:
                    if run_id is not None and not await self._finalize(store, run_id, end, status):
                        await emit("[warning: final status could not be saved to the log store]\n")
                finally:
                    await store.close()
            logger.info(f"Finished job: {run_id}: {job_name} status={status} duration={end - start:.2f}s")
        return run_id

    async def _run_job(self, job_name: str, start: float, transcript: _Transcript) -> int:
        try:
            path = self._catalog.resolve(job_name)
        except JobNotFoundError as e:
            logger.info(f"Invalid command: {e}")
            await transcript.line(str(e))
            return JOB_NOT_FOUND_STATUS
        except CatalogError as e:
            logger.error(f"Error loading available jobs: {e}")
            await transcript.line(str(e))
            return LAUNCH_FAILED_STATUS

        try:
            process = await self._launcher.start(path)
        except LaunchError as e:
            logger.error(str(e))
            await transcript.line(str(e))
            return LAUNCH_FAILED_STATUS

        self._active_process = process
        self._set_state(RunState.RUNNING)
        result = await self._drain(process, transcript)
        await transcript.line(f"[{job_name} finished: {result.describe()} in {time.time() - start:.2f}s]")
        return result.status

    async def _drain(self, process: LaunchedProcess, transcript: _Transcript) -> ExitResult:
        exit_task = asyncio.ensure_future(process.exited())
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async with OutputMultiplexer(process.stdout, process.stderr) as mux:
                self._set_state(RunState.DRAINING)
                while True:
                    data = await self._next_chunk(mux, exit_task)
                    if data is None:
                        break
                    await transcript.write(decoder.decode(data))
            await transcript.write(decoder.decode(b"", final=True))
            return await exit_task
        finally:
            if not exit_task.done():
                exit_task.cancel()
                # Never leave the job running once nobody reads its output.
                await process.terminate()

    async def _next_chunk(self, mux: OutputMultiplexer, exit_task: asyncio.Future[ExitResult]) -> bytes | None:
        """Next merged chunk, or None when output is over.

        Output is over when every pipe hit EOF, or when the process has exited
        and no output arrived for `drain_grace_s` (a background child can keep
        a pipe open long after the job itself is gone).
        """
        read_task = asyncio.ensure_future(mux.read())
        try:
            if not exit_task.done():
                await asyncio.wait({read_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
            if not read_task.done():
                done, _ = await asyncio.wait({read_task}, timeout=self._drain_grace_s)
                if not done:
                    logger.warning(f"Output still open {self._drain_grace_s:.1f}s after exit; detaching readers")
                    return None
            return read_task.result()
        finally:
            if not read_task.done():
                read_task.cancel()

    async def _finalize(self, store: _StoreWorker, run_id: str, end: float, status: int) -> bool:
        for attempt in range(1, FINALIZE_ATTEMPTS + 1):
            try:
                await store.finalize(run_id, end, status)
                return True
            except LogNotFoundError:
                logger.error(f"Log {run_id} vanished before it could be finalized")
                return False
            except StoreError as e:
                logger.warning(f"Finalize of log {run_id} failed (attempt {attempt}/{FINALIZE_ATTEMPTS}): {e}")
                if attempt < FINALIZE_ATTEMPTS:
                    await asyncio.sleep(FINALIZE_BACKOFF_S * attempt)
        logger.error(f"Log {run_id} left open: final status {status} was not saved")
        return False

    async def aclose(self) -> None:
        """Stop accepting runs, terminate the active process and wait for run tasks."""
        self._closing = True
        process = self._active_process
        if process is not None:
            logger.info(f"Terminating running job {self._active_job!r} pid={process.pid}")
            await process.terminate()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for background runs whose clients already left."""
        pending = [t for t in self._tasks if not t.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [t for t in self._tasks if not t.done()]
