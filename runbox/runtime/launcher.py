"""Process launcher for catalog jobs.

Jobs are spawned without arguments, with stdin from /dev/null and stdout /
stderr attached to two independent pipes. Each child gets its own session
(POSIX) or process group (Windows) so shutdown can signal the whole tree.

The exit outcome is reported as a structured `ExitResult` derived from the
return code, never from the text of an error message.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL


class LaunchError(RuntimeError):
    """The executable could not be spawned or its pipes attached."""


@dataclass(frozen=True)
class ExitResult:
    """Terminal outcome of a job process.

    Attributes:
        exit_code: The process exit code, or the signal number when `signaled`.
        signaled: True if the process was terminated by a signal.
    """

    exit_code: int
    signaled: bool = False

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitResult":
        # asyncio reports death-by-signal as a negative return code.
        if returncode < 0:
            return cls(exit_code=-returncode, signaled=True)
        return cls(exit_code=returncode)

    @property
    def status(self) -> int:
        """Small integer recorded in the log store (shell convention for signals)."""
        if self.signaled:
            return 128 + self.exit_code
        return self.exit_code

    @property
    def ok(self) -> bool:
        return not self.signaled and self.exit_code == 0

    def describe(self) -> str:
        if self.signaled:
            try:
                name = signal.Signals(self.exit_code).name
            except ValueError:
                name = str(self.exit_code)
            return f"killed by signal {name}"
        return f"exit status {self.exit_code}"


class LaunchedProcess:
    """A running job: two output streams plus its exit future."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        if process.stdout is None or process.stderr is None:
            raise LaunchError("Process started without stdout/stderr pipes")
        self._process = process
        self._term_timeout = term_timeout
        self._kill_timeout = kill_timeout

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._process.stdout is not None
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self._process.stderr is not None
        return self._process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> ExitResult:
        returncode = await self._process.wait()
        return ExitResult.from_returncode(returncode)

    async def exited(self, poll_interval: float = 0.05) -> ExitResult:
        """Resolve once the process itself is gone.

        Unlike `wait()`, this does not wait for the pipes to close, which a
        background child of the job may hold open indefinitely.
        """
        while self._process.returncode is None:
            await asyncio.sleep(poll_interval)
        return ExitResult.from_returncode(self._process.returncode)

    async def terminate(self) -> None:
        """Terminate the process group gracefully, then forcefully if needed.

        1. SIGTERM (CTRL_BREAK_EVENT on Windows) to the group
        2. wait up to term_timeout
        3. SIGKILL (kill() on Windows)
        4. wait up to kill_timeout
        """
        process = self._process
        if process.returncode is not None:
            return
        pid = process.pid
        try:
            self._send(signal.CTRL_BREAK_EVENT if IS_WINDOWS else signal.SIGTERM)
            try:
                await asyncio.wait_for(self.exited(), timeout=self._term_timeout)
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing job process pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                self._send(signal.SIGKILL)
            try:
                await asyncio.wait_for(self.exited(), timeout=self._kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Job process did not exit after kill pid={pid}")
        except ProcessLookupError:
            logger.debug(f"Job process already exited pid={pid}")

    def _send(self, sig: int) -> None:
        process = self._process
        if IS_WINDOWS:
            try:
                os.kill(process.pid, sig)
            except OSError:
                process.terminate()
            return
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, signalling pid only: {e}")
            process.send_signal(sig)


@dataclass
class ProcessLauncher:
    """Spawns catalog jobs.

    Example:
        launcher = ProcessLauncher()
        proc = await launcher.start(Path("cmds/build.sh"))
        async with OutputMultiplexer(proc.stdout, proc.stderr) as mux:
            async for chunk in mux:
                ...
        result = await proc.wait()
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    def _subprocess_kwargs(self) -> dict[str, Any]:
        if IS_WINDOWS:
            return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        return {"start_new_session": True}

    async def start(self, path: str | Path) -> LaunchedProcess:
        try:
            process = await asyncio.create_subprocess_exec(
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **self._subprocess_kwargs(),
            )
        except OSError as e:
            raise LaunchError(f"Cannot start {path}: {e}") from e

        logger.debug(f"Started job process pid={process.pid} path={path}")
        return LaunchedProcess(
            process,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )
