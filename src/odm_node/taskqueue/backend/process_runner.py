"""Subprocess runner for the external processing pipeline."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
from collections.abc import Iterator
from pathlib import Path

import psutil

from odm_node.taskqueue.errors import LaunchError

logger = logging.getLogger(__name__)


class RunningProcess:
    """Handle to one spawned pipeline process and its descendants."""

    def __init__(self, popen: subprocess.Popen[str], *, kill_grace_seconds: float) -> None:
        self._popen = popen
        self._kill_grace_seconds = kill_grace_seconds

    @property
    def pid(self) -> int:
        return self._popen.pid

    def iter_lines(self) -> Iterator[str]:
        """Yield combined stdout/stderr lines until the stream closes."""

        stream = self._popen.stdout
        if stream is None:
            return
        with stream:
            for line in stream:
                yield line.rstrip("\r\n")

    def wait(self) -> int:
        """Block until exit; negative codes mean the process died from a signal."""

        return self._popen.wait()

    def kill(self) -> None:
        """Terminate the process tree, escalating to SIGKILL after the grace period.

        The pipeline runs in its own session, so its process group is signalled
        as a whole; descendants that moved to another group are signalled one
        by one.
        """

        descendants = self._descendants()
        self._signal_group(signal.SIGTERM)
        with contextlib.suppress(OSError):
            self._popen.terminate()
        for child in descendants:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.terminate()

        _, alive = psutil.wait_procs(descendants, timeout=self._kill_grace_seconds)
        try:
            self._popen.wait(timeout=self._kill_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s ignored SIGTERM, killing", self._popen.pid)
            self._signal_group(signal.SIGKILL)
            with contextlib.suppress(OSError):
                self._popen.kill()
            self._popen.wait(timeout=self._kill_grace_seconds)

        # Members forked while the tree was shutting down.
        self._signal_group(signal.SIGKILL)
        for child in alive:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.kill()
        psutil.wait_procs(alive, timeout=self._kill_grace_seconds)

    def _signal_group(self, signum: int) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._popen.pid, signum)

    def _descendants(self) -> list[psutil.Process]:
        try:
            return psutil.Process(self._popen.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []


class ProcessRunner:
    """Spawns pipeline processes with merged output and an isolated session."""

    def __init__(self, *, kill_grace_seconds: float = 5.0) -> None:
        self.kill_grace_seconds = kill_grace_seconds

    def spawn(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> RunningProcess:
        if not args:
            raise LaunchError("Pipeline command is empty.")
        process_env = os.environ.copy()
        process_env["PYTHONUNBUFFERED"] = "1"
        if env:
            process_env.update(env)
        try:
            popen = subprocess.Popen(  # noqa: S603
                args,
                cwd=cwd,
                env=process_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            raise LaunchError(f"Pipeline command not found: {args[0]}") from error
        except OSError as error:
            raise LaunchError(f"Pipeline failed to start: {error}") from error
        logger.debug("Spawned pid %s: %s", popen.pid, " ".join(args))
        return RunningProcess(popen, kill_grace_seconds=self.kill_grace_seconds)
