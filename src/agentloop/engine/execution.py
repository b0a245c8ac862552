"""Execution context for tools: cancellation and subprocess lifecycle.

Every subprocess a tool starts goes through ``ExecutionContext.spawn``
or ``ExecutionContext.run``. Processes are started in their own session
(and thus process group) so that a timeout, a cancellation or leaving
the context kills the whole tree, not just the immediate child.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agentloop.exceptions import ToolExecutionError
from agentloop.models.results import ToolErrorKind

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_USE_PGROUP = hasattr(os, "killpg")
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class CancellationToken:
    """Cooperative cancellation flag shared by the engine and tools.

    A child token (see ``child``) reports cancelled when either it or
    its parent is set, so one tool call can be cancelled without
    touching the session-wide token.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._parent = parent

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_cancelled

    @property
    def reason(self) -> str | None:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses. Returns the flag."""
        if self._parent is None:
            return self._event.wait(timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_cancelled:
            remaining = _POLL_INTERVAL if deadline is None else min(_POLL_INTERVAL, deadline - time.monotonic())
            if remaining <= 0:
                break
            self._event.wait(remaining)
        return self.is_cancelled

    def raise_if_cancelled(self) -> None:
        """Raise ToolExecutionError(CANCELLED) once the token is set."""
        if self.is_cancelled:
            raise ToolExecutionError(ToolErrorKind.CANCELLED, self.reason or "cancelled")


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of ``ExecutionContext.run``."""

    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        parts = [p for p in (self.stdout, self.stderr) if p]
        text = "\n".join(parts)
        if self.exit_status != 0:
            text += f"\n(exit code: {self.exit_status})"
        return text.strip() or "(no output)"


class ExecutionContext:
    """Per-call resources handed to a tool.

    Args:
        token: Cancellation token for this call.
        cwd: Working directory for spawned processes.
        env: Environment for spawned processes (default: inherit).
        grace_period: Seconds between SIGTERM and SIGKILL.
    """

    def __init__(
        self,
        token: CancellationToken | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        grace_period: float = 2.0,
    ) -> None:
        self.token = token or CancellationToken()
        self.cwd = cwd
        self.env = env
        self.grace_period = grace_period
        self._processes: list[subprocess.Popen] = []
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> ExecutionContext:
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            self._closed = True
        self.terminate_all()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def spawn(self, command: str | Sequence[str], **popen_kwargs: Any) -> subprocess.Popen:
        """Start a tracked subprocess in its own process group.

        The token is checked again once the process is tracked, so a
        timeout or cancellation that lands while ``Popen`` is starting
        still kills the new process.

        Raises:
            ToolExecutionError: If the token is cancelled or the context
                has been left.
        """
        self.token.raise_if_cancelled()
        popen_kwargs.setdefault("shell", isinstance(command, str))
        popen_kwargs.setdefault("cwd", self.cwd)
        if self.env is not None:
            popen_kwargs.setdefault("env", self.env)
        if _USE_PGROUP:
            popen_kwargs["start_new_session"] = True
        proc = subprocess.Popen(command, **popen_kwargs)
        with self._lock:
            self._processes.append(proc)
            closed = self._closed
        logger.debug("Spawned pid %d: %s", proc.pid, command)
        if closed or self.token.is_cancelled:
            self.terminate(proc)
            raise ToolExecutionError(
                ToolErrorKind.CANCELLED,
                self.token.reason or "execution context closed",
            )
        return proc

    def run(
        self,
        command: str | Sequence[str],
        *,
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run *command* to completion, capturing output.

        The wait is interrupted by the cancellation token.

        Raises:
            ToolExecutionError: TIMEOUT if *timeout* elapses, CANCELLED if
                the token is set. The process group is killed first.
        """
        proc = self.spawn(
            command,
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        deadline = None if timeout is None else time.monotonic() + timeout
        pending_input = input
        while True:
            try:
                stdout, stderr = proc.communicate(input=pending_input, timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
            if self.token.is_cancelled:
                self.terminate(proc)
                raise ToolExecutionError(ToolErrorKind.CANCELLED, self.token.reason or "cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                self.terminate(proc)
                raise ToolExecutionError(
                    ToolErrorKind.TIMEOUT,
                    f"command timed out after {timeout:g}s",
                )
        self._forget(proc)
        return CommandResult(exit_status=proc.returncode, stdout=stdout or "", stderr=stderr or "")

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    @property
    def processes(self) -> list[subprocess.Popen]:
        with self._lock:
            return list(self._processes)

    def terminate(self, proc: subprocess.Popen) -> None:
        """Kill *proc* and its process group: SIGTERM, grace, SIGKILL."""
        if proc.poll() is None:
            self._signal_group(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                self._signal_group(proc, _SIGKILL)
                proc.kill()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    logger.warning("Process %d did not exit after SIGKILL", proc.pid)
        if _USE_PGROUP:
            # The leader may be gone while grandchildren remain in its group.
            self._signal_group(proc, _SIGKILL)
        self._forget(proc)

    def terminate_all(self) -> int:
        """Terminate every tracked process. Returns how many were live."""
        live = 0
        for proc in self.processes:
            if proc.poll() is None:
                live += 1
            self.terminate(proc)
        if live:
            logger.debug("Terminated %d process(es)", live)
        return live

    def _signal_group(self, proc: subprocess.Popen, sig: int) -> None:
        if _USE_PGROUP:
            try:
                os.killpg(proc.pid, sig)
                return
            except (OSError, ProcessLookupError):
                logger.debug("Process group %d already gone", proc.pid)
                return
        if proc.poll() is None:
            proc.send_signal(sig)

    def _forget(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if proc in self._processes:
                self._processes.remove(proc)
