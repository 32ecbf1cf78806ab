from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import structlog

from appsec_pipeline.core import (
    Cancelled,
    CommandFailed,
    CommandTimeout,
    append_text,
    monotonic_ms,
    redact,
    utc_now_iso,
)

from .cancel import CancelToken

log = structlog.get_logger(__name__)

# Seconds between SIGTERM and SIGKILL for a process group.
TERMINATE_GRACE_S = 5.0

Command = str | Sequence[str]


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def render_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(c) for c in command)


def merge_env(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Later layers win."""
    out: dict[str, str] = {}
    for layer in layers:
        if layer:
            out.update({str(k): str(v) for k, v in layer.items()})
    return out


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # The group outlives its leader while any member is still running.
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        return


class _GroupTerminator:
    """
    SIGTERM the process group now and SIGKILL it after a grace period if it
    is still alive. Safe to trigger from any thread, more than once.
    """

    def __init__(self, proc: subprocess.Popen, *, grace_s: float) -> None:
        self._proc = proc
        self._grace_s = grace_s
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self.triggered = False

    def __call__(self, reason: str = "") -> None:
        with self._lock:
            if self.triggered:
                return
            self.triggered = True
            log.info("process.terminate", pid=self._proc.pid, reason=reason)
            _signal_group(self._proc, signal.SIGTERM)
            self._timer = threading.Timer(
                self._grace_s, _signal_group, args=(self._proc, signal.SIGKILL)
            )
            self._timer.daemon = True
            self._timer.start()

    def cancel_escalation(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()


def _write_log(
    log_path: Path,
    *,
    shown: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    secrets: Sequence[str],
) -> None:
    parts = [f"$ {shown}\n"]
    if stdout:
        parts.append(redact(stdout, secrets))
        if not stdout.endswith("\n"):
            parts.append("\n")
    if stderr:
        parts.append("[stderr]\n")
        parts.append(redact(stderr, secrets))
        if not stderr.endswith("\n"):
            parts.append("\n")
    parts.append(f"[exit={exit_code} at {utc_now_iso()}]\n\n")
    append_text(log_path, "".join(parts))


def run_command(
    command: Command,
    *,
    workdir: Path,
    env: Mapping[str, str] | None = None,
    timeout_s: float | None = None,
    token: Optional[CancelToken] = None,
    log_path: Path | None = None,
    secrets: Sequence[str] = (),
    check: bool = True,
    grace_s: float = TERMINATE_GRACE_S,
) -> CommandResult:
    """
    Run `command` to completion and capture its output.

    The child gets its own process group; a timeout or a cancelled `token`
    terminates the whole group, so shells and the tools they started go
    down together. `env` is layered over the current process environment.

    Raises:
      - Cancelled when `token` was cancelled before or during the run
      - CommandTimeout when `timeout_s` elapsed
      - CommandFailed on a non-zero exit status when `check` is true
    """
    shown = redact(render_command(command), secrets)
    if token is not None:
        token.raise_if_cancelled()

    workdir = Path(workdir)
    full_env = merge_env(os.environ, env)
    shell = isinstance(command, str)
    argv = command if shell else [str(c) for c in command]

    log.info("command.start", command=shown, workdir=str(workdir))
    t0 = monotonic_ms()

    proc = subprocess.Popen(
        argv,
        cwd=str(workdir),
        env=full_env,
        shell=shell,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )

    terminator = _GroupTerminator(proc, grace_s=grace_s)
    unregister = token.on_cancel(terminator) if token is not None else None
    timed_out = False

    try:
        try:
            stdout, stderr = proc.communicate(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            terminator("timeout")
            stdout, stderr = proc.communicate()
    except BaseException:
        # e.g. KeyboardInterrupt in the driver thread: never leave the group behind
        terminator("interrupted")
        proc.wait()
        raise
    finally:
        if unregister is not None:
            unregister()
        terminator.cancel_escalation()

    duration = monotonic_ms() - t0
    exit_code = proc.returncode

    if log_path is not None:
        _write_log(
            log_path,
            shown=shown,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            secrets=secrets,
        )

    log.info(
        "command.finish",
        command=shown,
        exit_code=exit_code,
        duration_ms=duration,
        terminated=terminator.triggered,
    )

    if timed_out:
        raise CommandTimeout(command=shown, timeout_s=float(timeout_s or 0))

    if terminator.triggered and token is not None and token.cancelled:
        raise Cancelled(token.reason)

    result = CommandResult(
        command=shown,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration,
    )
    if check and exit_code != 0:
        raise CommandFailed(
            command=shown, exit_code=exit_code, stderr=redact(stderr, secrets)
        )
    return result
