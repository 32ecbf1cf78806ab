from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Sequence


class PipelineError(RuntimeError):
    """Base error"""


@dataclass(frozen=True, slots=True)
class StageError:
    """
    A normalized error record for stage failures.
    """

    exc_type: str
    message: str
    traceback: str


def stage_error_from_exc(exc: BaseException) -> StageError:
    return StageError(
        exc_type=type(exc).__name__,
        message=str(exc),
        traceback="".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        ),
    )


class GuardUnresolvable(PipelineError):
    """A guard referenced an env variable or parameter that does not exist"""


class DefinitionError(PipelineError):
    """Invalid pipeline definition (unknown action, bad archive destination, ...)"""


class InternalError(PipelineError):
    """Bugs or invariant violation in our code"""


class Cancelled(PipelineError):
    """Work was interrupted by a cancellation token"""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(f"cancelled: {reason or 'unknown'}")
        self.reason = reason


def _render_command(command: str | Sequence[str]) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(c) for c in command)


class CommandFailed(PipelineError):
    def __init__(
        self, *, command: str | Sequence[str], exit_code: int, stderr: str = ""
    ) -> None:
        msg = f"command exited with {exit_code}: {_render_command(command)}"
        tail = stderr.strip()[-500:]
        if tail:
            msg += f" (stderr: {tail})"
        super().__init__(msg)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class CommandTimeout(PipelineError, TimeoutError):
    def __init__(self, *, command: str | Sequence[str], timeout_s: float) -> None:
        super().__init__(
            f"command timed out after {timeout_s:g} s and was terminated: "
            f"{_render_command(command)}"
        )
        self.command = command
        self.timeout_s = timeout_s


class NoArtifactsFound(PipelineError):
    def __init__(self, *, pattern: str, base: str) -> None:
        super().__init__(f"no files matched {pattern!r} under {base}")
        self.pattern = pattern
        self.base = base


class ArtifactCollisionError(PipelineError):
    """Two stages tried to write the same report file"""


class QualityGateRejected(PipelineError):
    def __init__(self, verdict: str) -> None:
        super().__init__(f"quality gate rejected the analysis (status={verdict})")
        self.verdict = verdict


class QualityGateTimeout(PipelineError, TimeoutError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"no quality gate verdict within {timeout_s:g} s")
        self.timeout_s = timeout_s


class TransientError(PipelineError):
    """
    Retryable failures such as network timeouts, temporary upstream 5xx
    """


class ExternalServiceError(TransientError):
    """Upstream service failure or unusable response"""


class BestEffortFailure(PipelineError):
    """
    Failure of an optional step. Recorded as a warning, never raised out of
    the step that produced it.
    """

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {type(cause).__name__}: {cause}")
        self.step = step
        self.cause = cause
