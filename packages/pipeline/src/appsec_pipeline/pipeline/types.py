from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Optional

from appsec_pipeline.core import StageError


class StageStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class PipelineState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (
            PipelineState.SUCCEEDED,
            PipelineState.FAILED,
            PipelineState.ABORTED,
        )


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    """
    A file copied into the report directory by a stage.
    """

    path: str
    bytes: int
    stage: str
    sha256: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Event:
    """
    Structured event emitted by the pipeline.
    """

    type: str
    ts_utc: str
    run_id: str
    stage: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    stage: str
    status: StageStatus
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    reason: Optional[str] = None
    log_path: Optional[str] = None
    artifacts: tuple[ArtifactRef, ...] = ()
    warnings: tuple[str, ...] = ()
    teardown_errors: tuple[str, ...] = ()
    error: Optional[StageError] = None
    children: tuple[ExecutionResult, ...] = ()

    def walk(self):
        yield self
        for c in self.children:
            yield from c.walk()

    def find(self, stage: str) -> Optional["ExecutionResult"]:
        for r in self.walk():
            if r.stage == stage:
                return r
        return None
