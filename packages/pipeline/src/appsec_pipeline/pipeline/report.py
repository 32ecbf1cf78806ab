from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from appsec_pipeline.core import atomic_write_json, format_duration_ms

from .types import ArtifactRef, ExecutionResult, PipelineState, StageStatus


@dataclass(slots=True)
class RunReport:
    run_id: str
    pipeline: str
    state: PipelineState
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int
    summary: str

    cause: Optional[str] = None
    stages: list[ExecutionResult] = field(default_factory=list)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    teardown_errors: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    events_jsonl: Optional[str] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.state)

    def result(self, stage: str) -> Optional[ExecutionResult]:
        for top in self.stages:
            found = top.find(stage)
            if found is not None:
                return found
        return None

    def ran(self) -> list[str]:
        """Leaf stages that actually executed, in completion-independent tree order."""
        out: list[str] = []
        for top in self.stages:
            for r in top.walk():
                if not r.children and r.status in (StageStatus.SUCCESS, StageStatus.FAILURE):
                    out.append(r.stage)
        return out

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())


def exit_code_for(state: PipelineState) -> int:
    if state == PipelineState.SUCCEEDED:
        return 0
    if state == PipelineState.ABORTED:
        return 2
    return 1


def first_failure(results: list[ExecutionResult]) -> Optional[ExecutionResult]:
    """Deepest failed stage on the first failing branch."""
    for top in results:
        if top.status != StageStatus.FAILURE:
            continue
        for child in top.children:
            if child.status == StageStatus.FAILURE:
                return first_failure([child]) or child
        return top
    return None


def summarize(
    *,
    pipeline: str,
    state: PipelineState,
    duration_ms: int,
    cause: str | None,
    failed: ExecutionResult | None,
) -> str:
    head = f"Pipeline {pipeline!r} {state.value.upper()} after {format_duration_ms(duration_ms)}"
    if state == PipelineState.SUCCEEDED:
        return head
    if failed is not None:
        return f"{head}: stage {failed.stage!r} failed: {failed.reason}"
    if cause:
        return f"{head}: {cause}"
    return head
