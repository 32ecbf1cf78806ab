from __future__ import annotations

import threading
from dataclasses import asdict
from typing import Any

from appsec_pipeline.core import (
    DefinitionError,
    ILogger,
    InternalError,
    RunLayout,
    RunProvenance,
    atomic_write_json,
    configure_logging,
    format_duration_ms,
    get_logger,
    monotonic_ms,
    prune_dirs,
    remove_tree,
    utc_now_iso,
)

from .actions import ActionRegistry
from .artifacts import ArtifactCollector
from .cancel import CancelToken
from .config import PipelineConfig
from .context import RunContext, StageScope
from .events import EventSink, EventType
from .model import Call, PipelineDefinition, Post, Step, Steps
from .report import RunReport, first_failure, summarize
from .stage import result_after, run_post, run_stage
from .types import ExecutionResult, PipelineState, StageStatus

TIMEOUT_REASON = "timeout"
# stage names start with a letter or digit, so no stage can claim this scope
PIPELINE_POST_SCOPE = "_post"

_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.PENDING: {PipelineState.RUNNING},
    PipelineState.RUNNING: {
        PipelineState.SUCCEEDED,
        PipelineState.FAILED,
        PipelineState.ABORTED,
    },
}

_POST_OUTCOME = {
    PipelineState.SUCCEEDED: StageStatus.SUCCESS,
    PipelineState.FAILED: StageStatus.FAILURE,
    PipelineState.ABORTED: StageStatus.ABORTED,
}


def default_logger() -> ILogger:
    configure_logging()
    return get_logger("pipeline")


def _post_steps(post: Post) -> list[Step]:
    return [*post.always, *post.success, *post.failure]


def iter_calls(definition: PipelineDefinition) -> list[Call]:
    steps = _post_steps(definition.post)
    for st in definition.walk():
        steps.extend(_post_steps(st.post))
        if isinstance(st.body, Steps):
            steps.extend(st.body.steps)
    return [s for s in steps if isinstance(s, Call)]


def validate_actions(definition: PipelineDefinition, actions: ActionRegistry) -> None:
    missing = sorted({c.action for c in iter_calls(definition) if c.action not in actions})
    if missing:
        raise DefinitionError(f"definition calls unregistered action(s): {missing}")


class PipelineRunner:
    """
    Drives one run of a pipeline definition.

    States: pending -> running -> succeeded | failed | aborted. A runner is
    single use; `cancel()` may be called from any thread (signal handlers
    included) and aborts the run.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        actions: ActionRegistry | None = None,
        logger: ILogger | None = None,
    ) -> None:
        self.definition = definition
        self.actions = actions or ActionRegistry()
        self.logger: ILogger = logger or default_logger()
        self.token = CancelToken()
        self._state = PipelineState.PENDING
        self._state_lock = threading.Lock()

        validate_actions(definition, self.actions)

    @property
    def state(self) -> PipelineState:
        return self._state

    def _transition(self, new: PipelineState, ctx: RunContext | None = None) -> None:
        with self._state_lock:
            old = self._state
            if new not in _TRANSITIONS.get(old, set()):
                raise InternalError(f"invalid pipeline transition {old.value} -> {new.value}")
            self._state = new
        if ctx is not None:
            ctx.emit(EventType.RUN_STATE, old=old.value, new=new.value)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._state.terminal:
            return
        self.token.cancel(reason)

    def run(self, config: PipelineConfig, *, meta: dict[str, Any] | None = None) -> RunReport:
        """
        Execute every top-level stage in order and write, under the run dir:
          - events.jsonl
          - artifacts.json
          - run_report.json
        plus sha256sums.txt in the build's report dir.
        """
        self._transition(PipelineState.RUNNING)
        started_at = utc_now_iso()
        t0 = monotonic_ms()
        provenance = RunProvenance(build_id=config.build_id, started_at_utc=started_at)
        meta = {**(meta or {}), "provenance": provenance.to_dict()}

        layout = RunLayout(
            run_root=config.run_root, report_root=config.report_root, build_id=config.build_id
        )
        layout.ensure_dirs()
        sink = EventSink(layout.events_jsonl())
        logger = self.logger.bind(run_id=config.build_id)
        ctx = RunContext(
            config=config,
            layout=layout,
            logger=logger,
            events=sink,
            collector=ArtifactCollector(layout.report_dir()),
            actions=self.actions,
            meta=meta,
        )

        stages = self.definition.stages

        logger.info(
            "Pipeline starting",
            pipeline=self.definition.name,
            stages=[s.name for s in stages],
            params=dict(config.params),
            timeout_s=config.timeout_s,
            run_dir=str(layout.run_dir()),
            report_dir=str(layout.report_dir()),
        )
        ctx.emit(
            EventType.RUN_START,
            pipeline=self.definition.name,
            config=config.to_dict(),
            meta=meta,
        )
        ctx.emit(EventType.RUN_STATE, old=PipelineState.PENDING.value, new=PipelineState.RUNNING.value)

        timer: threading.Timer | None = None
        if config.timeout_s is not None:
            timer = threading.Timer(config.timeout_s, self.token.cancel, args=(TIMEOUT_REASON,))
            timer.daemon = True
            timer.start()

        results: list[ExecutionResult] = []
        try:
            blocker: ExecutionResult | None = None
            total = len(stages)
            for idx, st in enumerate(stages, start=1):
                if blocker is not None:
                    results.append(result_after(st, blocker))
                    continue
                res = run_stage(ctx, st, token=self.token, index=idx, total=total)
                results.append(res)
                if res.status in (StageStatus.FAILURE, StageStatus.ABORTED):
                    logger.error("Stopping pipeline", stage=st.name, status=res.status.value)
                    blocker = res
        finally:
            if timer is not None:
                timer.cancel()

        state, cause, failed = self._outcome(results)
        self._transition(state, ctx)

        teardown_errors = self._teardown(ctx, state)

        fingerprints = ctx.collector.write_fingerprints(layout.sha256sums_txt())
        artifacts = ctx.collector.collected()
        atomic_write_json(layout.artifacts_json(), [asdict(a) for a in artifacts])

        finished_at = utc_now_iso()
        duration = monotonic_ms() - t0
        summary = summarize(
            pipeline=self.definition.name,
            state=state,
            duration_ms=duration,
            cause=cause,
            failed=failed,
        )

        report = RunReport(
            run_id=config.build_id,
            pipeline=self.definition.name,
            state=state,
            started_at_utc=started_at,
            finished_at_utc=finished_at,
            duration_ms=duration,
            summary=summary,
            cause=cause,
            stages=results,
            artifacts=artifacts,
            teardown_errors=teardown_errors,
            params=dict(config.params),
            events_jsonl=str(layout.events_jsonl()),
            meta=meta,
        )
        report.write_json(layout.run_report_json())

        ctx.emit(
            EventType.RUN_FINISH,
            state=state.value,
            cause=cause,
            duration_ms=duration,
            report_json=str(layout.run_report_json()),
            fingerprints=fingerprints,
        )
        self._prune(ctx)
        sink.close()

        log_fields: dict[str, Any] = {
            "state": state.value,
            "duration_ms": duration,
            "duration": format_duration_ms(duration),
            "report": str(layout.run_report_json()),
            "artifacts": len(artifacts),
        }
        if cause:
            log_fields["cause"] = cause
        if state == PipelineState.SUCCEEDED:
            logger.info(summary, **log_fields)
        else:
            logger.error(summary, **log_fields)
        for msg in teardown_errors:
            logger.warning("Pipeline teardown failed", error=msg)

        return report

    def _outcome(
        self, results: list[ExecutionResult]
    ) -> tuple[PipelineState, str | None, ExecutionResult | None]:
        if self.token.cancelled:
            reason = self.token.reason or "cancelled"
            cause = "Timeout" if reason == TIMEOUT_REASON else f"Cancelled: {reason}"
            return PipelineState.ABORTED, cause, None

        failed = first_failure(results)
        if failed is not None:
            cause = failed.error.exc_type if failed.error else "StageFailed"
            return PipelineState.FAILED, cause, failed

        if any(r.status == StageStatus.ABORTED for r in results):
            return PipelineState.ABORTED, "Cancelled", None

        return PipelineState.SUCCEEDED, None, None

    def _teardown(self, ctx: RunContext, state: PipelineState) -> list[str]:
        post = self.definition.post
        if post.is_empty():
            return []
        scope = StageScope(ctx, stage=PIPELINE_POST_SCOPE, token=CancelToken()).open()
        errors: list[str] = []
        try:
            errors.extend(run_post(scope, post, _POST_OUTCOME[state]))
        finally:
            errors.extend(scope.close())
        return errors

    def _prune(self, ctx: RunContext) -> None:
        # only directories holding a run report are ours to delete
        removed = prune_dirs(
            ctx.config.run_root,
            keep=max(ctx.config.keep_runs - 1, 0),
            exclude=[ctx.config.build_id],
            marker="run_report.json",
        )
        for run_dir in removed:
            remove_tree(ctx.config.report_root / run_dir.name)
        if removed:
            ctx.emit(EventType.RUN_PRUNED, removed=[str(p) for p in removed])
            ctx.logger.info("Old runs pruned", removed=len(removed), keep=ctx.config.keep_runs)
