from __future__ import annotations

import os
from typing import Any, Sequence

from appsec_pipeline.core import (
    BestEffortFailure,
    Cancelled,
    CommandFailed,
    CommandTimeout,
    StageError,
    Timer,
    format_duration_ms,
    monotonic_ms,
    stage_error_from_exc,
    utc_now_iso,
)

from .cancel import CancelToken
from .config import PipelineConfig
from .context import RunContext, StageScope
from .events import EventType
from .guards import describe, evaluate
from .model import Archive, Call, Parallel, Post, Sequential, Sh, Stage, Step, Steps
from .parallel import aggregate_status, run_parallel
from .process import merge_env
from .types import ExecutionResult, StageStatus


def _not_run(stage: Stage, status: StageStatus, reason: str) -> ExecutionResult:
    now = utc_now_iso()
    return ExecutionResult(
        stage=stage.name,
        status=status,
        started_at_utc=now,
        finished_at_utc=now,
        duration_ms=0,
        reason=reason,
        children=tuple(
            _not_run(child, status, reason) for child in stage.children()
        ),
    )


def skipped_result(stage: Stage, reason: str) -> ExecutionResult:
    return _not_run(stage, StageStatus.SKIPPED, reason)


def aborted_result(stage: Stage, reason: str) -> ExecutionResult:
    return _not_run(stage, StageStatus.ABORTED, reason)


def result_after(stage: Stage, blocker: ExecutionResult) -> ExecutionResult:
    """Result for a stage that never started because `blocker` stopped the run."""
    if blocker.status == StageStatus.ABORTED:
        return aborted_result(stage, blocker.reason or f"aborted in {blocker.stage!r}")
    return skipped_result(stage, f"earlier failure in {blocker.stage!r}")


def guard_env(ctx: RunContext, config: PipelineConfig) -> dict[str, str]:
    return merge_env(os.environ, ctx.base_env(config))


# --- steps --------------------------------------------------------------------


def run_step(scope: StageScope, step: Step) -> None:
    """
    Execute one step inside `scope`.

    Best-effort steps log and record their failure as a stage warning;
    cancellation always propagates.
    """
    label = step.describe()
    scope.ctx.emit(EventType.STEP_START, stage=scope.stage, step=label, kind=step.kind)

    with Timer() as t:
        try:
            _dispatch(scope, step)

        except Cancelled:
            raise

        except (CommandFailed, CommandTimeout) as e:
            if not (isinstance(step, Sh) and step.best_effort):
                raise
            _best_effort_failed(scope, label, e)

        except Exception as e:
            if not (isinstance(step, Call) and step.best_effort):
                raise
            _best_effort_failed(scope, label, e)

    scope.ctx.emit(
        EventType.STEP_FINISH,
        stage=scope.stage,
        step=label,
        duration_ms=t.duration_ms,
    )


def _dispatch(scope: StageScope, step: Step) -> None:
    if isinstance(step, Sh):
        scope.run(
            step.command,
            workdir=step.workdir,
            env=step.env,
            timeout_s=step.timeout_s,
        )
    elif isinstance(step, Archive):
        scope.collect(
            step.pattern,
            step.dest,
            base=step.base,
            fingerprint=step.fingerprint,
            allow_empty=step.allow_empty,
        )
    elif isinstance(step, Call):
        scope.ctx.actions.invoke(step.action, scope, dict(step.args))
    else:
        raise TypeError(f"Unsupported step: {type(step).__name__}")


def _best_effort_failed(scope: StageScope, label: str, exc: BaseException) -> None:
    failure = BestEffortFailure(label, exc)
    scope.ctx.emit(
        EventType.STEP_BEST_EFFORT_FAILED,
        stage=scope.stage,
        step=label,
        exc_type=type(exc).__name__,
        message=str(exc),
    )
    scope.warn(f"best-effort step failed: {failure}")


def run_post(scope: StageScope, post: Post, outcome: StageStatus) -> list[str]:
    """
    Run teardown steps for `outcome`: `always` first, then `success` or
    `failure` when they match. A failing teardown step is recorded and the
    remaining ones still run; the status itself never changes here.
    """
    steps: list[Step] = list(post.always)
    if outcome == StageStatus.SUCCESS:
        steps.extend(post.success)
    elif outcome == StageStatus.FAILURE:
        steps.extend(post.failure)

    errors: list[str] = []
    for step in steps:
        try:
            run_step(scope, step)
        except Exception as e:
            msg = f"{step.describe()}: {type(e).__name__}: {e}"
            errors.append(msg)
            scope.ctx.emit(
                EventType.TEARDOWN_FAILED,
                stage=scope.stage,
                step=step.describe(),
                exc_type=type(e).__name__,
                message=str(e),
            )
            scope.log.warning("Teardown step failed", step=step.describe(), error=str(e))
    return errors


# --- stages -------------------------------------------------------------------


def _run_children(
    ctx: RunContext,
    stages: Sequence[Stage],
    *,
    token: CancelToken,
    config: PipelineConfig,
) -> list[ExecutionResult]:
    """Sequential children: the first failure skips the rest."""
    results: list[ExecutionResult] = []
    blocked: ExecutionResult | None = None
    for child in stages:
        if blocked is not None:
            results.append(result_after(child, blocked))
            continue
        res = run_stage(ctx, child, token=token, config=config)
        results.append(res)
        if res.status in (StageStatus.FAILURE, StageStatus.ABORTED):
            blocked = res
    return results


def _run_body(scope: StageScope, stage: Stage) -> list[ExecutionResult]:
    body = stage.body
    ctx = scope.ctx

    if isinstance(body, Steps):
        for step in body.steps:
            scope.token.raise_if_cancelled()
            run_step(scope, step)
        return []

    if isinstance(body, Sequential):
        return _run_children(ctx, body.stages, token=scope.token, config=scope.config)

    if isinstance(body, Parallel):
        ctx.emit(
            EventType.PARALLEL_START,
            stage=stage.name,
            children=[s.name for s in body.stages],
            fail_fast=body.fail_fast,
        )

        def _child(child: Stage, tok: CancelToken) -> ExecutionResult:
            return run_stage(ctx, child, token=tok, config=scope.config)

        def _cancelled(failed: str) -> None:
            ctx.emit(EventType.PARALLEL_CANCEL, stage=stage.name, failed=failed)

        by_name = run_parallel(
            body.stages,
            _child,
            token=scope.token,
            fail_fast=body.fail_fast,
            max_workers=body.max_workers,
            on_fail_fast=_cancelled,
        )
        results = list(by_name.values())
        ctx.emit(
            EventType.PARALLEL_FINISH,
            stage=stage.name,
            statuses={k: v.status.value for k, v in by_name.items()},
        )
        return results

    raise TypeError(f"Unsupported body: {type(body).__name__}")


def run_stage(
    ctx: RunContext,
    stage: Stage,
    *,
    token: CancelToken,
    config: PipelineConfig | None = None,
    index: int | None = None,
    total: int | None = None,
) -> ExecutionResult:
    stage_id = stage.name
    config = (config or ctx.config).with_env(stage.env)
    log = ctx.stage_logger(stage_id)
    position = f"{index}/{total}" if index is not None and total is not None else None

    if not evaluate(stage.when, guard_env(ctx, config), config.params):
        reason = f"when: {describe(stage.when)}"
        ctx.emit(EventType.STAGE_SKIPPED, stage=stage_id, reason=reason)
        log.info("Stage skipped", position=position, reason=reason)
        return skipped_result(stage, reason)

    if token.cancelled:
        reason = token.reason or "cancelled"
        ctx.emit(EventType.STAGE_ABORTED, stage=stage_id, reason=reason)
        log.warning("Stage aborted before start", position=position, reason=reason)
        return aborted_result(stage, reason)

    t0 = monotonic_ms()
    started_at = utc_now_iso()
    ctx.emit(EventType.STAGE_START, stage=stage_id)
    log.info("Stage starting", position=position, started_at=started_at)

    scope = StageScope(ctx, stage=stage_id, token=token, config=config).open()
    children: list[ExecutionResult] = []
    err: StageError | None = None
    reason: str | None = None
    teardown_errors: list[str] = []
    status = StageStatus.SUCCESS

    try:
        try:
            children = _run_body(scope, stage)
            if children:
                status = aggregate_status(children)
                if status != StageStatus.SUCCESS:
                    bad = [c.stage for c in children if c.status == status]
                    reason = f"{status.value} in {', '.join(bad)}"
        except Exception as e:
            if isinstance(e, Cancelled) or token.cancelled:
                status = StageStatus.ABORTED
                reason = token.reason or str(e)
            else:
                status = StageStatus.FAILURE
                reason = f"{type(e).__name__}: {e}"
            err = stage_error_from_exc(e)

        # teardown runs even after cancellation, so it gets a fresh token
        scope.token = CancelToken()
        teardown_errors.extend(run_post(scope, stage.post, status))
    finally:
        teardown_errors.extend(scope.close())

    finished_at = utc_now_iso()
    duration = monotonic_ms() - t0
    log_path = ctx.layout.stage_log(stage_id)

    log_fields: dict[str, Any] = {
        "status": status.value,
        "position": position,
        "duration_ms": duration,
        "duration": format_duration_ms(duration),
        "warnings": len(scope.warnings),
        "artifacts": len(scope.artifacts),
    }
    if teardown_errors:
        log_fields["teardown_errors"] = len(teardown_errors)

    if status == StageStatus.SUCCESS:
        ctx.emit(EventType.STAGE_SUCCESS, stage=stage_id, duration_ms=duration)
        log.info("Stage succeeded", **log_fields)
    elif status == StageStatus.ABORTED:
        ctx.emit(EventType.STAGE_ABORTED, stage=stage_id, duration_ms=duration, reason=reason)
        log.warning("Stage aborted", reason=reason, **log_fields)
    else:
        ctx.emit(
            EventType.STAGE_FAILED,
            stage=stage_id,
            duration_ms=duration,
            exc_type=err.exc_type if err else None,
            message=reason,
        )
        log.error("Stage failed", error=reason, **log_fields)
        if err is not None:
            log.debug("Stage traceback", traceback=err.traceback)

    return ExecutionResult(
        stage=stage_id,
        status=status,
        started_at_utc=started_at,
        finished_at_utc=finished_at,
        duration_ms=duration,
        reason=reason,
        log_path=str(log_path) if log_path.exists() else None,
        artifacts=tuple(scope.artifacts),
        warnings=tuple(scope.warnings),
        teardown_errors=tuple(teardown_errors),
        error=err,
        children=tuple(children),
    )
