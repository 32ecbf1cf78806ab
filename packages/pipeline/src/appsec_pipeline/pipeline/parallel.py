from __future__ import annotations

import contextvars
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence

import structlog

from .cancel import CancelToken
from .model import Stage
from .types import ExecutionResult, StageStatus

log = structlog.get_logger(__name__)

RunChild = Callable[[Stage, CancelToken], ExecutionResult]


def run_parallel(
    stages: Sequence[Stage],
    run_child: RunChild,
    *,
    token: CancelToken,
    fail_fast: bool = True,
    max_workers: Optional[int] = None,
    on_fail_fast: Callable[[str], None] | None = None,
) -> dict[str, ExecutionResult]:
    """
    Run `stages` on worker threads and wait for all of them.

    Every child gets the same group token, derived from `token`. With
    `fail_fast`, the first child that ends in `failure` cancels the group
    token: running children have their processes terminated and children
    still queued finish as `aborted` without starting. Results come back in
    declaration order.
    """
    if not stages:
        return {}

    group_token = token.child()
    workers = max_workers or len(stages)
    results: dict[str, ExecutionResult] = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
        futures: dict[Future[ExecutionResult], Stage] = {}
        for st in stages:
            # structlog context vars (run_id, ...) follow the work onto the thread
            ctx = contextvars.copy_context()
            futures[pool.submit(ctx.run, run_child, st, group_token)] = st

        pending = set(futures)
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                st = futures[fut]
                res = fut.result()
                results[st.name] = res

                if (
                    fail_fast
                    and res.status == StageStatus.FAILURE
                    and group_token.cancel(f"fail-fast: stage {st.name!r} failed")
                ):
                    log.warning(
                        "Cancelling parallel siblings",
                        failed=st.name,
                        still_running=len(pending),
                    )
                    if on_fail_fast is not None:
                        on_fail_fast(st.name)

    return {st.name: results[st.name] for st in stages}


def aggregate_status(results: Sequence[ExecutionResult]) -> StageStatus:
    statuses = {r.status for r in results}
    if StageStatus.FAILURE in statuses:
        return StageStatus.FAILURE
    if StageStatus.ABORTED in statuses:
        return StageStatus.ABORTED
    return StageStatus.SUCCESS
