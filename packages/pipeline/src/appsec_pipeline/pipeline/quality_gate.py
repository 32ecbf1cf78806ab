from __future__ import annotations

import time
from typing import Callable, Collection, Optional

import structlog

from appsec_pipeline.core import Cancelled, QualityGateRejected, QualityGateTimeout

from .cancel import CancelToken

log = structlog.get_logger(__name__)

# Returns the verdict once available, None while the analysis is pending.
VerdictPoll = Callable[[], Optional[str]]


def wait_for_quality_gate(
    poll: VerdictPoll,
    *,
    timeout_s: float,
    interval_s: float = 5.0,
    token: CancelToken | None = None,
    passing: Collection[str] = ("OK",),
    clock: Callable[[], float] = time.monotonic,
    on_poll: Callable[[int, Optional[str]], None] | None = None,
) -> str:
    """
    Block until the analysis service hands down a verdict.

    Returns the passing verdict. Raises QualityGateRejected for any other
    verdict, QualityGateTimeout when `timeout_s` elapses first and Cancelled
    when `token` is cancelled while waiting.
    """
    deadline = clock() + timeout_s
    attempt = 0

    while True:
        if token is not None:
            token.raise_if_cancelled()

        attempt += 1
        verdict = poll()
        if on_poll is not None:
            on_poll(attempt, verdict)

        if verdict is not None:
            log.info("quality_gate.verdict", verdict=verdict, polls=attempt)
            if verdict in passing:
                return verdict
            raise QualityGateRejected(verdict)

        remaining = deadline - clock()
        if remaining <= 0:
            raise QualityGateTimeout(timeout_s)

        pause = min(interval_s, remaining)
        if token is not None:
            if token.wait(pause):
                raise Cancelled(token.reason)
        else:
            time.sleep(pause)
