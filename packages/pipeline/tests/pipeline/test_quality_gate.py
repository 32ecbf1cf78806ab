from __future__ import annotations

import threading
from typing import Optional

import pytest

from appsec_pipeline.core import Cancelled, QualityGateRejected, QualityGateTimeout
from appsec_pipeline.pipeline import CancelToken, wait_for_quality_gate


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _verdicts(*values: Optional[str]):
    it = iter(values)
    return lambda: next(it)


def test_returns_passing_verdict_after_pending_polls() -> None:
    polls: list[tuple[int, Optional[str]]] = []
    verdict = wait_for_quality_gate(
        _verdicts(None, None, "OK"),
        timeout_s=10,
        interval_s=0.01,
        on_poll=lambda n, v: polls.append((n, v)),
    )
    assert verdict == "OK"
    assert polls == [(1, None), (2, None), (3, "OK")]


def test_negative_verdict_is_rejected() -> None:
    with pytest.raises(QualityGateRejected) as exc:
        wait_for_quality_gate(_verdicts("ERROR"), timeout_s=10)
    assert exc.value.verdict == "ERROR"


def test_times_out_without_verdict() -> None:
    clock = FakeClock()

    def poll() -> Optional[str]:
        clock.now += 4
        return None

    with pytest.raises(QualityGateTimeout):
        wait_for_quality_gate(poll, timeout_s=10, interval_s=0.001, clock=clock)


def test_cancel_interrupts_the_wait() -> None:
    token = CancelToken()
    threading.Timer(0.1, token.cancel, args=("timeout",)).start()
    with pytest.raises(Cancelled):
        wait_for_quality_gate(lambda: None, timeout_s=60, interval_s=30, token=token)
