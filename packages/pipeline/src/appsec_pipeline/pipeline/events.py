from __future__ import annotations

import json
import os
import socket
import threading
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from appsec_pipeline.core import utc_now_iso

from .types import Event


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_STATE = "run.state"
    RUN_FINISH = "run.finish"
    RUN_PRUNED = "run.pruned"

    STAGE_START = "stage.start"
    STAGE_SKIPPED = "stage.skipped"
    STAGE_WARN = "stage.warn"
    STAGE_SUCCESS = "stage.success"
    STAGE_FAILED = "stage.failed"
    STAGE_ABORTED = "stage.aborted"

    STEP_START = "step.start"
    STEP_FINISH = "step.finish"
    STEP_BEST_EFFORT_FAILED = "step.best_effort_failed"

    TEARDOWN_FAILED = "teardown.failed"

    PARALLEL_START = "parallel.start"
    PARALLEL_CANCEL = "parallel.cancel"
    PARALLEL_FINISH = "parallel.finish"

    ARTIFACT_WRITTEN = "artifact.written"

    QUALITY_GATE_POLL = "quality_gate.poll"
    QUALITY_GATE_VERDICT = "quality_gate.verdict"

    MOBSF_UPLOAD = "mobsf.upload"
    MOBSF_SCAN = "mobsf.scan"
    MOBSF_REPORT = "mobsf.report"

    DISTRIBUTION_UPLOAD = "distribution.upload"


class EventSink:
    """Append-only JSON-lines event log, safe to share between threads."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        self.emit(
            Event(
                type=EventType.RUN_ENV.value,
                ts_utc=utc_now_iso(),
                run_id="__init__",
                data={
                    "hostname": socket.gethostname(),
                    "pid": os.getpid(),
                    "cwd": str(Path.cwd()),
                },
            )
        )

    def emit(self, event: Event) -> None:
        line = json.dumps(asdict(event), ensure_ascii=False, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")

    def read(self) -> list[dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                return []
            lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(x) for x in lines if x.strip()]

    def close(self) -> None:
        return


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    stage: Optional[str] = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(
        type=type_value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        stage=stage,
        data=dict(data),
    )
