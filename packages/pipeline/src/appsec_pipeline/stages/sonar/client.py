from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import structlog

from appsec_pipeline.core import ExternalServiceError
from appsec_pipeline.core.http import request_with_retries, response_json

log = structlog.get_logger(__name__)

_PENDING_TASK = {"PENDING", "IN_PROGRESS"}


@dataclass(frozen=True, slots=True)
class ReportTask:
    """What sonar-scanner leaves behind in report-task.txt."""

    project_key: str
    server_url: str
    task_id: str
    dashboard_url: Optional[str] = None


def read_report_task(path: Path) -> ReportTask:
    path = Path(path)
    if not path.is_file():
        raise ExternalServiceError(f"sonar-scanner wrote no report task file at {path}")

    props: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        k, v = line.split("=", 1)
        props[k.strip()] = v.strip()

    missing = [k for k in ("projectKey", "serverUrl", "ceTaskId") if not props.get(k)]
    if missing:
        raise ExternalServiceError(f"{path.name} is missing {missing}")

    return ReportTask(
        project_key=props["projectKey"],
        server_url=props["serverUrl"],
        task_id=props["ceTaskId"],
        dashboard_url=props.get("dashboardUrl"),
    )


class SonarClient:
    """
    Minimal SonarQube web API client: background task status and the
    quality gate verdict of a finished analysis.
    """

    def __init__(self, client: httpx.Client, *, max_attempts: int = 3) -> None:
        self.client = client
        self.max_attempts = max_attempts

    def _get(self, url: str, *, params: dict[str, str], what: str) -> dict:
        resp = request_with_retries(
            self.client,
            method="GET",
            url=url,
            params=params,
            max_attempts=self.max_attempts,
        )
        return response_json(resp, what=what)

    def task_status(self, task_id: str) -> tuple[str, Optional[str]]:
        """Returns (status, analysis id); the id is set once the task succeeded."""
        obj = self._get("/api/ce/task", params={"id": task_id}, what="sonar task")
        task = obj.get("task")
        if not isinstance(task, dict) or "status" not in task:
            raise ExternalServiceError("sonar task: response has no task status")
        return str(task["status"]), task.get("analysisId")

    def quality_gate_status(self, analysis_id: str) -> str:
        obj = self._get(
            "/api/qualitygates/project_status",
            params={"analysisId": analysis_id},
            what="sonar quality gate",
        )
        status = (obj.get("projectStatus") or {}).get("status")
        if not status:
            raise ExternalServiceError("sonar quality gate: response has no projectStatus.status")
        return str(status)

    def poll_verdict(self, task_id: str) -> Optional[str]:
        """None while the analysis is still queued or running."""
        status, analysis_id = self.task_status(task_id)
        if status in _PENDING_TASK:
            return None
        if status != "SUCCESS" or not analysis_id:
            raise ExternalServiceError(f"sonar analysis task {task_id} ended {status}")
        return self.quality_gate_status(analysis_id)
