from __future__ import annotations

import shlex

import httpx

from appsec_pipeline.core import Settings
from appsec_pipeline.core.http import make_http_client
from appsec_pipeline.pipeline.actions import ActionRegistry
from appsec_pipeline.pipeline.context import StageScope
from appsec_pipeline.pipeline.events import EventType
from appsec_pipeline.pipeline.model import Call, ParamIs, Sh, Stage, Steps
from appsec_pipeline.pipeline.quality_gate import wait_for_quality_gate

from .client import SonarClient, read_report_task

SCANNER_WORKDIR = "$STAGE_TMP/scannerwork"


def sonar_scanner_command(settings: Settings) -> str:
    module = settings.app_module
    props = {
        "sonar.projectKey": settings.sonar_project_key,
        "sonar.host.url": settings.sonar_host_url,
        "sonar.sources": f"{module}/src/main",
        "sonar.java.binaries": f"{module}/build/intermediates/javac",
        "sonar.coverage.jacoco.xmlReportPaths": (
            f"{module}/build/reports/jacoco/jacocoTestReport/jacocoTestReport.xml"
        ),
    }
    args = [shlex.quote(settings.sonar_scanner_cmd)]
    args.extend(shlex.quote(f"-D{k}={v}") for k, v in props.items())
    # scratch dir, so report-task.txt is per run
    args.append(f'"-Dsonar.working.directory={SCANNER_WORKDIR}"')
    return " ".join(args)


def static_analysis_stage(settings: Settings) -> Stage:
    return Stage(
        name="Static-Analysis",
        when=ParamIs(name="static_analysis"),
        body=Steps(
            steps=[
                Sh(command=sonar_scanner_command(settings), label="sonar-scanner"),
                Call(
                    action="sonar.quality_gate",
                    args={"report_task": f"{SCANNER_WORKDIR}/report-task.txt"},
                ),
            ]
        ),
    )


def sonar_actions(
    settings: Settings, *, transport: httpx.BaseTransport | None = None
) -> ActionRegistry:
    actions = ActionRegistry()

    @actions.register("sonar.quality_gate")
    def quality_gate(scope: StageScope, *, report_task: str) -> str:
        task = read_report_task(scope.resolve(report_task))
        token = scope.config.secrets.get("SONAR_TOKEN")
        scope.log.info("Waiting for quality gate", task_id=task.task_id, server=task.server_url)

        def _on_poll(attempt: int, verdict: str | None) -> None:
            scope.ctx.emit(
                EventType.QUALITY_GATE_POLL,
                stage=scope.stage,
                attempt=attempt,
                verdict=verdict,
            )

        with make_http_client(
            base_url=task.server_url,
            auth=(token, "") if token else None,
            transport=transport,
        ) as client:
            sonar = SonarClient(client)
            verdict = wait_for_quality_gate(
                lambda: sonar.poll_verdict(task.task_id),
                timeout_s=settings.quality_gate_timeout_s,
                interval_s=settings.quality_gate_interval_s,
                token=scope.token,
                on_poll=_on_poll,
            )

        scope.ctx.emit(
            EventType.QUALITY_GATE_VERDICT,
            stage=scope.stage,
            verdict=verdict,
            dashboard=task.dashboard_url,
        )
        return verdict

    return actions
