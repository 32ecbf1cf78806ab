from __future__ import annotations

from appsec_pipeline.core import REPORT_DIRS, Settings
from appsec_pipeline.pipeline.actions import ActionRegistry
from appsec_pipeline.pipeline.context import StageScope
from appsec_pipeline.pipeline.events import EventType
from appsec_pipeline.pipeline.model import AllOf, Call, ParamIs, Stage, Steps

from ..mobsf.stage import find_apk


def distribution_stage(settings: Settings) -> Stage:
    return Stage(
        name="Distribution-Deploy",
        when=AllOf(conditions=[ParamIs(name="distribution"), ParamIs(name="build")]),
        body=Steps(
            steps=[
                Call(
                    action="distribution.upload",
                    args={"apk_glob": f"{REPORT_DIRS['apk']}/**/*.apk"},
                )
            ]
        ),
    )


def distribution_command(
    settings: Settings, *, apk: str, release_notes: str | None = None
) -> list[str]:
    if not settings.firebase_app_id:
        raise ValueError("distribution requires APPSEC_PIPELINE_FIREBASE_APP_ID")
    cmd = [
        settings.firebase_cmd,
        "appdistribution:distribute",
        apk,
        "--app",
        settings.firebase_app_id,
        "--groups",
        settings.tester_groups,
    ]
    if release_notes:
        cmd.extend(["--release-notes", release_notes])
    return cmd


def distribution_actions(settings: Settings) -> ActionRegistry:
    actions = ActionRegistry()

    @actions.register("distribution.upload")
    def upload(
        scope: StageScope, *, apk_glob: str, release_notes: str | None = None
    ) -> None:
        apk = find_apk(scope.ctx.layout.report_dir(), apk_glob)
        notes = release_notes or f"Build {scope.config.build_id}"
        # FIREBASE_TOKEN reaches the CLI through the secret environment
        scope.run(distribution_command(settings, apk=str(apk), release_notes=notes))
        scope.ctx.emit(
            EventType.DISTRIBUTION_UPLOAD,
            stage=scope.stage,
            file=apk.name,
            groups=settings.tester_groups,
        )

    return actions
