from __future__ import annotations

import shlex

from appsec_pipeline.core import REPORT_DIRS, Settings
from appsec_pipeline.pipeline.model import Archive, ParamIs, Post, Sh, Stage, Steps


def dependency_check_command(settings: Settings, *, project: str) -> str:
    """
    OWASP dependency-check in a throwaway container. The workspace is mounted
    read-only; the HTML report lands in the stage scratch dir.
    """
    return " ".join(
        [
            shlex.quote(settings.docker_cmd),
            "run --rm",
            '-v "$WORKSPACE":/src:ro',
            '-v "$STAGE_TMP":/report',
            shlex.quote(settings.dependency_check_image),
            "--scan /src",
            "--format HTML",
            "--out /report",
            f"--project {shlex.quote(project)}",
        ]
    )


def dependency_check_stage(settings: Settings, *, project: str = "android-app") -> Stage:
    return Stage(
        name="Dependency-Check",
        when=ParamIs(name="dependency_check"),
        body=Steps(
            steps=[
                Sh(
                    command=dependency_check_command(settings, project=project),
                    label="dependency-check scan",
                )
            ]
        ),
        post=Post(
            always=[
                Archive(
                    pattern="*.html",
                    dest=REPORT_DIRS["dependency_check"],
                    base="$STAGE_TMP",
                )
            ]
        ),
    )
