from __future__ import annotations

import shlex

from appsec_pipeline.core import REPORT_DIRS, Settings
from appsec_pipeline.pipeline.model import Archive, ParamIs, Post, Sh, Stage, Steps

SARIF_NAME = "gitleaks.sarif"


def gitleaks_command(settings: Settings) -> str:
    return " ".join(
        [
            shlex.quote(settings.docker_cmd),
            "run --rm",
            '-v "$WORKSPACE":/repo:ro',
            '-v "$STAGE_TMP":/out',
            shlex.quote(settings.gitleaks_image),
            "detect --source /repo",
            "--report-format sarif",
            f"--report-path /out/{SARIF_NAME}",
        ]
    )


def secret_scan_stage(settings: Settings) -> Stage:
    """
    Secret scan. Findings make gitleaks exit non-zero; with
    `gitleaks_best_effort` that only warns.
    """
    return Stage(
        name="Secret-Scan",
        when=ParamIs(name="secret_scan"),
        body=Steps(
            steps=[
                Sh(
                    command=gitleaks_command(settings),
                    label="gitleaks detect",
                    best_effort=settings.gitleaks_best_effort,
                )
            ]
        ),
        post=Post(
            always=[Archive(pattern="*.sarif", dest=REPORT_DIRS["gitleaks"], base="$STAGE_TMP")]
        ),
    )
