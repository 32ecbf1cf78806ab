from __future__ import annotations

from pathlib import Path

import httpx

from appsec_pipeline.core import (
    REPORT_DIRS,
    ExternalServiceError,
    NoArtifactsFound,
    Settings,
    atomic_write_bytes,
    atomic_write_json,
)
from appsec_pipeline.pipeline.actions import ActionRegistry
from appsec_pipeline.pipeline.context import StageScope
from appsec_pipeline.pipeline.events import EventType
from appsec_pipeline.pipeline.model import AllOf, Call, ParamIs, Stage, Steps

from .client import MobSFClient, make_mobsf_client

REPORT_JSON = "mobsf_report.json"
REPORT_PDF = "mobsf_report.pdf"


def mobsf_stage(settings: Settings) -> Stage:
    """Runs on the APK the Build stage archived; needs `build` on as well."""
    return Stage(
        name="MobSF-Scan",
        when=AllOf(conditions=[ParamIs(name="mobsf_scan"), ParamIs(name="build")]),
        body=Steps(
            steps=[
                Call(
                    action="mobsf.scan",
                    args={"apk_glob": f"{REPORT_DIRS['apk']}/**/*.apk"},
                )
            ]
        ),
    )


def find_apk(report_dir: Path, pattern: str) -> Path:
    matches = sorted(p for p in Path(report_dir).glob(pattern) if p.is_file())
    if not matches:
        raise NoArtifactsFound(pattern=pattern, base=str(report_dir))
    return matches[0]


def mobsf_actions(
    settings: Settings, *, transport: httpx.BaseTransport | None = None
) -> ActionRegistry:
    actions = ActionRegistry()

    @actions.register("mobsf.scan")
    def scan(scope: StageScope, *, apk_glob: str, scan_type: str | None = None) -> str:
        apk = find_apk(scope.ctx.layout.report_dir(), apk_glob)
        kind = scan_type or settings.mobsf_scan_type
        api_key = scope.config.secrets.get("MOBSF_API_KEY")
        out_dir = scope.scratch_dir

        with make_mobsf_client(settings.mobsf_url, api_key, transport=transport) as client:
            mobsf = MobSFClient(client)

            file_hash = mobsf.upload(apk)
            scope.ctx.emit(
                EventType.MOBSF_UPLOAD, stage=scope.stage, file=apk.name, hash=file_hash
            )
            scope.token.raise_if_cancelled()

            result = mobsf.scan(file_hash, scan_type=kind)
            atomic_write_json(out_dir / REPORT_JSON, result)
            scope.ctx.emit(EventType.MOBSF_SCAN, stage=scope.stage, hash=file_hash, scan_type=kind)
            scope.token.raise_if_cancelled()

            # the PDF is a convenience copy of the JSON report
            try:
                atomic_write_bytes(out_dir / REPORT_PDF, mobsf.download_pdf(file_hash))
            except ExternalServiceError as e:
                scope.warn(f"mobsf pdf report unavailable: {e}")
            else:
                scope.ctx.emit(EventType.MOBSF_REPORT, stage=scope.stage, hash=file_hash)

        scope.collect("mobsf_report.*", REPORT_DIRS["mobsf"], base=out_dir)
        return file_hash

    return actions
