from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import httpx
import pytest

from appsec_pipeline.core import ExternalServiceError, NoArtifactsFound, Settings
from appsec_pipeline.pipeline import CancelToken, RunContext, StageStatus, run_stage
from appsec_pipeline.stages.mobsf import MobSFClient, find_apk, mobsf_actions, mobsf_stage


def _mobsf_transport(seen: list[httpx.Request], *, pdf_status: int = 200, upload_body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        if path == "/api/v1/upload":
            assert b'filename="app-debug.apk"' in request.content
            return httpx.Response(200, json=upload_body if upload_body is not None else {"hash": "f00d"})
        if path == "/api/v1/scan":
            body = json.loads(request.content)
            assert body == {"scan_type": "apk", "hash": "f00d"}
            return httpx.Response(200, json={"app_name": "demo", "security_score": 71})
        if path == "/api/v1/download_pdf":
            assert json.loads(request.content) == {"hash": "f00d"}
            if pdf_status != 200:
                return httpx.Response(pdf_status, text="no pdf")
            return httpx.Response(200, content=b"%PDF-1.4 fake")
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def _ctx_with_apk(make_ctx: Callable[..., RunContext], **kw) -> RunContext:
    ctx = make_ctx(params={"mobsf_scan": True, "build": True}, **kw)
    out = ctx.config.workspace / "app" / "build" / "outputs" / "apk" / "debug"
    out.mkdir(parents=True)
    (out / "app-debug.apk").write_bytes(b"PK\x03\x04apk")
    ctx.collector.collect(
        "**/*.apk", "apk", base=out.parent, stage="Build"
    )
    return ctx


def test_scan_uploads_scans_and_collects_reports(make_ctx: Callable[..., RunContext]) -> None:
    seen: list[httpx.Request] = []
    settings = Settings(mobsf_url="http://mobsf.test")
    ctx = _ctx_with_apk(
        make_ctx,
        actions=mobsf_actions(settings, transport=_mobsf_transport(seen)),
        secrets={"MOBSF_API_KEY": "k3y"},
    )

    res = run_stage(ctx, mobsf_stage(settings), token=CancelToken())

    assert res.status == StageStatus.SUCCESS, res.reason
    assert [r.url.path for r in seen] == ["/api/v1/upload", "/api/v1/scan", "/api/v1/download_pdf"]
    assert all(r.headers["Authorization"] == "k3y" for r in seen)
    assert sorted(a.path for a in res.artifacts) == [
        "mobsf/mobsf_report.json",
        "mobsf/mobsf_report.pdf",
    ]
    report = json.loads((ctx.layout.report_dir() / "mobsf" / "mobsf_report.json").read_text())
    assert report["security_score"] == 71


def test_pdf_failure_is_only_a_warning(make_ctx: Callable[..., RunContext]) -> None:
    settings = Settings(mobsf_url="http://mobsf.test")
    ctx = _ctx_with_apk(
        make_ctx,
        actions=mobsf_actions(settings, transport=_mobsf_transport([], pdf_status=404)),
    )

    res = run_stage(ctx, mobsf_stage(settings), token=CancelToken())

    assert res.status == StageStatus.SUCCESS
    assert len(res.warnings) == 1 and "pdf" in res.warnings[0]
    assert [a.path for a in res.artifacts] == ["mobsf/mobsf_report.json"]


def test_missing_hash_fails_the_stage(make_ctx: Callable[..., RunContext]) -> None:
    settings = Settings(mobsf_url="http://mobsf.test")
    ctx = _ctx_with_apk(
        make_ctx,
        actions=mobsf_actions(settings, transport=_mobsf_transport([], upload_body={"status": "ok"})),
    )

    res = run_stage(ctx, mobsf_stage(settings), token=CancelToken())

    assert res.status == StageStatus.FAILURE
    assert res.error.exc_type == "ExternalServiceError"


def test_client_rejects_non_json(tmp_path: Path) -> None:
    apk = tmp_path / "app-debug.apk"
    apk.write_bytes(b"x")
    transport = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>"))
    with httpx.Client(base_url="http://mobsf.test", transport=transport) as client:
        with pytest.raises(ExternalServiceError):
            MobSFClient(client).upload(apk)


def test_find_apk_requires_a_match(tmp_path: Path) -> None:
    with pytest.raises(NoArtifactsFound):
        find_apk(tmp_path, "apk/**/*.apk")
