from __future__ import annotations

from pathlib import Path

import pytest

from appsec_pipeline.core import Settings


def test_settings_read_prefixed_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APPSEC_PIPELINE_KEEP_RUNS", "3")
    monkeypatch.setenv("APPSEC_PIPELINE_GRADLE_CMD", "gradle")
    monkeypatch.setenv("APPSEC_PIPELINE_SONAR_TOKEN", "s3cret")

    s = Settings()

    assert s.keep_runs == 3
    assert s.gradle_cmd == "gradle"
    assert "s3cret" not in repr(s)
    assert s.secret_env() == {"SONAR_TOKEN": "s3cret"}


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    s = Settings()
    assert s.timeout_minutes == 60
    assert s.gitleaks_best_effort is True
    assert s.secret_env() == {}
