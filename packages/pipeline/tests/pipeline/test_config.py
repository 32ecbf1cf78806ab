from __future__ import annotations

from pathlib import Path

import pytest

from appsec_pipeline.core import DefinitionError, Settings
from appsec_pipeline.pipeline import (
    BooleanParameter,
    PipelineConfig,
    PipelineDefinition,
    PipelineOptions,
    Stage,
    build_config,
    resolve_params,
)


def _definition(**options) -> PipelineDefinition:
    return PipelineDefinition(
        name="demo",
        parameters={"release": BooleanParameter(), "tests": BooleanParameter(default=True)},
        environment={"APP": "demo", "CHANNEL": "nightly"},
        options=PipelineOptions(**options),
        stages=[Stage(name="A")],
    )


def test_resolve_params_overlays_defaults() -> None:
    assert resolve_params(_definition(), {"release": True}) == {"release": True, "tests": True}
    with pytest.raises(DefinitionError):
        resolve_params(_definition(), {"unknown": True})


def test_build_config_precedence(tmp_path: Path) -> None:
    settings = Settings(
        workspace=tmp_path, run_root=tmp_path / "_runs", timeout_minutes=2, keep_runs=4,
        sonar_token="tok",
    )

    cfg = build_config(_definition(), settings, env={"CHANNEL": "beta"}, build_id="b7")
    assert cfg.timeout_s == 120
    assert cfg.keep_runs == 4
    assert dict(cfg.env) == {"APP": "demo", "CHANNEL": "beta"}
    assert cfg.secrets["SONAR_TOKEN"] == "tok"
    assert cfg.to_dict()["secrets"] == ["SONAR_TOKEN"]
    assert "tok" not in repr(cfg)

    cfg = build_config(_definition(timeout_s=30, keep_runs=1), settings)
    assert cfg.timeout_s == 30 and cfg.keep_runs == 1
    assert len(cfg.build_id) == 32


def test_config_is_immutable_and_overlays_derive(tmp_path: Path) -> None:
    cfg = PipelineConfig(
        build_id="b1",
        workspace=tmp_path,
        run_root=tmp_path,
        report_root=tmp_path,
        env={"A": "1"},
    )
    with pytest.raises(TypeError):
        cfg.env["A"] = "2"  # type: ignore[index]

    child = cfg.with_env({"A": "2", "B": "3"})
    assert dict(child.env) == {"A": "2", "B": "3"}
    assert dict(cfg.env) == {"A": "1"}
    assert cfg.with_env({}) is cfg
