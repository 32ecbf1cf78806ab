from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Any, Callable, Mapping

import pytest

from appsec_pipeline.core import RunLayout, get_logger
from appsec_pipeline.pipeline import (
    ActionRegistry,
    ArtifactCollector,
    EventSink,
    PipelineConfig,
    RunContext,
)


def _write_script(path: Path, body: str) -> Path:
    """Executable shell script standing in for a build tool."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # a zombie still answers kill(0); its state says otherwise
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            return f.read().split(")")[-1].split()[0] != "Z"
    except OSError:
        return True


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., PipelineConfig]:
    def _make(
        *,
        build_id: str = "b1",
        params: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
        keep_runs: int = 10,
    ) -> PipelineConfig:
        workspace = tmp_path / "ws"
        workspace.mkdir(exist_ok=True)
        return PipelineConfig(
            build_id=build_id,
            workspace=workspace,
            run_root=tmp_path / "_runs",
            report_root=tmp_path / "reports",
            timeout_s=timeout_s,
            keep_runs=keep_runs,
            env=env or {},
            params=params or {},
            secrets=secrets or {},
        )

    return _make


@pytest.fixture
def make_ctx(make_config: Callable[..., PipelineConfig]) -> Callable[..., RunContext]:
    def _make(*, actions: ActionRegistry | None = None, **config_kw: Any) -> RunContext:
        config = make_config(**config_kw)
        layout = RunLayout(
            run_root=config.run_root, report_root=config.report_root, build_id=config.build_id
        )
        layout.ensure_dirs()
        return RunContext(
            config=config,
            layout=layout,
            logger=get_logger("test"),
            events=EventSink(layout.events_jsonl()),
            collector=ArtifactCollector(layout.report_dir()),
            actions=actions or ActionRegistry(),
        )

    return _make


@pytest.fixture
def write_script() -> Callable[[Path, str], Path]:
    return _write_script


@pytest.fixture
def pid_alive() -> Callable[[int], bool]:
    return _pid_alive
