from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from appsec_pipeline.core import DefinitionError, InternalError, QualityGateRejected, get_logger
from appsec_pipeline.pipeline import (
    ActionRegistry,
    Archive,
    Call,
    EnvEquals,
    PipelineConfig,
    PipelineDefinition,
    PipelineRunner,
    PipelineState,
    Post,
    Sequential,
    Sh,
    Stage,
    StageStatus,
    Steps,
)

MakeConfig = Callable[..., PipelineConfig]


def _runner(definition: PipelineDefinition, actions: ActionRegistry | None = None) -> PipelineRunner:
    return PipelineRunner(definition, actions=actions, logger=get_logger("test"))


def _stage(name: str, *commands: str, post: Post | None = None) -> Stage:
    return Stage(
        name=name,
        body=Steps(steps=[Sh(command=c) for c in commands]),
        post=post or Post(),
    )


def test_successful_run_writes_report_events_and_artifacts(make_config: MakeConfig) -> None:
    config = make_config()
    definition = PipelineDefinition(
        name="demo",
        stages=[
            _stage(
                "Build",
                'mkdir -p out && echo "$BUILD_ID" > out/app.apk',
                post=Post(success=[Archive(pattern="*.apk", dest="apk", base="out")]),
            )
        ],
    )

    report = _runner(definition).run(config)

    assert report.state == PipelineState.SUCCEEDED
    assert report.exit_code == 0
    assert report.cause is None
    assert [a.path for a in report.artifacts] == ["apk/app.apk"]
    assert (config.report_root / "b1" / "apk" / "app.apk").read_text().strip() == "b1"
    assert (config.report_root / "b1" / "sha256sums.txt").is_file()

    on_disk = json.loads((config.run_root / "b1" / "run_report.json").read_text())
    assert on_disk["state"] == "succeeded"
    assert on_disk["stages"][0]["status"] == "success"

    events = [
        json.loads(line)["type"]
        for line in (config.run_root / "b1" / "events.jsonl").read_text().splitlines()
    ]
    assert events.index("run.start") < events.index("stage.start") < events.index("run.finish")
    assert "artifact.written" in events


def test_first_failure_skips_the_rest(make_config: MakeConfig) -> None:
    config = make_config()
    marker = config.workspace / "third-ran"
    definition = PipelineDefinition(
        name="demo",
        stages=[
            _stage("One", "true"),
            _stage("Two", "echo nope >&2; exit 2"),
            _stage("Three", f"touch {marker}"),
        ],
    )

    report = _runner(definition).run(config)

    assert report.state == PipelineState.FAILED
    assert report.exit_code == 1
    assert report.cause == "CommandFailed"
    assert "stage 'Two' failed" in report.summary
    assert report.result("Three").status == StageStatus.SKIPPED
    assert report.result("Three").reason == "earlier failure in 'Two'"
    assert report.ran() == ["One", "Two"]
    assert not marker.exists()
    assert report.result("Two").log_path is not None
    assert "nope" in Path(report.result("Two").log_path).read_text()


def test_global_timeout_aborts_without_orphans(
    make_config: MakeConfig, pid_alive: Callable[[int], bool]
) -> None:
    config = make_config(timeout_s=0.5)
    pid_file = config.workspace / "child.pid"
    definition = PipelineDefinition(
        name="demo",
        stages=[
            _stage("Hang", f"sleep 30 & echo $! > {pid_file}; wait"),
            _stage("After", "true"),
        ],
    )

    t0 = time.monotonic()
    report = _runner(definition).run(config)

    assert time.monotonic() - t0 < 10
    assert report.state == PipelineState.ABORTED
    assert report.exit_code == 2
    assert report.cause == "Timeout"
    assert report.result("Hang").status == StageStatus.ABORTED
    assert report.result("After").status == StageStatus.ABORTED

    child = int(pid_file.read_text().strip())
    deadline = time.monotonic() + 5
    while pid_alive(child) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not pid_alive(child)


def test_external_cancel_aborts(make_config: MakeConfig) -> None:
    config = make_config()
    runner = _runner(PipelineDefinition(name="demo", stages=[_stage("Hang", "sleep 30")]))
    threading.Timer(0.3, runner.cancel, args=("signal SIGINT",)).start()

    report = runner.run(config)

    assert report.state == PipelineState.ABORTED
    assert report.cause == "Cancelled: signal SIGINT"


def test_teardown_failures_are_recorded_not_fatal(make_config: MakeConfig) -> None:
    config = make_config()
    order = config.workspace / "order.txt"
    definition = PipelineDefinition(
        name="demo",
        stages=[
            _stage(
                "Work",
                f"echo body >> {order}",
                post=Post(
                    always=[Sh(command=f"echo always >> {order}"), Sh(command="exit 5")],
                    success=[Sh(command=f"echo success >> {order}")],
                    failure=[Sh(command=f"echo failure >> {order}")],
                ),
            )
        ],
        post=Post(always=[Sh(command=f"echo pipeline >> {order}")]),
    )

    report = _runner(definition).run(config)

    assert report.state == PipelineState.SUCCEEDED
    work = report.result("Work")
    assert work.status == StageStatus.SUCCESS
    assert len(work.teardown_errors) == 1 and "exit 5" in work.teardown_errors[0]
    assert order.read_text().split() == ["body", "always", "success", "pipeline"]


def test_stage_scratch_dir_is_exported_and_removed(make_config: MakeConfig) -> None:
    config = make_config()
    seen = config.workspace / "tmp-path.txt"
    definition = PipelineDefinition(
        name="demo",
        stages=[_stage("Scratch", f'touch "$STAGE_TMP/x" && echo "$STAGE_TMP" > {seen}')],
    )

    report = _runner(definition).run(config)

    assert report.state == PipelineState.SUCCEEDED
    scratch = Path(seen.read_text().strip())
    assert scratch.name.startswith("Scratch.")
    assert not scratch.exists()


def test_best_effort_step_only_warns(make_config: MakeConfig) -> None:
    config = make_config()
    definition = PipelineDefinition(
        name="demo",
        stages=[
            Stage(
                name="Scan",
                body=Steps(
                    steps=[Sh(command="exit 1", label="scanner", best_effort=True), Sh(command="true")]
                ),
            )
        ],
    )

    report = _runner(definition).run(config)

    scan = report.result("Scan")
    assert scan.status == StageStatus.SUCCESS
    assert len(scan.warnings) == 1 and "scanner" in scan.warnings[0]
    assert report.state == PipelineState.SUCCEEDED


def test_quality_gate_rejection_is_the_cause(make_config: MakeConfig) -> None:
    actions = ActionRegistry()

    @actions.register("gate")
    def gate(scope) -> None:
        raise QualityGateRejected("ERROR")

    definition = PipelineDefinition(
        name="demo",
        stages=[Stage(name="Static-Analysis", body=Steps(steps=[Call(action="gate")]))],
    )

    report = _runner(definition, actions).run(make_config())

    assert report.state == PipelineState.FAILED
    assert report.cause == "QualityGateRejected"
    assert report.result("Static-Analysis").error.message.endswith("(status=ERROR)")


def test_secrets_are_injected_and_redacted(make_config: MakeConfig) -> None:
    config = make_config(secrets={"SONAR_TOKEN": "t0ps3cret"})
    definition = PipelineDefinition(
        name="demo", stages=[_stage("Echo", 'echo "using $SONAR_TOKEN"')]
    )

    report = _runner(definition).run(config)

    log_text = Path(report.result("Echo").log_path).read_text()
    assert "using ****" in log_text
    assert "t0ps3cret" not in log_text
    assert "t0ps3cret" not in (config.run_root / "b1" / "run_report.json").read_text()


def test_unregistered_action_is_rejected_up_front() -> None:
    definition = PipelineDefinition(
        name="demo", stages=[Stage(name="A", body=Steps(steps=[Call(action="missing")]))]
    )
    with pytest.raises(DefinitionError):
        _runner(definition)


def test_runner_is_single_use(make_config: MakeConfig) -> None:
    runner = _runner(PipelineDefinition(name="demo", stages=[_stage("A", "true")]))
    runner.run(make_config())
    with pytest.raises(InternalError):
        runner.run(make_config(build_id="b2"))


def test_old_runs_are_pruned(make_config: MakeConfig) -> None:
    definition = PipelineDefinition(name="demo", stages=[_stage("A", "true")])
    for i in range(4):
        config = make_config(build_id=f"run{i}", keep_runs=2)
        _runner(definition).run(config)
        time.sleep(0.02)

    assert sorted(p.name for p in config.run_root.iterdir()) == ["run2", "run3"]
    assert sorted(p.name for p in config.report_root.iterdir()) == ["run2", "run3"]


def test_stage_env_overlays_are_scoped_child_configs(make_config: MakeConfig) -> None:
    seen: dict[str, dict[str, str]] = {}
    actions = ActionRegistry()

    @actions.register("record")
    def _record(scope, *, key: str) -> None:
        seen[key] = dict(scope.config.env)

    definition = PipelineDefinition(
        name="demo",
        environment={"CHANNEL": "nightly"},
        stages=[
            Stage(
                name="Outer",
                env={"CHANNEL": "beta", "OUTER": "1"},
                body=Sequential(
                    stages=[
                        Stage(
                            name="Inner",
                            env={"INNER": "1"},
                            when=EnvEquals(name="CHANNEL", value="beta"),
                            body=Steps(
                                steps=[
                                    Call(action="record", args={"key": "inner"}),
                                    Sh(command='echo "$CHANNEL $OUTER $INNER" > inner.txt'),
                                ]
                            ),
                        )
                    ]
                ),
            ),
            Stage(name="After", body=Steps(steps=[Call(action="record", args={"key": "after"})])),
        ],
    )
    config = make_config(env={"CHANNEL": "nightly"})

    report = _runner(definition, actions).run(config)

    assert report.state == PipelineState.SUCCEEDED
    assert seen["inner"] == {"CHANNEL": "beta", "OUTER": "1", "INNER": "1"}
    assert seen["after"] == {"CHANNEL": "nightly"}
    assert (config.workspace / "inner.txt").read_text().strip() == "beta 1 1"
    assert dict(config.env) == {"CHANNEL": "nightly"}


def test_stage_named_post_does_not_share_pipeline_teardown_scope(make_config: MakeConfig) -> None:
    config = make_config()
    archive = Archive(pattern="notes.txt", dest="notes")
    definition = PipelineDefinition(
        name="demo",
        stages=[_stage("post", "echo stage > notes.txt", post=Post(success=[archive]))],
        post=Post(always=[archive]),
    )

    report = _runner(definition).run(config)

    assert report.state == PipelineState.SUCCEEDED
    assert [a.stage for a in report.artifacts] == ["post"]
    assert len(report.teardown_errors) == 1
    assert "ArtifactCollisionError" in report.teardown_errors[0]
