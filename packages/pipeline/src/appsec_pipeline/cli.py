from __future__ import annotations

import argparse
import json
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from appsec_pipeline.core import (
    PipelineError,
    Settings,
    bind,
    clear_bindings,
    configure_logging,
    get_logger,
    load_settings,
    new_run_id,
    stable_json_dumps,
)
from appsec_pipeline.pipeline import (
    PipelineConfig,
    PipelineDefinition,
    PipelineRunner,
    RunReport,
    Stage,
    StageStatus,
    describe,
    dump_definition,
    evaluate,
    load_definition,
    merge_env,
    schema_for_definition,
)
from appsec_pipeline.stages import (
    PARAMETERS,
    android_config,
    build_android_pipeline,
    default_actions,
)
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

console = Console()

_STATUS_STYLE = {
    StageStatus.SUCCESS: "green",
    StageStatus.FAILURE: "red",
    StageStatus.SKIPPED: "dim",
    StageStatus.ABORTED: "yellow",
}


@dataclass(frozen=True, slots=True)
class _CommonArgs:
    cmd: str
    definition: str | None
    workspace: str | None
    build_id: str | None
    params: dict[str, Any]


def _parse_param(raw: str) -> tuple[str, Any]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {raw!r}")
    name, value = raw.split("=", 1)
    v = value.strip().lower()
    if v in ("true", "false"):
        return name.strip(), v == "true"
    return name.strip(), value


def _add_common_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--definition",
        default=None,
        help="Pipeline definition JSON. If omitted: the built-in Android pipeline.",
    )
    p.add_argument(
        "--workspace",
        default=None,
        help="Project checkout to build (default: APPSEC_PIPELINE_WORKSPACE or .)",
    )
    p.add_argument("--build-id", default=None, help="Build id (default: random)")
    p.add_argument(
        "--param",
        action="append",
        type=_parse_param,
        dest="raw_params",
        metavar="NAME=VALUE",
        help="Set a definition parameter (repeatable)",
    )
    for name, help_text in PARAMETERS.items():
        p.add_argument(
            f"--{name.replace('_', '-')}",
            dest=f"toggle_{name}",
            action=argparse.BooleanOptionalAction,
            default=None,
            help=help_text,
        )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="appsec-pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("run", help="Run the pipeline")
    _add_common_args(sp)

    sp = sub.add_parser("plan", help="Show which stages would run, without running them")
    _add_common_args(sp)

    sp = sub.add_parser("export", help="Write the pipeline definition as JSON")
    _add_common_args(sp)
    sp.add_argument("--out", default=None, help="Output file (default: stdout)")

    sp = sub.add_parser("schema", help="Print the JSON schema of pipeline definitions")
    sp.add_argument("--out", default=None, help="Output file (default: stdout)")

    return p


def _common(args: argparse.Namespace) -> _CommonArgs:
    params: dict[str, Any] = dict(getattr(args, "raw_params", None) or [])
    for name in PARAMETERS:
        value = getattr(args, f"toggle_{name}", None)
        if value is not None:
            params[name] = value
    return _CommonArgs(
        cmd=str(args.cmd),
        definition=getattr(args, "definition", None),
        workspace=getattr(args, "workspace", None),
        build_id=getattr(args, "build_id", None),
        params=params,
    )


def _settings(common: _CommonArgs) -> Settings:
    s = load_settings()
    if common.workspace:
        s = s.model_copy(update={"workspace": Path(common.workspace)})
    return s


def _definition(common: _CommonArgs, settings: Settings) -> PipelineDefinition:
    if common.definition:
        return load_definition(Path(common.definition))
    return build_android_pipeline(settings)


def _write_or_print(text: str, out: str | None) -> None:
    if out:
        Path(out).write_text(text + "\n", encoding="utf-8")
        console.print(f"wrote {out}")
    else:
        print(text)


# --- plan ---------------------------------------------------------------------


def _plan_branch(
    tree: Tree, stages: Iterable[Stage], env: dict[str, str], params: dict[str, Any]
) -> None:
    for st in stages:
        stage_env = merge_env(env, st.env)
        runs = evaluate(st.when, stage_env, params)
        label = Text(st.name, style="bold" if runs else "dim")
        label.append(f"  {'run' if runs else 'skip'}", style="green" if runs else "yellow")
        if not runs:
            label.append(f" ({describe(st.when)})", style="dim")
        branch = tree.add(label)
        if runs:
            _plan_branch(branch, st.children(), stage_env, params)


def _cmd_plan(definition: PipelineDefinition, config: PipelineConfig) -> int:
    tree = Tree(Text(definition.name, style="bold"))
    _plan_branch(tree, definition.stages, merge_env(os.environ, config.env), dict(config.params))
    console.print(tree)
    return 0


# --- run ----------------------------------------------------------------------


def _result_table(report: RunReport) -> Table:
    tbl = Table(title="Stages", show_header=True, box=None)
    tbl.add_column("stage")
    tbl.add_column("status")
    tbl.add_column("duration")
    tbl.add_column("reason")
    for top in report.stages:
        for r in top.walk():
            style = _STATUS_STYLE.get(r.status, "")
            tbl.add_row(
                r.stage,
                f"[{style}]{r.status.value}[/{style}]",
                f"{r.duration_ms} ms",
                r.reason or "",
            )
    return tbl


def _cmd_run(definition: PipelineDefinition, settings: Settings, config: PipelineConfig) -> int:
    log = get_logger("appsec_pipeline")
    build_id = config.build_id
    bind(run_id=build_id, pipeline=definition.name)

    runner = PipelineRunner(definition, actions=default_actions(settings), logger=log)

    def _on_signal(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        log.warning("Signal received, cancelling run", signal=name)
        runner.cancel(f"signal {name}")

    previous = {
        sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    console.print(
        Panel.fit(
            Text(
                f"appsec-pipeline - {definition.name}\nbuild_id={build_id}\n"
                f"variant={config.env.get('BUILD_VARIANT', '-')}",
                style="bold",
            ),
            title="Run",
        )
    )

    try:
        report = runner.run(config, meta={"params": dict(config.params)})
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        clear_bindings()

    console.print(_result_table(report))
    tbl = Table(title="Result", show_header=True, box=None)
    state_style = "green" if report.exit_code == 0 else "red"
    tbl.add_row("state", f"[{state_style}]{report.state.value}[/{state_style}]")
    if report.cause:
        tbl.add_row("cause", report.cause)
    tbl.add_row("summary", report.summary)
    tbl.add_row("report", str(config.run_root / build_id / "run_report.json"))
    tbl.add_row("artifacts", str(len(report.artifacts)))
    console.print(tbl)

    return report.exit_code


def _configure_output(settings: Settings, *, color: bool) -> None:
    global console
    configure_logging(level=settings.log_level, fmt=settings.log_format, color=color)
    console = Console(no_color=not color, highlight=color)


def _setup_failed(e: PipelineError) -> int:
    log = get_logger("appsec_pipeline")
    log.error("Pipeline setup failed", error=str(e), exc_type=type(e).__name__)
    console.print(Panel.fit(Text(str(e), style="red"), title=type(e).__name__))
    return 1


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    common = _common(args)

    if common.cmd == "schema":
        _write_or_print(stable_json_dumps(schema_for_definition()), args.out)
        return 0

    s = _settings(common)

    # logging and console colors follow the resolved config
    try:
        definition = _definition(common, s)
        config = android_config(
            definition, s, params=common.params, build_id=common.build_id or new_run_id()
        )
    except PipelineError as e:
        _configure_output(s, color=s.ansi_color)
        return _setup_failed(e)

    _configure_output(s, color=config.ansi_color)

    try:
        if common.cmd == "export":
            if args.out:
                dump_definition(definition, Path(args.out))
                console.print(f"wrote {args.out}")
            else:
                print(json.dumps(definition.model_dump(mode="json"), indent=2))
            return 0

        if common.cmd == "plan":
            return _cmd_plan(definition, config)

        return _cmd_run(definition, s, config)

    except PipelineError as e:
        return _setup_failed(e)


if __name__ == "__main__":
    raise SystemExit(main())
