from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from appsec_pipeline.core import DefinitionError, Settings, new_run_id

from .model import PipelineDefinition


def _frozen(m: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(m or {}))


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """
    Settings for one run. Never mutated; `with_env` derives a child config
    for stage-scoped environment overlays.
    """

    build_id: str
    workspace: Path
    run_root: Path
    report_root: Path
    timeout_s: Optional[float] = None
    keep_runs: int = 10
    ansi_color: bool = True
    env: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "workspace", Path(self.workspace))
        object.__setattr__(self, "run_root", Path(self.run_root))
        object.__setattr__(self, "report_root", Path(self.report_root))
        object.__setattr__(self, "env", _frozen(self.env))
        object.__setattr__(self, "params", _frozen(self.params))
        object.__setattr__(self, "secrets", _frozen(self.secrets))

    def with_env(self, overlay: Mapping[str, str]) -> "PipelineConfig":
        if not overlay:
            return self
        merged = dict(self.env)
        merged.update(overlay)
        return dataclasses.replace(self, env=merged)

    def secret_values(self) -> list[str]:
        return [v for v in self.secrets.values() if v]

    def to_dict(self) -> dict[str, object]:
        """Loggable view: secrets are listed by name only."""
        return {
            "build_id": self.build_id,
            "workspace": str(self.workspace),
            "run_root": str(self.run_root),
            "report_root": str(self.report_root),
            "timeout_s": self.timeout_s,
            "keep_runs": self.keep_runs,
            "ansi_color": self.ansi_color,
            "env": dict(self.env),
            "params": dict(self.params),
            "secrets": sorted(self.secrets.keys()),
        }


def resolve_params(
    definition: PipelineDefinition, overrides: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    """Definition defaults overlaid with invocation parameters."""
    params: dict[str, Any] = definition.default_params()
    for name, value in (overrides or {}).items():
        if name not in definition.parameters:
            raise DefinitionError(
                f"unknown parameter {name!r}; known: {sorted(definition.parameters)}"
            )
        params[name] = value
    return params


def build_config(
    definition: PipelineDefinition,
    settings: Settings,
    *,
    params: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    build_id: str | None = None,
) -> PipelineConfig:
    """
    Combine the static definition, process settings and invocation
    parameters into the run's PipelineConfig. Definition options win over
    settings; explicit `env` wins over the definition environment.
    """
    opts = definition.options
    merged_env = dict(definition.environment)
    merged_env.update(env or {})

    timeout_s = opts.timeout_s
    if timeout_s is None:
        timeout_s = settings.timeout_minutes * 60.0

    return PipelineConfig(
        build_id=build_id or new_run_id(),
        workspace=settings.workspace.resolve(),
        run_root=settings.run_root.resolve(),
        report_root=settings.report_root.resolve(),
        timeout_s=timeout_s,
        keep_runs=opts.keep_runs if opts.keep_runs is not None else settings.keep_runs,
        ansi_color=opts.ansi_color if opts.ansi_color is not None else settings.ansi_color,
        env=merged_env,
        params=resolve_params(definition, params),
        secrets=settings.secret_env(),
    )
