from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any, Callable, Mapping

from appsec_pipeline.core import ILogger, RunLayout, remove_tree

from .actions import ActionRegistry
from .artifacts import ArtifactCollector
from .cancel import CancelToken
from .config import PipelineConfig
from .events import EventSink, EventType, make_event
from .process import CommandResult, merge_env, run_command
from .types import ArtifactRef


@dataclass(slots=True)
class RunContext:
    """
    Context shared across stages for a single pipeline run.
    """

    config: PipelineConfig
    layout: RunLayout
    logger: ILogger
    events: EventSink
    collector: ArtifactCollector
    actions: ActionRegistry

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.config.build_id

    def stage_logger(self, stage: str) -> ILogger:
        return self.logger.bind(stage=stage)

    def emit(self, event: EventType | str, *, stage: str | None = None, **kw: object) -> None:
        # Keep event chatter at debug level to leave console logs readable.
        event_value = event.value if isinstance(event, EventType) else str(event)
        self.logger.debug(event_value, event_type=event_value, stage=stage, **kw)
        self.events.emit(
            make_event(event_type=event_value, run_id=self.run_id, stage=stage, **kw)
        )

    def base_env(self, config: PipelineConfig | None = None) -> dict[str, str]:
        """Environment every command sees on top of the process environment."""
        cfg = config or self.config
        return merge_env(
            {
                "WORKSPACE": str(cfg.workspace),
                "BUILD_ID": cfg.build_id,
                "REPORT_DIR": str(self.layout.report_dir()),
                "LOG_DIR": str(self.layout.logs_dir()),
            },
            cfg.env,
        )


class StageScope:
    """
    Execution scope of one stage.

    Owns the stage's scratch directory, warnings, collected artifacts and
    deferred cleanups. `close()` runs the cleanups in reverse registration
    order and returns their failures instead of raising them.
    """

    def __init__(
        self,
        ctx: RunContext,
        *,
        stage: str,
        token: CancelToken,
        config: PipelineConfig | None = None,
    ) -> None:
        self.ctx = ctx
        self.stage = stage
        self.token = token
        self.log = ctx.stage_logger(stage)
        self.warnings: list[str] = []
        self.artifacts: list[ArtifactRef] = []
        self._deferred: list[tuple[str, Callable[[], None]]] = []
        self._config = config or ctx.config
        self._scratch: Path | None = None

    # --- lifecycle -------------------------------------------------------------

    def open(self) -> "StageScope":
        root = self.ctx.layout.scratch_dir()
        root.mkdir(parents=True, exist_ok=True)
        safe = self.ctx.layout.stage_log(self.stage).stem
        self._scratch = Path(tempfile.mkdtemp(prefix=f"{safe}.", dir=str(root)))
        scratch = self._scratch
        self.defer(lambda: remove_tree(scratch), label="scratch")
        return self

    def defer(self, callback: Callable[[], None], *, label: str | None = None) -> None:
        self._deferred.append((label or getattr(callback, "__name__", "callback"), callback))

    def close(self) -> list[str]:
        errors: list[str] = []
        while self._deferred:
            label, cb = self._deferred.pop()
            try:
                cb()
            except Exception as e:
                errors.append(f"{label}: {type(e).__name__}: {e}")
                self.log.warning("Deferred cleanup failed", cleanup=label, error=str(e))
        return errors

    # --- accessors -------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        """The run config with this stage's environment overlay applied."""
        return self._config

    @property
    def params(self) -> Mapping[str, Any]:
        return self._config.params

    @property
    def workspace(self) -> Path:
        return self._config.workspace

    @property
    def scratch_dir(self) -> Path:
        if self._scratch is None:
            raise RuntimeError("StageScope used outside of its context")
        return self._scratch

    @property
    def env(self) -> dict[str, str]:
        extra = {"STAGE_NAME": self.stage}
        if self._scratch is not None:
            extra["STAGE_TMP"] = str(self._scratch)
        return merge_env(self.ctx.base_env(self._config), extra)

    def resolve(self, path: str | None) -> Path:
        """Resolve a workspace-relative path; `$VARS` expand from the stage env."""
        if not path:
            return self.workspace
        expanded = _expand(path, self.env)
        p = Path(expanded)
        return p if p.is_absolute() else self.workspace / p

    # --- operations ------------------------------------------------------------

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self.ctx.emit(EventType.STAGE_WARN, stage=self.stage, message=message)
        self.log.warning(message)

    def run(
        self,
        command: str | list[str],
        *,
        workdir: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
        check: bool = True,
        token: CancelToken | None = None,
    ) -> CommandResult:
        return run_command(
            command,
            workdir=self.resolve(workdir),
            env=merge_env(self.env, env, self.config.secrets),
            timeout_s=timeout_s,
            token=token or self.token,
            log_path=self.ctx.layout.stage_log(self.stage),
            secrets=self.config.secret_values(),
            check=check,
        )

    def collect(
        self,
        pattern: str,
        dest: str,
        *,
        base: str | Path | None = None,
        fingerprint: bool = True,
        allow_empty: bool = True,
    ) -> list[ArtifactRef]:
        base_dir = Path(base) if isinstance(base, Path) else self.resolve(base)
        refs = self.ctx.collector.collect(
            pattern,
            dest,
            base=base_dir,
            stage=self.stage,
            fingerprint=fingerprint,
            allow_empty=allow_empty,
        )
        for ref in refs:
            self.ctx.emit(
                EventType.ARTIFACT_WRITTEN,
                stage=self.stage,
                path=ref.path,
                bytes=ref.bytes,
                sha256=ref.sha256,
            )
        self.artifacts.extend(refs)
        return refs


def _expand(value: str, env: Mapping[str, str]) -> str:
    return Template(value).safe_substitute(env)
