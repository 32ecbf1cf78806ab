from .actions import ActionRegistry
from .artifacts import ArtifactCollector
from .cancel import CancelToken
from .config import PipelineConfig, build_config, resolve_params
from .context import RunContext, StageScope
from .definition import (
    definition_from_dict,
    definition_to_dict,
    dump_definition,
    load_definition,
    schema_for_definition,
)
from .events import EventSink, EventType
from .guards import describe, evaluate
from .model import (
    AllOf,
    Always,
    AnyOf,
    Archive,
    BooleanParameter,
    Call,
    EnvEquals,
    Not,
    Parallel,
    ParamIs,
    PipelineDefinition,
    PipelineOptions,
    Post,
    Sequential,
    Sh,
    Stage,
    Steps,
)
from .parallel import aggregate_status, run_parallel
from .process import CommandResult, merge_env, run_command
from .quality_gate import wait_for_quality_gate
from .report import RunReport, exit_code_for
from .runner import PipelineRunner, validate_actions
from .stage import run_stage
from .types import ArtifactRef, ExecutionResult, PipelineState, StageStatus

__all__ = [
    "ActionRegistry",
    "ArtifactCollector",
    "CancelToken",
    "PipelineConfig",
    "build_config",
    "resolve_params",
    "RunContext",
    "StageScope",
    "definition_from_dict",
    "definition_to_dict",
    "dump_definition",
    "load_definition",
    "schema_for_definition",
    "EventSink",
    "EventType",
    "describe",
    "evaluate",
    "AllOf",
    "Always",
    "AnyOf",
    "Archive",
    "BooleanParameter",
    "Call",
    "EnvEquals",
    "Not",
    "Parallel",
    "ParamIs",
    "PipelineDefinition",
    "PipelineOptions",
    "Post",
    "Sequential",
    "Sh",
    "Stage",
    "Steps",
    "aggregate_status",
    "run_parallel",
    "CommandResult",
    "merge_env",
    "run_command",
    "wait_for_quality_gate",
    "RunReport",
    "exit_code_for",
    "PipelineRunner",
    "validate_actions",
    "run_stage",
    "ArtifactRef",
    "ExecutionResult",
    "PipelineState",
    "StageStatus",
]
