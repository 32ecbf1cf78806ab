from .config import REPORT_DIRS, Settings, load_settings
from .errors import (
    ArtifactCollisionError,
    BestEffortFailure,
    Cancelled,
    CommandFailed,
    CommandTimeout,
    DefinitionError,
    ExternalServiceError,
    GuardUnresolvable,
    InternalError,
    NoArtifactsFound,
    PipelineError,
    QualityGateRejected,
    QualityGateTimeout,
    StageError,
    TransientError,
    stage_error_from_exc,
)
from .fs import (
    append_text,
    atomic_write_bytes,
    atomic_write_text,
    copy_file,
    ensure_parent,
    file_size,
    is_within,
    prune_dirs,
    relpath_posix,
    remove_tree,
    safe_unlink,
)
from .hashing import sha256_bytes, sha256_file, write_sha256_sum_txt
from .json import atomic_write_json, read_json, stable_json_dumps
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger, redact
from .paths import RunLayout
from .provenance import RunProvenance, Timer, new_run_id
from .time import format_duration_ms, monotonic_ms, utc_now_iso

__all__ = [
    "REPORT_DIRS",
    "Settings",
    "load_settings",
    "ArtifactCollisionError",
    "BestEffortFailure",
    "Cancelled",
    "CommandFailed",
    "CommandTimeout",
    "DefinitionError",
    "ExternalServiceError",
    "GuardUnresolvable",
    "InternalError",
    "NoArtifactsFound",
    "PipelineError",
    "QualityGateRejected",
    "QualityGateTimeout",
    "StageError",
    "TransientError",
    "stage_error_from_exc",
    "append_text",
    "atomic_write_bytes",
    "atomic_write_text",
    "copy_file",
    "ensure_parent",
    "file_size",
    "is_within",
    "prune_dirs",
    "relpath_posix",
    "remove_tree",
    "safe_unlink",
    "sha256_bytes",
    "sha256_file",
    "write_sha256_sum_txt",
    "atomic_write_json",
    "read_json",
    "stable_json_dumps",
    "ILogger",
    "bind",
    "clear_bindings",
    "configure_logging",
    "get_logger",
    "redact",
    "RunLayout",
    "RunProvenance",
    "Timer",
    "new_run_id",
    "format_duration_ms",
    "monotonic_ms",
    "utc_now_iso",
]
