from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from appsec_pipeline.core import DefinitionError, atomic_write_json, read_json

from .model import PipelineDefinition

_ADAPTER = TypeAdapter(PipelineDefinition)


def definition_to_dict(definition: PipelineDefinition) -> dict[str, Any]:
    return definition.model_dump(mode="json")


def definition_from_dict(obj: Any, *, source: str = "<dict>") -> PipelineDefinition:
    try:
        return _ADAPTER.validate_python(obj)
    except ValidationError as e:
        raise DefinitionError(f"invalid pipeline definition in {source}:\n{e}") from e


def load_definition(path: Path) -> PipelineDefinition:
    """
    Load a declarative pipeline definition from a JSON file.

    Raises DefinitionError for unreadable JSON or a tree that does not
    validate.
    """
    path = Path(path)
    try:
        obj = read_json(path)
    except (OSError, ValueError) as e:
        raise DefinitionError(f"cannot read pipeline definition {path}: {e}") from e
    return definition_from_dict(obj, source=str(path))


def dump_definition(definition: PipelineDefinition, path: Path) -> None:
    atomic_write_json(Path(path), definition_to_dict(definition))


def schema_for_definition() -> dict[str, Any]:
    return _ADAPTER.json_schema()
