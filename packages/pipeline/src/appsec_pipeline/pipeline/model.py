"""
Declarative stage tree.

Every node is a frozen pydantic model tagged with a ``kind`` field, so a
definition dumps to plain JSON and validates back into the same tree.
"""

from __future__ import annotations

from typing import Annotated, Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator

StageName = Annotated[
    str,
    StringConstraints(min_length=1, max_length=120, pattern=r"^[A-Za-z0-9][A-Za-z0-9 _\-\.]*$"),
]


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# --- conditions ---------------------------------------------------------------


class Always(_Node):
    kind: Literal["always"] = "always"


class EnvEquals(_Node):
    kind: Literal["env_equals"] = "env_equals"
    name: str = Field(..., min_length=1)
    value: str


class ParamIs(_Node):
    kind: Literal["param"] = "param"
    name: str = Field(..., min_length=1)
    value: Union[bool, str] = True


class AllOf(_Node):
    kind: Literal["all_of"] = "all_of"
    conditions: list[Condition] = Field(default_factory=list)


class AnyOf(_Node):
    kind: Literal["any_of"] = "any_of"
    conditions: list[Condition] = Field(default_factory=list)


class Not(_Node):
    kind: Literal["not"] = "not"
    condition: Condition


Condition = Annotated[
    Union[Always, EnvEquals, ParamIs, AllOf, AnyOf, Not],
    Field(discriminator="kind"),
]


# --- steps --------------------------------------------------------------------


class Sh(_Node):
    """Run an external command. Strings go through the shell."""

    kind: Literal["sh"] = "sh"
    command: Union[str, list[str]]
    label: Optional[str] = None
    workdir: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    best_effort: bool = False

    def describe(self) -> str:
        if self.label:
            return self.label
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


class Archive(_Node):
    """Copy files matching `pattern` (relative to `base`) into the report dir."""

    kind: Literal["archive"] = "archive"
    pattern: str = Field(..., min_length=1)
    dest: str = Field(..., min_length=1)
    base: Optional[str] = None
    fingerprint: bool = True
    allow_empty: bool = True

    def describe(self) -> str:
        return f"archive {self.pattern} -> {self.dest}"


class Call(_Node):
    """Invoke a named Python action from the action registry."""

    kind: Literal["call"] = "call"
    action: str = Field(..., min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    best_effort: bool = False

    def describe(self) -> str:
        return f"call {self.action}"


Step = Annotated[Union[Sh, Archive, Call], Field(discriminator="kind")]


class Post(_Node):
    always: list[Step] = Field(default_factory=list)
    success: list[Step] = Field(default_factory=list)
    failure: list[Step] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.always or self.success or self.failure)


# --- bodies -------------------------------------------------------------------


class Steps(_Node):
    kind: Literal["steps"] = "steps"
    steps: list[Step] = Field(default_factory=list)


class Sequential(_Node):
    kind: Literal["sequential"] = "sequential"
    stages: list[Stage] = Field(..., min_length=1)


class Parallel(_Node):
    kind: Literal["parallel"] = "parallel"
    stages: list[Stage] = Field(..., min_length=1)
    fail_fast: bool = True
    max_workers: Optional[int] = Field(default=None, ge=1)


Body = Annotated[Union[Steps, Sequential, Parallel], Field(discriminator="kind")]


class Stage(_Node):
    name: StageName
    when: Condition = Field(default_factory=Always)
    body: Body = Field(default_factory=Steps)
    post: Post = Field(default_factory=Post)
    env: dict[str, str] = Field(default_factory=dict)

    def children(self) -> list[Stage]:
        if isinstance(self.body, (Sequential, Parallel)):
            return list(self.body.stages)
        return []

    def walk(self) -> Iterator[Stage]:
        yield self
        for child in self.children():
            yield from child.walk()


# --- pipeline -----------------------------------------------------------------


class BooleanParameter(_Node):
    default: bool = False
    description: Optional[str] = None


class PipelineOptions(_Node):
    timeout_s: Optional[float] = Field(default=None, gt=0)
    keep_runs: Optional[int] = Field(default=None, ge=1)
    ansi_color: Optional[bool] = None


class PipelineDefinition(_Node):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    parameters: dict[str, BooleanParameter] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    options: PipelineOptions = Field(default_factory=PipelineOptions)
    stages: list[Stage] = Field(..., min_length=1)
    post: Post = Field(default_factory=Post)

    @model_validator(mode="after")
    def _unique_stage_names(self) -> "PipelineDefinition":
        names = [s.name for s in self.walk()]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate stage name(s): {dupes}")
        return self

    def walk(self) -> Iterator[Stage]:
        for st in self.stages:
            yield from st.walk()

    def default_params(self) -> dict[str, bool]:
        return {name: p.default for name, p in self.parameters.items()}


for _m in (AllOf, AnyOf, Not, Sequential, Parallel, Stage, PipelineDefinition):
    _m.model_rebuild()
