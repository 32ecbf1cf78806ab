from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterator

from appsec_pipeline.core import DefinitionError

if TYPE_CHECKING:
    from .context import StageScope

ActionFn = Callable[..., Any]


class ActionRegistry:
    """
    Named Python actions reachable from `Call` steps.

      actions = ActionRegistry()

      @actions.register("sonar.quality_gate")
      def quality_gate(scope, *, report_task: str) -> None: ...
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionFn] = {}

    def register(self, name: str) -> Callable[[ActionFn], ActionFn]:
        def _decorator(fn: ActionFn) -> ActionFn:
            self.add(name, fn)
            return fn

        return _decorator

    def add(self, name: str, fn: ActionFn) -> None:
        if name in self._actions:
            raise ValueError(f"Duplicate action: {name}")
        self._actions[name] = fn

    def get(self, name: str) -> ActionFn:
        try:
            return self._actions[name]
        except KeyError:
            raise DefinitionError(
                f"unknown action {name!r}; registered: {sorted(self._actions)}"
            ) from None

    def invoke(self, name: str, scope: "StageScope", args: dict[str, Any]) -> Any:
        return self.get(name)(scope, **args)

    def merged(self, other: "ActionRegistry") -> "ActionRegistry":
        out = ActionRegistry()
        for n, fn in self:
            out.add(n, fn)
        for n, fn in other:
            out.add(n, fn)
        return out

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[tuple[str, ActionFn]]:
        return iter(sorted(self._actions.items()))

    def __len__(self) -> int:
        return len(self._actions)
