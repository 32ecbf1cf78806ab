from __future__ import annotations

from typing import Any, Mapping

import structlog

from appsec_pipeline.core import GuardUnresolvable

from .model import AllOf, Always, AnyOf, Condition, EnvEquals, Not, ParamIs

log = structlog.get_logger(__name__)

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _lookup(mapping: Mapping[str, Any], name: str, what: str) -> Any:
    try:
        return mapping[name]
    except KeyError:
        raise GuardUnresolvable(f"unknown {what} {name!r}") from None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return True
        if v in _FALSE_STRINGS:
            return False
    return None


def _param_matches(actual: Any, expected: bool | str) -> bool:
    want = _as_bool(expected)
    if isinstance(expected, bool) or (isinstance(actual, bool) and want is not None):
        got = _as_bool(actual)
        if got is None:
            raise GuardUnresolvable(f"parameter value {actual!r} is not a boolean")
        return got is want
    return str(actual) == expected


def _leaf(fn, *args: Any) -> bool:
    try:
        return fn(*args)
    except GuardUnresolvable as e:
        log.debug("guard.unresolvable", reason=str(e))
        return False


def evaluate(
    condition: Condition, env: Mapping[str, str], params: Mapping[str, Any]
) -> bool:
    """
    Decide whether a stage runs.

    `AllOf` stops at the first false member and `AnyOf` at the first true one,
    so later members are never looked up. A leaf that names a missing env
    variable or parameter compares false instead of raising.
    """
    if isinstance(condition, Always):
        return True

    if isinstance(condition, EnvEquals):
        return _leaf(
            lambda: _lookup(env, condition.name, "env variable") == condition.value
        )

    if isinstance(condition, ParamIs):
        return _leaf(
            lambda: _param_matches(
                _lookup(params, condition.name, "parameter"), condition.value
            )
        )

    if isinstance(condition, AllOf):
        return all(evaluate(c, env, params) for c in condition.conditions)

    if isinstance(condition, AnyOf):
        return any(evaluate(c, env, params) for c in condition.conditions)

    if isinstance(condition, Not):
        return not evaluate(condition.condition, env, params)

    raise TypeError(f"Unsupported condition: {type(condition).__name__}")


def describe(condition: Condition) -> str:
    """Short human-readable rendering for plans and logs."""
    if isinstance(condition, Always):
        return "always"
    if isinstance(condition, EnvEquals):
        return f"env.{condition.name} == {condition.value!r}"
    if isinstance(condition, ParamIs):
        if condition.value is True:
            return f"params.{condition.name}"
        return f"params.{condition.name} == {condition.value!r}"
    if isinstance(condition, AllOf):
        return "(" + " and ".join(describe(c) for c in condition.conditions) + ")"
    if isinstance(condition, AnyOf):
        return "(" + " or ".join(describe(c) for c in condition.conditions) + ")"
    if isinstance(condition, Not):
        return f"not {describe(condition.condition)}"
    raise TypeError(f"Unsupported condition: {type(condition).__name__}")
