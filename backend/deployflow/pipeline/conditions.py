"""
Condition helpers — build stage/step predicates from simple rules.

The engine only ever sees `Callable[[ExecutionContext], bool]`; these
helpers exist so callers (and the HTTP API's declarative `condition`
objects) do not have to hand-write the common cases.
"""

from __future__ import annotations

from fnmatch import fnmatch
from typing import Any, Mapping

from deployflow.pipeline.definitions import Condition
from deployflow.pipeline.errors import PipelineDefinitionError


def branch_in(*patterns: str) -> Condition:
    """True when the trigger branch matches one of the glob patterns."""
    def condition(ctx) -> bool:
        branch = ctx.trigger.branch
        return branch is not None and any(fnmatch(branch, p) for p in patterns)
    return condition


def tag_matches(pattern: str) -> Condition:
    def condition(ctx) -> bool:
        tag = ctx.trigger.tag
        return tag is not None and fnmatch(tag, pattern)
    return condition


def variable_equals(key: str, value: Any) -> Condition:
    def condition(ctx) -> bool:
        return str(ctx.variables.get(key)) == str(value)
    return condition


def all_of(*conditions: Condition) -> Condition:
    def condition(ctx) -> bool:
        return all(c(ctx) for c in conditions)
    return condition


def any_of(*conditions: Condition) -> Condition:
    def condition(ctx) -> bool:
        return any(c(ctx) for c in conditions)
    return condition


def from_spec(spec: Mapping[str, Any] | None) -> Condition | None:
    """
    Build a predicate from a declarative mapping::

        {"branch": ["main", "release/*"], "tag": "v*", "variables": {"deploy": "true"}}

    Every given rule must hold.  An empty or missing mapping → None.
    """
    if not spec:
        return None

    unknown = set(spec) - {"branch", "tag", "variables"}
    if unknown:
        raise PipelineDefinitionError(f"Unknown condition keys: {', '.join(sorted(unknown))}")

    rules: list[Condition] = []
    branch = spec.get("branch")
    if branch:
        rules.append(branch_in(*([branch] if isinstance(branch, str) else branch)))
    if spec.get("tag"):
        rules.append(tag_matches(spec["tag"]))
    for key, value in (spec.get("variables") or {}).items():
        rules.append(variable_equals(key, value))

    if not rules:
        return None
    return rules[0] if len(rules) == 1 else all_of(*rules)
