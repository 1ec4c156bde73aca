"""Immutable execution context and prompt template substitution."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from agent_conductor.executor.models import StepResult, StepStatus

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_STEP_FIELDS = {"content", "success", "error", "model", "duration"}
_FALSY = {"", "false", "0"}


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Prompt, variables, step results and named outputs of one plan run.

    Updates never touch the existing value: ``with_step_result`` returns a new
    context, so a step always renders against a consistent snapshot.
    """

    prompt: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    steps: Mapping[str, StepResult] = field(default_factory=dict)
    named_outputs: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", _frozen(self.variables))
        object.__setattr__(self, "steps", _frozen(self.steps))
        object.__setattr__(self, "named_outputs", _frozen(self.named_outputs))

    @classmethod
    def create(cls, prompt: str, variables: Mapping[str, Any] | None = None) -> ExecutionContext:
        return cls(prompt=prompt, variables=dict(variables or {}))

    def with_step_result(
        self,
        result: StepResult,
        output_as: str | None = None,
    ) -> ExecutionContext:
        """Return a new context holding ``result``; bind it by name when completed."""

        steps = dict(self.steps)
        steps[result.step_id] = result
        named = dict(self.named_outputs)
        if output_as and result.status == StepStatus.COMPLETED:
            named[output_as] = result.content
        return ExecutionContext(
            prompt=self.prompt,
            variables=self.variables,
            steps=steps,
            named_outputs=named,
        )

    def result(self, step_id: str) -> StepResult | None:
        return self.steps.get(step_id)

    def completed_outputs(self, step_ids: list[str] | None = None) -> list[tuple[str, str]]:
        """(step id, content) pairs of completed steps in insertion order."""

        wanted = set(step_ids) if step_ids is not None else None
        return [
            (step_id, result.content)
            for step_id, result in self.steps.items()
            if result.status == StepStatus.COMPLETED and (wanted is None or step_id in wanted)
        ]

    def substitute(self, template: str) -> str:
        return substitute(template, self)

    def evaluate_condition(self, condition: str | None) -> bool:
        return evaluate_condition(condition, self)


def substitute(template: str, context: ExecutionContext) -> str:
    """Replace ``{{...}}`` placeholders; unresolved ones stay verbatim."""

    def _replace(match: re.Match[str]) -> str:
        resolved = _resolve(match.group(1).strip(), context)
        return match.group(0) if resolved is None else resolved

    return PLACEHOLDER_RE.sub(_replace, template)


def _resolve(key: str, context: ExecutionContext) -> str | None:
    if key == "prompt":
        return context.prompt

    step_id, dot, attribute = key.rpartition(".")
    if dot and attribute in _STEP_FIELDS and step_id in context.steps:
        result = context.steps[step_id]
        if attribute == "content":
            return result.content
        if attribute == "success":
            return "true" if result.succeeded else "false"
        if attribute == "error":
            return result.error or ""
        if attribute == "model":
            return result.model or ""
        return str(result.duration_ms)

    if key in context.named_outputs:
        return context.named_outputs[key]
    if key in context.variables:
        value = context.variables[key]
        return value if isinstance(value, str) else json.dumps(value)
    return None


def evaluate_condition(condition: str | None, context: ExecutionContext) -> bool:
    """Evaluate a step condition: ``a == b``, ``a != b`` or plain truthiness.

    An empty or missing condition is true.
    """

    if condition is None or not condition.strip():
        return True
    rendered = substitute(condition, context)
    if "==" in rendered:
        left, _, right = rendered.partition("==")
        return left.strip() == right.strip()
    if "!=" in rendered:
        left, _, right = rendered.partition("!=")
        return left.strip() != right.strip()
    return rendered.strip() not in _FALSY


def unresolved_dependencies(depends_on: tuple[str, ...], context: ExecutionContext) -> list[str]:
    """Dependencies that have not reached a terminal status yet."""

    return [
        dep
        for dep in depends_on
        if dep not in context.steps or not context.steps[dep].status.terminal
    ]


def blocking_dependency(depends_on: tuple[str, ...], context: ExecutionContext) -> str | None:
    """First dependency that failed or was skipped, if any."""

    for dep in depends_on:
        result = context.steps.get(dep)
        if result is not None and result.status in {StepStatus.FAILED, StepStatus.SKIPPED}:
            return dep
    return None
