"""JSON description format for plans and injection rules."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_conductor.executor.models import (
    ContextSource,
    IncludeMode,
    InjectionRule,
    Plan,
    PlanMode,
    Step,
    StepRole,
)

_INCLUDE_ALIASES = {"keyPoints": IncludeMode.KEY_POINTS.value}


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def read_plan(path: Path) -> Plan:
    return plan_from_dict(load_json(path))


def write_plan(path: Path, plan: Plan) -> None:
    write_json(path, plan_to_dict(plan))


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "mode": plan.mode.value,
        "prompt": plan.prompt,
        "steps": [step_to_dict(step) for step in plan.steps],
        "createdAt": int(plan.created_at.timestamp() * 1000),
    }


def plan_from_dict(raw: dict[str, Any]) -> Plan:
    """Deserialize and validate a plan description."""

    plan_id = raw.get("id")
    mode = raw.get("mode", PlanMode.SINGLE.value)
    prompt = raw.get("prompt", "")
    raw_steps = raw.get("steps")
    created_at = raw.get("createdAt")
    if not isinstance(plan_id, str) or not plan_id.strip():
        raise ValueError("plan.id must be a non-empty string")
    if not isinstance(prompt, str):
        raise TypeError("plan.prompt must be a string")
    if not isinstance(raw_steps, list):
        raise TypeError("plan.steps must be an array")
    if created_at is not None and not isinstance(created_at, int | float):
        raise TypeError("plan.createdAt must be epoch milliseconds")

    steps = []
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, dict):
            raise TypeError(f"plan.steps[{index}] must be an object")
        steps.append(step_from_dict(raw_step, path=f"plan.steps[{index}]"))

    return Plan(
        id=plan_id,
        mode=_enum(PlanMode, mode, "plan.mode"),
        prompt=prompt,
        steps=tuple(steps),
        created_at=(
            datetime.fromtimestamp(created_at / 1000, tz=UTC)
            if created_at is not None
            else datetime.now(UTC)
        ),
    )


def step_to_dict(step: Step) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": step.id,
        "agent": step.agent,
        "action": step.action,
        "prompt": step.prompt,
    }
    if step.depends_on:
        payload["dependsOn"] = list(step.depends_on)
    if step.output_as:
        payload["outputAs"] = step.output_as
    if step.role is not None:
        payload["role"] = step.role.value
    if step.injection_rules is not None:
        payload["injectionRules"] = [rule_to_dict(rule) for rule in step.injection_rules]
    if step.condition:
        payload["condition"] = step.condition
    if step.run_always:
        payload["runAlways"] = True
    if step.model:
        payload["model"] = step.model
    return payload


def step_from_dict(raw: dict[str, Any], *, path: str = "step") -> Step:
    step_id = raw.get("id")
    if not isinstance(step_id, str) or not step_id.strip():
        raise ValueError(f"{path}.id must be a non-empty string")
    depends_on = raw.get("dependsOn", [])
    if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
        raise TypeError(f"{path}.dependsOn must be an array of strings")
    raw_rules = raw.get("injectionRules")
    if raw_rules is not None and not isinstance(raw_rules, list):
        raise TypeError(f"{path}.injectionRules must be an array")
    run_always = raw.get("runAlways", False)
    if not isinstance(run_always, bool):
        raise TypeError(f"{path}.runAlways must be a boolean")
    role = raw.get("role")

    return Step(
        id=step_id,
        agent=_optional_str(raw, "agent", path) or "auto",
        action=_optional_str(raw, "action", path) or "prompt",
        prompt=_optional_str(raw, "prompt", path) or "{{prompt}}",
        depends_on=tuple(depends_on),
        output_as=_optional_str(raw, "outputAs", path),
        injection_rules=(
            tuple(
                rule_from_dict(rule, path=f"{path}.injectionRules[{index}]")
                for index, rule in enumerate(raw_rules)
            )
            if raw_rules is not None
            else None
        ),
        role=_enum(StepRole, role, f"{path}.role") if role is not None else None,
        condition=_optional_str(raw, "condition", path),
        run_always=run_always,
        model=_optional_str(raw, "model", path),
    )


def rule_to_dict(rule: InjectionRule) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "source": rule.source.value,
        "include": rule.include.value,
        "priority": rule.priority,
    }
    for key, value in (
        ("tag", rule.tag),
        ("stepId", rule.step_id),
        ("name", rule.name),
        ("condition", rule.condition),
    ):
        if value:
            payload[key] = value
    return payload


def rule_from_dict(raw: Any, *, path: str = "rule") -> InjectionRule:
    if not isinstance(raw, dict):
        raise TypeError(f"{path} must be an object")
    include = raw.get("include", IncludeMode.FULL.value)
    priority = raw.get("priority", 2)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise TypeError(f"{path}.priority must be an integer")
    if isinstance(include, str):
        include = _INCLUDE_ALIASES.get(include, include)
    return InjectionRule(
        source=_enum(ContextSource, raw.get("source"), f"{path}.source"),
        include=_enum(IncludeMode, include, f"{path}.include"),
        priority=priority,
        tag=_optional_str(raw, "tag", path),
        step_id=_optional_str(raw, "stepId", path),
        name=_optional_str(raw, "name", path),
        condition=_optional_str(raw, "condition", path),
    )


def _optional_str(raw: dict[str, Any], key: str, path: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{path}.{key} must be a string")
    return value or None


def _enum(enum_type, value: Any, path: str):
    try:
        return enum_type(value)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"{path} must be one of: {allowed}; got {value!r}") from error
