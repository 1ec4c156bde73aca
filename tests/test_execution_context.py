from __future__ import annotations

import allure
import pytest

from agent_conductor.executor.context import (
    ExecutionContext,
    blocking_dependency,
    unresolved_dependencies,
)
from agent_conductor.executor.models import StepResult, StepStatus

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Execution Context"),
]


def _completed(step_id: str, content: str, model: str = "claude/sonnet") -> StepResult:
    return (
        StepResult(step_id=step_id)
        .start(at=1.0)
        .complete(content=content, model=model, duration_ms=1200, usage=None, at=2.2)
    )


def _failed(step_id: str, error: str = "boom") -> StepResult:
    return StepResult(step_id=step_id).start(at=1.0).fail(error=error, at=1.5)


def test_with_step_result_returns_new_context() -> None:
    base = ExecutionContext.create("write a parser", {"lang": "python"})

    updated = base.with_step_result(_completed("step_0", "done"), output_as="draft")

    assert base.steps == {}
    assert base.named_outputs == {}
    assert updated.steps["step_0"].content == "done"
    assert updated.named_outputs == {"draft": "done"}
    assert updated.variables == {"lang": "python"}


def test_failed_result_is_not_bound_to_name() -> None:
    context = ExecutionContext.create("task").with_step_result(_failed("a"), output_as="draft")

    assert "draft" not in context.named_outputs
    assert context.steps["a"].status == StepStatus.FAILED


def test_context_mappings_are_read_only() -> None:
    context = ExecutionContext.create("task", {"k": "v"})

    with pytest.raises(TypeError):
        context.variables["k"] = "other"  # type: ignore[index]
    with pytest.raises(AttributeError):
        context.prompt = "changed"  # type: ignore[misc]


def test_source_mapping_changes_do_not_leak_in() -> None:
    variables = {"k": "v"}
    context = ExecutionContext.create("task", variables)

    variables["k"] = "mutated"

    assert context.variables["k"] == "v"


def test_substitute_resolves_prompt_steps_names_and_variables() -> None:
    context = (
        ExecutionContext.create("build it", {"lang": "python", "limits": {"lines": 10}})
        .with_step_result(_completed("step_0", "the plan"), output_as="plan")
        .with_step_result(_failed("step_1", "no network"))
    )

    rendered = context.substitute(
        "{{prompt}} | {{step_0.content}} | {{step_0.success}} | {{step_0.model}} | "
        "{{step_0.duration}} | {{step_1.success}} | {{step_1.error}} | {{plan}} | "
        "{{lang}} | {{limits}}",
    )

    assert rendered == (
        'build it | the plan | true | claude/sonnet | 1200 | false | no network | the plan | '
        'python | {"lines": 10}'
    )


def test_unresolved_placeholders_stay_verbatim() -> None:
    context = ExecutionContext.create("task")

    assert context.substitute("{{missing}} and {{ghost.content}}") == (
        "{{missing}} and {{ghost.content}}"
    )


def test_placeholder_whitespace_is_ignored() -> None:
    assert ExecutionContext.create("task").substitute("{{ prompt }}") == "task"


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        (None, True),
        ("", True),
        ("{{step_0.success}} == true", True),
        ("{{step_0.success}} != true", False),
        ("{{step_1.success}}", False),
        ("{{mode}} == fast", True),
        ("{{mode}} == slow", False),
        ("0", False),
        ("false", False),
        ("anything", True),
    ],
)
def test_evaluate_condition(condition: str | None, expected: bool) -> None:
    context = (
        ExecutionContext.create("task", {"mode": "fast"})
        .with_step_result(_completed("step_0", "ok"))
        .with_step_result(_failed("step_1"))
    )

    assert context.evaluate_condition(condition) is expected


def test_dependency_helpers() -> None:
    running = StepResult(step_id="b").start(at=0.0)
    context = (
        ExecutionContext.create("task")
        .with_step_result(_completed("a", "ok"))
        .with_step_result(running)
        .with_step_result(_failed("c"))
    )

    assert unresolved_dependencies(("a", "b", "d"), context) == ["b", "d"]
    assert blocking_dependency(("a", "c"), context) == "c"
    assert blocking_dependency(("a",), context) is None


def test_completed_outputs_filters_by_status_and_ids() -> None:
    context = (
        ExecutionContext.create("task")
        .with_step_result(_completed("a", "one"))
        .with_step_result(_failed("b"))
        .with_step_result(_completed("c", "three"))
    )

    assert context.completed_outputs() == [("a", "one"), ("c", "three")]
    assert context.completed_outputs(["c"]) == [("c", "three")]


def test_step_result_rejects_invalid_transitions() -> None:
    done = _completed("a", "ok")

    with pytest.raises(ValueError, match="already completed"):
        done.skip(reason="late", at=3.0)
    with pytest.raises(ValueError, match="must be running"):
        StepResult(step_id="b").complete(content="", model=None, duration_ms=0, usage=None, at=0)
