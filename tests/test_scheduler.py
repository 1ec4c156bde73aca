from __future__ import annotations

import asyncio

import allure
import pytest

from agent_conductor.executor.builders import (
    PipelineStage,
    build_compare_plan,
    build_pipeline_plan,
)
from agent_conductor.executor.models import (
    Plan,
    PlanMode,
    PlanStatus,
    ProgressEventType,
    Step,
    StepStatus,
)
from agent_conductor.executor.scheduler import CANCELLED, CONDITION_NOT_MET, PlanExecutor
from agent_conductor.executor.task_queue import BoundedTaskQueue
from agent_conductor.stream.events import TextDeltaEvent
from fakes import FakeAgent, make_registry

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Plan Scheduler"),
]


def _plan(*steps: Step, mode: PlanMode = PlanMode.AUTO) -> Plan:
    return Plan(id="plan_test", mode=mode, prompt="task", steps=steps)


@pytest.mark.asyncio
async def test_independent_steps_respect_concurrency_bound() -> None:
    agent = FakeAgent("a", delay=0.02)
    executor = PlanExecutor(make_registry(agent), max_concurrency=2)
    plan = _plan(*(Step(id=f"s{index}", agent="a") for index in range(6)))

    result = await executor.execute(plan)

    assert result.status == PlanStatus.COMPLETED
    assert agent.peak == 2
    assert all(item.status == StepStatus.COMPLETED for item in result.results.values())


@pytest.mark.asyncio
async def test_bounded_queue_tracks_peak_and_admits_in_order() -> None:
    queue = BoundedTaskQueue(1)
    order: list[int] = []

    async def work(index: int) -> int:
        order.append(index)
        await asyncio.sleep(0)
        return index

    tasks = [queue.submit(lambda index=index: work(index), name=f"t{index}") for index in range(3)]
    results = await asyncio.gather(*tasks)

    assert results == [0, 1, 2]
    assert order == [0, 1, 2]
    assert queue.peak_running == 1
    assert queue.running == 0
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_dependent_step_starts_after_dependency_finishes() -> None:
    agent = FakeAgent("a", delay=0.01)
    executor = PlanExecutor(make_registry(agent), max_concurrency=4)
    plan = _plan(Step(id="first", agent="a"), Step(id="second", agent="a", depends_on=("first",)))

    result = await executor.execute(plan)

    first = result.context.steps["first"]
    second = result.context.steps["second"]
    assert second.started_at >= first.finished_at


@pytest.mark.asyncio
async def test_named_output_is_substituted_into_later_prompt() -> None:
    agent = FakeAgent("a", reply=lambda prompt: prompt.upper())
    executor = PlanExecutor(make_registry(agent))
    plan = build_pipeline_plan(
        "hello",
        [
            PipelineStage(agent="a", prompt_template="{{prompt}}"),
            PipelineStage(agent="a", prompt_template="next: {{step0_output}}"),
        ],
    )

    result = await executor.execute(plan)

    assert agent.prompts == ["hello", "next: HELLO"]
    assert result.final_output == "NEXT: HELLO"
    assert result.context.named_outputs["step1_output"] == "NEXT: HELLO"


@pytest.mark.asyncio
async def test_failed_dependency_skips_every_dependent() -> None:
    broken = FakeAgent("broken", error="boom")
    fine = FakeAgent("fine")
    executor = PlanExecutor(make_registry(broken, fine))
    plan = _plan(
        Step(id="a", agent="broken"),
        Step(id="b", agent="fine", depends_on=("a",)),
        Step(id="c", agent="fine", depends_on=("a",)),
    )

    result = await executor.execute(plan)

    assert result.status == PlanStatus.FAILED
    assert result.results["a"].status == StepStatus.FAILED
    assert result.results["a"].error == "boom"
    assert result.results["b"].status == StepStatus.SKIPPED
    assert result.results["b"].error == "dependency a failed"
    assert result.results["c"].status == StepStatus.SKIPPED
    assert fine.prompts == []


@pytest.mark.asyncio
async def test_skip_cascades_through_chain() -> None:
    broken = FakeAgent("broken", raises=RuntimeError("crashed"))
    fine = FakeAgent("fine")
    executor = PlanExecutor(make_registry(broken, fine))
    plan = _plan(
        Step(id="a", agent="broken"),
        Step(id="b", agent="fine", depends_on=("a",)),
        Step(id="c", agent="fine", depends_on=("b",)),
    )

    result = await executor.execute(plan)

    assert result.results["a"].error == "crashed"
    assert result.results["c"].error == "dependency b skipped"
    assert all(item.status.terminal for item in result.results.values())


@pytest.mark.asyncio
async def test_run_always_step_runs_after_failure() -> None:
    broken = FakeAgent("broken", error="boom")
    cleanup = FakeAgent("cleanup", reply="cleaned")
    executor = PlanExecutor(make_registry(broken, cleanup))
    plan = _plan(
        Step(id="a", agent="broken"),
        Step(
            id="report",
            agent="cleanup",
            prompt="status={{a.success}} error={{a.error}}",
            depends_on=("a",),
            run_always=True,
        ),
    )

    result = await executor.execute(plan)

    assert result.results["report"].status == StepStatus.COMPLETED
    assert cleanup.prompts == ["status=false error=boom"]
    assert result.status == PlanStatus.COMPLETED


@pytest.mark.asyncio
async def test_false_condition_skips_step_without_failing_plan() -> None:
    agent = FakeAgent("a")
    executor = PlanExecutor(make_registry(agent))
    plan = _plan(
        Step(id="check", agent="a"),
        Step(id="fix", agent="a", depends_on=("check",), condition="{{check.success}} == false"),
    )

    result = await executor.execute(plan)

    assert result.results["fix"].status == StepStatus.SKIPPED
    assert result.results["fix"].error == CONDITION_NOT_MET
    assert result.status == PlanStatus.COMPLETED
    assert len(agent.prompts) == 1


@pytest.mark.asyncio
async def test_unknown_agent_fails_only_its_step() -> None:
    agent = FakeAgent("a")
    executor = PlanExecutor(make_registry(agent))
    plan = _plan(Step(id="lost", agent="nobody"), Step(id="ok", agent="a"))

    result = await executor.execute(plan)

    assert result.results["lost"].status == StepStatus.FAILED
    assert "Agent not found" in result.results["lost"].error
    assert result.results["ok"].status == StepStatus.COMPLETED
    assert result.status == PlanStatus.FAILED


@pytest.mark.asyncio
async def test_cancellation_stops_running_and_skips_pending_steps() -> None:
    slow = FakeAgent("slow", delay=5.0)
    executor = PlanExecutor(make_registry(slow), max_concurrency=1)
    plan = _plan(
        Step(id="a", agent="slow"),
        Step(id="b", agent="slow"),
        Step(id="c", agent="slow", depends_on=("a",)),
    )
    cancel = asyncio.Event()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.05)
        cancel.set()

    canceller = asyncio.create_task(cancel_soon())
    result = await asyncio.wait_for(executor.execute(plan, cancel=cancel), timeout=2.0)
    await canceller

    assert result.status == PlanStatus.CANCELLED
    assert result.results["a"].status == StepStatus.FAILED
    assert result.results["a"].error == CANCELLED
    assert result.results["b"].status == StepStatus.SKIPPED
    assert result.results["c"].status == StepStatus.SKIPPED
    assert slow.cancelled == 1


@pytest.mark.asyncio
async def test_progress_callback_errors_do_not_break_execution(caplog) -> None:
    agent = FakeAgent("a")
    seen = []

    def explode(event) -> None:
        seen.append(event.type)
        raise RuntimeError("display crashed")

    executor = PlanExecutor(make_registry(agent), on_progress=explode)

    result = await executor.execute(_plan(Step(id="only", agent="a")))

    assert result.status == PlanStatus.COMPLETED
    assert seen == [ProgressEventType.START, ProgressEventType.COMPLETE]
    assert "Progress callback failed" in caplog.text


@pytest.mark.asyncio
async def test_event_log_orders_start_stream_complete() -> None:
    agent = FakeAgent("a", events=(TextDeltaEvent(text="partial"),))
    executor = PlanExecutor(make_registry(agent))

    result = await executor.execute(_plan(Step(id="only", agent="a")))

    assert [event.type for event in result.events] == [
        ProgressEventType.START,
        ProgressEventType.STREAM,
        ProgressEventType.COMPLETE,
    ]
    assert result.events[1].data == TextDeltaEvent(text="partial")
    assert result.events[2].data.content == "a: task"


@pytest.mark.asyncio
async def test_compare_plan_succeeds_when_any_agent_answers() -> None:
    broken = FakeAgent("broken", error="quota exceeded")
    fine = FakeAgent("fine", reply="answer")
    executor = PlanExecutor(make_registry(broken, fine))

    result = await executor.execute(build_compare_plan("task", ["broken", "fine"]))

    assert result.status == PlanStatus.COMPLETED
    assert result.context.named_outputs == {"response_fine": "answer"}
    assert result.final_output == "answer"


@pytest.mark.asyncio
async def test_compare_pick_runs_on_surviving_answers() -> None:
    judge = FakeAgent("judge", reply="good wins")
    good = FakeAgent("good")
    bad = FakeAgent("bad", error="quota exceeded")
    executor = PlanExecutor(make_registry(good, bad, judge, cascade=("judge",)))

    result = await executor.execute(build_compare_plan("task", ["good", "bad"], pick=True))

    assert result.results["step_1"].status == StepStatus.FAILED
    assert result.results["step_2"].status == StepStatus.COMPLETED
    assert result.status == PlanStatus.COMPLETED
    assert "good: task" in judge.prompts[0]
    assert "bad" not in judge.prompts[0]
    assert "{{" not in judge.prompts[0]


@pytest.mark.asyncio
async def test_compare_fails_when_no_agent_answers() -> None:
    judge = FakeAgent("judge", reply="nothing to pick")
    first = FakeAgent("first", error="down")
    second = FakeAgent("second", error="down")
    executor = PlanExecutor(make_registry(first, second, judge, cascade=("judge",)))

    result = await executor.execute(build_compare_plan("task", ["first", "second"], pick=True))

    assert result.results["step_2"].status == StepStatus.COMPLETED
    assert result.status == PlanStatus.FAILED


@pytest.mark.asyncio
async def test_auto_agent_resolves_through_cascade() -> None:
    offline = FakeAgent("offline", available=False)
    online = FakeAgent("online", reply="hi")
    executor = PlanExecutor(make_registry(offline, online))

    result = await executor.execute(_plan(Step(id="only", agent="auto")))

    assert result.results["only"].model == "online/test"
    assert offline.prompts == []
