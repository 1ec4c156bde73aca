"""Bounded-concurrency scheduler driving a plan's steps to terminal states."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from agent_conductor.agents.base import AgentResponse, AgentRunOptions
from agent_conductor.agents.cascade import AgentRegistry
from agent_conductor.context.injection import ContextAssembler
from agent_conductor.executor.context import (
    ExecutionContext,
    blocking_dependency,
    unresolved_dependencies,
)
from agent_conductor.executor.models import (
    COMBINE_ACTION,
    ExecutionResult,
    Plan,
    PlanMode,
    PlanStatus,
    ProgressEvent,
    ProgressEventType,
    Step,
    StepResult,
    StepStatus,
)
from agent_conductor.executor.task_queue import BoundedTaskQueue
from agent_conductor.stream.events import StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 5
CONDITION_NOT_MET = "condition not met"
CANCELLED = "cancelled"

ProgressCallback = Callable[[ProgressEvent], None]


class PlanExecutor:
    """Executes plans against an agent registry.

    Every step reaches exactly one terminal status. Agent failures are
    recorded on the step result and never abort the plan; only invalid plans
    raise, and they do so when the ``Plan`` is constructed.
    """

    def __init__(  # noqa: PLR0913
        self,
        registry: AgentRegistry,
        *,
        assembler: ContextAssembler | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be a positive integer")
        self.registry = registry
        self.assembler = assembler or ContextAssembler()
        self.max_concurrency = max_concurrency
        self.on_progress = on_progress
        self.clock = clock

    async def execute(
        self,
        plan: Plan,
        *,
        context: ExecutionContext | None = None,
        variables: Mapping[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        run = _PlanRun(
            executor=self,
            plan=plan,
            context=context or ExecutionContext.create(plan.prompt, variables),
            cancel=cancel or asyncio.Event(),
        )
        return await run.execute()


class _PlanRun:
    """State of one ``execute`` call."""

    def __init__(
        self,
        *,
        executor: PlanExecutor,
        plan: Plan,
        context: ExecutionContext,
        cancel: asyncio.Event,
    ) -> None:
        self.executor = executor
        self.plan = plan
        self.context = context
        self.cancel = cancel
        self.events: list[ProgressEvent] = []
        self.queue = BoundedTaskQueue(executor.max_concurrency)
        self.submitted: set[str] = set()
        self.skipped_by_dependency: set[str] = set()
        self.started_at = executor.clock()

    async def execute(self) -> ExecutionResult:
        plan = self.plan
        logger.info(
            "Plan %s started: mode=%s steps=%d max_concurrency=%d",
            plan.id,
            plan.mode.value,
            len(plan.steps),
            self.executor.max_concurrency,
        )
        cancel_waiter = asyncio.ensure_future(self.cancel.wait())
        try:
            await self._drive(cancel_waiter)
        except asyncio.CancelledError:
            self.cancel.set()
            await self.queue.cancel_all()
            raise
        finally:
            cancel_waiter.cancel()

        cancelled = self.cancel.is_set()
        if cancelled:
            await self.queue.cancel_all()
            for step in plan.steps:
                if not self._is_terminal(step.id):
                    self._skip(step, CANCELLED)

        status = self._plan_status(cancelled=cancelled)
        duration_ms = int(round((self.executor.clock() - self.started_at) * 1000))
        logger.info("Plan %s finished: status=%s in %.1fs", plan.id, status.value, duration_ms / 1000)
        return ExecutionResult(
            plan=plan,
            status=status,
            context=self.context,
            events=tuple(self.events),
            duration_ms=duration_ms,
        )

    async def _drive(self, cancel_waiter: asyncio.Future) -> None:
        in_flight: set[asyncio.Task] = set()
        while not self.cancel.is_set():
            for step in self._admit_ready():
                in_flight.add(
                    self.queue.submit(lambda step=step: self._run_step(step), name=step.id),
                )
            if not in_flight:
                return
            done, _ = await asyncio.wait(
                {*in_flight, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            in_flight.difference_update(done)

    def _admit_ready(self) -> list[Step]:
        """Skip blocked steps and return newly ready ones, both in plan order."""

        ready: list[Step] = []
        changed = True
        while changed:
            changed = False
            for step in self.plan.steps:
                if step.id in self.submitted or self._is_terminal(step.id):
                    continue
                if unresolved_dependencies(step.depends_on, self.context):
                    continue
                blocker = blocking_dependency(step.depends_on, self.context)
                if blocker is not None and not step.run_always:
                    status = self.context.steps[blocker].status.value
                    self._skip(step, f"dependency {blocker} {status}")
                    self.skipped_by_dependency.add(step.id)
                    changed = True
                    continue
                if not self.context.evaluate_condition(step.condition):
                    self._skip(step, CONDITION_NOT_MET)
                    changed = True
                    continue
                self.submitted.add(step.id)
                ready.append(step)
        return ready

    async def _run_step(self, step: Step) -> None:
        clock = self.executor.clock
        result = StepResult(step_id=step.id).start(at=clock())
        self.context = self.context.with_step_result(result)
        self._emit(ProgressEventType.START, step.id, step)
        logger.debug("Step %s started on agent=%s", step.id, step.agent)

        try:
            response = await self._invoke(step)
        except asyncio.CancelledError:
            self._finish(step, result.fail(error=CANCELLED, at=clock()))
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Step %s failed: %s", step.id, error)
            self._finish(step, result.fail(error=str(error) or type(error).__name__, at=clock()))
            return

        if response.error is not None:
            logger.warning("Step %s failed on %s: %s", step.id, response.model, response.error)
            finished = result.fail(
                error=response.error,
                at=clock(),
                model=response.model,
                duration_ms=response.duration_ms,
            )
        else:
            finished = result.complete(
                content=response.content,
                model=response.model,
                duration_ms=response.duration_ms,
                usage=response.usage,
                at=clock(),
            )
            logger.info("Step %s completed in %.1fs", step.id, response.duration_ms / 1000)
        self._finish(step, finished)

    async def _invoke(self, step: Step) -> AgentResponse:
        snapshot = self.context
        rendered = snapshot.substitute(step.prompt)
        assembled = await self.executor.assembler.assemble(step, snapshot)
        prompt = f"{assembled.text}\n\n{rendered}" if assembled.text else rendered

        adapter = await self.executor.registry.resolve(step.agent)

        def _forward(event: StreamEvent) -> None:
            self._emit(ProgressEventType.STREAM, step.id, event)

        return await adapter.run(prompt, AgentRunOptions(model=step.model, on_event=_forward))

    def _finish(self, step: Step, result: StepResult) -> None:
        self.context = self.context.with_step_result(result, step.output_as)
        event_type = (
            ProgressEventType.COMPLETE
            if result.status == StepStatus.COMPLETED
            else ProgressEventType.ERROR
        )
        self._emit(event_type, step.id, result)

    def _skip(self, step: Step, reason: str) -> None:
        existing = self.context.steps.get(step.id) or StepResult(step_id=step.id)
        result = existing.skip(reason=reason, at=self.executor.clock())
        self.context = self.context.with_step_result(result)
        logger.info("Step %s skipped: %s", step.id, reason)
        self._emit(ProgressEventType.SKIP, step.id, result)

    def _is_terminal(self, step_id: str) -> bool:
        result = self.context.steps.get(step_id)
        return result is not None and result.status.terminal

    def _emit(self, event_type: ProgressEventType, step_id: str, data: object) -> None:
        event = ProgressEvent(
            type=event_type,
            step_id=step_id,
            timestamp=self.executor.clock(),
            data=data,
        )
        self.events.append(event)
        if self.executor.on_progress is None:
            return
        try:
            self.executor.on_progress(event)
        except Exception:
            logger.exception("Progress callback failed for step %s", step_id)

    def _plan_status(self, *, cancelled: bool) -> PlanStatus:
        if cancelled:
            return PlanStatus.CANCELLED
        sinks = [self.context.steps[step_id] for step_id in self.plan.sink_ids]
        if self.plan.mode == PlanMode.COMPARE:
            answered = any(
                result.status == StepStatus.COMPLETED
                for step_id, result in self.context.steps.items()
                if self.plan.step(step_id).action != COMBINE_ACTION
            )
            return PlanStatus.COMPLETED if answered else PlanStatus.FAILED
        for sink in sinks:
            if sink.status == StepStatus.FAILED:
                return PlanStatus.FAILED
            if sink.status == StepStatus.SKIPPED and sink.step_id in self.skipped_by_dependency:
                return PlanStatus.FAILED
        return PlanStatus.COMPLETED
