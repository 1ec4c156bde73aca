"""Domain models for plans, steps and their execution results."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from agent_conductor.executor.graph import validate_steps
from agent_conductor.usage import TokenUsage

if TYPE_CHECKING:
    from agent_conductor.executor.context import ExecutionContext

# action tag of the compare step that selects among the other answers
COMBINE_ACTION = "combine"


class StepStatus(str, Enum):
    """Step lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}


class PlanMode(str, Enum):
    """How a plan was built."""

    SINGLE = "single"
    COMPARE = "compare"
    PIPELINE = "pipeline"
    AUTO = "auto"


class PlanStatus(str, Enum):
    """Overall outcome of one plan run."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepRole(str, Enum):
    """Step role used to pick default context injection rules."""

    CODE = "code"
    REVIEW = "review"
    ANALYZE = "analyze"
    FIX = "fix"
    PLAN = "plan"
    SUMMARIZE = "summarize"


class ContextSource(str, Enum):
    """Where a context fragment comes from."""

    USER_INPUT = "user_input"
    PLAN = "plan"
    STEP_OUTPUT = "step_output"
    PREVIOUS_OUTPUT = "previous_output"
    NAMED_OUTPUT = "named_output"
    FILE_CONTEXT = "file_context"


class IncludeMode(str, Enum):
    """How much of a fragment to inject."""

    FULL = "full"
    SUMMARY = "summary"
    KEY_POINTS = "key_points"
    TRUNCATED = "truncated"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class InjectionRule:
    """Declares one context fragment to assemble into a step prompt."""

    source: ContextSource
    include: IncludeMode = IncludeMode.FULL
    priority: int = 2
    tag: str | None = None
    step_id: str | None = None
    name: str | None = None
    condition: str | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.priority <= 4:
            raise ValueError(f"Injection rule priority must be within 1..4, got {self.priority}")
        if self.source == ContextSource.NAMED_OUTPUT and not self.name:
            raise ValueError("named_output injection rule requires a name")


@dataclass(frozen=True, slots=True)
class Step:
    """One unit of work bound to one agent invocation."""

    id: str
    agent: str = "auto"
    action: str = "prompt"
    prompt: str = "{{prompt}}"
    depends_on: tuple[str, ...] = ()
    output_as: str | None = None
    injection_rules: tuple[InjectionRule, ...] | None = None
    role: StepRole | None = None
    condition: str | None = None
    run_always: bool = False
    model: str | None = None


@dataclass(frozen=True, slots=True)
class Plan:
    """Dependency graph of steps plus metadata; the unit of scheduling.

    Construction fails with ``PlanValidationError`` for duplicate step ids,
    unknown dependencies and dependency cycles.
    """

    id: str
    mode: PlanMode
    prompt: str
    steps: tuple[Step, ...]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        validate_steps(self.steps)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def sink_ids(self) -> tuple[str, ...]:
        """Ids of steps no other step depends on, in plan order."""

        referenced = {dep for step in self.steps for dep in step.depends_on}
        return tuple(step.id for step in self.steps if step.id not in referenced)


@dataclass(frozen=True, slots=True)
class StepResult:
    """Execution record of one step; each transition returns a new value."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    content: str = ""
    error: str | None = None
    model: str | None = None
    duration_ms: int = 0
    usage: TokenUsage | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED and self.error is None

    def start(self, *, at: float) -> StepResult:
        self._ensure_open()
        if self.status != StepStatus.PENDING:
            raise ValueError(f"Step {self.step_id} already started")
        return replace(self, status=StepStatus.RUNNING, started_at=at)

    def complete(  # noqa: PLR0913
        self,
        *,
        content: str,
        model: str | None,
        duration_ms: int,
        usage: TokenUsage | None,
        at: float,
    ) -> StepResult:
        self._ensure_running()
        return replace(
            self,
            status=StepStatus.COMPLETED,
            content=content,
            model=model,
            duration_ms=duration_ms,
            usage=usage,
            finished_at=at,
        )

    def fail(
        self,
        *,
        error: str,
        at: float,
        model: str | None = None,
        duration_ms: int | None = None,
    ) -> StepResult:
        self._ensure_running()
        elapsed = (
            duration_ms
            if duration_ms is not None
            else int(round((at - (self.started_at or at)) * 1000))
        )
        return replace(
            self,
            status=StepStatus.FAILED,
            error=error,
            model=model,
            duration_ms=elapsed,
            finished_at=at,
        )

    def skip(self, *, reason: str, at: float) -> StepResult:
        self._ensure_open()
        return replace(self, status=StepStatus.SKIPPED, error=reason, finished_at=at)

    def _ensure_open(self) -> None:
        if self.status.terminal:
            raise ValueError(f"Step {self.step_id} is already {self.status.value}")

    def _ensure_running(self) -> None:
        if self.status != StepStatus.RUNNING:
            raise ValueError(
                f"Step {self.step_id} must be running to finish, got {self.status.value}",
            )


class ProgressEventType(str, Enum):
    """Kinds of progress events emitted by the scheduler."""

    START = "start"
    STREAM = "stream"
    COMPLETE = "complete"
    ERROR = "error"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One entry of the scheduler's ordered event log."""

    type: ProgressEventType
    step_id: str
    timestamp: float
    data: Any = None


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Final context and event log of one plan run."""

    plan: Plan
    status: PlanStatus
    context: ExecutionContext
    events: tuple[ProgressEvent, ...]
    duration_ms: int

    @property
    def results(self) -> dict[str, StepResult]:
        return dict(self.context.steps)

    @property
    def final_output(self) -> str | None:
        """Content of the last completed sink step, if any."""

        for step_id in reversed(self.plan.sink_ids):
            result = self.context.steps.get(step_id)
            if result is not None and result.status == StepStatus.COMPLETED:
                return result.content
        return None
