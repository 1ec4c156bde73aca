"""Controllers for conductor CLI commands."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from agent_conductor.agents.availability import AvailabilityCache
from agent_conductor.agents.cascade import AgentRegistry
from agent_conductor.agents.cli_agent import build_cli_agents
from agent_conductor.config import Settings
from agent_conductor.context.embedder import build_embedder
from agent_conductor.context.injection import ContextAssembler
from agent_conductor.context.summarizer import AgentSummarizer
from agent_conductor.executor.builders import (
    build_compare_plan,
    build_pipeline_plan,
    build_single_plan,
    parse_agents_string,
    parse_pipeline_string,
)
from agent_conductor.executor.contracts import read_plan, write_plan
from agent_conductor.executor.models import (
    ExecutionResult,
    Plan,
    PlanMode,
    PlanStatus,
    ProgressEvent,
    ProgressEventType,
    StepResult,
    StepStatus,
)
from agent_conductor.executor.planner import format_plan, generate_plan
from agent_conductor.executor.scheduler import PlanExecutor
from agent_conductor.executor.templates import TemplateStore, create_template
from agent_conductor.stream.decoder import StreamDecoder, format_tool_call
from agent_conductor.stream.events import (
    DecodeErrorEvent,
    FinalResultEvent,
    InitEvent,
    StreamEvent,
    TextDeltaEvent,
    ToolCallStartEvent,
    ToolResultEvent,
)

LineSink = Callable[[str], None]


@dataclass(slots=True)
class RunCommand:
    """CLI input for a single-agent run or a plan file run."""

    prompt: str
    agent: str
    plan_file: Path | None = None
    max_concurrency: int | None = None
    model: str | None = None


@dataclass(slots=True)
class CompareCommand:
    """CLI input for running one prompt on several agents."""

    prompt: str
    agents: str
    sequential: bool = False
    pick: bool = False
    max_concurrency: int | None = None


@dataclass(slots=True)
class PipelineCommand:
    """CLI input for a sequential agent pipeline."""

    prompt: str
    steps: str
    save_as: str | None = None
    description: str = ""


@dataclass(slots=True)
class PlanCommand:
    """CLI input for agent-generated plans."""

    prompt: str
    planner_agent: str | None = None
    execute: bool = False
    output_path: Path | None = None


@dataclass(slots=True)
class TemplateCommand:
    """CLI input for template operations."""

    name: str
    prompt: str = ""


@dataclass(slots=True)
class DecodeCommand:
    """CLI input for decoding a captured stream-JSON transcript."""

    path: Path


@dataclass(slots=True)
class CommandResult:
    """Printable outcome; ``success`` drives the CLI exit status."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class ConductorCliController:
    """Coordinates plan building, execution and inspection CLI operations."""

    def __init__(
        self,
        *,
        settings_factory: Callable[[], Settings] = Settings.from_env,
        progress: LineSink | None = None,
    ) -> None:
        self._settings_factory = settings_factory
        self._progress = progress

    def run(self, command: RunCommand) -> CommandResult:
        settings = self._settings()
        if command.plan_file is not None:
            plan = read_plan(command.plan_file)
        else:
            plan = build_single_plan(command.prompt, command.agent, model=command.model)
        return self._execute(settings, plan, max_concurrency=command.max_concurrency)

    def compare(self, command: CompareCommand) -> CommandResult:
        settings = self._settings()
        plan = build_compare_plan(
            command.prompt,
            parse_agents_string(command.agents),
            sequential=command.sequential,
            pick=command.pick,
        )
        return self._execute(settings, plan, max_concurrency=command.max_concurrency)

    def pipeline(self, command: PipelineCommand) -> CommandResult:
        settings = self._settings()
        stages = parse_pipeline_string(command.steps)
        lines: list[str] = []
        if command.save_as:
            template = create_template(command.save_as, stages, command.description)
            path = TemplateStore(settings.executor.templates_dir).save(template)
            lines.append(f"Template saved: {template.name} ({path})")
        result = self._execute(settings, build_pipeline_plan(command.prompt, stages))
        result.lines[:0] = lines
        return result

    def plan(self, command: PlanCommand) -> CommandResult:
        settings = self._settings()
        registry = build_registry(settings)
        planner_agent = command.planner_agent or settings.executor.planner_agent
        planned = asyncio.run(generate_plan(command.prompt, registry, planner_agent=planner_agent))
        lines = format_plan(planned.plan, planned.reasoning)
        if command.output_path is not None:
            write_plan(command.output_path, planned.plan)
            lines.append(f"Plan written: {command.output_path}")
        if not command.execute:
            return CommandResult(lines=lines)
        result = self._execute(settings, planned.plan, registry=registry)
        return CommandResult(lines=[*lines, "", *result.lines], success=result.success)

    def template_list(self) -> CommandResult:
        store = TemplateStore(self._settings().executor.templates_dir)
        templates = store.list()
        if not templates:
            return CommandResult(lines=["No templates saved."])
        return CommandResult(
            lines=[
                f"{template.name}: "
                + " -> ".join(f"{stage.agent}:{stage.action}" for stage in template.stages)
                + (f"  ({template.description})" if template.description else "")
                for template in templates
            ],
        )

    def template_show(self, command: TemplateCommand) -> CommandResult:
        template = TemplateStore(self._settings().executor.templates_dir).load(command.name)
        lines = [f"Template: {template.name}"]
        if template.description:
            lines.append(f"Description: {template.description}")
        lines.append(f"Created: {template.created_at.isoformat()}")
        lines.extend(
            f"{index}. [{stage.agent}] {stage.action}"
            for index, stage in enumerate(template.stages, start=1)
        )
        return CommandResult(lines=lines)

    def template_delete(self, command: TemplateCommand) -> CommandResult:
        TemplateStore(self._settings().executor.templates_dir).delete(command.name)
        return CommandResult(lines=[f"Template deleted: {command.name}"])

    def template_run(self, command: TemplateCommand) -> CommandResult:
        settings = self._settings()
        template = TemplateStore(settings.executor.templates_dir).load(command.name)
        return self._execute(settings, template.to_plan(command.prompt))

    def agents(self) -> CommandResult:
        settings = self._settings()
        registry = build_registry(settings)

        async def _probe() -> tuple[dict[str, bool], str | None]:
            availability = await registry.availability()
            try:
                selected = await registry.resolve("auto")
            except LookupError:
                return availability, None
            return availability, selected.name

        availability, auto_agent = asyncio.run(_probe())
        lines = [
            f"{name}: {'available' if available else 'unavailable'} "
            f"(model={settings.agents.models.get(name, '-')})"
            for name, available in availability.items()
        ]
        lines.append(f"auto -> {auto_agent or 'none available'}")
        return CommandResult(lines=lines, success=auto_agent is not None)

    def decode(self, command: DecodeCommand) -> CommandResult:
        decoder = StreamDecoder()
        events = decoder.feed_block(command.path.read_text("utf-8"))
        lines = [describe_event(event) for event in events]
        errors = sum(isinstance(event, DecodeErrorEvent) for event in events)
        state = decoder.state
        lines.append(
            f"Decoded {len(events)} events: session={state.session_id or '-'} "
            f"decode_errors={errors} open_tool_calls={len(state.in_flight)} "
            f"outcome={state.outcome or 'unfinished'}",
        )
        return CommandResult(lines=lines, success=errors == 0)

    def _settings(self) -> Settings:
        settings = self._settings_factory()
        settings.validate()
        return settings

    def _execute(
        self,
        settings: Settings,
        plan: Plan,
        *,
        max_concurrency: int | None = None,
        registry: AgentRegistry | None = None,
    ) -> CommandResult:
        registry = registry or build_registry(settings)
        executor = PlanExecutor(
            registry,
            assembler=build_assembler(settings, registry),
            max_concurrency=max_concurrency or settings.executor.max_concurrency,
            on_progress=self._on_progress if self._progress is not None else None,
        )
        result = asyncio.run(executor.execute(plan))
        return CommandResult(
            lines=render_execution(result),
            success=result.status == PlanStatus.COMPLETED,
        )

    def _on_progress(self, event: ProgressEvent) -> None:
        line = describe_progress(event)
        if line and self._progress is not None:
            self._progress(line)


def build_registry(settings: Settings) -> AgentRegistry:
    return AgentRegistry(
        build_cli_agents(settings.agents),
        cascade_order=settings.agents.cascade,
        cache=AvailabilityCache(ttl_seconds=settings.agents.availability_ttl_seconds),
    )


def build_assembler(settings: Settings, registry: AgentRegistry) -> ContextAssembler:
    summarizer_agent = settings.context.summarizer_agent
    adapter = registry.get(summarizer_agent) if summarizer_agent else None
    return ContextAssembler(
        settings=settings.context,
        summarizer=AgentSummarizer(adapter) if adapter is not None else None,
        embedder=build_embedder(
            settings.context.embedding_model,
            allow_fallback=settings.context.embedding_allow_fallback,
        ),
    )


def render_execution(result: ExecutionResult) -> list[str]:
    """Summary, per-step status lines and the output worth printing."""

    plan = result.plan
    lines = [
        f"Plan {plan.id}: mode={plan.mode.value} status={result.status.value} "
        f"steps={len(plan.steps)} duration={result.duration_ms / 1000:.1f}s",
    ]
    for step in plan.steps:
        step_result = result.context.steps.get(step.id)
        if step_result is not None:
            lines.append(_step_line(step.agent, step_result))

    if plan.mode == PlanMode.COMPARE and len(plan.sink_ids) > 1:
        for step in plan.steps:
            step_result = result.context.steps.get(step.id)
            if step_result is not None and step_result.status == StepStatus.COMPLETED:
                lines.extend(["", f"--- {step.id} ({step_result.model or step.agent}) ---"])
                lines.append(step_result.content)
        return lines

    output = result.final_output
    if output is not None:
        lines.extend(["", output])
    return lines


def _step_line(agent: str, result: StepResult) -> str:
    line = f"[{result.step_id}] {result.status.value} agent={agent}"
    if result.model:
        line += f" model={result.model}"
    if result.status in {StepStatus.COMPLETED, StepStatus.FAILED}:
        line += f" {result.duration_ms}ms"
    if result.usage is not None:
        line += f" tokens={result.usage.total_tokens}"
    if result.error:
        line += f" error={result.error}"
    return line


def describe_progress(event: ProgressEvent) -> str | None:
    if event.type == ProgressEventType.START:
        return f"> {event.step_id} started"
    if event.type == ProgressEventType.STREAM:
        if isinstance(event.data, ToolCallStartEvent):
            return f"  {event.step_id}: {format_tool_call(event.data)}"
        return None
    if event.type == ProgressEventType.COMPLETE:
        return f"< {event.step_id} completed"
    if event.type == ProgressEventType.ERROR:
        return f"! {event.step_id} failed: {event.data.error}"
    return f"- {event.step_id} skipped: {event.data.error}"


def describe_event(event: StreamEvent) -> str:
    """One display line per decoded stream event."""

    if isinstance(event, InitEvent):
        return f"init session={event.session_id} tools={len(event.tools)} model={event.model or '-'}"
    if isinstance(event, ToolCallStartEvent):
        return f"tool_call {event.call_id} {format_tool_call(event)}"
    if isinstance(event, ToolResultEvent):
        duration = f"{event.duration_ms}ms" if event.duration_ms is not None else "?"
        status = "error" if event.is_error else "ok"
        return f"tool_result {event.call_id} {status} {duration}"
    if isinstance(event, TextDeltaEvent):
        return f"text {event.text}"
    if isinstance(event, FinalResultEvent):
        line = f"result {event.subtype} error={str(event.is_error).lower()}"
        if event.usage is not None:
            line += f" tokens={event.usage.total_tokens}"
        if event.cost_usd is not None:
            line += f" cost_usd={event.cost_usd:.4f}"
        if event.permission_denials:
            line += f" denials={len(event.permission_denials)}"
        return line
    return f"decode_error {event.message}"
