"""Agent-generated execution plans."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from agent_conductor.agents.base import AgentRunError
from agent_conductor.agents.cascade import AgentRegistry
from agent_conductor.executor.builders import new_plan_id, step_id
from agent_conductor.executor.models import Plan, PlanMode, Step

logger = logging.getLogger(__name__)

MAX_PLAN_STEPS = 5
_PREVIEW_CHARS = 200

PLANNER_PROMPT = """You are a task planner for a multi-agent system. Analyze the user's task and create an execution plan.

Available agents:
{agents}

Actions you can assign:
- analyze: Examine and provide insights
- code: Write or generate code
- review: Review and suggest improvements
- fix: Fix issues or bugs
- test: Generate tests
- summarize: Condense information

Output a JSON plan with this exact structure:
{{
  "steps": [
    {{"agent": "agent_name", "action": "action_type", "description": "What this step does"}}
  ],
  "reasoning": "Brief explanation of why this plan"
}}

Rules:
1. Use 1-{max_steps} steps (prefer fewer)
2. Each step should have a clear purpose
3. Later steps can reference earlier outputs
4. Match agents to their strengths
5. Output ONLY valid JSON, no markdown

Task: {task}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_STEPS_RE = re.compile(r'"steps"\s*:\s*\[([\s\S]*?)\]')
_TRAILING_OBJECT_COMMA_RE = re.compile(r",\s*}")
_TRAILING_ARRAY_COMMA_RE = re.compile(r",\s*]")


class PlanParseError(ValueError):
    """Planner response did not contain a usable plan."""


@dataclass(frozen=True, slots=True)
class PlannedStep:
    agent: str
    action: str
    description: str


@dataclass(frozen=True, slots=True)
class PlannerResult:
    plan: Plan
    reasoning: str | None = None


async def generate_plan(
    task: str,
    registry: AgentRegistry,
    *,
    planner_agent: str = "auto",
) -> PlannerResult:
    """Ask an agent for a plan and turn its answer into a sequential ``auto`` plan."""

    adapter = await registry.resolve(planner_agent)
    prompt = PLANNER_PROMPT.format(
        agents="\n".join(f"- {name}" for name in registry.names),
        max_steps=MAX_PLAN_STEPS,
        task=task,
    )
    logger.info("Generating plan with agent=%s", adapter.name)
    response = await adapter.run(prompt)
    if response.error is not None:
        raise AgentRunError(f"Planner agent {adapter.name} failed: {response.error}", transient=True)

    steps, reasoning = parse_plan_response(response.content)
    return PlannerResult(
        plan=build_plan_from_steps(task, steps, known_agents=registry.names),
        reasoning=reasoning,
    )


def parse_plan_response(content: str) -> tuple[list[PlannedStep], str | None]:
    """Extract planned steps from a loosely formatted JSON answer.

    Accepts fenced blocks, trailing commas, single-quoted JSON and a bare
    array of steps.
    """

    text = _FENCE_RE.sub("", content).strip()
    match = _OBJECT_RE.search(text)
    array = _ARRAY_RE.search(text)
    if array is not None and (match is None or array.start() < match.start()):
        candidate = f'{{"steps": {array.group(0)}}}'
    elif match is not None:
        candidate = match.group(0)
    else:
        raise PlanParseError(f"No JSON object found in response: {_preview(content)}")

    try:
        payload = _loads_lenient(candidate)
    except json.JSONDecodeError as error:
        steps = _salvage_steps(content)
        if steps:
            return steps, None
        raise PlanParseError(f"Failed to parse plan: {error}. Response: {_preview(content)}") from error

    raw_steps = payload.get("steps") if isinstance(payload, dict) else None
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanParseError('Plan JSON is missing a non-empty "steps" array')
    reasoning = payload.get("reasoning")
    return [_planned_step(raw) for raw in raw_steps], reasoning if isinstance(reasoning, str) else None


def _loads_lenient(candidate: str) -> Any:
    cleaned = _TRAILING_ARRAY_COMMA_RE.sub("]", _TRAILING_OBJECT_COMMA_RE.sub("}", candidate))
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return json.loads(cleaned.replace("'", '"'))


def _salvage_steps(content: str) -> list[PlannedStep]:
    match = _STEPS_RE.search(content)
    if match is None:
        return []
    try:
        raw_steps = _loads_lenient(f"[{match.group(1)}]")
    except json.JSONDecodeError:
        return []
    return [_planned_step(raw) for raw in raw_steps if isinstance(raw, dict)]


def _planned_step(raw: Any) -> PlannedStep:
    if not isinstance(raw, dict):
        raise PlanParseError(f"Plan step must be an object, got {type(raw).__name__}")
    agent = str(raw.get("agent") or "auto")
    action = str(raw.get("action") or "prompt")
    description = str(raw.get("description") or action)
    return PlannedStep(agent=agent, action=action, description=description)


def build_plan_from_steps(
    task: str,
    steps: list[PlannedStep],
    *,
    known_agents: Iterable[str],
) -> Plan:
    known = {name.lower() for name in known_agents}
    built = []
    for index, planned in enumerate(steps[:MAX_PLAN_STEPS]):
        agent = planned.agent.strip().lower()
        previous = (
            f"\n\nPrevious step output:\n{{{{step{index - 1}_output}}}}" if index > 0 else ""
        )
        built.append(
            Step(
                id=step_id(index),
                agent=agent if agent in known else "auto",
                action=planned.action,
                prompt=f"{planned.description}\n\nOriginal task: {{{{prompt}}}}{previous}",
                depends_on=(step_id(index - 1),) if index > 0 else (),
                output_as=f"step{index}_output",
            ),
        )
    return Plan(id=new_plan_id(), mode=PlanMode.AUTO, prompt=task, steps=tuple(built))


def format_plan(plan: Plan, reasoning: str | None = None) -> list[str]:
    """Human-readable plan summary, one line per entry."""

    lines = [f"Plan ID: {plan.id}", f"Mode: {plan.mode.value}", f"Steps: {len(plan.steps)}", ""]
    if reasoning:
        lines.extend([f"Reasoning: {reasoning}", ""])
    for index, step in enumerate(plan.steps, start=1):
        lines.append(f"{index}. [{step.agent}] {step.action}")
        if step.depends_on:
            lines.append(f"   depends on: {', '.join(step.depends_on)}")
    return lines


def _preview(content: str) -> str:
    return content[:_PREVIEW_CHARS] + ("..." if len(content) > _PREVIEW_CHARS else "")
