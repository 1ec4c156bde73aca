"""Builders turning command-line input into execution plans."""

from __future__ import annotations

import secrets
import time
from collections.abc import Sequence
from dataclasses import dataclass

from agent_conductor.executor.models import (
    COMBINE_ACTION,
    ContextSource,
    InjectionRule,
    Plan,
    PlanMode,
    Step,
)

ACTION_PROMPTS = {
    "analyze": "Analyze the following task and provide insights:",
    "code": "Write code for the following task:",
    "review": "Review the following and suggest improvements:",
    "fix": "Fix any issues in the following:",
    "test": "Write tests for the following:",
    "summarize": "Summarize the following concisely:",
}

PICK_PROMPT = (
    "Compare the responses above and select the best one. Explain why briefly, "
    "then output ONLY the selected response.\n\n"
    "Original task: {{prompt}}\n\nSelected response:"
)


@dataclass(frozen=True, slots=True)
class PipelineStage:
    """One ``agent:action`` element of a pipeline description."""

    agent: str
    action: str = "prompt"
    prompt_template: str | None = None


def new_plan_id() -> str:
    return f"plan_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def step_id(index: int) -> str:
    return f"step_{index}"


def build_single_plan(prompt: str, agent: str = "auto", *, model: str | None = None) -> Plan:
    return Plan(
        id=new_plan_id(),
        mode=PlanMode.SINGLE,
        prompt=prompt,
        steps=(
            Step(id=step_id(0), agent=agent, prompt="{{prompt}}", output_as="result", model=model),
        ),
    )


def build_compare_plan(
    prompt: str,
    agents: Sequence[str],
    *,
    sequential: bool = False,
    pick: bool = False,
) -> Plan:
    """Same prompt for every agent; ``pick`` adds a step selecting the best answer."""

    if not agents:
        raise ValueError("Compare plan needs at least one agent")
    steps = [
        Step(
            id=step_id(index),
            agent=agent,
            prompt="{{prompt}}",
            output_as=f"response_{agent}",
            depends_on=(step_id(index - 1),) if sequential and index > 0 else (),
            run_always=sequential and index > 0,
        )
        for index, agent in enumerate(agents)
    ]
    if pick:
        steps.append(
            Step(
                id=step_id(len(agents)),
                agent="auto",
                action=COMBINE_ACTION,
                prompt=PICK_PROMPT,
                depends_on=tuple(step_id(index) for index in range(len(agents))),
                output_as="selected",
                injection_rules=tuple(
                    InjectionRule(
                        source=ContextSource.NAMED_OUTPUT,
                        name=f"response_{agent}",
                        tag=f"response_{agent}",
                        priority=1,
                    )
                    for agent in agents
                ),
                run_always=True,
            ),
        )
    return Plan(id=new_plan_id(), mode=PlanMode.COMPARE, prompt=prompt, steps=tuple(steps))


def build_pipeline_plan(prompt: str, stages: Sequence[PipelineStage]) -> Plan:
    """Chain stages sequentially; each stage sees the previous stage's output."""

    if not stages:
        raise ValueError("Pipeline plan needs at least one stage")
    steps = tuple(
        Step(
            id=step_id(index),
            agent=stage.agent,
            action=stage.action,
            prompt=stage.prompt_template or pipeline_stage_prompt(stage.action, index),
            depends_on=(step_id(index - 1),) if index > 0 else (),
            output_as=f"step{index}_output",
        )
        for index, stage in enumerate(stages)
    )
    return Plan(id=new_plan_id(), mode=PlanMode.PIPELINE, prompt=prompt, steps=steps)


def pipeline_stage_prompt(action: str, index: int) -> str:
    previous = f"\n\nPrevious step output:\n{{{{step{index - 1}_output}}}}" if index > 0 else ""
    lead = ACTION_PROMPTS.get(action, f"{action}:")
    return f"{lead}\n\n{{{{prompt}}}}{previous}"


def parse_pipeline_string(pipeline: str) -> list[PipelineStage]:
    """Parse ``"gemini:analyze,claude:code"`` into stages."""

    stages: list[PipelineStage] = []
    for part in pipeline.split(","):
        if not part.strip():
            continue
        agent, _, action = part.strip().partition(":")
        if not agent.strip():
            raise ValueError(f"Pipeline stage without agent: {part.strip()!r}")
        stages.append(PipelineStage(agent=agent.strip().lower(), action=action.strip() or "prompt"))
    if not stages:
        raise ValueError("Pipeline description is empty")
    return stages


def parse_agents_string(agents: str) -> list[str]:
    parsed = [agent.strip().lower() for agent in agents.split(",") if agent.strip()]
    if not parsed:
        raise ValueError("Agent list is empty")
    return parsed
