"""CLI entrypoint for agent-conductor."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_conductor import __version__
from agent_conductor.agents.base import AgentRunError
from agent_conductor.controllers import (
    CommandResult,
    CompareCommand,
    ConductorCliController,
    DecodeCommand,
    PipelineCommand,
    PlanCommand,
    RunCommand,
    TemplateCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ConductorCliController(progress=click.echo)


@click.group()
@click.version_option(version=__version__, prog_name="agent-conductor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine diagnostics (written to stderr).",
)
def conductor(log_level: str) -> None:
    """Run prompts, comparisons and multi-step plans across CLI agents.

    Agents are external CLIs (`claude`, `codex`, `gemini`, `ollama`) configured
    with `AGENT_CONDUCTOR_<AGENT>_COMMAND_TEMPLATE`. The `auto` agent picks the
    first available agent of `AGENT_CONDUCTOR_CASCADE`.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@conductor.command("run")
@click.argument("prompt", required=False, default="")
@click.option("--agent", default="auto", show_default=True, help="Agent name or `auto`.")
@click.option("--model", default=None, help="Model override for the agent.")
@click.option(
    "--plan-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Execute a saved JSON plan instead of a single prompt.",
)
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum steps in flight (defaults to `AGENT_CONDUCTOR_MAX_CONCURRENCY`).",
)
def run(
    prompt: str,
    agent: str,
    model: str | None,
    plan_file: Path | None,
    max_concurrency: int | None,
) -> None:
    """Run one prompt on one agent, or execute a plan file."""

    if not prompt and plan_file is None:
        raise click.UsageError("Provide PROMPT or --plan-file.")
    _finish(
        lambda: CONTROLLER.run(
            RunCommand(
                prompt=prompt,
                agent=agent,
                plan_file=plan_file,
                max_concurrency=max_concurrency,
                model=model,
            ),
        ),
    )


@conductor.command("compare")
@click.argument("prompt")
@click.option("--agents", required=True, help="Comma-separated agents, e.g. `claude,gemini`.")
@click.option("--sequential", is_flag=True, default=False, help="Run agents one after another.")
@click.option("--pick", is_flag=True, default=False, help="Add a step selecting the best answer.")
@click.option("--max-concurrency", type=click.IntRange(min=1), default=None)
def compare(
    prompt: str,
    agents: str,
    sequential: bool,
    pick: bool,
    max_concurrency: int | None,
) -> None:
    """Send the same prompt to several agents."""

    _finish(
        lambda: CONTROLLER.compare(
            CompareCommand(
                prompt=prompt,
                agents=agents,
                sequential=sequential,
                pick=pick,
                max_concurrency=max_concurrency,
            ),
        ),
    )


@conductor.command("pipeline")
@click.argument("prompt")
@click.option(
    "--steps",
    required=True,
    help="Stages as `agent:action`, e.g. `gemini:analyze,claude:code,codex:review`.",
)
@click.option("--save-as", default=None, help="Also save the stages as a named template.")
@click.option("--description", default="", help="Template description used with --save-as.")
def pipeline(prompt: str, steps: str, save_as: str | None, description: str) -> None:
    """Chain agents; each stage receives the previous stage's output."""

    _finish(
        lambda: CONTROLLER.pipeline(
            PipelineCommand(prompt=prompt, steps=steps, save_as=save_as, description=description),
        ),
    )


@conductor.command("plan")
@click.argument("prompt")
@click.option("--planner-agent", default=None, help="Agent generating the plan.")
@click.option("--execute", is_flag=True, default=False, help="Execute the generated plan.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the generated plan as JSON.",
)
def plan(prompt: str, planner_agent: str | None, execute: bool, output_path: Path | None) -> None:
    """Let an agent design a multi-step plan for PROMPT."""

    _finish(
        lambda: CONTROLLER.plan(
            PlanCommand(
                prompt=prompt,
                planner_agent=planner_agent,
                execute=execute,
                output_path=output_path,
            ),
        ),
    )


@conductor.group()
def template() -> None:
    """Saved pipeline templates."""


@template.command("list")
def template_list() -> None:
    """List saved templates."""

    _finish(CONTROLLER.template_list)


@template.command("show")
@click.argument("name")
def template_show(name: str) -> None:
    """Show one template."""

    _finish(lambda: CONTROLLER.template_show(TemplateCommand(name=name)))


@template.command("delete")
@click.argument("name")
def template_delete(name: str) -> None:
    """Delete one template."""

    _finish(lambda: CONTROLLER.template_delete(TemplateCommand(name=name)))


@template.command("run")
@click.argument("name")
@click.argument("prompt")
def template_run(name: str, prompt: str) -> None:
    """Run a saved template as a pipeline."""

    _finish(lambda: CONTROLLER.template_run(TemplateCommand(name=name, prompt=prompt)))


@conductor.command("agents")
def agents() -> None:
    """Show configured agents and which one `auto` resolves to."""

    _finish(CONTROLLER.agents)


@conductor.command("decode")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def decode(path: Path) -> None:
    """Decode a captured stream-JSON transcript and print its events."""

    _finish(lambda: CONTROLLER.decode(DecodeCommand(path=path)))


def _finish(action: Callable[[], CommandResult]) -> None:
    try:
        result = action()
    except (AgentRunError, LookupError, OSError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command finished with failures.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    conductor()
