"""Per-step context assembly under a token budget.

Fragments named by injection rules are resolved from the execution context,
sorted by priority and fitted greedily into the budget. Fragments that do not
fit degrade according to ``FIT_POLICY``: summarize, truncate, drop, or (for
critical content only) a hard floor that is kept even when over budget.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum

from agent_conductor.config import ContextSettings
from agent_conductor.context.embedder import Embedder
from agent_conductor.context.scaffolding import ContextScaffolder
from agent_conductor.context.summarizer import Summarizer, extract_key_points, format_key_points
from agent_conductor.context.tokens import (
    TRUNCATION_MARKER,
    estimate_tokens,
    get_token_limits,
    truncate_to_tokens,
)
from agent_conductor.executor.context import ExecutionContext
from agent_conductor.executor.models import (
    ContextSource,
    IncludeMode,
    InjectionRule,
    Step,
    StepRole,
)

logger = logging.getLogger(__name__)

AUTO_AGENT_TARGET = "claude"
XML_AGENTS = frozenset({"claude"})
FILE_CONTEXT_VARIABLE = "file_context"


def _rule(
    source: ContextSource,
    include: IncludeMode,
    priority: int,
    tag: str,
) -> InjectionRule:
    return InjectionRule(source=source, include=include, priority=priority, tag=tag)


DEFAULT_RULES: dict[StepRole, tuple[InjectionRule, ...]] = {
    StepRole.CODE: (
        _rule(ContextSource.USER_INPUT, IncludeMode.FULL, 1, "task"),
        _rule(ContextSource.PREVIOUS_OUTPUT, IncludeMode.FULL, 1, "requirements"),
        _rule(ContextSource.FILE_CONTEXT, IncludeMode.FULL, 2, "code_context"),
    ),
    StepRole.REVIEW: (
        _rule(ContextSource.STEP_OUTPUT, IncludeMode.FULL, 1, "code_to_review"),
        _rule(ContextSource.USER_INPUT, IncludeMode.SUMMARY, 2, "original_task"),
        _rule(ContextSource.PREVIOUS_OUTPUT, IncludeMode.SUMMARY, 3, "background"),
    ),
    StepRole.ANALYZE: (
        _rule(ContextSource.USER_INPUT, IncludeMode.FULL, 1, "task"),
        _rule(ContextSource.FILE_CONTEXT, IncludeMode.KEY_POINTS, 2, "context"),
        _rule(ContextSource.PREVIOUS_OUTPUT, IncludeMode.SUMMARY, 3, "prior_analysis"),
    ),
    StepRole.FIX: (
        _rule(ContextSource.STEP_OUTPUT, IncludeMode.FULL, 1, "review_feedback"),
        _rule(ContextSource.PREVIOUS_OUTPUT, IncludeMode.FULL, 1, "original_code"),
        _rule(ContextSource.USER_INPUT, IncludeMode.SUMMARY, 3, "task"),
    ),
    StepRole.PLAN: (
        _rule(ContextSource.USER_INPUT, IncludeMode.FULL, 1, "task"),
        _rule(ContextSource.FILE_CONTEXT, IncludeMode.KEY_POINTS, 2, "codebase_context"),
    ),
    StepRole.SUMMARIZE: (
        _rule(ContextSource.PREVIOUS_OUTPUT, IncludeMode.FULL, 1, "content_to_summarize"),
        _rule(ContextSource.USER_INPUT, IncludeMode.SUMMARY, 3, "original_task"),
    ),
}


class FitStrategy(str, Enum):
    """Degradation applied to a fragment that does not fit the remaining budget."""

    SUMMARIZE = "summarize"
    TRUNCATE = "truncate"
    FLOOR = "floor"
    DROP = "drop"


FIT_POLICY: dict[int, tuple[FitStrategy, ...]] = {
    1: (FitStrategy.SUMMARIZE, FitStrategy.TRUNCATE, FitStrategy.FLOOR),
    2: (FitStrategy.SUMMARIZE, FitStrategy.TRUNCATE, FitStrategy.DROP),
    3: (FitStrategy.DROP,),
    4: (FitStrategy.DROP,),
}


@dataclass(frozen=True, slots=True)
class ContextBlock:
    """One resolved fragment with its token estimate and fitting outcome."""

    source: ContextSource
    content: str
    tokens: int
    priority: int
    include: IncludeMode
    step_id: str | None = None
    tag: str | None = None
    over_budget: bool = False

    @property
    def tag_name(self) -> str:
        return self.tag or source_to_tag(self.source, self.step_id)


@dataclass(frozen=True, slots=True)
class AssembledContext:
    """Rendered context plus the blocks that made it in and those dropped."""

    text: str
    blocks: tuple[ContextBlock, ...]
    dropped: tuple[ContextBlock, ...]
    total_tokens: int
    budget: int
    format: str

    @property
    def over_budget(self) -> bool:
        return any(block.over_budget for block in self.blocks)


def merge_rules(
    custom: Sequence[InjectionRule],
    role: StepRole | None,
) -> tuple[InjectionRule, ...]:
    """Custom rules first; role defaults fill in sources the custom rules do not cover."""

    if role is None:
        return tuple(custom)
    custom_keys = {(rule.source, rule.step_id or "") for rule in custom}
    merged = list(custom)
    merged.extend(
        rule
        for rule in DEFAULT_RULES.get(role, ())
        if (rule.source, rule.step_id or "") not in custom_keys
    )
    return tuple(merged)


def rules_for_step(step: Step) -> tuple[InjectionRule, ...]:
    if step.injection_rules is not None:
        return merge_rules(step.injection_rules, step.role)
    if step.role is not None:
        return DEFAULT_RULES.get(step.role, ())
    return ()


def source_to_tag(source: ContextSource, step_id: str | None = None) -> str:
    if source == ContextSource.USER_INPUT:
        return "task"
    if source == ContextSource.PLAN:
        return "plan"
    if source == ContextSource.STEP_OUTPUT:
        return f"{step_id}_output" if step_id else "step_output"
    if source == ContextSource.PREVIOUS_OUTPUT:
        return "previous_context"
    if source == ContextSource.FILE_CONTEXT:
        return "code_context"
    return "context"


def format_for_agent(agent: str) -> str:
    target = AUTO_AGENT_TARGET if agent == "auto" else agent
    return "xml" if target in XML_AGENTS else "markdown"


def render_blocks(blocks: Sequence[ContextBlock], output_format: str) -> str:
    sections: list[str] = []
    for block in blocks:
        tag = block.tag_name
        content = block.content.strip()
        if output_format == "xml":
            attrs = f' source="{block.step_id}"' if block.step_id else ""
            sections.append(f"<{tag}{attrs}>\n{content}\n</{tag}>")
        else:
            header = re.sub(r"\b\w", lambda match: match.group(0).upper(), tag.replace("_", " "))
            sections.append(f"## {header}\n\n{content}")
    return "\n\n".join(sections)


class ContextAssembler:
    """Builds the context section of a step prompt within a token budget.

    The result depends only on the step, the execution context, the explicit
    arguments and the configured collaborators.
    """

    def __init__(
        self,
        *,
        settings: ContextSettings | None = None,
        summarizer: Summarizer | None = None,
        embedder: Embedder | None = None,
    ) -> None:
        self.settings = settings or ContextSettings()
        self.summarizer = summarizer
        self.scaffolder = ContextScaffolder(
            chunk_size_tokens=self.settings.chunk_size_tokens,
            overlap_tokens=self.settings.chunk_overlap_tokens,
            chars_per_token=self.settings.chars_per_token,
            summarizer=summarizer,
            embedder=embedder,
        )

    def estimate(self, text: str) -> int:
        return estimate_tokens(text, self.settings.chars_per_token)

    def default_budget(self, step: Step) -> int:
        agent = AUTO_AGENT_TARGET if step.agent == "auto" else step.agent
        limits = get_token_limits(agent)
        budget = math.floor(limits.max_tokens * self.settings.budget_ratio)
        return max(budget - self.estimate(step.prompt), 0)

    async def assemble(
        self,
        step: Step,
        context: ExecutionContext,
        *,
        budget: int | None = None,
        file_context: str | None = None,
        output_format: str | None = None,
    ) -> AssembledContext:
        token_budget = self.default_budget(step) if budget is None else budget
        fmt = output_format or format_for_agent(step.agent)
        rules = rules_for_step(step)
        if not rules:
            return AssembledContext(
                text="",
                blocks=(),
                dropped=(),
                total_tokens=0,
                budget=token_budget,
                format=fmt,
            )

        blocks = await self._collect(rules, step, context, file_context, token_budget)
        fitted, dropped = await self._fit(blocks, token_budget)
        return AssembledContext(
            text=render_blocks(fitted, fmt),
            blocks=tuple(fitted),
            dropped=tuple(dropped),
            total_tokens=sum(block.tokens for block in fitted),
            budget=token_budget,
            format=fmt,
        )

    async def _collect(  # noqa: PLR0913
        self,
        rules: Sequence[InjectionRule],
        step: Step,
        context: ExecutionContext,
        file_context: str | None,
        budget: int,
    ) -> list[ContextBlock]:
        blocks: list[ContextBlock] = []
        for original_rule in rules:
            if original_rule.condition and not context.evaluate_condition(original_rule.condition):
                continue
            if original_rule.include == IncludeMode.NONE:
                continue
            rule = self._apply_compression(original_rule)
            step_id = rule.step_id
            if rule.source == ContextSource.STEP_OUTPUT and step_id is None and step.depends_on:
                step_id = step.depends_on[-1]

            content = _resolve_source(rule, step, step_id, context, file_context)
            if not content:
                continue
            if self.estimate(content) > self.settings.scaffold_threshold_tokens:
                content = await self._scaffold(content, context.prompt, budget)
            content = await self._apply_include_mode(content, rule.include)
            blocks.append(
                ContextBlock(
                    source=rule.source,
                    content=content,
                    tokens=self.estimate(content),
                    priority=rule.priority,
                    include=rule.include,
                    step_id=step_id,
                    tag=rule.tag or (rule.name if rule.source == ContextSource.NAMED_OUTPUT else None),
                ),
            )
        return blocks

    def _apply_compression(self, rule: InjectionRule) -> InjectionRule:
        if not self.settings.compress:
            return rule
        if (
            rule.include == IncludeMode.FULL
            and rule.priority > 1
            and rule.source in {ContextSource.STEP_OUTPUT, ContextSource.PREVIOUS_OUTPUT}
        ):
            return replace(rule, include=IncludeMode.SUMMARY)
        return rule

    async def _scaffold(self, content: str, query: str, budget: int) -> str:
        scaffold = await self.scaffolder.scaffold(content)
        limit = min(self.settings.scaffold_threshold_tokens, max(budget, 0))
        return self.scaffolder.reconstruct(scaffold, limit, query=query)

    async def _apply_include_mode(self, content: str, include: IncludeMode) -> str:
        limit = self.settings.compression_token_limit
        if include == IncludeMode.SUMMARY:
            if self.summarizer is None or self.estimate(content) <= limit:
                return content
            return await _summarize_or_keep(self.summarizer, content, limit)
        if include == IncludeMode.KEY_POINTS:
            source = content
            if self.summarizer is not None and self.estimate(content) > limit:
                source = await _summarize_or_keep(self.summarizer, content, limit)
            points = extract_key_points(source)
            return format_key_points(points) if points else content
        if include == IncludeMode.TRUNCATED:
            return truncate_to_tokens(content, limit, chars_per_token=self.settings.chars_per_token)
        return content

    async def _fit(
        self,
        blocks: list[ContextBlock],
        budget: int,
    ) -> tuple[list[ContextBlock], list[ContextBlock]]:
        ordered = sorted(blocks, key=lambda block: block.priority)
        if sum(block.tokens for block in ordered) <= budget:
            return ordered, []

        fitted: list[ContextBlock] = []
        dropped: list[ContextBlock] = []
        remaining = budget
        for block in ordered:
            if block.tokens <= remaining:
                fitted.append(block)
                remaining -= block.tokens
                continue
            degraded = await self._degrade(block, remaining)
            if degraded is None:
                dropped.append(block)
                logger.debug(
                    "Dropped priority-%d %s block (%d tokens)",
                    block.priority,
                    block.tag_name,
                    block.tokens,
                )
                continue
            fitted.append(degraded)
            remaining = max(remaining - degraded.tokens, 0)
        return fitted, dropped

    async def _degrade(self, block: ContextBlock, remaining: int) -> ContextBlock | None:
        for strategy in FIT_POLICY[block.priority]:
            if strategy == FitStrategy.DROP:
                return None
            if strategy == FitStrategy.SUMMARIZE:
                summarized = await self._try_summarize(block, remaining)
                if summarized is not None:
                    return summarized
            elif strategy == FitStrategy.TRUNCATE:
                if remaining * self.settings.chars_per_token > len(TRUNCATION_MARKER):
                    return self._truncate(block, remaining, IncludeMode.TRUNCATED)
            elif strategy == FitStrategy.FLOOR:
                floor = self.settings.critical_floor_tokens
                logger.warning(
                    "Critical %s block (%d tokens) exceeds the context budget; "
                    "keeping %d tokens over budget",
                    block.tag_name,
                    block.tokens,
                    floor,
                )
                return replace(self._truncate(block, floor, IncludeMode.TRUNCATED), over_budget=True)
        return None

    async def _try_summarize(self, block: ContextBlock, remaining: int) -> ContextBlock | None:
        if self.summarizer is None or remaining < self.settings.min_summary_budget_tokens:
            return None
        try:
            summary = await self.summarizer.summarize(block.content, remaining)
        except Exception:  # noqa: BLE001
            logger.warning("Summarizer failed for %s block, truncating", block.tag_name, exc_info=True)
            return None
        tokens = self.estimate(summary)
        if tokens > remaining:
            return None
        return replace(block, content=summary, tokens=tokens, include=IncludeMode.SUMMARY)

    def _truncate(self, block: ContextBlock, max_tokens: int, include: IncludeMode) -> ContextBlock:
        content = truncate_to_tokens(
            block.content,
            max_tokens,
            chars_per_token=self.settings.chars_per_token,
        )
        return replace(block, content=content, tokens=self.estimate(content), include=include)


def _resolve_source(
    rule: InjectionRule,
    step: Step,
    step_id: str | None,
    context: ExecutionContext,
    file_context: str | None,
) -> str | None:
    if rule.source in {ContextSource.USER_INPUT, ContextSource.PLAN}:
        return context.prompt
    if rule.source == ContextSource.STEP_OUTPUT:
        result = context.steps.get(step_id) if step_id else None
        return result.content if result is not None and result.content else None
    if rule.source == ContextSource.PREVIOUS_OUTPUT:
        outputs = [
            f"[Step: {prior_id}]\n{content}"
            for prior_id, content in context.completed_outputs()
            if prior_id != step.id and content
        ]
        return "\n\n".join(outputs) or None
    if rule.source == ContextSource.NAMED_OUTPUT:
        return context.named_outputs.get(rule.name or "")
    if rule.source == ContextSource.FILE_CONTEXT:
        if file_context:
            return file_context
        value = context.variables.get(FILE_CONTEXT_VARIABLE)
        return str(value) if value else None
    return None


async def _summarize_or_keep(summarizer: Summarizer, content: str, target_tokens: int) -> str:
    try:
        return await summarizer.summarize(content, target_tokens)
    except Exception:  # noqa: BLE001
        logger.warning("Summarizer failed, keeping fragment as is", exc_info=True)
        return content
