"""Named pipeline templates stored as JSON files."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_conductor.executor.builders import PipelineStage, build_pipeline_plan
from agent_conductor.executor.contracts import load_json, write_json
from agent_conductor.executor.models import Plan

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class TemplateNotFoundError(LookupError):
    """No template with the requested name exists."""


@dataclass(frozen=True, slots=True)
class PipelineTemplate:
    """Reusable pipeline: ordered agent/action stages under a name."""

    name: str
    stages: tuple[PipelineStage, ...]
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_plan(self, prompt: str) -> Plan:
        return build_pipeline_plan(prompt, self.stages)


def create_template(
    name: str,
    stages: Sequence[PipelineStage],
    description: str = "",
) -> PipelineTemplate:
    validate_template_name(name)
    if not stages:
        raise ValueError("Template needs at least one stage")
    return PipelineTemplate(name=name, stages=tuple(stages), description=description)


def validate_template_name(name: str) -> None:
    if not _NAME_RE.match(name):
        raise ValueError(
            f"Invalid template name {name!r}: use letters, digits, '-' and '_' only",
        )


class TemplateStore:
    """Directory of ``<name>.json`` template files."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, name: str) -> Path:
        validate_template_name(name)
        return self.directory / f"{name}.json"

    def load(self, name: str) -> PipelineTemplate:
        path = self._path(name)
        if not path.exists():
            raise TemplateNotFoundError(f"Template not found: {name}")
        return template_from_dict(load_json(path))

    def save(self, template: PipelineTemplate) -> Path:
        path = self._path(template.name)
        write_json(path, template_to_dict(template))
        logger.info("Saved template %s to %s", template.name, path)
        return path

    def list(self) -> list[PipelineTemplate]:
        if not self.directory.is_dir():
            return []
        templates: list[PipelineTemplate] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                templates.append(template_from_dict(load_json(path)))
            except (TypeError, ValueError) as error:
                logger.warning("Skipping unreadable template %s: %s", path, error)
        return templates

    def delete(self, name: str) -> None:
        path = self._path(name)
        if not path.exists():
            raise TemplateNotFoundError(f"Template not found: {name}")
        path.unlink()


def template_to_dict(template: PipelineTemplate) -> dict[str, Any]:
    return {
        "name": template.name,
        "description": template.description,
        "steps": [
            {
                "agent": stage.agent,
                "action": stage.action,
                **({"promptTemplate": stage.prompt_template} if stage.prompt_template else {}),
            }
            for stage in template.stages
        ],
        "createdAt": int(template.created_at.timestamp() * 1000),
    }


def template_from_dict(raw: dict[str, Any]) -> PipelineTemplate:
    """Deserialize and validate a template document."""

    name = raw.get("name")
    description = raw.get("description", "")
    raw_steps = raw.get("steps")
    created_at = raw.get("createdAt")
    if not isinstance(name, str) or not name.strip():
        raise ValueError("template.name must be a non-empty string")
    if not isinstance(description, str):
        raise TypeError("template.description must be a string")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise TypeError("template.steps must be a non-empty array")

    stages: list[PipelineStage] = []
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, dict):
            raise TypeError(f"template.steps[{index}] must be an object")
        agent = raw_step.get("agent")
        action = raw_step.get("action", "prompt")
        prompt_template = raw_step.get("promptTemplate")
        if not isinstance(agent, str) or not agent.strip():
            raise ValueError(f"template.steps[{index}].agent must be a non-empty string")
        if not isinstance(action, str):
            raise TypeError(f"template.steps[{index}].action must be a string")
        if prompt_template is not None and not isinstance(prompt_template, str):
            raise TypeError(f"template.steps[{index}].promptTemplate must be a string")
        stages.append(PipelineStage(agent=agent, action=action, prompt_template=prompt_template))

    return PipelineTemplate(
        name=name,
        stages=tuple(stages),
        description=description,
        created_at=(
            datetime.fromtimestamp(created_at / 1000, tz=UTC)
            if isinstance(created_at, int | float)
            else datetime.now(UTC)
        ),
    )
