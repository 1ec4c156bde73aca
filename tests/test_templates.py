from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from agent_conductor.executor.builders import PipelineStage
from agent_conductor.executor.contracts import load_json
from agent_conductor.executor.models import PlanMode
from agent_conductor.executor.templates import (
    PipelineTemplate,
    TemplateNotFoundError,
    TemplateStore,
    create_template,
    template_from_dict,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Pipeline Templates"),
]


def _template(name: str = "review-loop") -> PipelineTemplate:
    return PipelineTemplate(
        name=name,
        description="analyze then code",
        stages=(
            PipelineStage(agent="gemini", action="analyze"),
            PipelineStage(agent="claude", action="code", prompt_template="Code: {{prompt}}"),
        ),
        created_at=datetime(2026, 3, 1, tzinfo=UTC),
    )


def test_store_save_load_list_delete(tmp_path: Path) -> None:
    store = TemplateStore(tmp_path / "templates")

    path = store.save(_template())
    payload = load_json(path)

    assert path.name == "review-loop.json"
    assert payload["steps"][1]["promptTemplate"] == "Code: {{prompt}}"
    assert "promptTemplate" not in payload["steps"][0]
    assert store.load("review-loop") == _template()
    assert [template.name for template in store.list()] == ["review-loop"]

    store.delete("review-loop")

    assert store.list() == []
    with pytest.raises(TemplateNotFoundError):
        store.load("review-loop")


def test_list_skips_unreadable_files(tmp_path: Path, caplog) -> None:
    store = TemplateStore(tmp_path)
    store.save(_template("good"))
    (tmp_path / "bad.json").write_text('{"name": "bad", "steps": []}', "utf-8")

    templates = store.list()

    assert [template.name for template in templates] == ["good"]
    assert "Skipping unreadable template" in caplog.text


def test_list_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert TemplateStore(tmp_path / "absent").list() == []


def test_delete_missing_template_raises(tmp_path: Path) -> None:
    with pytest.raises(TemplateNotFoundError, match="Template not found: ghost"):
        TemplateStore(tmp_path).delete("ghost")


@pytest.mark.parametrize("name", ["../escape", "", "-leading", "with space"])
def test_invalid_template_names_are_rejected(name: str) -> None:
    with pytest.raises(ValueError, match="Invalid template name"):
        create_template(name, [PipelineStage(agent="claude")])


def test_template_becomes_pipeline_plan() -> None:
    plan = _template().to_plan("Ship the feature")

    assert plan.mode == PlanMode.PIPELINE
    assert plan.prompt == "Ship the feature"
    assert [step.agent for step in plan.steps] == ["gemini", "claude"]
    assert plan.steps[1].prompt == "Code: {{prompt}}"


def test_template_from_dict_validation() -> None:
    with pytest.raises(ValueError, match=r"steps\[0\].agent"):
        template_from_dict({"name": "t", "steps": [{"action": "code"}]})
    with pytest.raises(TypeError, match="non-empty array"):
        template_from_dict({"name": "t", "steps": []})
