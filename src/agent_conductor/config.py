"""Runtime configuration for the execution and context engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude", "codex", "gemini", "ollama")

DEFAULT_COMMAND_TEMPLATES = {
    "claude": "claude -p --output-format stream-json --verbose --model {model} -- {prompt}",
    "codex": "codex exec --model {model} {prompt}",
    "gemini": "gemini --model {model} --prompt {prompt}",
    "ollama": "ollama run {model} {prompt}",
}
DEFAULT_MODELS = {
    "claude": "sonnet",
    "codex": "gpt-5-codex",
    "gemini": "gemini-2.5-pro",
    "ollama": "llama3.2",
}


@dataclass(slots=True)
class ExecutorSettings:
    """Scheduler settings."""

    max_concurrency: int = 5
    templates_dir: Path = Path.home() / ".agent-conductor" / "templates"
    planner_agent: str = "auto"


@dataclass(slots=True)
class ContextSettings:
    """Context assembly and token budget settings."""

    chars_per_token: int = 4
    budget_ratio: float = 0.7
    scaffold_threshold_tokens: int = 15_000
    chunk_size_tokens: int = 512
    chunk_overlap_tokens: int = 50
    min_summary_budget_tokens: int = 200
    critical_floor_tokens: int = 64
    compress: bool = False
    compression_token_limit: int = 800
    embedding_model: str = ""
    embedding_allow_fallback: bool = False
    summarizer_agent: str = ""


@dataclass(slots=True)
class AgentSettings:
    """Agent command templates, models and dispatch order."""

    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_COMMAND_TEMPLATES),
    )
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODELS))
    cascade: tuple[str, ...] = ("codex", "claude", "gemini")
    stream_agents: tuple[str, ...] = ("claude",)
    timeout_seconds: int = 600
    availability_ttl_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    agents: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        templates_dir = os.getenv("AGENT_CONDUCTOR_TEMPLATES_DIR", "").strip()
        return cls(
            executor=ExecutorSettings(
                max_concurrency=int(os.getenv("AGENT_CONDUCTOR_MAX_CONCURRENCY", "5")),
                templates_dir=(
                    Path(templates_dir).expanduser()
                    if templates_dir
                    else ExecutorSettings().templates_dir
                ),
                planner_agent=os.getenv("AGENT_CONDUCTOR_PLANNER_AGENT", "auto").strip().lower(),
            ),
            context=ContextSettings(
                chars_per_token=int(os.getenv("AGENT_CONDUCTOR_CHARS_PER_TOKEN", "4")),
                budget_ratio=float(os.getenv("AGENT_CONDUCTOR_BUDGET_RATIO", "0.7")),
                scaffold_threshold_tokens=int(
                    os.getenv("AGENT_CONDUCTOR_SCAFFOLD_THRESHOLD_TOKENS", "15000"),
                ),
                chunk_size_tokens=int(os.getenv("AGENT_CONDUCTOR_CHUNK_SIZE_TOKENS", "512")),
                chunk_overlap_tokens=int(os.getenv("AGENT_CONDUCTOR_CHUNK_OVERLAP_TOKENS", "50")),
                min_summary_budget_tokens=int(
                    os.getenv("AGENT_CONDUCTOR_MIN_SUMMARY_BUDGET_TOKENS", "200"),
                ),
                critical_floor_tokens=int(
                    os.getenv("AGENT_CONDUCTOR_CRITICAL_FLOOR_TOKENS", "64"),
                ),
                compress=_env_bool("AGENT_CONDUCTOR_CONTEXT_COMPRESS", default=False),
                compression_token_limit=int(
                    os.getenv("AGENT_CONDUCTOR_COMPRESSION_TOKEN_LIMIT", "800"),
                ),
                embedding_model=os.getenv("AGENT_CONDUCTOR_EMBEDDING_MODEL", "").strip(),
                embedding_allow_fallback=_env_bool(
                    "AGENT_CONDUCTOR_EMBEDDING_ALLOW_FALLBACK",
                    default=False,
                ),
                summarizer_agent=os.getenv("AGENT_CONDUCTOR_SUMMARIZER_AGENT", "").strip().lower(),
            ),
            agents=AgentSettings(
                command_templates={
                    agent: os.getenv(
                        f"AGENT_CONDUCTOR_{agent.upper()}_COMMAND_TEMPLATE",
                        DEFAULT_COMMAND_TEMPLATES[agent],
                    )
                    for agent in SUPPORTED_AGENTS
                },
                models={
                    agent: os.getenv(f"AGENT_CONDUCTOR_{agent.upper()}_MODEL", DEFAULT_MODELS[agent])
                    for agent in SUPPORTED_AGENTS
                },
                cascade=_env_csv("AGENT_CONDUCTOR_CASCADE", ("codex", "claude", "gemini")),
                stream_agents=_env_csv("AGENT_CONDUCTOR_STREAM_AGENTS", ("claude",)),
                timeout_seconds=int(os.getenv("AGENT_CONDUCTOR_TIMEOUT_SECONDS", "600")),
                availability_ttl_seconds=float(
                    os.getenv("AGENT_CONDUCTOR_AVAILABILITY_TTL_SECONDS", "30"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot work with."""

        if self.executor.max_concurrency <= 0:
            raise ValueError("AGENT_CONDUCTOR_MAX_CONCURRENCY must be a positive integer.")
        if self.context.chars_per_token <= 0:
            raise ValueError("AGENT_CONDUCTOR_CHARS_PER_TOKEN must be a positive integer.")
        if not 0 < self.context.budget_ratio <= 1:
            raise ValueError("AGENT_CONDUCTOR_BUDGET_RATIO must be in (0, 1].")
        if self.context.chunk_overlap_tokens >= self.context.chunk_size_tokens:
            raise ValueError(
                "AGENT_CONDUCTOR_CHUNK_OVERLAP_TOKENS must be smaller than the chunk size.",
            )
        if self.agents.timeout_seconds <= 0:
            raise ValueError("AGENT_CONDUCTOR_TIMEOUT_SECONDS must be > 0.")
        for agent, template in self.agents.command_templates.items():
            if not template.strip():
                raise ValueError(f"Empty command template for agent={agent!r}")
        summarizer = self.context.summarizer_agent
        if summarizer and summarizer not in self.agents.command_templates:
            raise ValueError(f"AGENT_CONDUCTOR_SUMMARIZER_AGENT is not a known agent: {summarizer}")
        unknown = [
            agent for agent in self.agents.cascade if agent not in self.agents.command_templates
        ]
        if unknown:
            raise ValueError(
                f"AGENT_CONDUCTOR_CASCADE references unknown agents: {', '.join(unknown)}",
            )


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip().lower()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
