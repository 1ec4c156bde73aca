"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_MODULE = f"{sys.executable} -m agent_conductor.agents.echo_agent"
ECHO_PLAIN_TEMPLATE = f"{ECHO_MODULE} --prompt-file {{prompt_file}}"
ECHO_STREAM_TEMPLATE = f"{ECHO_MODULE} --stream --prompt-file {{prompt_file}}"
ECHO_FAIL_TEMPLATE = f"{ECHO_MODULE} --fail --prompt {{prompt}}"


@pytest.fixture()
def agent_subprocess_env(monkeypatch):
    """Let agent subprocesses import the package from the source tree."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), existing]) if existing else str(SRC_DIR),
    )


@pytest.fixture()
def echo_agents(monkeypatch, tmp_path, agent_subprocess_env):
    """Point every configured agent at the local echo agent."""

    monkeypatch.setenv("AGENT_CONDUCTOR_CLAUDE_COMMAND_TEMPLATE", ECHO_STREAM_TEMPLATE)
    monkeypatch.setenv("AGENT_CONDUCTOR_CODEX_COMMAND_TEMPLATE", ECHO_PLAIN_TEMPLATE)
    monkeypatch.setenv("AGENT_CONDUCTOR_GEMINI_COMMAND_TEMPLATE", ECHO_FAIL_TEMPLATE)
    monkeypatch.setenv("AGENT_CONDUCTOR_OLLAMA_COMMAND_TEMPLATE", ECHO_PLAIN_TEMPLATE)
    monkeypatch.setenv("AGENT_CONDUCTOR_CASCADE", "codex,claude")
    monkeypatch.setenv("AGENT_CONDUCTOR_TEMPLATES_DIR", str(tmp_path / "templates"))
    monkeypatch.delenv("AGENT_CONDUCTOR_EMBEDDING_MODEL", raising=False)
    monkeypatch.delenv("AGENT_CONDUCTOR_SUMMARIZER_AGENT", raising=False)
    monkeypatch.delenv("AGENT_CONDUCTOR_MAX_CONCURRENCY", raising=False)
    return tmp_path
