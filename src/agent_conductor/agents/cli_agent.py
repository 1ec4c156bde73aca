"""Subprocess-based adapter for CLI agents (claude, codex, gemini, ollama)."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import time
from collections.abc import AsyncIterator
from pathlib import Path
from tempfile import TemporaryDirectory

from agent_conductor.agents.base import AgentResponse, AgentRunError, AgentRunOptions
from agent_conductor.config import AgentSettings
from agent_conductor.stream.decoder import StreamDecoder
from agent_conductor.stream.events import FinalResultEvent, StreamEvent, TextDeltaEvent
from agent_conductor.usage import extract_usage

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_TERMINATE_GRACE_SECONDS = 2.0
_READ_CHUNK_BYTES = 64 * 1024


class CliAgent:
    """Runs one agent CLI per prompt from a command template.

    The template must contain ``{prompt}`` or ``{prompt_file}``; ``{model}`` is
    optional. Values are shell-quoted before the template is split into argv.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        name: str,
        command_template: str,
        model: str = "",
        timeout_seconds: float = 600,
        stream_json: bool = False,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.stream_json = stream_json
        self.extra_env = dict(extra_env or {})

    async def is_available(self) -> bool:
        head = _command_head(self.command_template)
        return head is not None and shutil.which(head) is not None

    async def run(self, prompt: str, options: AgentRunOptions | None = None) -> AgentResponse:
        options = options or AgentRunOptions()
        model = options.model or self.model
        model_label = f"{self.name}/{model}" if model else self.name
        timeout = options.timeout_seconds or self.timeout_seconds
        started = time.monotonic()

        def _failed(message: str) -> AgentResponse:
            return AgentResponse(
                content="",
                model=model_label,
                duration_ms=_elapsed_ms(started),
                error=message,
            )

        with TemporaryDirectory(prefix="agent-conductor-") as scratch:
            prompt_file = Path(scratch) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            try:
                argv = build_run_args(
                    command_template=self.command_template,
                    model=model,
                    prompt=prompt,
                    prompt_file=prompt_file,
                )
            except AgentRunError as error:
                return _failed(str(error))

            env = os.environ.copy()
            env.update(self.extra_env)
            env["AGENT_CONDUCTOR_AGENT"] = self.name
            env["AGENT_CONDUCTOR_MODEL"] = model

            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except FileNotFoundError:
                return _failed(f"CLI agent command not found: {argv[0]}")
            except OSError as error:
                return _failed(f"CLI agent failed to start: {error}")

            decoder = StreamDecoder() if self.stream_json else None
            try:
                stdout, stderr, events = await asyncio.wait_for(
                    _collect_output(process, decoder, options.on_event),
                    timeout=timeout,
                )
            except TimeoutError:
                await _terminate_process(process)
                logger.warning("Agent %s timed out after %.1fs", self.name, timeout)
                return _failed(
                    f"Agent {self.name} timed out after {timeout:.0f}s "
                    f"(exit code {TIMEOUT_EXIT_CODE})",
                )
            except BaseException:
                await _terminate_process(process)
                raise

        duration_ms = _elapsed_ms(started)
        exit_code = process.returncode
        if decoder is not None:
            return _stream_response(
                events=events,
                model_label=model_label,
                duration_ms=duration_ms,
                exit_code=exit_code,
                stderr=stderr,
            )

        content = stdout.strip()
        error: str | None = None
        if exit_code != 0:
            error = stderr.strip() or f"Agent {self.name} exited with code {exit_code}"
        elif stderr.strip() and not content:
            error = stderr.strip()
        return AgentResponse(
            content=content,
            model=model_label,
            duration_ms=duration_ms,
            usage=extract_usage(agent=self.name, stdout=stdout, stderr=stderr).usage,
            error=error,
        )


def build_cli_agents(settings: AgentSettings) -> dict[str, CliAgent]:
    """Create one ``CliAgent`` per configured command template."""

    return {
        name: CliAgent(
            name=name,
            command_template=template,
            model=settings.models.get(name, ""),
            timeout_seconds=settings.timeout_seconds,
            stream_json=name in settings.stream_agents,
        )
        for name, template in settings.command_templates.items()
    }


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render a command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRunError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv


async def _collect_output(
    process: asyncio.subprocess.Process,
    decoder: StreamDecoder | None,
    on_event,
) -> tuple[str, str, list[StreamEvent]]:
    stdout_pipe, stderr_pipe = process.stdout, process.stderr
    if stdout_pipe is None or stderr_pipe is None:
        raise AgentRunError("CLI agent process has no output pipes", transient=False)
    stderr_task = asyncio.ensure_future(stderr_pipe.read())
    stdout_lines: list[str] = []
    events: list[StreamEvent] = []
    try:
        async for raw_line in _read_lines(stdout_pipe):
            line = raw_line.decode("utf-8", errors="replace")
            stdout_lines.append(line)
            if decoder is None:
                continue
            for event in decoder.feed(line):
                events.append(event)
                if on_event is not None:
                    on_event(event)
        stderr = (await stderr_task).decode("utf-8", errors="replace")
    finally:
        if not stderr_task.done():
            stderr_task.cancel()
    await process.wait()
    return "".join(stdout_lines), stderr, events


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines of any length.

    ``StreamReader.readline`` rejects lines above the reader limit, and a
    stream-JSON result line carries the whole answer.
    """

    pending = bytearray()
    while chunk := await stream.read(_READ_CHUNK_BYTES):
        pending.extend(chunk)
        start = 0
        while (end := pending.find(b"\n", start)) != -1:
            yield bytes(pending[start : end + 1])
            start = end + 1
        del pending[:start]
    if pending:
        yield bytes(pending)


def _stream_response(
    *,
    events: list[StreamEvent],
    model_label: str,
    duration_ms: int,
    exit_code: int | None,
    stderr: str,
) -> AgentResponse:
    final = next(
        (event for event in reversed(events) if isinstance(event, FinalResultEvent)),
        None,
    )
    if final is not None:
        content = final.content or "".join(
            event.text for event in events if isinstance(event, TextDeltaEvent)
        )
        return AgentResponse(
            content=content,
            model=model_label,
            duration_ms=duration_ms,
            usage=final.usage,
            error=(final.content or final.subtype) if final.is_error else None,
        )

    content = "".join(event.text for event in events if isinstance(event, TextDeltaEvent))
    error = None
    if exit_code != 0:
        error = stderr.strip() or f"Agent exited with code {exit_code}"
    elif not content:
        error = stderr.strip() or "Agent stream ended without a result"
    return AgentResponse(content=content, model=model_label, duration_ms=duration_ms, error=error)


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


def _command_head(command_template: str) -> str | None:
    try:
        parts = shlex.split(command_template.strip())
    except ValueError:
        return None
    return parts[0] if parts else None


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))
