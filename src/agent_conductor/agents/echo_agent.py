"""Local deterministic agent for CLI integration tests and smoke runs."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back, optionally as stream-JSON lines."""

    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt")
    source.add_argument("--prompt-file")
    parser.add_argument("--stream", action="store_true")
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--delay", type=float, default=0.0)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else Path(args.prompt_file).read_text("utf-8")
    if args.delay > 0:
        time.sleep(args.delay)

    if args.fail:
        sys.stderr.write("echo agent: simulated failure\n")
        return 1

    answer = f"echo: {prompt.strip()}"
    if not args.stream:
        sys.stdout.write(answer + "\n")
        sys.stdout.write(f"input_tokens: {len(prompt) // 4}\n")
        return 0

    for payload in _stream_payloads(answer, prompt):
        sys.stdout.write(json.dumps(payload) + "\n")
        sys.stdout.flush()
    return 0


def _stream_payloads(answer: str, prompt: str) -> list[dict[str, object]]:
    return [
        {"type": "system", "subtype": "init", "session_id": "echo-session", "tools": ["Read"]},
        {
            "type": "assistant",
            "message": {
                "content": [
                    {
                        "type": "tool_use",
                        "id": "toolu_echo",
                        "name": "Read",
                        "input": {"file_path": "prompt.txt"},
                    },
                ],
            },
        },
        {
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "toolu_echo", "content": prompt},
                ],
            },
        },
        {"type": "assistant", "message": {"content": [{"type": "text", "text": answer}]}},
        {
            "type": "result",
            "subtype": "success",
            "result": answer,
            "is_error": False,
            "usage": {"input_tokens": len(prompt) // 4, "output_tokens": len(answer) // 4},
            "total_cost_usd": 0.0,
        },
    ]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
