"""Local deterministic agent for CLI backend demos and integration tests."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo a short digest of the prompt, optionally with a completion marker."""

    parser = argparse.ArgumentParser()
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt-file")
    source.add_argument("--prompt")
    parser.add_argument("--promise", default="DONE")
    parser.add_argument("--no-promise", action="store_true")
    parser.add_argument("--fail-with", default=None)
    parser.add_argument("--exit-code", type=int, default=1)
    args = parser.parse_args(argv)

    if args.fail_with:
        sys.stderr.write(args.fail_with + "\n")
        return args.exit_code

    prompt = (
        Path(args.prompt_file).read_text("utf-8") if args.prompt_file is not None else args.prompt
    )
    first_line = next((line.strip() for line in prompt.splitlines() if line.strip()), "")
    expert = os.getenv("AGENT_RELAY_EXPERT", "echo")

    sys.stdout.write(f"[{expert}] handled: {first_line[:120]}\n")
    sys.stdout.write(f"prompt_chars={len(prompt)}\n")
    if not args.no_promise:
        sys.stdout.write(f"<promise>{args.promise}</promise>\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
