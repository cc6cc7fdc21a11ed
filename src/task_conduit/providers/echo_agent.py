"""Local demo agent for provider integration tests.

Reads the prompt from `--prompt` or stdin and prints a JSON result. `--mode`
selects a failure to simulate.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Run the deterministic demo agent."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", required=False)
    parser.add_argument(
        "--mode",
        choices=("ok", "fail", "auth", "rate-limit", "hang", "chatty"),
        default="ok",
    )
    parser.add_argument("--touch", action="append", default=[])
    parser.add_argument("--seconds", type=float, default=30.0)
    args, _ = parser.parse_known_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()

    for relative in args.touch:
        path = Path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("touched by echo_agent\n", "utf-8")

    if args.mode == "fail":
        print("agent crashed", file=sys.stderr)
        return 3
    if args.mode == "auth":
        print("Error: not logged in. Please log in first.", file=sys.stderr)
        return 1
    if args.mode == "rate-limit":
        print("HTTP 429 Too Many Requests", file=sys.stderr)
        return 1
    if args.mode == "hang":
        time.sleep(args.seconds)
        return 0
    if args.mode == "chatty":
        deadline = time.monotonic() + args.seconds
        while time.monotonic() < deadline:
            print("working", flush=True)
            time.sleep(0.1)

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    payload = {
        "raw": first_line,
        "logs": [f"echo_agent mode={args.mode}", f"prompt chars={len(prompt)}"],
    }
    print(json.dumps(payload))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
