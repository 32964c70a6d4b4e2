"""Deterministic local agent for loop integration tests.

Appends the received instruction to a file in the working directory and can
optionally commit, touch the task store, sleep, or fail, so every cycle
outcome can be driven through the real subprocess backend.
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=False)
    parser.add_argument("--prompt", required=False)
    parser.add_argument("--output", default="agent-output.md")
    parser.add_argument("--commit", action="store_true")
    parser.add_argument("--store", required=False)
    parser.add_argument("--corrupt-store", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default="")
    args, _ = parser.parse_known_args(argv)

    if args.prompt_file:
        instruction = Path(args.prompt_file).read_text("utf-8")
    elif args.prompt is not None:
        instruction = args.prompt
    else:
        parser.error("Either --prompt-file or --prompt is required")

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.stderr:
        print(args.stderr, file=sys.stderr)
    if args.exit_code != 0:
        return args.exit_code

    output = Path(args.output)
    with output.open("a", encoding="utf-8") as handle:
        handle.write(instruction.rstrip("\n") + "\n")
    print(f"appended {len(instruction)} chars to {output}")

    if args.store:
        _touch_store(Path(args.store), corrupt=args.corrupt_store)

    if args.commit:
        subprocess.run(["git", "add", "-A"], check=True)  # noqa: S607
        subprocess.run(  # noqa: S607
            ["git", "commit", "-q", "-m", "echo agent: work"],
            check=True,
        )
    return 0


def _touch_store(path: Path, *, corrupt: bool) -> None:
    if corrupt:
        path.write_text('{"tasks": [', "utf-8")
        return
    payload = json.loads(path.read_text("utf-8"))
    notes = payload.get("curatorNotes") or ""
    payload["curatorNotes"] = f"{notes}echo agent visited\n"
    path.write_text(json.dumps(payload, indent=2) + "\n", "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
