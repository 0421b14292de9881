"""Local deterministic executor for integration tests and dry runs."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Append the instruction to a file in the workspace and report it."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--instruction", required=True)
    parser.add_argument("--workspace", required=True)
    parser.add_argument("--history-file", default=None)
    parser.add_argument("--file", default="file.txt")
    parser.add_argument("--pre-delay", type=float, default=0.0)
    parser.add_argument("--post-delay", type=float, default=0.0)
    parser.add_argument("--no-change", action="store_true")
    parser.add_argument("--fail", action="store_true")
    args = parser.parse_args(argv)

    history_len = 0
    if args.history_file:
        history = json.loads(Path(args.history_file).read_text("utf-8"))
        history_len = len(history) if isinstance(history, list) else 0

    time.sleep(max(0.0, args.pre_delay))
    if args.fail:
        print(json.dumps({"success": False, "output": "", "error": "echo executor told to fail"}))
        return 0

    files_changed: list[str] = []
    if not args.no_change:
        target = Path(args.workspace) / args.file
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{args.instruction}\n")
        files_changed.append(args.file)
    time.sleep(max(0.0, args.post_delay))

    print(
        json.dumps(
            {
                "success": True,
                "output": f"echo: {args.instruction}",
                "filesChanged": files_changed,
                "summary": f"Applied instruction after {history_len} prior turn(s)",
            },
        ),
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
