"""Local demo worker for command backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

FAIL_MARKER = "FAIL"


def main(argv: list[str] | None = None) -> int:
    """Report the task description back as one progress observation."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-file", required=True)
    args = parser.parse_args(argv)

    task = json.loads(Path(args.task_file).read_text("utf-8"))
    description = str(task.get("description", "")).strip()
    if FAIL_MARKER in description:
        print(f"echo agent asked to fail: {description}", file=sys.stderr)
        return 1

    message = description or f"Finished {task.get('title', task.get('task_id'))}"
    payload = {"kind": "progress", "message": message, "evidence": [f"task:{task['task_id']}"]}
    print("OBSERVATION " + json.dumps(payload, ensure_ascii=False))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
