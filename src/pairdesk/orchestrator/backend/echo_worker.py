"""Local stand-in worker for supervisor integration tests and smoke checks."""

from __future__ import annotations

import argparse
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Announce the launch arguments, then idle until killed or told to exit."""

    parser = argparse.ArgumentParser(prog="echo_worker")
    parser.add_argument("--model", default="")
    parser.add_argument("--stderr", action="append", default=[])
    parser.add_argument("--exit-after", type=float, default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--child-pid-file", default=None)
    args, extra = parser.parse_known_args(argv)

    print(f"echo worker ready model={args.model} extra={' '.join(extra)}", flush=True)
    for line in args.stderr:
        print(line, file=sys.stderr, flush=True)

    if args.child_pid_file:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
        )
        Path(args.child_pid_file).write_text(str(child.pid), "utf-8")

    deadline = None if args.exit_after is None else time.monotonic() + args.exit_after
    while deadline is None or time.monotonic() < deadline:
        time.sleep(0.05)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
