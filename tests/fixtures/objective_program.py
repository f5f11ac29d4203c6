"""Stand-in for an expensive simulation: sin(x1 - 1) + x1**2 + x2**2."""
from __future__ import annotations

import argparse
import math
import subprocess
import sys
import time


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--x1", type=float, required=True)
    parser.add_argument("--x2", type=float, default=0.0)
    parser.add_argument("--out", help="write the result here instead of stdout")
    parser.add_argument("--label", help="ignored; lets tests reference {output} without writing it")
    parser.add_argument("--fail-code", type=int, default=0)
    parser.add_argument("--fail-above", type=float, default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--garbage", action="store_true", help="emit output without a number")
    parser.add_argument("--binary-noise", action="store_true", help="emit bytes that are not UTF-8")
    parser.add_argument("--helper-pid-file", help="start a long-running helper and record its pid here")
    args = parser.parse_args(argv)

    if args.helper_pid_file:
        helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open(args.helper_pid_file, "w", encoding="utf-8") as fh:
            fh.write(str(helper.pid))
    if args.binary_noise:
        sys.stderr.buffer.write(b"\xff\xfe bad\n")
        sys.stderr.buffer.flush()
        if not args.out:
            sys.stdout.buffer.write(b"\xff\xfe\n")
            sys.stdout.buffer.flush()
    if args.sleep > 0:
        time.sleep(args.sleep)
    if args.fail_code:
        print("simulated failure", file=sys.stderr)
        return args.fail_code
    if args.fail_above is not None and args.x1 > args.fail_above:
        print(f"x1={args.x1} above {args.fail_above}", file=sys.stderr)
        return 1

    value = math.sin(args.x1 - 1.0) + args.x1**2 + args.x2**2
    if args.garbage:
        text = "solver finished without a result\n"
    else:
        text = f"# objective program\nobjective = {value!r}\n"

    if args.out:
        with open(args.out, "w", encoding="utf-8") as fh:
            fh.write(text)
    else:
        sys.stdout.write(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
