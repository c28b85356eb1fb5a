"""Local demo worker for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Optionally edit the bead or PRD, then exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--bead-path", required=True)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep-seconds", type=float, default=0.0)
    parser.add_argument("--set-status", default=None)
    parser.add_argument("--prd-path", default=None)
    parser.add_argument("--mark-passes", action="store_true")
    args = parser.parse_args(argv)

    bead_path = Path(args.bead_path)
    print(f"echo worker: bead={bead_path.stem}", flush=True)

    if args.sleep_seconds > 0:
        time.sleep(args.sleep_seconds)

    if args.set_status:
        payload = json.loads(bead_path.read_text("utf-8-sig"))
        payload["status"] = args.set_status
        bead_path.write_text(json.dumps(payload, indent=2), "utf-8")

    if args.mark_passes and args.prd_path:
        prd_path = Path(args.prd_path)
        prd = json.loads(prd_path.read_text("utf-8-sig"))
        for story in prd.get("userStories", []):
            if story.get("id") == bead_path.stem:
                story["passes"] = True
        prd_path.write_text(json.dumps(prd, indent=2), "utf-8")

    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
