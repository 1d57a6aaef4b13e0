#!/usr/bin/env python3
"""Run the durability suite and write its report as JSON and Markdown."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from agenthub_api.durability import DurabilityConfig, render_markdown, run_durability_suite


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("output_dir", type=Path, help="directory for durability.json and durability.md")
    parser.add_argument("--restarts", type=int, default=DurabilityConfig.restarts)
    parser.add_argument("--concurrent-appends", type=int, default=DurabilityConfig.concurrent_appends)
    parser.add_argument("--workers", type=int, default=DurabilityConfig.workers)
    args = parser.parse_args(argv)

    try:
        report = run_durability_suite(
            DurabilityConfig(restarts=args.restarts, concurrent_appends=args.concurrent_appends, workers=args.workers)
        )
    except ValueError as exc:
        parser.error(str(exc))

    args.output_dir.mkdir(parents=True, exist_ok=True)
    (args.output_dir / "durability.json").write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
    (args.output_dir / "durability.md").write_text(render_markdown(report), encoding="utf-8")
    print(f"durability {report['summary']['overall_status']}: {args.output_dir}", file=sys.stderr)
    return 0 if report["summary"]["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
