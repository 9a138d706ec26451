#!/usr/bin/env python3
"""Benchmark the client-under-test against a reference target on a fresh test network.

Typical usage:
  # Provision the chutney network, benchmark arti against the tor client, tear down
  CHUTNEY_DATA_DIR=/tmp/chutney-net python3 -m overlay_bench.automation.run_harness tor

  # Inspect the resolved plan without spawning anything
  CHUTNEY_DATA_DIR=/tmp/chutney-net python3 -m overlay_bench.automation.run_harness tor --dry-run

Outputs:
  - artifacts/bench/<harness>_<target>_<ts>/plan.json, progress.log, run_result.json
  - artifacts/bench/<harness>_<target>_<ts>/benchmark_results.json on success
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import List, Optional

from overlay_bench.automation.config import load_settings
from overlay_bench.automation.errors import HarnessError
from overlay_bench.automation.pipeline import HarnessPipeline, RunOutcome
from overlay_bench.automation.targets import TARGETS, target_names


def _interrupt_on_sigterm(signum, _frame):
    raise KeyboardInterrupt(f"received signal {signum}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the overlay client benchmark harness")
    parser.add_argument("target", nargs="?", help=f"Reference target ({', '.join(target_names())})")
    parser.add_argument("--config", help="Harness YAML merged over the packaged defaults")
    parser.add_argument(
        "--artifact-root",
        default=None,
        help="Override artifact root (default: artifacts/bench from the harness config)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the resolved plan; spawn nothing")
    parser.add_argument("--list-targets", action="store_true", help="List supported targets and exit")
    return parser.parse_args(argv)


def _report(outcome: RunOutcome) -> None:
    if outcome.ok:
        print(f"[run_harness] ok: results in {outcome.result_path}")
        return
    err = outcome.error or outcome.cleanup_errors[0]
    print(f"[run_harness] error: {type(err).__name__}: {err}", file=sys.stderr)
    for extra in outcome.cleanup_errors:
        if extra is not err:
            print(f"[run_harness] also failed during cleanup: {type(extra).__name__}: {extra}", file=sys.stderr)
    if outcome.artifact_dir is not None:
        print(
            f"[run_harness] hint: see {outcome.artifact_dir}/progress.log and run_result.json for the full trace",
            file=sys.stderr,
        )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.list_targets:
        for target, endpoint in TARGETS.items():
            print(f"{target.value}\t{endpoint}")
        return 0
    if not args.target:
        print("[run_harness] error: a benchmark target is required (see --list-targets)", file=sys.stderr)
        return 2

    try:
        settings = load_settings(args.config)
    except HarnessError as exc:
        print(f"[run_harness] error: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    pipeline = HarnessPipeline(settings, artifact_root=args.artifact_root)

    if args.dry_run:
        try:
            config = pipeline.configure(args.target)
        except HarnessError as exc:
            print(f"[run_harness] error: {type(exc).__name__}: {exc}", file=sys.stderr)
            return 1
        try:
            print(json.dumps(config.describe(), indent=2))
        except BrokenPipeError:
            # Common when piping to `head`; exit cleanly.
            pass
        return 0

    previous = signal.signal(signal.SIGTERM, _interrupt_on_sigterm)
    try:
        outcome = pipeline.run(args.target)
    finally:
        signal.signal(signal.SIGTERM, previous)
    _report(outcome)
    return outcome.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
