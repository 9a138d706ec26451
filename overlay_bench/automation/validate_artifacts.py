#!/usr/bin/env python3
"""Validate harness run directories for completeness and consistency.

Checks that every run directory has parsable plan/result JSON, that a run
reported as successful has a parsable benchmark artifact, and that a failed
run did not leave a result artifact behind that could pass for a success.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class Issue:
    level: str  # "error" | "warn"
    code: str
    message: str


def _read_json(path: Path) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    try:
        return json.loads(path.read_text(encoding="utf-8")), None
    except FileNotFoundError:
        return None, "missing"
    except json.JSONDecodeError as exc:
        return None, f"json_decode_error: {exc}"


def validate_run_dir(run_dir: Path) -> List[Issue]:
    issues: List[Issue] = []

    plan, plan_err = _read_json(run_dir / "plan.json")
    if plan_err:
        issues.append(Issue("error", "plan_missing_or_invalid", f"plan.json: {plan_err}"))
        return issues

    result, result_err = _read_json(run_dir / "run_result.json")
    if result_err or not isinstance(result, dict):
        issues.append(Issue("error", "run_result_missing_or_invalid", f"run_result.json: {result_err}"))
        return issues

    status = result.get("status")
    stages = result.get("stages") if isinstance(result.get("stages"), list) else []
    teardown = [s for s in stages if isinstance(s, dict) and s.get("name") == "teardown"]
    provisioned = any(isinstance(s, dict) and s.get("name") == "provision" and s.get("status") == "ok" for s in stages)
    if provisioned and not any(s.get("status") in {"ok", "failed"} for s in teardown):
        issues.append(Issue("error", "teardown_missing", "topology was provisioned but teardown never ran"))
    if len([s for s in teardown if s.get("status") != "skipped"]) > 1:
        issues.append(Issue("error", "teardown_repeated", f"teardown ran {len(teardown)} times"))

    for name, rel in (result.get("command_logs") or {}).items():
        if not (run_dir / str(rel)).exists():
            issues.append(Issue("warn", "command_log_missing", f"{name}: {rel}"))

    artifact_name = (plan.get("config") or {}).get("benchmark", {}).get("output_name", "benchmark_results.json")
    artifact_path = run_dir / artifact_name
    if status == "ok":
        artifact, artifact_err = _read_json(artifact_path)
        if artifact_err:
            issues.append(Issue("error", "result_artifact_missing_or_invalid", f"{artifact_name}: {artifact_err}"))
        elif not artifact:
            issues.append(Issue("warn", "result_artifact_empty", f"{artifact_name} is empty"))
    else:
        error = result.get("error") or {}
        issues.append(
            Issue("error", "run_failed", f"{error.get('type', 'Exception')}: {error.get('message', '')}".strip())
        )
        if artifact_path.exists() and result.get("result_artifact") is None:
            issues.append(Issue("error", "stale_result_artifact", f"{artifact_name} exists for a failed run"))

    for extra in result.get("cleanup_errors") or []:
        issues.append(Issue("warn", "cleanup_error", f"{extra.get('type')}: {extra.get('message')}"))

    return issues


def walk_run_dirs(root: Path) -> List[Path]:
    if (root / "plan.json").exists():
        return [root]
    return sorted(p.parent for p in root.glob("*/plan.json"))


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate harness run artifacts")
    ap.add_argument("--artifact-root", default="artifacts/bench", help="Run dir or a directory of run dirs")
    ap.add_argument("--fail-on-error", action="store_true", help="Exit non-zero if any error-level issue is found")
    args = ap.parse_args()

    root = Path(args.artifact_root)
    run_dirs = walk_run_dirs(root)
    if not run_dirs:
        print(f"[validate] no run directories under {root}")
        return 1 if args.fail_on_error else 0

    error_count = 0
    for run_dir in run_dirs:
        issues = validate_run_dir(run_dir)
        errors = [i for i in issues if i.level == "error"]
        error_count += len(errors)
        state = "FAIL" if errors else "ok"
        print(f"[validate] {state} {run_dir}")
        for issue in issues:
            print(f"    {issue.level}: {issue.code}: {issue.message}")

    if args.fail_on_error and error_count:
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
