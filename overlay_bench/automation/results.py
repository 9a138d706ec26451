#!/usr/bin/env python3
"""Per-run artifact directories, the progress trace, and run_result.json."""

from __future__ import annotations

import contextlib
import json
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

ARTIFACT_ROOT = Path("artifacts/bench")


def ensure_artifact_dir(label: str, artifact_root: Optional[Path] = None) -> Path:
    root = artifact_root or ARTIFACT_ROOT
    root.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    base = f"{label}_{timestamp}"

    # Runs started within the same second get a numeric suffix.
    for attempt in range(0, 1000):
        suffix = "" if attempt == 0 else f"_{attempt}"
        path = root / f"{base}{suffix}"
        try:
            path.mkdir(parents=True, exist_ok=False)
            return path
        except FileExistsError:
            continue

    raise RuntimeError(f"failed to allocate unique artifact dir under {root} for {base}")


def log_progress(artifact_dir: Optional[Path], message: str) -> None:
    """Append a progress line to the per-run trace and echo it to stderr."""
    ts = datetime.now().isoformat(timespec="seconds")
    print(f"[{ts}] {message}", file=sys.stderr)
    if artifact_dir is None:
        return
    try:
        log_path = artifact_dir / "progress.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            f.write(f"[{ts}] {message}\n")
    except OSError as exc:
        # The stderr echo above still carries the trace.
        print(f"[harness] warning: could not append to progress.log: {exc}", file=sys.stderr)


@dataclass
class StageRecord:
    name: str
    status: str  # "ok" | "failed" | "skipped"
    started_at: str
    duration_s: float = 0.0
    error: Optional[str] = None


@dataclass
class ResultRecorder:
    artifact_dir: Path
    plan: Dict
    stages: List[StageRecord] = field(default_factory=list)
    command_logs: Dict[str, str] = field(default_factory=dict)

    def write_plan(self) -> Path:
        path = self.artifact_dir / "plan.json"
        path.write_text(json.dumps(self.plan, indent=2), encoding="utf-8")
        return path

    def record_stage(self, record: StageRecord) -> None:
        self.stages.append(record)

    def record_log(self, name: str, path: Path) -> None:
        self.command_logs[name] = str(Path(path).relative_to(self.artifact_dir))

    def finalize(
        self,
        status: str,
        error: Optional[BaseException] = None,
        cleanup_errors: Optional[List[BaseException]] = None,
        result_artifact: Optional[Path] = None,
    ) -> Path:
        payload = {
            "plan": self.plan,
            "status": status,
            "stages": [record.__dict__ for record in self.stages],
            "command_logs": self.command_logs,
            "error": _describe(error),
            "cleanup_errors": [_describe(exc) for exc in cleanup_errors or []],
            "result_artifact": _relative(result_artifact, self.artifact_dir),
            "generated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        path = self.artifact_dir / "run_result.json"
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path


class StageTracer:
    """Trace each pipeline stage to progress.log and record it for run_result.json."""

    def __init__(self, recorder: ResultRecorder):
        self._recorder = recorder

    @contextlib.contextmanager
    def stage(self, name: str) -> Iterator[None]:
        artifact_dir = self._recorder.artifact_dir
        started_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        t0 = time.monotonic()
        log_progress(artifact_dir, f"[harness] stage {name}: start")
        try:
            yield
        except BaseException as exc:
            elapsed = time.monotonic() - t0
            detail = f"{type(exc).__name__}: {exc}"
            self._recorder.record_stage(StageRecord(name, "failed", started_at, round(elapsed, 3), detail))
            log_progress(artifact_dir, f"[harness] stage {name}: failed after {elapsed:.2f}s: {detail}")
            raise
        elapsed = time.monotonic() - t0
        self._recorder.record_stage(StageRecord(name, "ok", started_at, round(elapsed, 3)))
        log_progress(artifact_dir, f"[harness] stage {name}: ok ({elapsed:.2f}s)")

    def skip_remaining(self, names: List[str]) -> None:
        seen = {record.name for record in self._recorder.stages}
        for name in names:
            if name not in seen:
                self._recorder.record_stage(StageRecord(name, "skipped", ""))


def _describe(exc: Optional[BaseException]) -> Optional[Dict]:
    if exc is None:
        return None
    info: Dict[str, object] = {"type": type(exc).__name__, "message": str(exc)}
    for attr in ("returncode", "timed_out", "value"):
        if getattr(exc, attr, None) is not None:
            info[attr] = getattr(exc, attr)
    return info


def _relative(path: Optional[Path], base: Path) -> Optional[str]:
    if path is None:
        return None
    try:
        return str(Path(path).relative_to(base))
    except ValueError:
        return str(path)
