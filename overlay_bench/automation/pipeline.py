#!/usr/bin/env python3
"""Run one benchmark end to end: provision, start client, benchmark, stop, teardown.

Stages run strictly in order and fail fast. Once provisioning has succeeded
the client is stopped and the topology is torn down on every exit path,
including operator interrupts. The first failure is reported as the run's
error; failures during cleanup are kept separately in ``cleanup_errors``.
"""

from __future__ import annotations

import contextlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from overlay_bench.automation.bench_runner import BenchmarkRequest, BenchmarkRunner
from overlay_bench.automation.client import ClientSupervisor
from overlay_bench.automation.config import HarnessConfig, build_config
from overlay_bench.automation.errors import ExternalProcessError, HarnessError, RunInterrupted
from overlay_bench.automation.results import ResultRecorder, StageTracer, ensure_artifact_dir, log_progress
from overlay_bench.automation.targets import resolve
from overlay_bench.automation.topology import Provisioner, require_topology

STAGES = ["provision", "client-start", "precondition", "resolve-target", "benchmark", "client-stop", "teardown"]


@dataclass
class RunOutcome:
    target: str
    artifact_dir: Optional[Path] = None
    result_path: Optional[Path] = None
    error: Optional[BaseException] = None
    cleanup_errors: List[BaseException] = field(default_factory=list)
    teardown_ran: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cleanup_errors

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        err = self.error or self.cleanup_errors[0]
        if isinstance(err, RunInterrupted):
            return 130
        if isinstance(err, ExternalProcessError) and err.returncode and err.returncode > 0:
            return err.returncode
        return 1


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", value).strip("-") or "unnamed"


class HarnessPipeline:
    def __init__(
        self,
        settings: Dict,
        environ: Optional[Mapping[str, str]] = None,
        artifact_root: Optional[str] = None,
        provisioner_cls=Provisioner,
        supervisor_cls=ClientSupervisor,
        runner_cls=BenchmarkRunner,
    ):
        self._settings = settings
        self._environ = environ
        self._artifact_root = artifact_root
        self._provisioner_cls = provisioner_cls
        self._supervisor_cls = supervisor_cls
        self._runner_cls = runner_cls

    def configure(self, target: str) -> HarnessConfig:
        return build_config(target, self._settings, environ=self._environ, artifact_root=self._artifact_root)

    def plan(self, config: HarnessConfig, artifact_dir: Path) -> Dict:
        return {
            "target": config.target,
            "artifact_dir": str(artifact_dir),
            "stages": STAGES,
            "config": config.describe(),
        }

    def run(self, target: str) -> RunOutcome:
        outcome = RunOutcome(target=target)
        try:
            # Environment and harness settings are checked before anything is spawned.
            config = self.configure(target)
        except HarnessError as exc:
            log_progress(None, f"[harness] error before provisioning: {type(exc).__name__}: {exc}")
            outcome.error = exc
            return outcome

        artifact_dir = ensure_artifact_dir(f"{_slug(config.name)}_{_slug(target)}", artifact_root=config.artifact_root)
        outcome.artifact_dir = artifact_dir
        recorder = ResultRecorder(artifact_dir, self.plan(config, artifact_dir))
        recorder.write_plan()
        tracer = StageTracer(recorder)
        log_progress(artifact_dir, f"[harness] run target={target} topology={config.topology_dir} artifacts={artifact_dir}")

        captured: Optional[BaseException] = None
        try:
            self._execute(config, artifact_dir, tracer, outcome)
        except KeyboardInterrupt:
            outcome.error = RunInterrupted("run interrupted by operator")
        except HarnessError as exc:
            outcome.error = exc
        except BaseException as exc:
            captured = exc
            outcome.error = exc
        finally:
            tracer.skip_remaining(STAGES)
            for name in ["topology_setup.log", "client.log", "benchmark.log", "topology_teardown.log"]:
                if (artifact_dir / name).exists():
                    recorder.record_log(name.rsplit(".", 1)[0], artifact_dir / name)
            status = "ok" if outcome.ok else "failed"
            recorder.finalize(status, outcome.error, outcome.cleanup_errors, outcome.result_path)
            log_progress(artifact_dir, f"[harness] run_result.json written (status={status})")

        if captured is not None:
            raise captured
        for err in outcome.cleanup_errors:
            log_progress(artifact_dir, f"[harness] cleanup error: {type(err).__name__}: {err}")
        return outcome

    def _execute(self, config: HarnessConfig, artifact_dir: Path, tracer: StageTracer, outcome: RunOutcome) -> None:
        provisioner = self._provisioner_cls(config, artifact_dir)
        supervisor = self._supervisor_cls(config, artifact_dir)
        runner = self._runner_cls(config, artifact_dir)
        session = None
        try:
            with contextlib.ExitStack() as stack:
                with tracer.stage("provision"):
                    session = stack.enter_context(
                        provisioner.provision(on_cleanup_error=outcome.cleanup_errors.append, trace=tracer.stage)
                    )
                with tracer.stage("client-start"):
                    stack.enter_context(
                        supervisor.running(session.handle, on_cleanup_error=outcome.cleanup_errors.append,
                                           trace=tracer.stage)
                    )
                with tracer.stage("precondition"):
                    handle = require_topology(session.handle)
                with tracer.stage("resolve-target"):
                    endpoint = resolve(config.target)
                request = BenchmarkRequest(
                    topology=handle,
                    proxy=supervisor.proxy,
                    target=endpoint,
                    output_path=artifact_dir / config.benchmark.output_name,
                )
                with tracer.stage("benchmark"):
                    outcome.result_path = runner.execute(request)
        finally:
            outcome.teardown_ran = session is not None and session.teardown_ran
