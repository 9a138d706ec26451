#!/usr/bin/env python3
"""Drive the external benchmark workload generator for one run."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from overlay_bench.automation.config import HarnessConfig
from overlay_bench.automation.errors import BenchmarkError
from overlay_bench.automation.process_utils import format_argv, run_step
from overlay_bench.automation.results import log_progress
from overlay_bench.automation.targets import Endpoint
from overlay_bench.automation.topology import TopologyHandle

INCOMPLETE_SUFFIX = ".incomplete"


@dataclass(frozen=True)
class BenchmarkRequest:
    topology: TopologyHandle
    proxy: Endpoint
    target: Endpoint
    output_path: Path

    def template_context(self, client_config: Path) -> Dict[str, str]:
        return {
            "client_config": str(client_config),
            "topology": str(self.topology),
            "proxy": str(self.proxy),
            "proxy_host": self.proxy.host,
            "proxy_port": str(self.proxy.port),
            "target": str(self.target),
            "target_host": self.target.host,
            "target_port": str(self.target.port),
            "output": str(self.output_path),
        }


class BenchmarkRunner:
    def __init__(self, config: HarnessConfig, artifact_dir: Optional[Path] = None):
        self._config = config
        self._artifact_dir = artifact_dir

    def command(self, request: BenchmarkRequest) -> List[str]:
        client_config = request.topology.path(self._config.client.config_subpath)
        return format_argv(self._config.benchmark.command, request.template_context(client_config))

    def environment(self) -> Dict[str, str]:
        settings = self._config.benchmark
        if not self._config.log_level:
            return {}
        return {settings.log_level_env: self._config.log_level}

    def execute(self, request: BenchmarkRequest) -> Path:
        settings = self._config.benchmark
        argv = self.command(request)
        output = request.output_path
        output.parent.mkdir(parents=True, exist_ok=True)
        if output.exists():
            log_progress(self._artifact_dir, f"[bench] removing stale result artifact {output}")
            output.unlink()

        log_progress(self._artifact_dir, f"[bench] proxy={request.proxy} target={request.target} output={output}")
        log_path = self._artifact_dir / "benchmark.log" if self._artifact_dir else None
        try:
            run_step(
                "benchmark",
                argv,
                log_path=log_path,
                env=self.environment(),
                timeout=settings.timeout_s,
                error_cls=BenchmarkError,
            )
        except BaseException:
            # Covers interrupts too: a partial file must never sit at the success path.
            _quarantine(output, self._artifact_dir)
            raise

        try:
            json.loads(output.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise BenchmarkError("benchmark", f"exited 0 but wrote no result artifact at {output}", argv=argv) from None
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            _quarantine(output, self._artifact_dir)
            raise BenchmarkError("benchmark", f"result artifact {output} is not valid JSON: {exc}", argv=argv) from None
        log_progress(self._artifact_dir, f"[bench] result artifact written to {output}")
        return output


def _quarantine(output: Path, artifact_dir: Optional[Path]) -> None:
    """Rename a partial artifact so it cannot be mistaken for a successful result."""
    if not output.exists():
        return
    target = output.with_name(output.name + INCOMPLETE_SUFFIX)
    output.replace(target)
    log_progress(artifact_dir, f"[bench] partial result artifact moved to {target}")
