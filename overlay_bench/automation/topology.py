#!/usr/bin/env python3
"""Provisioning and teardown of the simulated test network.

The provisioner wraps the external setup/teardown commands. ``provision()``
returns a :class:`TopologySession`, a scoped handle whose exit runs teardown
exactly once. When an earlier failure is already propagating, a teardown
failure is handed to ``on_cleanup_error`` instead of replacing it.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from overlay_bench.automation.config import HarnessConfig
from overlay_bench.automation.errors import ExternalProcessError, PreconditionError, TeardownError
from overlay_bench.automation.process_utils import run_step
from overlay_bench.automation.results import log_progress


@dataclass(frozen=True)
class TopologyHandle:
    root: Path

    def __str__(self) -> str:
        return str(self.root)

    def path(self, subpath: str) -> Path:
        return self.root / subpath


def require_topology(handle: Optional[TopologyHandle]) -> TopologyHandle:
    if handle is None or not str(handle.root).strip():
        raise PreconditionError("topology handle is unset or empty")
    if not handle.root.is_dir():
        raise PreconditionError(f"topology directory {handle.root} does not exist")
    return handle


def _untraced(_name: str):
    return contextlib.nullcontext()


class Provisioner:
    def __init__(self, config: HarnessConfig, artifact_dir: Optional[Path] = None):
        self._config = config
        self._artifact_dir = artifact_dir

    def _log_path(self, name: str) -> Optional[Path]:
        return self._artifact_dir / name if self._artifact_dir else None

    def setup(self) -> TopologyHandle:
        settings = self._config.topology
        log_progress(self._artifact_dir, f"[topology] setup in {self._config.topology_dir}")
        run_step(
            "topology-setup",
            settings.setup,
            log_path=self._log_path("topology_setup.log"),
            env=self._config.topology_env(),
            timeout=settings.timeout_s,
        )
        handle = TopologyHandle(self._config.topology_dir)
        if not handle.root.is_dir():
            raise ExternalProcessError(
                "topology-setup",
                f"exited 0 but did not create {handle.root}",
                argv=settings.setup,
            )
        return handle

    def teardown(self, handle: TopologyHandle) -> None:
        settings = self._config.topology
        log_progress(self._artifact_dir, f"[topology] teardown of {handle}")
        try:
            run_step(
                "topology-teardown",
                settings.teardown,
                log_path=self._log_path("topology_teardown.log"),
                env=self._config.topology_env(),
                timeout=settings.teardown_timeout_s,
            )
        except ExternalProcessError as exc:
            raise TeardownError(f"teardown of {handle} failed: {exc}") from exc

    def provision(self, on_cleanup_error: Optional[Callable[[BaseException], None]] = None, trace=None) -> "TopologySession":
        return TopologySession(self, on_cleanup_error, trace)


class TopologySession:
    """At most one live topology per session; released on every exit path."""

    def __init__(self, provisioner: Provisioner, on_cleanup_error: Optional[Callable[[BaseException], None]] = None, trace=None):
        self._provisioner = provisioner
        self._on_cleanup_error = on_cleanup_error
        self._trace = trace or _untraced
        self.handle: Optional[TopologyHandle] = None
        self.teardown_ran = False

    def __enter__(self) -> "TopologySession":
        # If setup raises, __exit__ is never called and nothing is torn down.
        self.handle = self._provisioner.setup()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release(exc)
        return False

    def release(self, pending: Optional[BaseException] = None) -> None:
        if self.handle is None or self.teardown_ran:
            return
        self.teardown_ran = True
        try:
            with self._trace("teardown"):
                self._provisioner.teardown(self.handle)
        except Exception as exc:
            err = exc if isinstance(exc, TeardownError) else TeardownError(f"teardown failed: {exc}")
            if err is not exc:
                err.__cause__ = exc
            if pending is None or self._on_cleanup_error is None:
                raise err
            self._on_cleanup_error(err)
        finally:
            self.handle = None
