#!/usr/bin/env python3
"""Supervise the client-under-test as a background process bound to a topology."""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Callable, Optional

from overlay_bench.automation.config import HarnessConfig
from overlay_bench.automation.errors import ExternalProcessError
from overlay_bench.automation.process_utils import BackgroundProcess, format_argv, launch_process, wait_for_tcp
from overlay_bench.automation.results import log_progress
from overlay_bench.automation.targets import Endpoint
from overlay_bench.automation.topology import TopologyHandle


class ClientSupervisor:
    def __init__(self, config: HarnessConfig, artifact_dir: Optional[Path] = None):
        self._config = config
        self._artifact_dir = artifact_dir
        self._process: Optional[BackgroundProcess] = None

    @property
    def proxy(self) -> Endpoint:
        return Endpoint(self._config.client.proxy_host, self._config.client.proxy_port)

    def client_config_path(self, handle: TopologyHandle) -> Path:
        return handle.path(self._config.client.config_subpath)

    def command(self, handle: TopologyHandle):
        proxy = self.proxy
        return format_argv(
            self._config.client.command,
            {
                "client_config": str(self.client_config_path(handle)),
                "topology": str(handle),
                "proxy": str(proxy),
                "proxy_host": proxy.host,
                "proxy_port": str(proxy.port),
            },
        )

    def start(self, handle: TopologyHandle) -> BackgroundProcess:
        settings = self._config.client
        argv = self.command(handle)
        log_path = self._artifact_dir / "client.log" if self._artifact_dir else None
        log_progress(self._artifact_dir, f"[client] starting: {' '.join(argv)}")
        self._process = launch_process(
            "client",
            argv,
            log_path=log_path,
            env=self._config.topology_env(),
            ready_wait=settings.ready_wait,
        )
        if settings.probe_proxy:
            try:
                self._wait_ready(argv)
            except BaseException:
                # The caller never gets a context to exit, so the client is reaped here.
                process, self._process = self._process, None
                process.stop(timeout=settings.stop_timeout_s)
                raise
        log_progress(self._artifact_dir, f"[client] running pid={self._process.pid}")
        return self._process

    def _wait_ready(self, argv) -> None:
        settings = self._config.client
        proxy = self.proxy
        if wait_for_tcp(proxy.host, proxy.port, timeout_s=settings.ready_timeout_s, proc=self._process):
            return
        code = self._process.poll()
        if code is not None:
            raise ExternalProcessError("client", f"exited with code {code} before proxy {proxy} was ready",
                                       argv=argv, returncode=code)
        raise ExternalProcessError("client", f"proxy {proxy} not ready after {settings.ready_timeout_s}s",
                                   argv=argv, timed_out=True)

    def stop(self) -> None:
        if self._process is None:
            return
        process, self._process = self._process, None
        log_progress(self._artifact_dir, f"[client] stopping pid={process.pid}")
        early_code = process.stop(timeout=self._config.client.stop_timeout_s)
        if early_code not in (None, 0):
            raise ExternalProcessError("client", f"exited unexpectedly with code {early_code} before stop",
                                       returncode=early_code)

    def running(self, handle: TopologyHandle, on_cleanup_error: Optional[Callable[[BaseException], None]] = None, trace=None):
        return _ClientContext(self, handle, on_cleanup_error, trace)


class _ClientContext:
    def __init__(self, supervisor: ClientSupervisor, handle: TopologyHandle, on_cleanup_error=None, trace=None):
        self._supervisor = supervisor
        self._handle = handle
        self._on_cleanup_error = on_cleanup_error
        self._trace = trace or (lambda _name: contextlib.nullcontext())

    def __enter__(self) -> ClientSupervisor:
        self._supervisor.start(self._handle)
        return self._supervisor

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            with self._trace("client-stop"):
                self._supervisor.stop()
        except ExternalProcessError as err:
            if exc is None or self._on_cleanup_error is None:
                raise
            self._on_cleanup_error(err)
        return False
