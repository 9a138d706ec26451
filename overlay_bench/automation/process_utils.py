#!/usr/bin/env python3
"""Utility helpers for launching one-shot steps and long-running collaborators."""

from __future__ import annotations

import os
import socket
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from overlay_bench.automation.errors import ConfigurationError, ExternalProcessError


def _open_log(log_path: Optional[Path], name: str, argv: List[str], verb: str):
    if not log_path:
        return None
    log_path.parent.mkdir(parents=True, exist_ok=True)
    stdout = open(log_path, "w", encoding="utf-8")
    # Write a small header so users can see what was launched.
    stdout.write(f"[launcher] {verb} {name}: {' '.join(argv)}\n")
    stdout.flush()
    return stdout


def _merged_env(env: Optional[Dict[str, str]]) -> Dict[str, str]:
    merged = os.environ.copy()
    if env:
        merged.update(env)
    return merged


def run_step(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    error_cls=ExternalProcessError,
) -> int:
    """Run a command to completion as a single attempt; nonzero exit or timeout raises."""
    stdout = _open_log(log_path, name, argv, "running step")
    try:
        try:
            cp = subprocess.run(
                argv,
                cwd=cwd,
                env=_merged_env(env),
                stdout=stdout,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise error_cls(name, f"timed out after {timeout}s", argv=argv, timed_out=True)
        except OSError as exc:
            raise error_cls(name, f"failed to launch: {exc}", argv=argv)
    finally:
        if stdout:
            stdout.close()
    if cp.returncode != 0:
        raise error_cls(name, f"failed with code {cp.returncode}", argv=argv, returncode=cp.returncode)
    return cp.returncode


class BackgroundProcess:
    """A launched long-running process whose termination is explicit and idempotent."""

    def __init__(self, name: str, proc: subprocess.Popen, log_file=None):
        self.name = name
        self.proc = proc
        self._log_file = log_file
        self._stopped = False

    @property
    def pid(self) -> int:
        return self.proc.pid

    def poll(self) -> Optional[int]:
        return self.proc.poll()

    def stop(self, timeout: float = 5.0) -> Optional[int]:
        """Terminate the process; returns its own exit code if it had already exited."""
        if self._stopped:
            return None
        self._stopped = True
        try:
            early_code = self.proc.poll()
            if early_code is None:
                _terminate_process(self.proc, self.name, timeout=timeout)
            return early_code
        finally:
            if self._log_file:
                self._log_file.close()


def launch_process(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    ready_wait: float = 1.0,
) -> BackgroundProcess:
    """Spawn a subprocess and confirm it survived the initial ready wait."""
    stdout = _open_log(log_path, name, argv, "starting")
    try:
        proc = subprocess.Popen(argv, cwd=cwd, env=_merged_env(env), stdout=stdout, stderr=subprocess.STDOUT)
    except OSError as exc:
        if stdout:
            stdout.close()
        raise ExternalProcessError(name, f"failed to launch: {exc}", argv=argv)
    handle = BackgroundProcess(name, proc, log_file=stdout)
    try:
        time.sleep(ready_wait)
        early_code = proc.poll()
    except BaseException:
        handle.stop()
        raise
    if early_code is not None:
        handle.stop()
        raise ExternalProcessError(
            name, f"exited early with code {early_code}", argv=argv, returncode=early_code
        )
    return handle


def _terminate_process(proc: subprocess.Popen, name: str, timeout: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def wait_for_tcp(host: str, port: int, timeout_s: float = 10.0, proc: Optional[BackgroundProcess] = None) -> bool:
    """Poll until host:port accepts connections; gives up early if ``proc`` exits."""
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        if proc is not None and proc.poll() is not None:
            return False
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except OSError:
            time.sleep(0.2)
    return False


def format_argv(template: List[str], context: Dict[str, str]) -> List[str]:
    try:
        return [str(part).format(**context) for part in template]
    except KeyError as exc:
        raise ConfigurationError(f"unknown placeholder {exc} in command template {template}", value=str(exc))
    except (IndexError, ValueError) as exc:
        raise ConfigurationError(f"malformed command template {template}: {exc}", value=str(template)) from None
