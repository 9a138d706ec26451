#!/usr/bin/env python3
"""Failure kinds raised by the benchmark harness stages."""

from __future__ import annotations

from typing import List, Optional


class HarnessError(RuntimeError):
    pass


class PreconditionError(HarnessError):
    """A required environment value or path is missing before a dependent stage."""


class ConfigurationError(HarnessError):
    def __init__(self, message: str, value: Optional[str] = None):
        super().__init__(message)
        self.value = value


class ExternalProcessError(HarnessError):
    """A spawned collaborator exited nonzero, exited early, or timed out."""

    def __init__(
        self,
        name: str,
        message: str,
        argv: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        timed_out: bool = False,
    ):
        super().__init__(f"{name}: {message}")
        self.name = name
        self.argv = list(argv or [])
        self.returncode = returncode
        self.timed_out = timed_out


class BenchmarkError(ExternalProcessError):
    pass


class TeardownError(HarnessError):
    pass


class RunInterrupted(HarnessError):
    pass
