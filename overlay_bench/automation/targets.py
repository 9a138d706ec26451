#!/usr/bin/env python3
"""Closed table of reference benchmark targets and their connection endpoints.

The reference peer's port is a property of how the provisioner lays out the
simulated network, so it is listed here rather than discovered from the
topology. Adding a target means adding an enum member and a TARGETS entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from overlay_bench.automation.errors import ConfigurationError


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class Target(str, Enum):
    # C tor client node started by the provisioner, exposing SOCKS on 9008.
    TOR = "tor"


TARGETS: Dict[Target, Endpoint] = {
    Target.TOR: Endpoint("127.0.0.1", 9008),
}


def target_names() -> List[str]:
    return [target.value for target in Target]


def resolve(name: str) -> Endpoint:
    try:
        target = Target(name)
    except ValueError:
        raise ConfigurationError(
            f"unknown benchmark target {name!r} (supported: {', '.join(target_names())})",
            value=name,
        ) from None
    return TARGETS[target]
