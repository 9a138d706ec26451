#!/usr/bin/env python3
"""Harness configuration: YAML defaults plus the environment, resolved once per run."""

from __future__ import annotations

import os
import sys
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from overlay_bench.automation.errors import ConfigurationError, PreconditionError

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = PACKAGE_ROOT / "configs" / "harness.yaml"
ALLOWED_KEYS = {
    "harness",
    "artifact_root",
    "topology",
    "client",
    "benchmark",
    "notes",
    "description",
}


def _warn_unknown_keys(label: str, mapping: Dict) -> None:
    unknown = sorted(set(mapping.keys()) - ALLOWED_KEYS)
    if unknown:
        print(
            f"[config] warning: unrecognized top-level keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def deep_merge(base: Dict, extra: Dict) -> Dict:
    result = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: Path) -> Dict:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"harness config not found: {path}", value=str(path)) from None
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"harness config {path} is not valid YAML: {exc}", value=str(path)) from None
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"harness config {path} must be a mapping", value=str(path))
    return raw


def load_settings(path_override: Optional[str] = None) -> Dict:
    """Load the packaged defaults, then merge an operator-supplied file over them."""
    settings = _read_yaml(DEFAULT_CONFIG_PATH)
    if path_override:
        user = _read_yaml(Path(path_override))
        _warn_unknown_keys(path_override, user)
        settings = deep_merge(settings, user)
    return settings


@dataclass(frozen=True)
class TopologySettings:
    env_var: str
    setup: List[str]
    teardown: List[str]
    timeout_s: Optional[float] = 600.0
    teardown_timeout_s: Optional[float] = 300.0


@dataclass(frozen=True)
class ClientSettings:
    command: List[str]
    config_subpath: str
    proxy_host: str
    proxy_port: int
    ready_wait: float = 1.0
    probe_proxy: bool = True
    ready_timeout_s: float = 60.0
    stop_timeout_s: float = 10.0


@dataclass(frozen=True)
class BenchmarkSettings:
    command: List[str]
    output_name: str = "benchmark_results.json"
    log_level_env: str = "RUST_LOG"
    default_log_level: Optional[str] = None
    timeout_s: Optional[float] = 1800.0


@dataclass(frozen=True)
class HarnessConfig:
    """Everything a run needs, built once before any stage executes."""

    name: str
    target: str
    topology_dir: Path
    artifact_root: Path
    topology: TopologySettings
    client: ClientSettings
    benchmark: BenchmarkSettings
    log_level: Optional[str] = None

    def topology_env(self) -> Dict[str, str]:
        return {self.topology.env_var: str(self.topology_dir)}

    def describe(self) -> Dict:
        return {
            "name": self.name,
            "target": self.target,
            "topology_dir": str(self.topology_dir),
            "artifact_root": str(self.artifact_root),
            "log_level": self.log_level,
            "topology": asdict(self.topology),
            "client": asdict(self.client),
            "benchmark": asdict(self.benchmark),
        }


def require_env(environ: Mapping[str, str], name: str) -> str:
    """Return a required environment value; unset or empty is fatal, never defaulted."""
    value = environ.get(name)
    if value is None:
        raise PreconditionError(f"required environment variable {name} is not set")
    if not value.strip():
        raise PreconditionError(f"required environment variable {name} is empty")
    return value


def _section(settings: Dict, name: str) -> Dict:
    section = settings.get(name)
    if not isinstance(section, dict):
        raise ConfigurationError(f"harness config section '{name}' is missing or not a mapping", value=name)
    return section


def _command(section: Dict, key: str, label: str) -> List[str]:
    value = section.get(key)
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list) or not value:
        raise ConfigurationError(f"{label}.{key} must be a non-empty command list", value=str(value))
    return [str(part) for part in value]


def _flag(section: Dict, key: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be true or false, got {value!r}", value=str(value))
    return value


def _optional_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"expected a number of seconds, got {value!r}", value=str(value)) from None


def build_config(
    target: str,
    settings: Dict,
    environ: Optional[Mapping[str, str]] = None,
    artifact_root: Optional[str] = None,
) -> HarnessConfig:
    environ = os.environ if environ is None else environ
    topo = _section(settings, "topology")
    client = _section(settings, "client")
    bench = _section(settings, "benchmark")

    topology = TopologySettings(
        env_var=str(topo.get("env_var") or "CHUTNEY_DATA_DIR"),
        setup=_command(topo, "setup", "topology"),
        teardown=_command(topo, "teardown", "topology"),
        timeout_s=_optional_float(topo.get("timeout_s", 600)),
        teardown_timeout_s=_optional_float(topo.get("teardown_timeout_s", 300)),
    )
    try:
        proxy_port = int(client.get("proxy_port", 9150))
    except (TypeError, ValueError):
        raise ConfigurationError("client.proxy_port must be an integer", value=str(client.get("proxy_port"))) from None
    client_settings = ClientSettings(
        command=_command(client, "command", "client"),
        config_subpath=str(client.get("config_subpath") or "nodes/arti.toml"),
        proxy_host=str(client.get("proxy_host") or "127.0.0.1"),
        proxy_port=proxy_port,
        ready_wait=float(_optional_float(client.get("ready_wait", 1.0)) or 0.0),
        probe_proxy=_flag(client, "probe_proxy", True),
        ready_timeout_s=float(_optional_float(client.get("ready_timeout_s", 60)) or 0.0),
        stop_timeout_s=float(_optional_float(client.get("stop_timeout_s", 10)) or 0.0),
    )
    benchmark = BenchmarkSettings(
        command=_command(bench, "command", "benchmark"),
        output_name=str(bench.get("output_name") or "benchmark_results.json"),
        log_level_env=str(bench.get("log_level_env") or "RUST_LOG"),
        default_log_level=bench.get("default_log_level"),
        timeout_s=_optional_float(bench.get("timeout_s", 1800)),
    )

    topology_dir = Path(require_env(environ, topology.env_var))
    log_level = environ.get(benchmark.log_level_env) or benchmark.default_log_level
    root = artifact_root or settings.get("artifact_root") or "artifacts/bench"
    return HarnessConfig(
        name=str(settings.get("harness") or "bench"),
        target=target,
        topology_dir=topology_dir,
        artifact_root=Path(root),
        topology=topology,
        client=client_settings,
        benchmark=benchmark,
        log_level=str(log_level) if log_level else None,
    )
