import json
import sys
from pathlib import Path
from typing import List

import pytest

from overlay_bench.automation.bench_runner import BenchmarkRunner
from overlay_bench.automation.client import ClientSupervisor
from overlay_bench.automation.config import build_config, load_settings
from overlay_bench.automation.errors import BenchmarkError, ExternalProcessError, TeardownError
from overlay_bench.automation.topology import Provisioner, TopologyHandle

STUB = Path(__file__).resolve().parent / "stub_collaborator.py"


class FakeProvisioner(Provisioner):
    def __init__(self, config, artifact_dir, calls: List[str], fail=None):
        super().__init__(config, artifact_dir)
        self.calls = calls
        self.fail = fail

    def setup(self):
        self.calls.append("setup")
        if self.fail == "setup":
            raise ExternalProcessError("topology-setup", "failed with code 3", returncode=3)
        if self.fail != "missing-topology":
            self._config.topology_dir.mkdir(parents=True, exist_ok=True)
        return TopologyHandle(self._config.topology_dir)

    def teardown(self, handle):
        self.calls.append("teardown")
        if self.fail == "teardown":
            raise TeardownError(f"teardown of {handle} failed")


class FakeSupervisor(ClientSupervisor):
    def __init__(self, config, artifact_dir, calls: List[str], fail=None):
        super().__init__(config, artifact_dir)
        self.calls = calls
        self.fail = fail

    def start(self, handle):
        self.calls.append("client-start")
        if self.fail == "client-start":
            raise ExternalProcessError("client", "exited early with code 1", returncode=1)

    def stop(self):
        self.calls.append("client-stop")
        if self.fail == "client-stop":
            raise ExternalProcessError("client", "exited unexpectedly with code 9 before stop", returncode=9)


class FakeRunner(BenchmarkRunner):
    def __init__(self, config, artifact_dir, calls: List[str], fail=None):
        super().__init__(config, artifact_dir)
        self.calls = calls
        self.fail = fail
        self.requests = []

    def execute(self, request):
        self.calls.append("benchmark")
        self.requests.append(request)
        if self.fail == "benchmark":
            raise BenchmarkError("benchmark", "failed with code 7", returncode=7)
        if self.fail == "interrupt":
            raise KeyboardInterrupt()
        request.output_path.write_text(json.dumps({"ok": True}), encoding="utf-8")
        return request.output_path


class FakeCollaborators:
    """Builds fake stage classes that share one call log and one injected fault."""

    def __init__(self, fail=None):
        self.calls: List[str] = []
        self.fail = fail
        self.runners: List[FakeRunner] = []

    def provisioner(self, config, artifact_dir):
        return FakeProvisioner(config, artifact_dir, self.calls, self.fail)

    def supervisor(self, config, artifact_dir):
        return FakeSupervisor(config, artifact_dir, self.calls, self.fail)

    def runner(self, config, artifact_dir):
        runner = FakeRunner(config, artifact_dir, self.calls, self.fail)
        self.runners.append(runner)
        return runner

    def pipeline_kwargs(self):
        return {
            "provisioner_cls": self.provisioner,
            "supervisor_cls": self.supervisor,
            "runner_cls": self.runner,
        }


@pytest.fixture
def settings():
    return load_settings()


@pytest.fixture
def topology_dir(tmp_path):
    return tmp_path / "net"


@pytest.fixture
def environ(topology_dir):
    return {"CHUTNEY_DATA_DIR": str(topology_dir)}


@pytest.fixture
def artifact_root(tmp_path):
    return tmp_path / "artifacts"


@pytest.fixture
def harness_config(settings, environ, artifact_root):
    return build_config("tor", settings, environ=environ, artifact_root=str(artifact_root))


@pytest.fixture
def sys_true():
    return [sys.executable, "-c", "pass"]


@pytest.fixture
def events_file(tmp_path):
    return tmp_path / "events.log"


@pytest.fixture
def read_events(events_file):
    def _read() -> List[str]:
        if not events_file.exists():
            return []
        return events_file.read_text(encoding="utf-8").split()

    return _read


@pytest.fixture
def fakes():
    return FakeCollaborators


@pytest.fixture
def stub_settings(events_file):
    """Harness settings whose collaborators are the stub script; pass roles to fail."""

    def _make(fail=()):
        def cmd(role, *extra):
            return [sys.executable, str(STUB), role, str(events_file), "fail" if role in fail else "ok", *extra]

        return {
            "harness": "stub",
            "topology": {
                "env_var": "CHUTNEY_DATA_DIR",
                "setup": cmd("setup"),
                "teardown": cmd("teardown"),
                "timeout_s": 60,
                "teardown_timeout_s": 60,
            },
            "client": {
                "command": cmd("client", "-c", "{client_config}"),
                "config_subpath": "nodes/arti.toml",
                "proxy_host": "127.0.0.1",
                "proxy_port": 9150,
                "ready_wait": 0.5,
                "probe_proxy": False,
                "ready_timeout_s": 5,
                "stop_timeout_s": 5,
            },
            "benchmark": {
                "command": cmd("bench", "-c", "{client_config}", "--socks5", "{target}", "-o", "{output}"),
                "output_name": "benchmark_results.json",
                "log_level_env": "RUST_LOG",
                "default_log_level": "info",
                "timeout_s": 60,
            },
        }

    return _make
