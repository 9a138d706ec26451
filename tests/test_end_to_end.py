"""End-to-end harness runs against stub collaborator executables."""

import json

import pytest
import yaml

from overlay_bench.automation import client, run_harness
from overlay_bench.automation.config import deep_merge
from overlay_bench.automation.errors import BenchmarkError, ExternalProcessError, RunInterrupted
from overlay_bench.automation.pipeline import HarnessPipeline
from overlay_bench.automation.validate_artifacts import validate_run_dir


@pytest.fixture
def run_stub(stub_settings, environ, artifact_root):
    def _run(target="tor", fail=()):
        pipeline = HarnessPipeline(stub_settings(fail=fail), environ=environ, artifact_root=str(artifact_root))
        return pipeline.run(target)

    return _run


class TestStubbedRuns:
    def test_success_writes_result_artifact(self, run_stub, read_events):
        outcome = run_stub()

        assert outcome.ok, outcome.error
        assert outcome.result_path == outcome.artifact_dir / "benchmark_results.json"
        payload = json.loads(outcome.result_path.read_text(encoding="utf-8"))
        assert payload["log_level"] == "info"
        assert read_events() == ["setup", "client", "bench", "teardown"]
        assert not [i for i in validate_run_dir(outcome.artifact_dir) if i.level == "error"]

    def test_benchmark_failure_still_tears_down(self, run_stub, read_events):
        outcome = run_stub(fail=("bench",))

        assert isinstance(outcome.error, ExternalProcessError)
        assert isinstance(outcome.error, BenchmarkError)
        assert outcome.exit_code == 7
        assert read_events().count("teardown") == 1
        assert not (outcome.artifact_dir / "benchmark_results.json").exists()
        codes = {i.code for i in validate_run_dir(outcome.artifact_dir)}
        assert "run_failed" in codes
        assert "stale_result_artifact" not in codes

    def test_provisioning_failure_never_tears_down(self, run_stub, read_events):
        outcome = run_stub(fail=("setup",))

        assert isinstance(outcome.error, ExternalProcessError)
        assert read_events() == ["setup"]
        assert not outcome.teardown_ran

    def test_client_crash_is_external_process_error(self, run_stub, read_events):
        outcome = run_stub(fail=("client",))

        assert isinstance(outcome.error, ExternalProcessError)
        assert outcome.error.name == "client"
        assert read_events().count("teardown") == 1

    def test_unknown_target_after_provisioning(self, run_stub, read_events):
        outcome = run_stub(target="bogus")

        assert outcome.error.value == "bogus"
        assert "bench" not in read_events()
        assert read_events()[-1] == "teardown"

    def test_interrupt_while_waiting_for_proxy_stops_client(self, stub_settings, environ, artifact_root, monkeypatch):
        waited_on = []

        def interrupted(host, port, timeout_s=10.0, proc=None):
            waited_on.append(proc)
            raise KeyboardInterrupt

        monkeypatch.setattr(client, "wait_for_tcp", interrupted)
        settings = deep_merge(stub_settings(), {"client": {"probe_proxy": True}})

        outcome = HarnessPipeline(settings, environ=environ, artifact_root=str(artifact_root)).run("tor")

        assert isinstance(outcome.error, RunInterrupted)
        assert outcome.exit_code == 130
        assert outcome.teardown_ran
        assert len(waited_on) == 1
        assert waited_on[0].poll() is not None

    def test_teardown_failure_reported(self, run_stub):
        outcome = run_stub(fail=("teardown",))

        assert outcome.error is not None
        assert type(outcome.error).__name__ == "TeardownError"
        # The benchmark itself succeeded and its artifact stays for inspection.
        assert outcome.result_path.exists()


class TestCli:
    @pytest.fixture
    def config_file(self, tmp_path, stub_settings):
        def _write(fail=()):
            path = tmp_path / "harness.yaml"
            path.write_text(yaml.safe_dump(stub_settings(fail=fail)), encoding="utf-8")
            return path

        return _write

    def test_success_exit_code(self, monkeypatch, config_file, topology_dir, artifact_root, capsys):
        monkeypatch.setenv("CHUTNEY_DATA_DIR", str(topology_dir))

        code = run_harness.main(["tor", "--config", str(config_file()), "--artifact-root", str(artifact_root)])

        assert code == 0
        assert "ok: results in" in capsys.readouterr().out

    def test_benchmark_failure_exit_code(self, monkeypatch, config_file, topology_dir, artifact_root, capsys):
        monkeypatch.setenv("CHUTNEY_DATA_DIR", str(topology_dir))

        code = run_harness.main(
            ["tor", "--config", str(config_file(fail=("bench",))), "--artifact-root", str(artifact_root)]
        )

        assert code == 7
        err = capsys.readouterr().err
        assert "BenchmarkError" in err
        assert "progress.log" in err

    def test_missing_topology_env(self, monkeypatch, config_file, artifact_root, capsys, read_events):
        monkeypatch.delenv("CHUTNEY_DATA_DIR", raising=False)

        code = run_harness.main(["tor", "--config", str(config_file()), "--artifact-root", str(artifact_root)])

        assert code == 1
        assert "PreconditionError" in capsys.readouterr().err
        assert read_events() == []

    def test_unknown_target_names_value(self, monkeypatch, config_file, topology_dir, artifact_root, capsys):
        monkeypatch.setenv("CHUTNEY_DATA_DIR", str(topology_dir))

        code = run_harness.main(["warp-drive", "--config", str(config_file()), "--artifact-root", str(artifact_root)])

        assert code == 1
        assert "'warp-drive'" in capsys.readouterr().err

    def test_list_targets(self, capsys):
        assert run_harness.main(["--list-targets"]) == 0
        assert "tor\t127.0.0.1:9008" in capsys.readouterr().out

    def test_target_required(self, capsys):
        assert run_harness.main([]) == 2
        assert "target is required" in capsys.readouterr().err

    def test_dry_run_spawns_nothing(self, monkeypatch, config_file, topology_dir, capsys, read_events):
        monkeypatch.setenv("CHUTNEY_DATA_DIR", str(topology_dir))

        code = run_harness.main(["tor", "--config", str(config_file()), "--dry-run"])

        assert code == 0
        described = json.loads(capsys.readouterr().out)
        assert described["topology_dir"] == str(topology_dir)
        assert read_events() == []
