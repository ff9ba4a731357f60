import json

import pytest
import yaml
from click.testing import CliRunner
from tierhunt import __version__
from tierhunt.attempt import AttemptStatus, read_outcome
from tierhunt.classifier import Classification
from tierhunt.cli import main
from tierhunt.config import load_config


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "tierhunt.yaml"
    path.write_text(yaml.dump({
        "region": "ca-toronto-1",
        "zones": ["AD-1", "AD-2"],
        "state_dir": str(tmp_path / "state"),
        "logging": {"output": "", "console": False},
    }))
    return path


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_ok(runner, config_file):
    result = runner.invoke(main, ["validate", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "Configuration valid" in result.output
    assert "Not set" in result.output


def test_validate_invalid(runner, tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.dump({"zones": ["AD-1"], "cache": {"ttl_hours": 500}}))
    result = runner.invoke(main, ["validate", "--config", str(path)])
    assert result.exit_code == 3
    assert "ttl_hours" in result.output


def test_invalid_yaml_exits_three(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("zones: [unclosed")
    result = runner.invoke(main, ["state", "show", "--config", str(path)])
    assert result.exit_code == 3


def test_state_record_show_check(runner, config_file):
    result = runner.invoke(main, ["state", "check", "a1-flex-sg"])
    assert result.exit_code == 0
    assert "would be provisioned" in result.output

    result = runner.invoke(main, ["state", "record", "a1-flex-sg", "ocid1.instance.oc1..a"])
    assert result.exit_code == 0

    result = runner.invoke(main, ["state", "check", "a1-flex-sg"])
    assert "already created" in result.output

    result = runner.invoke(main, ["state", "show", "--json"])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["summary"]["instances"] == 1
    assert data["envelope"]["instances"]["a1-flex-sg"]["instance_id"] == "ocid1.instance.oc1..a"


def test_state_verify_invalid_transition(runner, config_file):
    runner.invoke(main, ["state", "record", "a1-flex-sg", "ocid1.instance.oc1..a"])
    result = runner.invoke(main, ["state", "verify", "a1-flex-sg", "ocid1.instance.oc1..a", "--status", "running"])
    assert result.exit_code == 0

    result = runner.invoke(main, ["state", "verify", "a1-flex-sg", "ocid1.instance.oc1..a"])
    assert result.exit_code == 1
    assert "Could not update" in result.output


def test_state_remove(runner, config_file):
    runner.invoke(main, ["state", "record", "a1-flex-sg", "ocid1.instance.oc1..a"])
    result = runner.invoke(main, ["state", "remove", "a1-flex-sg"])
    assert result.exit_code == 0
    assert "removed" in result.output
    assert load_config().build_cache().should_create("a1-flex-sg")


def test_state_purge_requires_confirm(runner, config_file):
    runner.invoke(main, ["state", "record", "a1-flex-sg", "ocid1.instance.oc1..a"])
    assert runner.invoke(main, ["state", "purge"]).exit_code == 1
    assert not load_config().build_cache().should_create("a1-flex-sg")

    assert runner.invoke(main, ["state", "purge", "--confirm"]).exit_code == 0
    assert load_config().build_cache().should_create("a1-flex-sg")


def test_state_health(runner, config_file):
    runner.invoke(main, ["state", "record", "a1-flex-sg", "ocid1.instance.oc1..a"])
    result = runner.invoke(main, ["state", "health"])
    assert result.exit_code == 0


def test_state_cache_key(runner, config_file):
    result = runner.invoke(main, ["state", "cache-key", "--date", "2025-01-06", "--restore-keys"])
    assert result.exit_code == 0
    lines = result.output.split()
    assert len(lines) == 4
    assert lines[0].endswith("-v1-2025-01-06")
    assert lines[0] == lines[1]
    assert lines[2].endswith("-v1-2025-01-05")


def test_breaker_status_and_reset(runner, config_file):
    result = runner.invoke(main, ["breaker", "status"])
    assert "No zone failures" in result.output

    circuit = load_config().build_breaker()
    for _ in range(3):
        circuit.record_failure("AD-1")

    result = runner.invoke(main, ["breaker", "status"])
    assert result.exit_code == 0
    assert "OPEN" in result.output

    result = runner.invoke(main, ["breaker", "reset", "AD-1"])
    assert result.exit_code == 0
    assert load_config().build_breaker().records() == []


def test_schedule_commands(runner, config_file):
    result = runner.invoke(main, ["schedule", "analyze", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.output)["total"] == 0

    result = runner.invoke(main, ["schedule", "context"])
    assert result.exit_code == 0
    assert "would run" in result.output


def test_metrics_empty(runner, config_file):
    result = runner.invoke(main, ["metrics"])
    assert result.exit_code == 0
    assert "No metrics" in result.output


def test_metrics_summary(runner, config_file):
    recorder = load_config().build_metrics()
    recorder.record_zone_result("AD-1", True)
    recorder.record_zone_result("AD-1", False, "CAPACITY")
    result = runner.invoke(main, ["metrics"])
    assert result.exit_code == 0
    assert "1/2" in result.output
    assert "50%" in result.output


def test_run_dry_run(runner, config_file):
    result = runner.invoke(main, ["run", "--dry-run"])
    assert result.exit_code == 0
    assert "Dry run" in result.output


def test_attempt_unknown_profile_writes_artifact(runner, config_file, tmp_path, monkeypatch):
    monkeypatch.setattr("tierhunt.attempt.install_signal_handlers", lambda: None)
    result_file = tmp_path / "nope.json"

    result = runner.invoke(main, ["attempt", "--profile", "nope", "--result-file", str(result_file)])

    assert result.exit_code == 3
    outcome = read_outcome(result_file)
    assert outcome.status == AttemptStatus.FAILED
    assert outcome.classification == Classification.CONFIG
