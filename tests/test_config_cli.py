"""Tests for configuration, the Conveyor facade and the CLI."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from conveyor import Conveyor, __version__
from conveyor.cli import EXIT_ERROR, main
from conveyor.deployment.collaborators import Deployer, OperationResult
from conveyor.deployment.config_manager import (
    _CONFIG_KEYS,
    ConfigManager,
    parallelism,
    promotion_policy,
    resolve_path,
)
from conveyor.environments import EnvironmentRegistry
from conveyor.errors import ConfigurationError, DefinitionError
from conveyor.models import RunStatus
from conveyor.security import SecretsProvider


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)


def _project(root: Path, config: dict | None = None) -> Path:
    (root / "environments.json").write_text(json.dumps({
        "staging": {"rank": 1, "host": "127.0.0.1", "port": 9},
        "production": {"rank": 2, "host": "127.0.0.1", "port": 9},
    }))
    state = root / ".conveyor"
    state.mkdir(exist_ok=True)
    (state / "config.json").write_text(json.dumps({
        "CONVEYOR_DEPLOY_COMMAND": "true",
        **(config or {}),
    }))
    return root


def _pipeline(root: Path, name: str, groups: list) -> str:
    (root / name).write_text(json.dumps({"name": "shop", "groups": groups}))
    return name


OK_PIPELINE = [
    {"name": "checks", "stages": [{"name": "lint", "kind": "validate", "operation": "shell:true"}]},
    {"name": "deploy", "stages": [
        {"name": "deploy-staging", "kind": "deploy", "environment": "staging"},
        {"name": "deploy-production", "kind": "deploy", "environment": "production"},
    ]},
]


class RecordingDeployer(Deployer):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def deploy(self, artifact, environment, context):
        self.calls.append((artifact.identifier, environment.name))
        return OperationResult(success=True)


# ── ConfigManager ────────────────────────────────────────────────────────────

class TestConfigManager:

    def test_defaults_use_development_profile(self, tmp_path):
        config = ConfigManager().load_config(tmp_path)
        assert config["CONVEYOR_ENV"] == "development"
        assert config["CONVEYOR_LOG_LEVEL"] == "DEBUG"
        assert config["CONVEYOR_PARALLELISM"] == "4"
        assert config["CONVEYOR_TRUNK_BRANCHES"] == "main,master"

    def test_testing_profile(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONVEYOR_ENV", "testing")
        config = ConfigManager().load_config(tmp_path)
        assert config["CONVEYOR_LEDGER_DB"] == ":memory:"
        assert config["CONVEYOR_ARCHIVE_DIR"] == ""

    def test_merge_order(self, tmp_path, monkeypatch):
        state = tmp_path / ".conveyor"
        state.mkdir()
        (state / "config.json").write_text(json.dumps({
            "CONVEYOR_LOG_LEVEL": "INFO",
            "CONVEYOR_PARALLELISM": 8,
            "CONVEYOR_PROD_RANK": 3,
        }))
        (tmp_path / ".env").write_text("# local\nCONVEYOR_PARALLELISM=6\nCONVEYOR_PROD_RANK = 5\n")
        monkeypatch.setenv("CONVEYOR_PROD_RANK", "7")

        config = ConfigManager().load_config(tmp_path)

        assert config["CONVEYOR_LOG_LEVEL"] == "INFO"
        assert config["CONVEYOR_PARALLELISM"] == "6"
        assert config["CONVEYOR_PROD_RANK"] == "7"

    def test_unreadable_config_json_is_ignored(self, tmp_path):
        state = tmp_path / ".conveyor"
        state.mkdir()
        (state / "config.json").write_text("{broken")
        config = ConfigManager().load_config(tmp_path)
        assert config["CONVEYOR_ENV"] == "development"

    def test_env_template(self, tmp_path):
        path = ConfigManager().generate_env_template(tmp_path)
        text = path.read_text()
        assert path.name == ".env.example"
        for key in _CONFIG_KEYS:
            assert f"{key}=" in text


class TestConfigHelpers:

    def test_promotion_policy(self):
        policy = promotion_policy({
            "CONVEYOR_TRUNK_BRANCHES": "main, release ",
            "CONVEYOR_PREPROD_RANK": "2",
            "CONVEYOR_PROD_RANK": "4",
        })
        assert policy.trunk_branches == ("main", "release")
        assert policy.max_rank("release") == 4
        assert policy.max_rank("feature/x") == 2

    def test_empty_trunk_falls_back(self):
        assert promotion_policy({"CONVEYOR_TRUNK_BRANCHES": ""}).trunk_branches == ("main", "master")

    def test_bad_integers(self):
        with pytest.raises(ConfigurationError):
            promotion_policy({"CONVEYOR_PROD_RANK": "high"})
        with pytest.raises(ConfigurationError):
            parallelism({"CONVEYOR_PARALLELISM": "0"})
        assert parallelism({}) == 4

    def test_resolve_path(self, tmp_path):
        assert resolve_path(tmp_path, "") is None
        assert str(resolve_path(tmp_path, ":memory:")) == ":memory:"
        assert resolve_path(tmp_path, "a/b.db") == tmp_path / "a" / "b.db"
        assert resolve_path(tmp_path, str(tmp_path / "x")) == tmp_path / "x"


# ── Conveyor facade ──────────────────────────────────────────────────────────

class TestConveyor:

    def _conveyor(self, tmp_path, **kwargs) -> Conveyor:
        registry = EnvironmentRegistry.from_dicts([
            {"name": "staging", "rank": 1},
            {"name": "production", "rank": 2},
        ])
        kwargs.setdefault("deployer", RecordingDeployer())
        return Conveyor(tmp_path, config={}, registry=registry, **kwargs)

    def test_version(self):
        assert __version__ == "1.0.0"

    def test_trigger_prunes_by_default(self, tmp_path):
        cv = self._conveyor(tmp_path)
        run = cv.trigger({"name": "shop", "groups": OK_PIPELINE}, "feature/x", "abcdef1234567")

        assert run.status == RunStatus.SUCCEEDED
        assert [o.stage for o in run.outcomes] == ["lint", "deploy-staging"]
        assert [r.environment for r in cv.history("staging")] == ["staging"]
        assert cv.history("production") == []
        assert cv.notifications.console.log[-1]["status"] == "succeeded"
        cv.close()

    def test_plan(self, tmp_path):
        cv = self._conveyor(tmp_path)
        definition = {"name": "shop", "groups": OK_PIPELINE}
        assert [s.name for s in cv.plan(definition, "feature/x")] == ["deploy-production"]
        assert cv.plan(definition, "main") == []
        assert [e.name for e in cv.reachable("feature/x")] == ["staging"]
        cv.close()

    def test_load_definition_relative_to_project(self, tmp_path):
        cv = self._conveyor(tmp_path)
        _pipeline(tmp_path, "pipeline.json", OK_PIPELINE)
        assert cv.load_definition("pipeline.json").name == "shop"
        with pytest.raises(DefinitionError):
            cv.load_definition("missing.json")
        cv.close()

    def test_rollback(self, tmp_path):
        deployer = RecordingDeployer()
        cv = self._conveyor(tmp_path, deployer=deployer)
        definition = {"name": "shop", "groups": OK_PIPELINE}
        cv.trigger(definition, "main", "1111111111111")
        cv.trigger(definition, "main", "2222222222222")

        assert cv.rollback_target("production").version == "111111111111"
        result = cv.rollback("production", verify=False)

        assert result.success
        assert deployer.calls[-1] == ("shop:111111111111", "production")
        assert cv.history("production")[0].artifact_id == "shop:111111111111"
        cv.close()

    def test_health(self, tmp_path):
        def probe(url, timeout):
            return 200

        cv = self._conveyor(tmp_path, probe=probe)
        report = cv.health()
        assert report.status == "healthy"
        assert [c.name for c in report.checks] == ["staging", "production"]
        cv.close()

    def test_secrets_loaded_from_config(self, tmp_path):
        key = SecretsProvider.generate_key().decode("ascii")
        store = tmp_path / "secrets.json"
        SecretsProvider(key, store).put("token", "value-1")
        cv = Conveyor(tmp_path, config={
            "CONVEYOR_SECRETS_KEY": key,
            "CONVEYOR_SECRETS_FILE": str(store),
        }, registry=EnvironmentRegistry())
        assert cv.secrets.resolve("token") == "value-1"
        cv.close()

    def test_runs_archived(self, tmp_path):
        cv = Conveyor(tmp_path, config={"CONVEYOR_ARCHIVE_DIR": "runs"},
                      registry=EnvironmentRegistry())
        run = cv.trigger({"groups": [OK_PIPELINE[0]]}, "main", "abc")
        assert [r.id for r in cv.runs()] == [run.id]
        assert (tmp_path / "runs" / f"{run.id}.json").is_file()
        cv.close()


# ── CLI ──────────────────────────────────────────────────────────────────────

class TestCli:

    def test_run_succeeds(self, tmp_path, capsys):
        _project(tmp_path)
        name = _pipeline(tmp_path, "pipeline.json", OK_PIPELINE)

        code = main(["--project", str(tmp_path), "run", name, "--branch", "feature/x",
                     "--commit", "abc123"])

        assert code == 0
        out = capsys.readouterr().out
        assert "deploy-staging" in out
        assert "deploy-production" not in out

    def test_run_failure_exit_code(self, tmp_path):
        _project(tmp_path)
        name = _pipeline(tmp_path, "pipeline.json", [
            {"stages": [{"name": "lint", "kind": "validate", "operation": "shell:false"}]},
        ])
        assert main(["--project", str(tmp_path), "run", name, "--branch", "main",
                     "--commit", "abc"]) == 1

    def test_no_prune_fails_unauthorized_stage(self, tmp_path):
        _project(tmp_path)
        name = _pipeline(tmp_path, "pipeline.json", OK_PIPELINE)
        assert main(["--project", str(tmp_path), "run", name, "--branch", "feature/x",
                     "--commit", "abc", "--no-prune"]) == 1

    def test_invalid_definition_aborts(self, tmp_path):
        _project(tmp_path)
        name = _pipeline(tmp_path, "pipeline.json", [])
        assert main(["--project", str(tmp_path), "run", name, "--branch", "main",
                     "--commit", "abc"]) == 2

    def test_unreadable_definition(self, tmp_path, capsys):
        _project(tmp_path)
        code = main(["--project", str(tmp_path), "run", "missing.json", "--branch", "main",
                     "--commit", "abc"])
        assert code == EXIT_ERROR
        assert "Cannot read pipeline definition" in capsys.readouterr().err

    def test_plan(self, tmp_path, capsys):
        _project(tmp_path)
        name = _pipeline(tmp_path, "pipeline.json", OK_PIPELINE)
        assert main(["--project", str(tmp_path), "plan", name, "--branch", "feature/x"]) == 0
        out = capsys.readouterr().out
        assert "reachable: staging" in out
        assert "pruned: deploy-production -> production" in out

    def test_history_and_rollback(self, tmp_path, capsys):
        _project(tmp_path, {"CONVEYOR_LEDGER_DB": ".conveyor/ledger.db"})
        name = _pipeline(tmp_path, "pipeline.json", OK_PIPELINE)
        for commit in ("1111111111111", "2222222222222"):
            assert main(["--project", str(tmp_path), "run", name, "--branch", "main",
                         "--commit", commit]) == 0
        capsys.readouterr()

        assert main(["--project", str(tmp_path), "history", "production"]) == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 2
        assert "shop:222222222222" in lines[0]

        assert main(["--project", str(tmp_path), "rollback", "production", "--no-verify"]) == 0
        assert "redeployed shop:111111111111" in capsys.readouterr().out

    def test_rollback_without_history(self, tmp_path):
        _project(tmp_path)
        assert main(["--project", str(tmp_path), "rollback", "staging"]) == 1

    def test_unknown_environment_is_an_error(self, tmp_path):
        _project(tmp_path)
        assert main(["--project", str(tmp_path), "rollback", "qa"]) == EXIT_ERROR

    def test_init(self, tmp_path):
        assert main(["--project", str(tmp_path), "init"]) == 0
        assert (tmp_path / ".env.example").is_file()
