"""CLI tests through typer's CliRunner, against the local backend."""

from __future__ import annotations

import shlex
import sys

import pytest
from typer.testing import CliRunner

from shipline.cli.app import app
from shipline.core.run_ledger import RunLedger

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_dir, source_root, monkeypatch):
    """Point every SHIPLINE_* path into the temp dir; unit tests pass."""
    monkeypatch.chdir(tmp_dir)
    state = tmp_dir / "state"
    monkeypatch.setenv("SHIPLINE_LEDGER_PATH", str(state / "ledger.db"))
    monkeypatch.setenv("SHIPLINE_REGISTRY_PATH", str(state / "registry"))
    monkeypatch.setenv("SHIPLINE_BUILD_LOG_DIR", str(state / "build-logs"))
    monkeypatch.setenv("SHIPLINE_INFRASTRUCTURE_STATE_PATH", str(state / "infra.json"))
    monkeypatch.setenv("SHIPLINE_BACKEND", "local")
    monkeypatch.setenv("SHIPLINE_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("SHIPLINE_TEST_COMMAND", f"{shlex.quote(sys.executable)} -c pass")
    return tmp_dir


class TestHelp:
    def test_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("trigger", "promote", "abort", "status", "runs", "bootstrap"):
            assert command in result.output


class TestRuns:
    def test_no_ledger(self, cli_env):
        result = runner.invoke(app, ["runs"])
        assert result.exit_code == 0
        assert "No runs recorded yet." in result.output

    def test_status_without_ledger(self, cli_env):
        result = runner.invoke(app, ["status", "run-x"])
        assert result.exit_code == 1
        assert "No ledger found" in result.output


class TestTrigger:
    def test_unbound_branch_is_ignored(self, cli_env):
        result = runner.invoke(
            app, ["trigger", "--branch", "feature/x", "--commit", "c1", "-s", "checkout"]
        )
        assert result.exit_code == 0
        assert "No pipeline is bound" in result.output

    def test_failing_unit_tests_exit_one(self, cli_env, monkeypatch):
        monkeypatch.setenv(
            "SHIPLINE_TEST_COMMAND", f"{shlex.quote(sys.executable)} -c 'raise SystemExit(1)'"
        )
        result = runner.invoke(
            app, ["trigger", "--branch", "testing", "--commit", "c1", "-s", "checkout"]
        )
        assert result.exit_code == 1
        assert "test_failure" in result.output

        listed = runner.invoke(app, ["runs"])
        assert listed.exit_code == 0
        assert "failed" in listed.output


class TestBootstrap:
    def test_creates_production(self, cli_env):
        result = runner.invoke(app, ["bootstrap"])
        assert result.exit_code == 0
        assert "ecommerce-production" in result.output
        assert "ready" in result.output

        again = runner.invoke(app, ["bootstrap"])
        assert again.exit_code == 0

    def test_azure_without_password_exits_two(self, cli_env, monkeypatch):
        monkeypatch.setenv("SHIPLINE_BACKEND", "azure")
        monkeypatch.setenv("SHIPLINE_REGISTRY_HOST", "ecommerceacr.azurecr.io")
        monkeypatch.delenv("SHIPLINE_DATABASE_ADMIN_PASSWORD", raising=False)
        result = runner.invoke(app, ["bootstrap"])
        assert result.exit_code == 2
        assert "provision_error" in result.output
        assert "SHIPLINE_DATABASE_ADMIN_PASSWORD" in result.output

    def test_azure_without_acr_host_exits_one(self, cli_env, monkeypatch):
        monkeypatch.setenv("SHIPLINE_BACKEND", "azure")
        monkeypatch.setenv("SHIPLINE_DATABASE_ADMIN_PASSWORD", "s3cret")
        monkeypatch.delenv("SHIPLINE_REGISTRY_HOST", raising=False)
        result = runner.invoke(app, ["bootstrap"])
        assert result.exit_code == 1
        assert "registry_error" in result.output


class TestPromote:
    def test_requires_run_or_versions(self, cli_env):
        result = runner.invoke(app, ["promote"])
        assert result.exit_code == 2

    def test_run_and_versions_are_exclusive(self, cli_env):
        result = runner.invoke(app, ["promote", "run-1", "--set", "product=v1"])
        assert result.exit_code == 2

    def test_malformed_set(self, cli_env):
        result = runner.invoke(app, ["promote", "--set", "product"])
        assert result.exit_code == 2

    def test_unknown_run(self, cli_env):
        result = runner.invoke(app, ["promote", "run-missing"])
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_unvalidated_version_is_rejected(self, cli_env):
        result = runner.invoke(app, ["promote", "--set", "product=v7"])
        assert result.exit_code == 1
        assert "promotion_rejected" in result.output

    def test_unknown_service(self, cli_env):
        result = runner.invoke(app, ["promote", "--set", "payments=v1"])
        assert result.exit_code == 1
        assert "payments" in result.output


class TestStatusAndAbort:
    def _rejected_run_id(self, cli_env) -> str:
        runner.invoke(app, ["promote", "--set", "product=v7"])
        return RunLedger(cli_env / "state" / "ledger.db").get_all_run_ids()[0]

    def test_status_shows_restored_run(self, cli_env):
        run_id = self._rejected_run_id(cli_env)
        result = runner.invoke(app, ["status", run_id, "--verify-chain"])
        assert result.exit_code == 0
        assert "production_deploy" in result.output
        assert "valid" in result.output

    def test_status_unknown_run_lists_known(self, cli_env):
        run_id = self._rejected_run_id(cli_env)
        result = runner.invoke(app, ["status", "run-missing"])
        assert result.exit_code == 1
        assert run_id in result.output

    def test_abort_terminal_run_is_refused(self, cli_env):
        run_id = self._rejected_run_id(cli_env)
        result = runner.invoke(app, ["abort", run_id])
        assert result.exit_code == 1
        assert "Cannot abort" in result.output

    def test_abort_unknown_run(self, cli_env):
        result = runner.invoke(app, ["abort", "run-missing"])
        assert result.exit_code == 1
        assert "Run not found" in result.output
