"""Tests for cli/__init__.py.

Tests for argument parsing and the run, status, delete and health commands
against the in-memory backend.
"""

import json

import pytest

from tablekeeper.cli import build_parser, main, settings_from_args


@pytest.fixture
def base_args(tmp_path):
    return [
        "--backend",
        "memory",
        "--environment",
        "testing",
        "--tables",
        "users,role",
        "--table-prefix",
        "cli",
        "--status-file",
        str(tmp_path / "status.json"),
        "--lock-file",
        str(tmp_path / "worker.lock"),
        "--log-level",
        "ERROR",
    ]


class TestParser:
    """Tests for build_parser and settings_from_args."""

    def test_overrides(self):
        """Test flags override settings."""
        args = build_parser().parse_args(
            ["--environment", "production", "--tables", "users, role,", "--dry-run", "run"]
        )

        settings = settings_from_args(args)

        assert settings.environment == "production"
        assert settings.required_tables == ["users", "role"]
        assert settings.dry_run is True
        assert settings.run_once is True

    def test_serve_is_scheduled(self):
        """Test serve turns run-once off and takes a schedule."""
        args = build_parser().parse_args(["serve", "--schedule", "0 * * * *", "--force-recreate"])

        settings = settings_from_args(args)

        assert settings.run_once is False
        assert settings.schedule == "0 * * * *"
        assert settings.force_recreate is True

    def test_unknown_backend_rejected(self):
        """Test backend choices are enforced."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--backend", "sqlite", "run"])


class TestMain:
    """Tests for the CLI entry point."""

    def test_no_command(self, capsys):
        """Test running without a command prints help."""
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_run_then_status(self, base_args, tmp_path, capsys):
        """Test run provisions the tables and status reports them."""
        assert main(base_args + ["run"]) == 0
        capsys.readouterr()

        assert main(base_args + ["status", "--json"]) == 0

        data = json.loads((tmp_path / "status.json").read_text())
        assert data["status"] == "completed"
        assert {r["name"] for r in data["resources"]} == {"cli_users", "cli_role"}
        assert '"completed"' in capsys.readouterr().out

    def test_status_without_runs(self, base_args, capsys):
        """Test status with no history warns instead of failing."""
        assert main(base_args + ["status"]) == 0
        assert "No status recorded yet" in capsys.readouterr().out

    def test_dry_run(self, base_args, tmp_path):
        """Test dry run records a completed run."""
        assert main(base_args + ["--dry-run", "run"]) == 0

        data = json.loads((tmp_path / "status.json").read_text())
        assert data["metadata"]["dry_run"] is True

    def test_run_failure_exit_code(self, base_args, tmp_path):
        """Test a failed setup exits non-zero and records the failure."""
        args = list(base_args)
        args[args.index("users,role")] = "users,crews"

        assert main(args + ["run"]) != 0

        data = json.loads((tmp_path / "status.json").read_text())
        assert data["status"] == "failed"
        assert "crews" in data["error_message"]

    def test_health(self, base_args, capsys):
        """Test health exits 0 only after a successful run."""
        assert main(base_args + ["health"]) == 1
        assert main(base_args + ["run"]) == 0
        capsys.readouterr()

        assert main(base_args + ["health"]) == 0
        assert "infrastructure setup completed" in capsys.readouterr().out

    def test_delete_requires_confirmation(self, base_args, capsys):
        """Test delete refuses without --yes."""
        assert main(base_args + ["delete"]) == 1
        assert "--yes" in capsys.readouterr().out

    def test_delete(self, base_args, tmp_path):
        """Test confirmed delete records the deleted state."""
        assert main(base_args + ["delete", "--yes"]) == 0

        data = json.loads((tmp_path / "status.json").read_text())
        assert data["status"] == "deleted"
