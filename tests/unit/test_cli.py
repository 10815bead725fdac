"""
Unit tests for the administration CLI.
"""
import pytest
from typer.testing import CliRunner

from panelauth import __version__
from panelauth.cli.main import app
from panelauth.core.config import get_settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("JWT_SECRET", "cli-test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestCLI:
    """Test cases for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_db_is_idempotent(self):
        first = runner.invoke(app, ["init-db"])
        second = runner.invoke(app, ["init-db"])

        assert first.exit_code == 0
        assert "Roles added: 5" in first.output
        assert "Roles added: 0" in second.output

    def test_create_admin_with_generated_password(self):
        result = runner.invoke(app, ["create-admin", "root", "root@example.com"])

        assert result.exit_code == 0
        assert "Password:" in result.output

    def test_create_admin_twice_fails(self):
        runner.invoke(app, ["create-admin", "root", "root@example.com"])
        result = runner.invoke(app, ["create-admin", "root", "root@example.com"])

        assert result.exit_code == 1

    def test_block_and_unblock_ip(self):
        assert runner.invoke(app, ["block-ip", "6.6.6.6", "--minutes", "5"]).exit_code == 0

        result = runner.invoke(app, ["unblock-ip", "6.6.6.6"])
        assert "unblocked" in result.output

        result = runner.invoke(app, ["unblock-ip", "6.6.6.6"])
        assert "was not blocked" in result.output

    def test_unlock_unknown_user(self):
        result = runner.invoke(app, ["unlock-user", "nobody"])

        assert result.exit_code == 1

    def test_roles_table(self):
        runner.invoke(app, ["init-db"])
        result = runner.invoke(app, ["roles"])

        assert result.exit_code == 0
        assert "operator" in result.output
