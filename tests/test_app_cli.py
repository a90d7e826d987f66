"""
Tests for the command line entry point in social.skyscraper.app.cli
"""

import json

import pytest

from social.skyscraper.app.cli import build_parser, realMain
from social.skyscraper.model.session import SessionRecord, SessionStore


@pytest.fixture
def service_env(auth_server, monkeypatch):
    monkeypatch.setenv("SKYSCRAPER_SERVICE", auth_server.base_url)
    monkeypatch.setenv("SKYSCRAPER_PLC_DIRECTORY", f"{auth_server.base_url}/plc")
    return auth_server


class TestBuildParser:
    """Test argument parsing."""

    def test_login_arguments(self):
        """Test login options."""
        args = vars(
            build_parser().parse_args(
                ["login", "-u", "alice.test", "--app-password", "--no-browser"]
            )
        )
        assert args["command"] == "login"
        assert args["handle"] == "alice.test"
        assert args["app_password"] is True
        assert args["no_browser"] is True

    def test_app_password_defaults_to_settings(self):
        """Test --app-password is unset unless given."""
        args = vars(build_parser().parse_args(["login"]))
        assert args["app_password"] is None

    def test_command_is_required(self):
        """Test a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRealMain:
    """Test running commands end to end."""

    @pytest.mark.asyncio
    async def test_discover(self, service_env, capsys):
        """Test discover prints the resolved endpoints."""
        assert await realMain(["discover", "alice.test"]) == 0

        endpoints = json.loads(capsys.readouterr().out)
        assert endpoints["did"] == "did:plc:xyz"
        assert endpoints["token_endpoint"] == f"{service_env.base_url}/oauth/token"

    @pytest.mark.asyncio
    async def test_discover_failure(self, service_env, capsys):
        """Test a discovery error exits non-zero with a message."""
        assert await realMain(["discover", "nobody.test"]) == 1
        assert "Error:" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_app_password_login_restore_logout(
        self, service_env, isolated_config_dir, monkeypatch, capsys
    ):
        """Test logging in, restoring and logging out from the command line."""
        monkeypatch.setattr(
            "social.skyscraper.app.cli.getpass.getpass", lambda prompt: "app-pass-1234"
        )

        assert await realMain(["login", "-u", "alice.test", "--app-password"]) == 0
        assert "Logged in as alice.test (did:plc:xyz)" in capsys.readouterr().out
        assert SessionStore(isolated_config_dir).load() is not None

        assert await realMain(["restore"]) == 0
        assert "Logged in as alice.test" in capsys.readouterr().out

        assert await realMain(["logout"]) == 0
        assert SessionStore(isolated_config_dir).load() is None

        assert await realMain(["restore"]) == 1
        assert "Not logged in" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_login_uses_last_handle(
        self, service_env, isolated_config_dir, monkeypatch, capsys
    ):
        """Test the stored handle is used when none is given."""
        SessionStore(isolated_config_dir).save(
            SessionRecord(
                did="did:plc:xyz", handle="alice.test", access_jwt="a", refresh_jwt="r"
            )
        )
        monkeypatch.setattr(
            "social.skyscraper.app.cli.getpass.getpass", lambda prompt: "app-pass-1234"
        )

        assert await realMain(["login", "--app-password"]) == 0
        assert "Logged in as alice.test" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_login_rejected(self, service_env, monkeypatch, capsys):
        """Test a rejected app password exits non-zero."""
        monkeypatch.setattr(
            "social.skyscraper.app.cli.getpass.getpass", lambda prompt: "wrong"
        )

        assert await realMain(["login", "-u", "alice.test", "--app-password"]) == 1
        assert "Invalid identifier or password" in capsys.readouterr().err
