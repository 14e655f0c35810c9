"""Unit tests for the CLI argument parsing and wiring."""

from __future__ import annotations

import sys
from unittest.mock import MagicMock

import pytest

from scripts.saasmgmt import cli
from scripts.saasmgmt.services import build_services


class TestParser:
    def test_sync_defaults_to_all(self) -> None:
        args = cli.build_parser().parse_args(["sync", "--company", "co1"])
        assert args.app_type == "all"
        assert args.correlate is False
        assert args.func is cli.cmd_sync

    def test_disconnect_requires_known_app_type(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["disconnect", "-c", "co1", "-a", "myspace"])

    def test_status_options(self) -> None:
        args = cli.build_parser().parse_args(["status", "-c", "co1", "-a", "zoom", "-l", "5"])
        assert (args.app_type, args.limit) == ("zoom", 5)

    def test_disconnect_names_one_credential_set(self) -> None:
        args = cli.build_parser().parse_args(["disconnect", "-c", "co1", "-a", "slack", "-n", "Slack EU"])
        assert (args.app_type, args.app_name) == ("slack", "Slack EU")
        assert cli.build_parser().parse_args(["disconnect", "-c", "co1", "-a", "slack"]).app_name is None


def test_main_exits_non_zero_on_failure(monkeypatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda: None)
    monkeypatch.setattr(cli, "load_config", MagicMock(side_effect=ValueError("ENCRYPTION_KEY missing")))
    monkeypatch.setattr(sys, "argv", ["saasmgmt", "init-db"])
    with pytest.raises(SystemExit) as exc_info:
        cli.main()
    assert exc_info.value.code == 1


def test_build_services_wires_save_hook(config) -> None:
    services = build_services(config, MagicMock())
    assert services.scheduler is None
    assert services.credentials.on_saved == services.smart_connect.sync_credentials_to_connection


def test_build_services_signs_state_with_encryption_key(config) -> None:
    services = build_services(config, MagicMock())
    assert services.smart_connect.state_key == config.encryption.key
