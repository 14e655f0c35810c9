"""Unit tests for the smart-connect state machine and disconnect."""

from __future__ import annotations

from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from scripts.saasmgmt.errors import VendorAPIError
from scripts.saasmgmt.providers import APP_TYPES, get_provider
from scripts.saasmgmt.providers.base_provider import ConnectResult
from scripts.saasmgmt.providers.github import GitHubProvider
from scripts.saasmgmt.providers.slack import SlackProvider
from scripts.saasmgmt.smart_connect import SmartConnectService
from scripts.saasmgmt.state_token import decode_state, encode_state

GITHUB_FIELDS = {"personalAccessToken": "ghp_" + "a" * 36, "organization": "acme"}
SLACK_FIELDS = {"clientId": "123.456", "clientSecret": "s" * 32}


@pytest.fixture
def scheduler() -> MagicMock:
    return MagicMock()


def _build(config, mock_db, credentials_service, connection_store, scheduler, **kwargs):
    return SmartConnectService(
        credentials_service,
        connection_store,
        lambda app_type: get_provider(app_type, config, mock_db, connection_store),
        config.oauth,
        state_key=config.encryption.key,
        scheduler=scheduler,
        **kwargs,
    )


@pytest.fixture
def service(config, mock_db, credentials_service, connection_store, scheduler) -> SmartConnectService:
    return _build(config, mock_db, credentials_service, connection_store, scheduler)


@pytest.fixture
def github_connect(monkeypatch) -> MagicMock:
    def connect(company_id, app_name, fields):
        org = fields["organization"]
        return ConnectResult(
            external_account_id=f"org-{org}",
            account_name=org,
            tokens={"accessToken": fields["personalAccessToken"]},
            scope=["repo", "admin:org", "user"],
        )

    mock = MagicMock(side_effect=connect)
    monkeypatch.setattr(GitHubProvider, "connect", mock)
    return mock


def _store_incomplete_slack_set(credential_store) -> None:
    # Written straight to the store; save_credentials rejects incomplete sets.
    credential_store.upsert("co1", "slack", "Slack", {"clientId": "123.456"}, None)


class TestServiceStatus:
    def test_setup_required_without_credentials(self, service) -> None:
        status = service.get_service_status("co1", "github")
        assert status["status"] == "setup-required"
        assert status["actionText"] == "Set up credentials"
        assert status["hasCredentials"] is False

    def test_credentials_invalid_when_required_field_missing(self, service, credential_store) -> None:
        _store_incomplete_slack_set(credential_store)
        assert service.get_service_status("co1", "slack")["status"] == "credentials-invalid"

    def test_available_with_valid_credentials(self, service, credentials_service) -> None:
        credentials_service.save_credentials("co1", "slack", "Slack", SLACK_FIELDS)
        status = service.get_service_status("co1", "slack")
        assert status["status"] == "available"
        assert status["actionText"] == "Connect"
        assert status["appName"] == "Slack"

    def test_connected_and_error(self, service, credentials_service, connection_store) -> None:
        credentials_service.save_credentials("co1", "slack", "Slack", SLACK_FIELDS)
        connection_store.upsert("co1", "slack", "Slack", "T1", tokens={"accessToken": "xoxb"})
        assert service.get_service_status("co1", "slack")["status"] == "connected"

        connection_store.rows[("co1", "slack", "T1")]["status"] = "error"
        status = service.get_service_status("co1", "slack")
        assert status["status"] == "error"
        assert status["actionText"] == "Reconnect"

    def test_status_is_per_credential_set(
        self, service, credentials_service, connection_store, github_connect
    ) -> None:
        credentials_service.save_credentials("co1", "github", "acme", GITHUB_FIELDS)
        credentials_service.save_credentials(
            "co1", "github", "beta", dict(GITHUB_FIELDS, organization="beta")
        )
        service.smart_connect("co1", "github", "acme")

        assert service.get_service_status("co1", "github", "acme")["status"] == "connected"
        assert service.get_service_status("co1", "github", "beta")["status"] == "available"

    def test_every_app_type_listed(self, service) -> None:
        assert [s["id"] for s in service.get_services_status("co1")] == list(APP_TYPES)


class TestSmartConnect:
    def test_unsupported_service(self, service) -> None:
        result = service.smart_connect("co1", "myspace")
        assert result["success"] is False
        assert result["action"] == "error"

    def test_setup_required(self, service) -> None:
        assert service.smart_connect("co1", "github")["action"] == "setup-required"

    def test_unknown_credential_set_is_setup_required(self, service, credentials_service) -> None:
        credentials_service.save_credentials("co1", "github", "acme", GITHUB_FIELDS)
        assert service.smart_connect("co1", "github", "beta")["action"] == "setup-required"

    def test_missing_fields_listed(self, service, credential_store) -> None:
        _store_incomplete_slack_set(credential_store)
        result = service.smart_connect("co1", "slack")
        assert result["action"] == "credentials-invalid"
        assert result["message"] == "Missing required fields: Client Secret"

    def test_oauth_redirect_carries_signed_state(self, service, credentials_service, config) -> None:
        credentials_service.save_credentials("co1", "slack", "Slack", SLACK_FIELDS)
        result = service.smart_connect("co1", "slack")
        assert result["success"] is True
        assert result["action"] == "oauth-redirect"

        query = parse_qs(urlparse(result["redirectUrl"]).query)
        assert query["client_id"] == ["123.456"]
        assert query["redirect_uri"] == [config.oauth.redirect_uri("slack")]
        state = decode_state(
            query["state"][0], "slack", config.oauth.state_ttl_seconds, config.encryption.key
        )
        assert state.company_id == "co1"
        assert state.app_name == "Slack"

    def test_direct_connect_stores_connection(
        self, service, credentials_service, connection_store, scheduler, github_connect
    ) -> None:
        credentials_service.save_credentials("co1", "github", "GitHub", GITHUB_FIELDS)
        result = service.smart_connect("co1", "github")

        assert result["action"] == "connected"
        assert result["data"]["externalAccountId"] == "org-acme"
        assert result["data"]["appName"] == "GitHub"
        assert result["data"]["accountName"] == "acme"
        stored = connection_store.find_active("co1", "github", "GitHub")
        assert stored["status"] == "connected"
        assert connection_store.decrypt_tokens(stored) == {
            "accessToken": GITHUB_FIELDS["personalAccessToken"]
        }
        scheduler.schedule_connection.assert_called_once_with("co1", "github")

    def test_two_credential_sets_connect_separately(
        self, service, credentials_service, connection_store, github_connect
    ) -> None:
        credentials_service.save_credentials("co1", "github", "acme", GITHUB_FIELDS)
        credentials_service.save_credentials(
            "co1", "github", "beta", dict(GITHUB_FIELDS, organization="beta")
        )

        first = service.smart_connect("co1", "github", "acme")
        second = service.smart_connect("co1", "github", "beta")

        assert first["action"] == "connected"
        assert second["action"] == "connected"
        assert second["data"]["externalAccountId"] == "org-beta"
        assert github_connect.call_count == 2
        assert {c["app_name"] for c in connection_store.list_active("co1", "github")} == {"acme", "beta"}
        assert service.smart_connect("co1", "github", "beta")["action"] == "already-connected"

    def test_already_connected_skips_vendor(
        self, service, credentials_service, github_connect
    ) -> None:
        credentials_service.save_credentials("co1", "github", "GitHub", GITHUB_FIELDS)
        service.smart_connect("co1", "github")
        result = service.smart_connect("co1", "github")
        assert result["action"] == "already-connected"
        assert github_connect.call_count == 1

    def test_vendor_failure_returns_error(self, service, credentials_service, monkeypatch) -> None:
        monkeypatch.setattr(
            GitHubProvider, "connect",
            MagicMock(side_effect=VendorAPIError("github", "Bad credentials", status_code=401)),
        )
        credentials_service.save_credentials("co1", "github", "GitHub", GITHUB_FIELDS)
        result = service.smart_connect("co1", "github")
        assert result["success"] is False
        assert result["action"] == "error"
        assert "Bad credentials" in result["message"]

    def test_saving_credentials_connects_direct_vendors(
        self, service, credentials_service, connection_store, github_connect
    ) -> None:
        credentials_service.on_saved = service.sync_credentials_to_connection
        credentials_service.save_credentials("co1", "github", "acme", GITHUB_FIELDS)
        assert connection_store.find_active("co1", "github", "acme") is not None

    def test_saving_credentials_does_not_connect_oauth_vendors(self, service) -> None:
        assert service.sync_credentials_to_connection("co1", "slack") is None


class TestCompleteOAuth:
    def test_bad_state_is_rejected(self, service) -> None:
        result = service.complete_oauth("slack", "code", "garbage")
        assert result["action"] == "error"

    def test_state_for_other_service_is_rejected(self, service, config) -> None:
        state = encode_state("co1", "zoom", config.encryption.key)
        result = service.complete_oauth("slack", "code", state)
        assert result["action"] == "error"

    def test_expired_state_is_rejected(self, service, config) -> None:
        state = encode_state("co1", "slack", config.encryption.key, now=1.0)
        result = service.complete_oauth("slack", "code", state)
        assert result["action"] == "error"
        assert "expired" in result["message"]

    def test_forged_state_is_rejected(self, service, credentials_service, monkeypatch) -> None:
        exchange = MagicMock()
        monkeypatch.setattr(SlackProvider, "exchange_code", exchange)
        credentials_service.save_credentials("co1", "slack", "Slack", SLACK_FIELDS)

        forged = encode_state("co1", "slack", b"\x00" * 32)
        result = service.complete_oauth("slack", "the-code", forged)
        assert result["action"] == "error"
        assert "signature" in result["message"]
        exchange.assert_not_called()

    def test_exchange_stores_connection(
        self, service, credentials_service, connection_store, monkeypatch, config
    ) -> None:
        exchange = MagicMock(return_value=ConnectResult(
            external_account_id="T1", account_name="Acme", tokens={"accessToken": "xoxb-1"}
        ))
        monkeypatch.setattr(SlackProvider, "exchange_code", exchange)
        credentials_service.save_credentials("co1", "slack", "Slack EU", SLACK_FIELDS)

        state = encode_state("co1", "slack", config.encryption.key, app_name="Slack EU")
        result = service.complete_oauth("slack", "the-code", state)
        assert result["action"] == "connected"
        assert exchange.call_args.args == ("the-code", SLACK_FIELDS)
        stored = connection_store.find_active("co1", "slack", "Slack EU")
        assert stored["external_account_id"] == "T1"
        assert stored["details"]["accountName"] == "Acme"


class TestDisconnect:
    def test_disconnect_is_best_effort(
        self, config, mock_db, credentials_service, connection_store, scheduler, github_connect
    ) -> None:
        def broken(company_id, app_type, app_name):
            raise RuntimeError("table locked")

        service = _build(
            config, mock_db, credentials_service, connection_store, scheduler,
            disconnect_targets=[
                ("service_connections", connection_store.deactivate),
                ("sync_runs", broken),
            ],
        )
        credentials_service.save_credentials("co1", "github", "GitHub", GITHUB_FIELDS)
        service.smart_connect("co1", "github")

        result = service.disconnect_service("co1", "github")

        assert result["credentialsDeleted"] == 1
        assert result["connectionsDeleted"] == 1
        assert result["errors"] == ["sync_runs: table locked"]
        assert not credentials_service.has_credentials("co1", "github")
        assert connection_store.find_active("co1", "github") is None
        scheduler.cancel_connection.assert_called_once_with("co1", "github")

    def test_default_targets_cover_connections(self, service) -> None:
        assert [name for name, _ in service.disconnect_targets] == ["service_connections"]

    def test_credential_failure_does_not_stop_connection_cleanup(
        self, service, credentials_service, connection_store
    ) -> None:
        connection_store.upsert("co1", "github", "acme", "org-42")
        credentials_service.delete_credentials = MagicMock(side_effect=RuntimeError("db down"))

        result = service.disconnect_service("co1", "github")
        assert result["credentialsDeleted"] == 0
        assert result["connectionsDeleted"] == 1
        assert result["errors"] == ["credentials: db down"]

    def test_disconnecting_one_set_keeps_the_other(
        self, service, credentials_service, connection_store, scheduler, github_connect
    ) -> None:
        credentials_service.save_credentials("co1", "github", "acme", GITHUB_FIELDS)
        credentials_service.save_credentials(
            "co1", "github", "beta", dict(GITHUB_FIELDS, organization="beta")
        )
        service.smart_connect("co1", "github", "acme")
        service.smart_connect("co1", "github", "beta")

        result = service.disconnect_service("co1", "github", "acme")

        assert result == {"credentialsDeleted": 1, "connectionsDeleted": 1, "errors": []}
        assert credentials_service.has_credentials("co1", "github", "beta")
        assert connection_store.find_active("co1", "github", "beta") is not None
        scheduler.cancel_connection.assert_not_called()

    def test_disconnect_with_nothing_stored(self, service) -> None:
        assert service.disconnect_service("co1", "zoom") == {
            "credentialsDeleted": 0,
            "connectionsDeleted": 0,
            "errors": [],
        }
