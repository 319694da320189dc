import base64
import threading
import time
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from django.db import connection

from deskmail.exceptions import (
    CredentialError,
    MailboxConfigurationError,
    ReauthenticationRequired,
    TokenRefreshError,
)
from deskmail.models import Mailbox
from deskmail.services.credential_service import (
    CredentialService,
    normalize_expiry_to_seconds,
)
from tests.factories import GmailMailboxFactory

POST = "deskmail.services.credential_service.requests.post"
GET = "deskmail.services.credential_service.requests.get"


def token_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    return response


@pytest.fixture
def expired_mailbox(db):
    return GmailMailboxFactory(expires_at=int(time.time()) - 10)


class TestHelpers:
    def test_normalize_expiry_accepts_seconds(self):
        assert normalize_expiry_to_seconds(1_700_000_000) == 1_700_000_000

    def test_normalize_expiry_converts_milliseconds(self):
        assert normalize_expiry_to_seconds(1_700_000_000_123) == 1_700_000_000

    def test_normalize_expiry_accepts_strings(self):
        assert normalize_expiry_to_seconds("1700000000") == 1_700_000_000

    def test_generate_xoauth2_token(self):
        token = CredentialService.generate_xoauth2_token("support@example.com", "ya29.token")
        decoded = base64.b64decode(token).decode("utf-8")
        assert decoded == "user=support@example.com\x01auth=Bearer ya29.token\x01\x01"


@pytest.mark.django_db
class TestGetValidAccessToken:
    def test_fresh_token_is_returned_without_network(self, gmail_mailbox):
        with patch(POST) as post:
            token = CredentialService.get_valid_access_token(gmail_mailbox)

        assert token == "access-token-1"
        post.assert_not_called()

    def test_expired_token_is_refreshed_and_persisted(self, expired_mailbox):
        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )) as post:
            token = CredentialService.get_valid_access_token(expired_mailbox)

        assert token == "access-token-2"
        data = post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-token-1"
        assert data["client_id"] == "test-client-id"
        assert data["client_secret"] == "test-client-secret"

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert stored.access_token == "access-token-2"
        assert abs(stored.expires_at - (time.time() + 3600)) < 10
        assert expired_mailbox.access_token == "access-token-2"

    def test_token_inside_safety_margin_is_refreshed(self, db):
        mailbox = GmailMailboxFactory(expires_at=int(time.time()) + 60)
        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )) as post:
            CredentialService.get_valid_access_token(mailbox)
        post.assert_called_once()

    def test_missing_access_token_is_refreshed(self, db):
        mailbox = GmailMailboxFactory(access_token=None, expires_at=None)
        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )):
            assert CredentialService.get_valid_access_token(mailbox) == "access-token-2"

    def test_rotated_refresh_token_is_stored(self, expired_mailbox):
        with patch(POST, return_value=token_response({
            "access_token": "access-token-2",
            "refresh_token": "refresh-token-2",
            "expires_in": 3600,
        })):
            CredentialService.get_valid_access_token(expired_mailbox)

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert stored.refresh_token == "refresh-token-2"

    def test_refresh_token_kept_when_not_rotated(self, expired_mailbox):
        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )):
            CredentialService.get_valid_access_token(expired_mailbox)

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert stored.refresh_token == "refresh-token-1"

    def test_expiry_date_in_milliseconds(self, expired_mailbox):
        expiry_ms = (int(time.time()) + 3600) * 1000
        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expiry_date": expiry_ms}
        )):
            CredentialService.get_valid_access_token(expired_mailbox)

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert stored.expires_at == expiry_ms // 1000

    def test_default_expiry_when_provider_omits_it(self, expired_mailbox):
        with patch(POST, return_value=token_response({"access_token": "access-token-2"})):
            CredentialService.get_valid_access_token(expired_mailbox)

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert abs(stored.expires_at - (time.time() + 3500)) < 10

    def test_stale_instance_reuses_token_stored_by_another_caller(self, gmail_mailbox):
        stale = Mailbox.objects.get(pk=gmail_mailbox.pk)
        stale.access_token = "access-token-0"
        stale.expires_at = int(time.time()) - 10

        with patch(POST) as post:
            token = CredentialService.get_valid_access_token(stale)

        assert token == "access-token-1"
        assert stale.access_token == "access-token-1"
        post.assert_not_called()

    def test_missing_refresh_token_is_a_configuration_error(self, db):
        mailbox = GmailMailboxFactory(refresh_token=None, expires_at=int(time.time()) - 10)
        with patch(POST) as post, pytest.raises(MailboxConfigurationError):
            CredentialService.get_valid_access_token(mailbox)
        post.assert_not_called()

    def test_invalid_grant_requires_reauthentication(self, expired_mailbox):
        response = token_response(
            {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            status_code=400,
        )
        with patch(POST, return_value=response), pytest.raises(ReauthenticationRequired):
            CredentialService.get_valid_access_token(expired_mailbox)

        stored = Mailbox.objects.get(pk=expired_mailbox.pk)
        assert stored.requires_reauth is True
        assert stored.access_token == "access-token-1"
        assert expired_mailbox.requires_reauth is True

    def test_other_provider_errors_are_transient(self, expired_mailbox):
        response = token_response({"error": "server_error"}, status_code=500)
        with patch(POST, return_value=response), pytest.raises(TokenRefreshError) as excinfo:
            CredentialService.get_valid_access_token(expired_mailbox)

        assert not isinstance(excinfo.value, ReauthenticationRequired)
        assert Mailbox.objects.get(pk=expired_mailbox.pk).requires_reauth is False

    def test_network_failure_is_transient(self, expired_mailbox):
        with patch(POST, side_effect=requests.ConnectionError("boom")), \
                pytest.raises(TokenRefreshError):
            CredentialService.get_valid_access_token(expired_mailbox)

    def test_response_without_access_token(self, expired_mailbox):
        with patch(POST, return_value=token_response({"expires_in": 3600})), \
                pytest.raises(TokenRefreshError):
            CredentialService.get_valid_access_token(expired_mailbox)

    def test_errors_share_a_base_class(self):
        assert issubclass(ReauthenticationRequired, CredentialError)
        assert issubclass(TokenRefreshError, CredentialError)


@pytest.mark.django_db
class TestClientCredentials:
    def test_mailbox_credentials_used_when_settings_empty(self, settings, monkeypatch):
        settings.DESKMAIL = {
            **settings.DESKMAIL,
            "OAUTH_CLIENT_ID": None,
            "OAUTH_CLIENT_SECRET": None,
        }
        monkeypatch.delenv("GMAIL_CLIENT_ID", raising=False)
        monkeypatch.delenv("GMAIL_CLIENT_SECRET", raising=False)
        mailbox = GmailMailboxFactory(
            expires_at=int(time.time()) - 10,
            client_id="mailbox-client-id",
            client_secret="mailbox-client-secret",
        )

        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )) as post:
            CredentialService.get_valid_access_token(mailbox)

        assert post.call_args.kwargs["data"]["client_id"] == "mailbox-client-id"

    def test_environment_credentials(self, settings, monkeypatch):
        settings.DESKMAIL = {
            **settings.DESKMAIL,
            "OAUTH_CLIENT_ID": None,
            "OAUTH_CLIENT_SECRET": None,
        }
        monkeypatch.setenv("GMAIL_CLIENT_ID", "env-client-id")
        monkeypatch.setenv("GMAIL_CLIENT_SECRET", "env-client-secret")
        mailbox = GmailMailboxFactory(expires_at=int(time.time()) - 10)

        with patch(POST, return_value=token_response(
            {"access_token": "access-token-2", "expires_in": 3600}
        )) as post:
            CredentialService.get_valid_access_token(mailbox)

        assert post.call_args.kwargs["data"]["client_id"] == "env-client-id"

    def test_missing_client_credentials(self, settings, monkeypatch):
        settings.DESKMAIL = {
            **settings.DESKMAIL,
            "OAUTH_CLIENT_ID": None,
            "OAUTH_CLIENT_SECRET": None,
        }
        monkeypatch.delenv("GMAIL_CLIENT_ID", raising=False)
        monkeypatch.delenv("GMAIL_CLIENT_SECRET", raising=False)
        mailbox = GmailMailboxFactory(expires_at=int(time.time()) - 10)

        with patch(POST) as post, pytest.raises(MailboxConfigurationError):
            CredentialService.get_valid_access_token(mailbox)
        post.assert_not_called()


@pytest.mark.django_db
class TestAuthorizationFlow:
    def test_build_authorization_url(self, gmail_mailbox):
        url = CredentialService.build_authorization_url(
            gmail_mailbox, "https://desk.example.com/oauth/callback"
        )

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.google.com"
        assert params["client_id"] == ["test-client-id"]
        assert params["redirect_uri"] == ["https://desk.example.com/oauth/callback"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["state"] == [str(gmail_mailbox.pk)]
        assert "https://mail.google.com/" in params["scope"][0]

    def test_exchange_authorization_code(self, db):
        mailbox = GmailMailboxFactory(
            username="placeholder@example.com",
            refresh_token=None,
            access_token=None,
            expires_at=None,
            requires_reauth=True,
        )
        userinfo = MagicMock()
        userinfo.json.return_value = {"email": "support@example.com"}

        with patch(POST, return_value=token_response({
            "access_token": "access-token-9",
            "refresh_token": "refresh-token-9",
            "expires_in": 3600,
        })) as post, patch(GET, return_value=userinfo):
            CredentialService.exchange_authorization_code(
                mailbox, "auth-code", "https://desk.example.com/oauth/callback"
            )

        data = post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code"

        stored = Mailbox.objects.get(pk=mailbox.pk)
        assert stored.access_token == "access-token-9"
        assert stored.refresh_token == "refresh-token-9"
        assert stored.username == "support@example.com"
        assert stored.service_type == Mailbox.ServiceType.GMAIL
        assert stored.requires_reauth is False

    def test_exchange_keeps_username_when_userinfo_fails(self, db):
        mailbox = GmailMailboxFactory(username="support@example.com")

        with patch(POST, return_value=token_response({
            "access_token": "access-token-9",
            "refresh_token": "refresh-token-9",
            "expires_in": 3600,
        })), patch(GET, side_effect=requests.ConnectionError("down")):
            CredentialService.exchange_authorization_code(
                mailbox, "auth-code", "https://desk.example.com/oauth/callback"
            )

        assert Mailbox.objects.get(pk=mailbox.pk).username == "support@example.com"

    def test_exchange_invalid_code(self, gmail_mailbox):
        response = token_response({"error": "invalid_grant"}, status_code=400)
        with patch(POST, return_value=response), pytest.raises(ReauthenticationRequired):
            CredentialService.exchange_authorization_code(
                gmail_mailbox, "bad-code", "https://desk.example.com/oauth/callback"
            )


@pytest.mark.django_db(transaction=True)
class TestConcurrentRefresh:
    def test_concurrent_callers_share_one_exchange(self):
        mailbox = GmailMailboxFactory(expires_at=int(time.time()) - 10)
        exchanges = []
        results = []
        errors = []

        def slow_post(*args, **kwargs):
            exchanges.append(kwargs["data"]["refresh_token"])
            time.sleep(0.2)
            return token_response({"access_token": "access-token-2", "expires_in": 3600})

        def worker():
            try:
                stale = Mailbox.objects.get(pk=mailbox.pk)
                results.append(CredentialService.get_valid_access_token(stale))
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        with patch(POST, side_effect=slow_post):
            threads = [threading.Thread(target=worker) for _ in range(2)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        assert errors == []
        assert exchanges == ["refresh-token-1"]
        assert results == ["access-token-2", "access-token-2"]
