from io import StringIO
from unittest.mock import patch

import pytest
from django.core.management import call_command
from django.core.management.base import CommandError

from deskmail.exceptions import ReauthenticationRequired
from deskmail.services.credential_service import CredentialService

REDIRECT_URI = "https://desk.example.com/oauth/callback"


@pytest.mark.django_db
class TestAuthorizeMailboxCommand:
    def test_prints_consent_url(self, gmail_mailbox):
        out = StringIO()
        call_command(
            "authorize_mailbox", str(gmail_mailbox.pk),
            "--redirect-uri", REDIRECT_URI, stdout=out,
        )
        assert out.getvalue().startswith("https://accounts.google.com/")
        assert "access_type=offline" in out.getvalue()

    def test_exchanges_code(self, gmail_mailbox):
        out = StringIO()
        with patch.object(
            CredentialService, "exchange_authorization_code", return_value=gmail_mailbox
        ) as exchange:
            call_command(
                "authorize_mailbox", str(gmail_mailbox.pk),
                "--redirect-uri", REDIRECT_URI, "--code", "auth-code", stdout=out,
            )

        exchange.assert_called_once()
        assert exchange.call_args.args[1:] == ("auth-code", REDIRECT_URI)
        assert "authorized" in out.getvalue()

    def test_unknown_mailbox(self, db):
        with pytest.raises(CommandError):
            call_command("authorize_mailbox", "9999", "--redirect-uri", REDIRECT_URI)

    def test_rejected_code(self, gmail_mailbox):
        with patch.object(
            CredentialService,
            "exchange_authorization_code",
            side_effect=ReauthenticationRequired("invalid_grant"),
        ):
            with pytest.raises(CommandError):
                call_command(
                    "authorize_mailbox", str(gmail_mailbox.pk),
                    "--redirect-uri", REDIRECT_URI, "--code", "bad",
                )
