import base64
import logging
import threading
import time
from urllib.parse import urlencode

import requests
from django.db import transaction

from deskmail.conf import get_setting
from deskmail.exceptions import (
    MailboxConfigurationError,
    ReauthenticationRequired,
    TokenRefreshError,
)
from deskmail.models import Mailbox

logger = logging.getLogger("deskmail")

# Expiry values above this are epoch milliseconds (year ~2286 in seconds).
MILLISECONDS_THRESHOLD = 10_000_000_000

TOKEN_FIELDS = ("access_token", "refresh_token", "expires_at", "requires_reauth")


def normalize_expiry_to_seconds(value):
    """Return an epoch expiry in seconds, accepting seconds or milliseconds."""
    value = int(value)
    if value > MILLISECONDS_THRESHOLD:
        return value // 1000
    return value


class CredentialService:
    """
    OAuth token lifecycle for mailboxes that authenticate with XOAUTH2.

    Refreshes for a single mailbox are serialized: an in-process lock keeps
    two threads apart, and the mailbox row is locked and re-read inside a
    transaction so the exchange always starts from the newest refresh token
    and a token stored by a concurrent caller is reused instead of being
    overwritten.
    """

    _locks = {}
    _locks_guard = threading.Lock()

    @staticmethod
    def generate_xoauth2_token(username: str, access_token: str) -> str:
        auth_string = f"user={username}\x01auth=Bearer {access_token}\x01\x01"
        return base64.b64encode(auth_string.encode("utf-8")).decode("ascii")

    @classmethod
    def get_valid_access_token(cls, mailbox: Mailbox) -> str:
        """
        Return a usable access token for the mailbox, refreshing it when it
        is missing or expires within the safety margin.

        Raises:
            MailboxConfigurationError: No refresh token or client credentials.
            ReauthenticationRequired: The provider rejected the grant.
            TokenRefreshError: Any other refresh failure.
        """
        if cls._is_token_fresh(mailbox):
            return mailbox.access_token

        with cls._lock_for(mailbox.pk):
            try:
                with transaction.atomic():
                    current = Mailbox.objects.select_for_update().get(pk=mailbox.pk)
                    if cls._is_token_fresh(current):
                        logger.debug(
                            f"Mailbox {mailbox.pk}: token already refreshed by another caller"
                        )
                    else:
                        cls._refresh(current)
            except ReauthenticationRequired:
                Mailbox.objects.filter(pk=mailbox.pk).update(requires_reauth=True)
                mailbox.requires_reauth = True
                raise

        for name in TOKEN_FIELDS:
            setattr(mailbox, name, getattr(current, name))
        return current.access_token

    @classmethod
    def build_authorization_url(cls, mailbox: Mailbox, redirect_uri: str) -> str:
        """Consent URL for connecting a Gmail mailbox with offline access."""
        client_id, _ = cls._client_credentials(mailbox)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(get_setting("OAUTH_SCOPES")),
            "access_type": "offline",
            "prompt": "consent",
            "state": str(mailbox.pk),
        }
        return f"{get_setting('OAUTH_AUTH_URL')}?{urlencode(params)}"

    @classmethod
    def exchange_authorization_code(cls, mailbox: Mailbox, code: str, redirect_uri: str) -> Mailbox:
        """
        Complete the consent flow: trade the authorization code for tokens
        and store them on the mailbox.
        """
        client_id, client_secret = cls._client_credentials(mailbox)
        payload = cls._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
        })

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("Authorization code exchange returned no access token")

        mailbox.access_token = access_token
        mailbox.expires_at = cls._compute_expiry(payload)
        if payload.get("refresh_token"):
            mailbox.refresh_token = payload["refresh_token"]
        mailbox.service_type = Mailbox.ServiceType.GMAIL
        mailbox.requires_reauth = False

        account_email = cls._fetch_account_email(access_token)
        if account_email:
            mailbox.username = account_email
            mailbox.name = account_email

        mailbox.save()
        logger.info(f"Mailbox {mailbox.pk} authorized for {mailbox.username}")
        return mailbox

    # ----- Internal helpers -----

    @classmethod
    def _lock_for(cls, mailbox_id):
        with cls._locks_guard:
            return cls._locks.setdefault(mailbox_id, threading.Lock())

    @staticmethod
    def _is_token_fresh(mailbox) -> bool:
        if not mailbox.access_token or not mailbox.expires_at:
            return False
        margin = get_setting("TOKEN_EXPIRY_MARGIN_SECONDS")
        return time.time() < normalize_expiry_to_seconds(mailbox.expires_at) - margin

    @staticmethod
    def _client_credentials(mailbox):
        client_id = get_setting("OAUTH_CLIENT_ID") or mailbox.client_id
        client_secret = get_setting("OAUTH_CLIENT_SECRET") or mailbox.client_secret
        if not client_id or not client_secret:
            raise MailboxConfigurationError(
                "OAuth client credentials are not configured. Set "
                "DESKMAIL['OAUTH_CLIENT_ID'] and DESKMAIL['OAUTH_CLIENT_SECRET'] "
                "(or GMAIL_CLIENT_ID / GMAIL_CLIENT_SECRET)."
            )
        return client_id, client_secret

    @classmethod
    def _refresh(cls, mailbox):
        """Exchange the stored refresh token and persist the result."""
        if not mailbox.refresh_token:
            raise MailboxConfigurationError(
                f"Mailbox {mailbox.pk} has no refresh token. Authorize the mailbox again."
            )
        client_id, client_secret = cls._client_credentials(mailbox)

        logger.info(f"Mailbox {mailbox.pk}: access token expired, refreshing")
        payload = cls._token_request({
            "grant_type": "refresh_token",
            "refresh_token": mailbox.refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        })

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError(
                f"Mailbox {mailbox.pk}: token refresh returned no access token"
            )

        mailbox.access_token = access_token
        mailbox.expires_at = cls._compute_expiry(payload)
        mailbox.requires_reauth = False
        update_fields = ["access_token", "expires_at", "requires_reauth", "updated_at"]

        rotated = payload.get("refresh_token")
        if rotated and rotated != mailbox.refresh_token:
            mailbox.refresh_token = rotated
            update_fields.append("refresh_token")
            logger.info(f"Mailbox {mailbox.pk}: refresh token rotated")

        mailbox.save(update_fields=update_fields)
        logger.info(f"Mailbox {mailbox.pk}: access token refreshed")

    @staticmethod
    def _compute_expiry(payload) -> int:
        now = int(time.time())
        if payload.get("expires_in"):
            return now + int(payload["expires_in"])
        if payload.get("expiry_date"):
            return normalize_expiry_to_seconds(payload["expiry_date"])
        return now + get_setting("OAUTH_DEFAULT_EXPIRY_SECONDS")

    @staticmethod
    def _token_request(data) -> dict:
        """POST to the provider token endpoint and classify failures."""
        try:
            response = requests.post(
                get_setting("OAUTH_TOKEN_URL"),
                data=data,
                timeout=get_setting("OAUTH_TIMEOUT"),
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise TokenRefreshError(f"Token endpoint unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        error = payload.get("error")
        if response.status_code >= 400 or error:
            description = payload.get("error_description") or error or response.status_code
            if error == "invalid_grant":
                raise ReauthenticationRequired(
                    "The OAuth grant is no longer valid (access revoked, password "
                    "changed or refresh token expired). Authorize the mailbox again. "
                    f"Provider said: {description}"
                )
            raise TokenRefreshError(f"Token request failed: {description}")

        return payload

    @staticmethod
    def _fetch_account_email(access_token):
        try:
            response = requests.get(
                get_setting("OAUTH_USERINFO_URL"),
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=get_setting("OAUTH_TIMEOUT"),
            )
            response.raise_for_status()
            return response.json().get("email")
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"Could not fetch OAuth account email: {exc}")
            return None
