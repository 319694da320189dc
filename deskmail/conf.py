import os

from django.conf import settings


DEFAULTS = {
    "TABLE_PREFIX": "deskmail_",
    "TICKET_REFERENCE_PREFIX": "DSK",
    # Polling
    "POLL_INTERVAL": int(os.environ.get("DESKMAIL_POLL_INTERVAL", 30)),
    "IMAP_MAILBOX": "INBOX",
    "IMAP_TIMEOUT": 30,
    "MAILBOX_TIMEOUT": 120,
    # OAuth (Gmail). Per-mailbox client credentials are only used when these
    # are not configured.
    "OAUTH_CLIENT_ID": None,  # Falls back to $GMAIL_CLIENT_ID
    "OAUTH_CLIENT_SECRET": None,  # Falls back to $GMAIL_CLIENT_SECRET
    "OAUTH_AUTH_URL": "https://accounts.google.com/o/oauth2/v2/auth",
    "OAUTH_TOKEN_URL": "https://oauth2.googleapis.com/token",
    "OAUTH_USERINFO_URL": "https://www.googleapis.com/oauth2/v3/userinfo",
    "OAUTH_SCOPES": [
        "https://mail.google.com/",
        "https://www.googleapis.com/auth/userinfo.email",
    ],
    "OAUTH_TIMEOUT": 20,
    "OAUTH_DEFAULT_EXPIRY_SECONDS": 3500,
    "TOKEN_EXPIRY_MARGIN_SECONDS": 300,
    # Loop prevention
    "OUTBOUND_MARKER_HEADER": "X-Deskmail-Generated",
    # Webhooks
    "WEBHOOK_TIMEOUT": 10,
    "WEBHOOK_MAX_WORKERS": 8,
    "WEBHOOK_USER_AGENT": "deskmail/0.1.0",
}


def get_setting(name):
    """
    Retrieve a setting from the DESKMAIL dict in Django settings,
    falling back to DEFAULTS if not provided.
    """
    user_settings = getattr(settings, "DESKMAIL", {})
    value = user_settings.get(name, DEFAULTS.get(name))

    # OAuth client credentials default to the environment
    if name == "OAUTH_CLIENT_ID" and not value:
        value = os.environ.get("GMAIL_CLIENT_ID") or None
    if name == "OAUTH_CLIENT_SECRET" and not value:
        value = os.environ.get("GMAIL_CLIENT_SECRET") or None

    return value


def get_table_name(suffix):
    """Return a fully-prefixed table name."""
    prefix = get_setting("TABLE_PREFIX")
    return f"{prefix}{suffix}"
