DEBUG = True

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "deskmail",
]

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

DESKMAIL = {
    "TABLE_PREFIX": "deskmail_",
    "TICKET_REFERENCE_PREFIX": "DSK",
    "POLL_INTERVAL": 30,
    "IMAP_TIMEOUT": 5,
    "MAILBOX_TIMEOUT": 60,
    "OAUTH_CLIENT_ID": "test-client-id",
    "OAUTH_CLIENT_SECRET": "test-client-secret",
    "WEBHOOK_TIMEOUT": 2,
    "WEBHOOK_MAX_WORKERS": 4,
}

SECRET_KEY = "test-secret-key-not-for-production"
