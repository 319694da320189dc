class DeskmailError(Exception):
    """Base class for errors raised by the ingestion pipeline."""


class MailboxConfigurationError(DeskmailError):
    """A mailbox is missing credentials or has an unsupported provider."""


class CredentialError(DeskmailError):
    """An OAuth access token could not be obtained."""


class ReauthenticationRequired(CredentialError):
    """
    The provider rejected the refresh grant (revoked access, stale or
    expired refresh token). Retrying will not help; an operator has to
    authorize the mailbox again.
    """


class TokenRefreshError(CredentialError):
    """A refresh attempt failed for a reason worth retrying next cycle."""


class IMAPSessionError(DeskmailError):
    """An IMAP command failed or the connection dropped."""


class MailboxTimeout(DeskmailError):
    """Processing a single mailbox exceeded its overall deadline."""
