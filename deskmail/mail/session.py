from dataclasses import dataclass
from typing import Optional

from deskmail.conf import get_setting
from deskmail.exceptions import MailboxConfigurationError
from deskmail.models import Mailbox
from deskmail.services.credential_service import CredentialService


@dataclass
class SessionConfig:
    """Everything needed to open an authenticated IMAP session."""

    host: str
    port: int
    tls: bool
    username: str
    password: Optional[str] = None
    xoauth2: Optional[str] = None
    timeout: int = 30
    folder: str = "INBOX"
    fetch_thread_id: bool = False

    @property
    def uses_oauth(self) -> bool:
        return self.xoauth2 is not None


class MailboxSessionFactory:
    """Builds a ready-to-connect SessionConfig for a mailbox."""

    @staticmethod
    def build_session(mailbox: Mailbox) -> SessionConfig:
        """
        Raises:
            MailboxConfigurationError: Missing password, missing OAuth
                credentials or unknown service type.
            CredentialError: The OAuth access token could not be refreshed.
        """
        if not mailbox.hostname or not mailbox.username:
            raise MailboxConfigurationError(
                f"Mailbox {mailbox.pk} is missing a hostname or username"
            )

        base = {
            "host": mailbox.hostname,
            "port": mailbox.effective_port,
            "tls": mailbox.tls,
            "username": mailbox.username,
            "timeout": get_setting("IMAP_TIMEOUT"),
            "folder": get_setting("IMAP_MAILBOX") or "INBOX",
        }

        if mailbox.service_type == Mailbox.ServiceType.GMAIL:
            access_token = CredentialService.get_valid_access_token(mailbox)
            return SessionConfig(
                **{**base, "port": mailbox.port or 993, "tls": True},
                xoauth2=CredentialService.generate_xoauth2_token(
                    mailbox.username, access_token
                ),
                fetch_thread_id=True,
            )

        if mailbox.service_type == Mailbox.ServiceType.OTHER:
            if not mailbox.password:
                raise MailboxConfigurationError(
                    f"Mailbox {mailbox.pk} is missing a password"
                )
            return SessionConfig(**base, password=mailbox.password)

        raise MailboxConfigurationError(
            f"Mailbox {mailbox.pk} has unsupported service type '{mailbox.service_type}'"
        )
