from django.core.management.base import BaseCommand, CommandError

from deskmail.exceptions import CredentialError, MailboxConfigurationError
from deskmail.models import Mailbox


class Command(BaseCommand):
    help = (
        "Connect a Gmail mailbox over OAuth. Without --code, print the consent "
        "URL; with --code, exchange the authorization code for tokens."
    )

    def add_arguments(self, parser):
        parser.add_argument("mailbox_id", type=int)
        parser.add_argument(
            "--redirect-uri",
            required=True,
            help="Redirect URI registered with the OAuth client.",
        )
        parser.add_argument(
            "--code",
            default=None,
            help="Authorization code returned to the redirect URI.",
        )

    def handle(self, *args, **options):
        from deskmail.services.credential_service import CredentialService

        try:
            mailbox = Mailbox.objects.get(pk=options["mailbox_id"])
        except Mailbox.DoesNotExist:
            raise CommandError(f"Mailbox {options['mailbox_id']} does not exist")

        try:
            if options["code"]:
                mailbox = CredentialService.exchange_authorization_code(
                    mailbox, options["code"], options["redirect_uri"]
                )
                self.stdout.write(
                    self.style.SUCCESS(f"Mailbox {mailbox.pk} authorized as {mailbox.username}.")
                )
            else:
                url = CredentialService.build_authorization_url(
                    mailbox, options["redirect_uri"]
                )
                self.stdout.write(url)
        except (MailboxConfigurationError, CredentialError) as exc:
            raise CommandError(str(exc))
