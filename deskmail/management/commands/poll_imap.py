import logging
import signal
import threading

from django.core.management.base import BaseCommand

from deskmail.conf import get_setting

logger = logging.getLogger("deskmail")


class Command(BaseCommand):
    help = (
        "Poll the configured IMAP mailboxes for new inbound emails and turn "
        "them into tickets or replies."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--continuous",
            action="store_true",
            default=False,
            help="Run continuously, polling at a regular interval.",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help=(
                "Polling interval in seconds when running continuously "
                "(default: DESKMAIL['POLL_INTERVAL'])."
            ),
        )

    def handle(self, *args, **options):
        from deskmail.services.poll_service import get_scheduler
        from deskmail.services.webhook_service import WebhookDispatcher

        scheduler = get_scheduler()

        try:
            if options["continuous"]:
                interval = options["interval"] or get_setting("POLL_INTERVAL")
                stop_event = threading.Event()
                self._install_stop_handlers(stop_event)
                self.stdout.write(
                    f"Starting continuous IMAP polling (interval: {interval}s)..."
                )
                scheduler.run_forever(interval=interval, stop_event=stop_event)
                self.stdout.write("Stopped IMAP polling.")
            else:
                self._poll_once(scheduler)
        finally:
            WebhookDispatcher.shutdown(wait=True)

    def _install_stop_handlers(self, stop_event):
        """Let SIGINT/SIGTERM finish the running cycle, then exit."""

        def request_stop(signum, frame):
            if not stop_event.is_set():
                self.stdout.write("\nStopping after the current cycle...")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, request_stop)

    def _poll_once(self, scheduler):
        """Execute a single IMAP poll cycle."""
        self.stdout.write("Polling mailboxes...")
        report = scheduler.poll()

        if report is None:
            self.stdout.write("A poll cycle is already running; skipped.")
            return

        if not report.mailboxes:
            self.stdout.write("No active mailboxes configured.")
            return

        for mailbox_report in report.mailboxes:
            if mailbox_report.error:
                self.stderr.write(
                    self.style.ERROR(
                        f"  Mailbox {mailbox_report.mailbox_id}: {mailbox_report.error}"
                    )
                )
                continue
            self.stdout.write(
                f"  Mailbox {mailbox_report.mailbox_id}: "
                f"{mailbox_report.created} new, {mailbox_report.replied} replies, "
                f"{mailbox_report.forked} follow-ups, "
                f"{mailbox_report.auto_replies} auto-replies dropped, "
                f"{mailbox_report.failed} failed"
            )

        self.stdout.write(
            self.style.SUCCESS(
                f"IMAP poll complete: {report.processed} processed, {report.failed} failed."
            )
        )
