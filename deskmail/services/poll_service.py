import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from django.conf import settings
from django.utils import timezone

from deskmail.conf import get_setting
from deskmail.exceptions import (
    IMAPSessionError,
    MailboxConfigurationError,
    MailboxTimeout,
    ReauthenticationRequired,
    TokenRefreshError,
)
from deskmail.mail.imap import IMAPSession
from deskmail.mail.parser import parse_raw_email
from deskmail.mail.session import MailboxSessionFactory
from deskmail.models import Mailbox
from deskmail.services.inbound_email_service import InboundEmailService

logger = logging.getLogger("deskmail")


def _current_date():
    if settings.USE_TZ:
        return timezone.localdate()
    return date.today()


@dataclass
class MailboxReport:
    mailbox_id: int
    created: int = 0
    forked: int = 0
    replied: int = 0
    auto_replies: int = 0
    duplicates: int = 0
    failed: int = 0
    error: Optional[str] = None

    def record(self, action):
        counter = {
            InboundEmailService.CREATED: "created",
            InboundEmailService.FORKED: "forked",
            InboundEmailService.REPLIED: "replied",
            InboundEmailService.AUTO_REPLY: "auto_replies",
            InboundEmailService.DUPLICATE: "duplicates",
        }[action]
        setattr(self, counter, getattr(self, counter) + 1)

    @property
    def processed(self):
        return self.created + self.forked + self.replied


@dataclass
class PollReport:
    mailboxes: list = field(default_factory=list)

    @property
    def processed(self):
        return sum(m.processed for m in self.mailboxes)

    @property
    def failed(self):
        return sum(m.failed for m in self.mailboxes)

    @property
    def errors(self):
        return {m.mailbox_id: m.error for m in self.mailboxes if m.error}


class PollScheduler:
    """
    Drives one fetch cycle over every active mailbox.

    Only one cycle runs at a time: a call to poll() made while another
    cycle is in flight returns None without touching the network.
    Mailboxes are handled one after another, and an error in one of them
    is logged and does not stop the others.
    """

    def __init__(
        self,
        session_factory=MailboxSessionFactory,
        session_class=IMAPSession,
        service=InboundEmailService,
        clock=time.monotonic,
        today=None,
    ):
        self.session_factory = session_factory
        self.session_class = session_class
        self.service = service
        self.clock = clock
        self.today = today or _current_date
        self._cycle_lock = threading.Lock()

    @property
    def is_polling(self):
        return self._cycle_lock.locked()

    def poll(self) -> Optional[PollReport]:
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Email fetch skipped - previous fetch still in progress")
            return None
        try:
            report = PollReport()
            for mailbox in Mailbox.objects.active():
                report.mailboxes.append(self.poll_mailbox(mailbox))
            logger.info(
                f"Email fetch completed: {report.processed} processed, "
                f"{report.failed} failed, {len(report.errors)} mailbox error(s)"
            )
            return report
        finally:
            self._cycle_lock.release()

    def run_forever(self, interval=None, stop_event=None):
        """
        Call poll() every `interval` seconds until `stop_event` is set. A
        stop request never interrupts a running cycle.
        """
        interval = interval or get_setting("POLL_INTERVAL")
        stop_event = stop_event or threading.Event()

        while not stop_event.is_set():
            started = self.clock()
            try:
                self.poll()
            except Exception:
                logger.exception("Error during email fetch")
            elapsed = self.clock() - started
            stop_event.wait(max(0.0, interval - elapsed))

    def poll_mailbox(self, mailbox: Mailbox) -> MailboxReport:
        report = MailboxReport(mailbox_id=mailbox.pk)
        try:
            self._process_mailbox(mailbox, report)
        except ReauthenticationRequired as exc:
            report.error = str(exc)
            logger.error(f"Mailbox {mailbox.pk} requires re-authentication: {exc}")
        except MailboxConfigurationError as exc:
            report.error = str(exc)
            logger.error(f"Mailbox {mailbox.pk} is misconfigured: {exc}")
        except (TokenRefreshError, IMAPSessionError, MailboxTimeout) as exc:
            report.error = str(exc)
            logger.warning(
                f"Mailbox {mailbox.pk} skipped this cycle, will retry: {exc}"
            )
        except Exception as exc:
            report.error = str(exc)
            logger.exception(f"Error processing mailbox {mailbox.pk}")
        return report

    def _process_mailbox(self, mailbox, report):
        deadline = self.clock() + get_setting("MAILBOX_TIMEOUT")
        config = self.session_factory.build_session(mailbox)

        with self.session_class(config) as session:
            session.select()
            uids = session.search_unseen_since(self.today())
            if not uids:
                logger.info(f"Mailbox {mailbox.pk}: no new messages")
                return

            logger.info(f"Mailbox {mailbox.pk}: found {len(uids)} unread message(s)")
            for uid in uids:
                if self.clock() > deadline:
                    raise MailboxTimeout(
                        f"Mailbox {mailbox.pk} exceeded {get_setting('MAILBOX_TIMEOUT')}s; "
                        f"remaining messages are left for the next cycle"
                    )
                self._process_uid(session, mailbox, uid, report)

    def _process_uid(self, session, mailbox, uid, report):
        fetched = session.fetch(uid)

        try:
            message = parse_raw_email(fetched.raw, thread_id=fetched.thread_id)
            result = self.service.process(message, mailbox=mailbox)
        except Exception as exc:
            report.failed += 1
            logger.error(
                f"Mailbox {mailbox.pk}: failed to process message {uid!r}, "
                f"leaving it unseen: {exc}"
            )
            return

        report.record(result.action)

        try:
            session.mark_seen(uid)
        except IMAPSessionError as exc:
            logger.warning(
                f"Mailbox {mailbox.pk}: could not mark message {uid!r} as seen: {exc}"
            )


_default_scheduler = None
_default_scheduler_lock = threading.Lock()


def get_scheduler() -> PollScheduler:
    """The process-wide scheduler shared by the poll command and manual triggers."""
    global _default_scheduler
    with _default_scheduler_lock:
        if _default_scheduler is None:
            _default_scheduler = PollScheduler()
        return _default_scheduler
