from __future__ import annotations

import base64
import imaplib
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from deskmail.exceptions import IMAPSessionError
from deskmail.mail.session import SessionConfig

logger = logging.getLogger("deskmail")

THREAD_ID_PATTERN = re.compile(rb"X-GM-THRID\s+(\d+)")

# IMAP dates always use English month abbreviations, whatever the locale.
_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def imap_date(value: date) -> str:
    """Format a date as an IMAP search date, e.g. 05-Mar-2024."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year}"


@dataclass
class FetchedMessage:
    uid: bytes
    raw: bytes
    thread_id: Optional[str] = None


class IMAPSession:
    """
    A stateful IMAP session for one mailbox.

    Messages are fetched with BODY.PEEK[] so the server does not set
    \\Seen implicitly; callers mark a message seen once it was handled.
    Every command failure is raised as IMAPSessionError. A search with no
    hits returns an empty list.
    """

    def __init__(self, config: SessionConfig):
        self.config = config
        self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def connect(self):
        config = self.config
        try:
            if config.tls:
                conn = imaplib.IMAP4_SSL(config.host, config.port, timeout=config.timeout)
            else:
                conn = imaplib.IMAP4(config.host, config.port, timeout=config.timeout)

            if config.uses_oauth:
                auth_bytes = base64.b64decode(config.xoauth2)
                conn.authenticate("XOAUTH2", lambda _: auth_bytes)
            else:
                conn.login(config.username, config.password)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise IMAPSessionError(
                f"Failed to connect to IMAP server {config.host}:{config.port}: {exc}"
            ) from exc

        self.conn = conn
        logger.info(f"Connected to IMAP server {config.host}:{config.port}")
        return self

    def select(self, folder: Optional[str] = None):
        folder = folder or self.config.folder
        status, data = self._command("select", folder)
        if status != "OK":
            raise IMAPSessionError(f"Failed to select IMAP folder '{folder}': {data}")

    def search_unseen_since(self, since: date) -> list[bytes]:
        status, data = self._command("uid", "SEARCH", None, "UNSEEN", "SINCE", imap_date(since))
        if status != "OK":
            raise IMAPSessionError(f"IMAP search failed: {data}")
        if not data or not data[0]:
            return []
        return data[0].split()

    def fetch(self, uid: bytes) -> FetchedMessage:
        query = "(X-GM-THRID BODY.PEEK[])" if self.config.fetch_thread_id else "(BODY.PEEK[])"
        status, data = self._command("uid", "FETCH", uid, query)
        if status != "OK":
            raise IMAPSessionError(f"Failed to fetch IMAP message {uid!r}: {data}")

        for item in data or []:
            if isinstance(item, tuple) and len(item) >= 2:
                envelope, raw = item[0], item[1]
                thread_id = None
                match = THREAD_ID_PATTERN.search(envelope or b"")
                if match:
                    thread_id = match.group(1).decode("ascii")
                return FetchedMessage(uid=uid, raw=raw, thread_id=thread_id)

        raise IMAPSessionError(f"IMAP message {uid!r} returned no body")

    def mark_seen(self, uid: bytes):
        status, data = self._command("uid", "STORE", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise IMAPSessionError(f"Failed to mark IMAP message {uid!r} as seen: {data}")

    def close(self):
        if self.conn is None:
            return
        conn, self.conn = self.conn, None
        try:
            if conn.state == "SELECTED":
                conn.close()
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.debug(f"Error while closing IMAP connection: {exc}")

    def _command(self, name, *args):
        if self.conn is None:
            raise IMAPSessionError("IMAP session is not connected")
        try:
            return getattr(self.conn, name)(*args)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise IMAPSessionError(f"IMAP {name} failed: {exc}") from exc
