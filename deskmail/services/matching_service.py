import logging
import re
from typing import Callable, Optional

from deskmail.mail.inbound_message import MessageHeaders
from deskmail.models import Comment, Ticket

logger = logging.getLogger("deskmail")

# Leading "Re:", "Fwd:", "FW:", "Ref:" prefixes, possibly repeated.
REPLY_PREFIX_PATTERN = re.compile(r"^\s*(?:(?:re|fwd|fw|ref)\s*:\s*)+", re.IGNORECASE)

Strategy = Callable[[MessageHeaders, str, str], Optional[Ticket]]


def normalize_subject(subject: Optional[str]) -> str:
    """Strip reply/forward prefixes and surrounding whitespace."""
    if not subject:
        return ""
    return REPLY_PREFIX_PATTERN.sub("", subject).strip()


def match_by_thread_id(headers: MessageHeaders, sender: str, subject: str) -> Optional[Ticket]:
    """Provider thread id (Gmail X-GM-THRID). Authoritative when present."""
    thread_id = headers.thread_id
    if not thread_id:
        return None
    return Ticket.objects.by_thread(thread_id).order_by("-created_at").first()


def match_by_message_id_chain(headers: MessageHeaders, sender: str, subject: str) -> Optional[Ticket]:
    """
    References + In-Reply-To. A comment that stored one of the IDs wins over
    a ticket whose external ids contain one.
    """
    candidates = headers.reference_candidates
    if not candidates:
        return None

    comment = (
        Comment.objects.filter(message_id__in=candidates)
        .select_related("ticket")
        .order_by("-created_at")
        .first()
    )
    if comment is not None:
        return comment.ticket

    return Ticket.objects.by_external_ids(candidates).order_by("-created_at").first()


def match_by_sender_and_subject(headers: MessageHeaders, sender: str, subject: str) -> Optional[Ticket]:
    """
    Safety net for stripped or malformed headers. Never returns a done,
    complete or locked ticket.
    """
    normalized = normalize_subject(subject)
    if not normalized or not sender:
        return None
    return (
        Ticket.objects.matchable()
        .filter(email__iexact=sender, title__icontains=normalized)
        .order_by("-created_at")
        .first()
    )


class TicketMatchingEngine:
    """
    Decides which existing ticket, if any, an inbound email continues.

    Strategies are tried in order and the first hit wins.
    """

    STRATEGIES: list = [
        match_by_thread_id,
        match_by_message_id_chain,
        match_by_sender_and_subject,
    ]

    def __init__(self, strategies: Optional[list] = None):
        self.strategies = list(strategies) if strategies is not None else list(self.STRATEGIES)

    def find_matching_ticket(self, headers: MessageHeaders, sender: str, subject: str) -> Optional[Ticket]:
        for strategy in self.strategies:
            ticket = strategy(headers, sender, subject)
            if ticket is not None:
                logger.debug(
                    f"Matched ticket {ticket.reference} using "
                    f"{getattr(strategy, '__name__', strategy)!s}"
                )
                return ticket
        return None
