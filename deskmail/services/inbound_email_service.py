import logging
import re
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from email_reply_parser import EmailReplyParser

from deskmail.mail.inbound_message import InboundMessage
from deskmail.models import Comment, Mailbox, RawEmail, Ticket
from deskmail.services.matching_service import TicketMatchingEngine
from deskmail.signals import customer_reply_received, ticket_created_from_email

logger = logging.getLogger("deskmail")

NO_SUBJECT = "(no subject)"
EMPTY_BODY = "(empty email body)"


def get_reply_text(text: Optional[str]) -> str:
    """
    Return the human-written part of an email reply. Fragments classified
    as hidden, signature or quoted are dropped; the rest keep their order.
    """
    if not text or not text.strip():
        return ""
    parsed = EmailReplyParser.read(text)
    kept = [
        fragment.content
        for fragment in parsed.fragments
        if not (fragment.hidden or fragment.signature or fragment.quoted)
    ]
    return "\n".join(part for part in kept if part).strip()


@dataclass
class InboundResult:
    action: str
    ticket: Optional[Ticket] = None
    comment: Optional[Comment] = None


class InboundEmailService:
    """
    Applies the matching decision for one inbound email.

    Processing flow:
    1. Drop auto-replies (loop prevention)
    2. Skip Message-IDs that were already ingested
    3. Find the conversation with the matching engine
    4. Create a ticket, fork a linked ticket from a closed one, or append
       a comment to an open one
    5. Send the corresponding signal once the transaction has committed
    """

    CREATED = "created"
    FORKED = "forked"
    REPLIED = "replied"
    AUTO_REPLY = "auto_reply"
    DUPLICATE = "duplicate"

    ALLOWED_TAGS = {
        'p', 'br', 'b', 'strong', 'i', 'em', 'u', 'a', 'ul', 'ol', 'li',
        'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'blockquote', 'pre', 'code',
        'table', 'thead', 'tbody', 'tr', 'th', 'td', 'img', 'hr', 'div', 'span',
        'sub', 'sup',
    }

    matching_engine = TicketMatchingEngine()

    @staticmethod
    def _sanitize_html(html: str | None) -> str | None:
        """Sanitize HTML to remove dangerous tags, event handlers, and protocols."""
        if not html or not html.strip():
            return html

        allowed = InboundEmailService.ALLOWED_TAGS

        def replace_tag(match):
            tag_name = match.group(1).strip().split()[0].lower().lstrip('/')
            if tag_name in allowed:
                return match.group(0)
            return ''

        clean = re.sub(r'<(/?\s*[a-zA-Z][a-zA-Z0-9]*(?:\s[^>]*)?)>', replace_tag, html)

        # Remove event handler attributes
        clean = re.sub(r'\s+on\w+\s*=\s*["\'][^"\']*["\']', '', clean, flags=re.IGNORECASE)
        clean = re.sub(r'\s+on\w+\s*=\s*\S+', '', clean, flags=re.IGNORECASE)

        # Remove javascript: protocol
        clean = re.sub(
            r'\b(href|src|action)\s*=\s*["\']?\s*javascript\s*:',
            r'\1="', clean, flags=re.IGNORECASE,
        )

        # Remove data: URLs except data:image
        clean = re.sub(
            r'\b(href|src|action)\s*=\s*["\']?\s*data\s*:(?!image/)',
            r'\1="', clean, flags=re.IGNORECASE,
        )

        # Remove style with expression()
        clean = re.sub(
            r'style\s*=\s*["\'][^"\']*expression\s*\([^"\']*["\']',
            '', clean, flags=re.IGNORECASE,
        )
        clean = re.sub(
            r'style\s*=\s*["\'][^"\']*url\s*\(\s*["\']?\s*javascript:[^"\']*["\']',
            '', clean, flags=re.IGNORECASE,
        )

        return clean

    @staticmethod
    def _get_ticket_body(message: InboundMessage) -> str:
        """Best available ticket body: sanitized HTML, then plain text."""
        if message.body_html and message.body_html.strip():
            return InboundEmailService._sanitize_html(message.body_html)
        if message.body_text and message.body_text.strip():
            return message.body_text
        return EMPTY_BODY

    @classmethod
    def process(cls, message: InboundMessage, mailbox: Mailbox | None = None) -> InboundResult:
        """
        Process a single inbound email.

        Exceptions from the database propagate so the caller can leave the
        message unseen and retry it next cycle.
        """
        if message.is_auto_reply:
            logger.info(
                f"Dropping auto-reply from {message.from_email}: {message.subject!r}"
            )
            return InboundResult(cls.AUTO_REPLY)

        if cls._is_duplicate(message):
            logger.info(
                f"Duplicate inbound email (message_id={message.message_id}), skipping"
            )
            return InboundResult(cls.DUPLICATE)

        with transaction.atomic():
            matched = cls.matching_engine.find_matching_ticket(
                message.headers, message.from_email, message.subject
            )

            if matched is None:
                ticket = cls._create_ticket(message, mailbox)
                result = InboundResult(cls.CREATED, ticket=ticket)
            elif matched.is_terminal:
                ticket = cls._create_ticket(message, mailbox, linked_ticket=matched)
                result = InboundResult(cls.FORKED, ticket=ticket)
                logger.info(
                    f"Ticket {matched.reference} is closed or locked; "
                    f"opened follow-up {ticket.reference}"
                )
            else:
                comment = cls._add_comment(matched, message)
                result = InboundResult(cls.REPLIED, ticket=matched, comment=comment)

        # The mutation is committed; receiver errors are logged, never raised.
        if result.comment is not None:
            responses = customer_reply_received.send_robust(
                sender=Comment,
                comment=result.comment,
                ticket=result.ticket,
                message=message,
            )
        else:
            responses = ticket_created_from_email.send_robust(
                sender=Ticket,
                ticket=result.ticket,
                message=message,
                linked_ticket=result.ticket.linked_ticket,
            )

        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    f"Signal receiver {getattr(receiver, '__name__', receiver)!s} failed "
                    f"for ticket {result.ticket.reference}: {response}",
                    exc_info=response,
                )

        return result

    @staticmethod
    def _is_duplicate(message: InboundMessage) -> bool:
        if not message.message_id:
            return False
        return (
            Comment.objects.filter(message_id=message.message_id).exists()
            or RawEmail.objects.filter(message_id=message.message_id).exists()
        )

    @staticmethod
    def _create_ticket(message: InboundMessage, mailbox=None, linked_ticket=None) -> Ticket:
        """Open a new ticket from an email and keep a raw copy of it."""
        subject = message.subject or NO_SUBJECT

        ticket = Ticket.objects.create(
            email=message.from_email,
            name=message.from_name or "",
            title=subject,
            detail=InboundEmailService._get_ticket_body(message),
            status=Ticket.Status.NEEDS_SUPPORT,
            priority=Ticket.Priority.LOW,
            is_complete=False,
            from_imap=True,
            thread_id=message.thread_id,
            linked_ticket=linked_ticket,
            mailbox=mailbox,
        )
        ticket.add_external_id(message.message_id)

        RawEmail.objects.create(
            mailbox=mailbox,
            ticket=ticket,
            from_email=message.from_email,
            subject=subject,
            body=message.body_text or "",
            html=message.body_html or "",
            message_id=message.message_id,
            raw=message.raw or "",
        )
        return ticket

    @staticmethod
    def _add_comment(ticket: Ticket, message: InboundMessage) -> Comment:
        """Append the sender's reply to an open ticket."""
        if message.body_text:
            text = get_reply_text(message.body_text)
        else:
            text = InboundEmailService._sanitize_html(message.body_html) or ""

        comment = Comment.objects.create(
            ticket=ticket,
            text=text or EMPTY_BODY,
            reply=True,
            reply_email=message.from_email,
            public=True,
            message_id=message.message_id,
            in_reply_to=message.in_reply_to,
        )
        ticket.add_external_id(message.message_id)
        ticket.save(update_fields=["updated_at"])
        return comment
