from __future__ import annotations

import email
from email import policy

from deskmail.mail.auto_reply import is_auto_reply
from deskmail.mail.inbound_message import (
    THREAD_ID_HEADER,
    InboundMessage,
    MessageHeaders,
)


def parse_raw_email(raw_email: bytes | str, thread_id: str | None = None) -> InboundMessage:
    """
    Parse a raw RFC822 email into an InboundMessage.

    Args:
        raw_email: The raw email content.
        thread_id: Provider thread identifier fetched alongside the message
            (Gmail's X-GM-THRID). Exposed through the headers accessor.

    Raises:
        ValueError: If the message has no usable sender address.
    """
    if isinstance(raw_email, bytes):
        raw_email = raw_email.decode("utf-8", errors="replace")

    msg = email.message_from_string(raw_email, policy=policy.default)

    from_name, from_email_addr = _parse_address(str(msg.get("From", "")))
    if not from_email_addr or "@" not in from_email_addr:
        raise ValueError(f"Email has no valid sender address: {msg.get('From')!r}")

    _, to_email = _parse_address(str(msg.get("To", "")))

    text_body, html_body = _extract_bodies(msg)

    # The thread id is only trusted from the FETCH response, never from the message.
    header_values = {}
    for key in msg.keys():
        if key.lower() == THREAD_ID_HEADER.lower():
            continue
        header_values.setdefault(key, str(msg[key]))
    if thread_id:
        header_values[THREAD_ID_HEADER] = str(thread_id)
    headers = MessageHeaders(header_values)

    return InboundMessage(
        from_email=from_email_addr.lower(),
        from_name=from_name or None,
        to_email=to_email,
        subject=str(msg.get("Subject", "")).strip(),
        body_text=text_body,
        body_html=html_body,
        message_id=headers.message_id,
        in_reply_to=headers.in_reply_to,
        references=headers.references,
        thread_id=headers.thread_id,
        headers=headers,
        is_auto_reply=is_auto_reply(headers),
        raw=raw_email,
    )


def _extract_bodies(msg):
    text_body = None
    html_body = None

    if msg.is_multipart():
        for part in msg.walk():
            if part.is_multipart():
                continue
            content_disposition = str(part.get("Content-Disposition", ""))
            if "attachment" in content_disposition:
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain" and text_body is None:
                text_body = part.get_content()
            elif content_type == "text/html" and html_body is None:
                html_body = part.get_content()
    else:
        content_type = msg.get_content_type()
        body_content = msg.get_content()
        if content_type == "text/html":
            html_body = body_content
        else:
            text_body = body_content

    return text_body, html_body


def _parse_address(header_value: str) -> tuple:
    """Parse an email address header into (name, email)."""
    if "<" in header_value and ">" in header_value:
        parts = header_value.rsplit("<", 1)
        name = parts[0].strip().strip('"')
        addr = parts[1].split(">", 1)[0].strip()
        return name, addr
    return "", header_value.strip()
