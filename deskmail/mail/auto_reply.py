from deskmail.conf import get_setting
from deskmail.mail.inbound_message import MessageHeaders

AUTO_REPLY_PRECEDENCE = {"bulk", "list", "auto_reply"}


def is_auto_reply(headers: MessageHeaders) -> bool:
    """
    Return True if the message was generated by a machine (vacation
    responders, mailing lists, our own outbound notifications) and must
    not open or update a ticket.
    """
    auto_submitted = headers.auto_submitted
    if auto_submitted is not None and auto_submitted != "no":
        return True

    if headers.has_auto_response_suppress:
        return True

    if headers.has(get_setting("OUTBOUND_MARKER_HEADER")):
        return True

    if headers.precedence in AUTO_REPLY_PRECEDENCE:
        return True

    if headers.x_autoreply == "yes":
        return True

    if headers.has_exchange_generated_source:
        return True

    return False
