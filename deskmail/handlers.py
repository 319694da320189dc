import logging

from django.dispatch import receiver

from deskmail.signals import customer_reply_received, ticket_created_from_email

logger = logging.getLogger("deskmail")


@receiver(ticket_created_from_email)
def on_ticket_created_from_email(sender, ticket, message, linked_ticket=None, **kwargs):
    """Fire customer_ticket_created webhooks for a ticket opened by email."""
    from deskmail.models import Webhook
    from deskmail.services.webhook_service import WebhookDispatcher

    WebhookDispatcher.notify(Webhook.EventType.CUSTOMER_TICKET_CREATED, {
        "id": ticket.pk,
        "reference": ticket.reference,
        "title": ticket.title,
        "content": message.body_text or "",
        "html_content": message.body_html or "",
        "email": ticket.email,
        "name": ticket.name,
        "priority": ticket.priority,
        "linked_ticket_id": linked_ticket.pk if linked_ticket else None,
        "from_imap": True,
        "is_customer": True,
    })
    logger.info(f"Ticket {ticket.reference} created from email by {ticket.email}")


@receiver(customer_reply_received)
def on_customer_reply_received(sender, comment, ticket, message, **kwargs):
    """Fire customer_reply_received webhooks for an emailed reply."""
    from deskmail.models import Webhook
    from deskmail.services.webhook_service import WebhookDispatcher

    WebhookDispatcher.notify(Webhook.EventType.CUSTOMER_REPLY_RECEIVED, {
        "ticket_id": ticket.pk,
        "reference": ticket.reference,
        "ticket_title": ticket.title,
        "comment_id": comment.pk,
        "reply_content": comment.text,
        "customer_email": comment.reply_email,
        "customer_name": message.from_name or "",
        "from_imap": True,
        "is_customer": True,
    })
    logger.info(f"Reply from {comment.reply_email} added to ticket {ticket.reference}")
