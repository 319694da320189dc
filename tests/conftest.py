from unittest.mock import patch

import pytest

from deskmail.mail.parser import parse_raw_email
from deskmail.services.webhook_service import WebhookDispatcher
from tests.factories import (
    GmailMailboxFactory,
    MailboxFactory,
    TicketFactory,
    WebhookFactory,
    make_raw_email,
)


@pytest.fixture
def mailbox(db):
    return MailboxFactory()


@pytest.fixture
def gmail_mailbox(db):
    return GmailMailboxFactory()


@pytest.fixture
def ticket(db):
    return TicketFactory(email="alice@example.com", title="Printer is broken")


@pytest.fixture
def webhook(db):
    return WebhookFactory()


@pytest.fixture
def inbound():
    """Build a parsed InboundMessage from make_raw_email() keyword arguments."""

    def build(thread_id=None, **kwargs):
        return parse_raw_email(make_raw_email(**kwargs), thread_id=thread_id)

    return build


@pytest.fixture
def mock_notify():
    """Capture webhook notifications instead of delivering them."""
    with patch.object(WebhookDispatcher, "notify", return_value=[]) as notify:
        yield notify


@pytest.fixture(autouse=True)
def _drain_webhook_pool():
    yield
    WebhookDispatcher.shutdown(wait=True)
