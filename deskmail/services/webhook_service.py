import hashlib
import hmac
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import requests

from deskmail.conf import get_setting
from deskmail.models import Webhook

logger = logging.getLogger("deskmail")


class WebhookDispatcher:
    """
    Delivers event notifications to registered webhooks.

    Deliveries run on a shared thread pool; notify() returns as soon as
    they are queued, and a failing endpoint never affects the others or
    the caller.
    """

    _executor = None
    _executor_lock = threading.Lock()

    @classmethod
    def notify(cls, event_type, payload) -> list:
        """
        Queue delivery of `payload` to every active webhook registered for
        `event_type`. Returns the delivery futures.
        """
        webhooks = list(Webhook.objects.filter(type=event_type, active=True))
        if not webhooks:
            return []

        body = {"event": event_type, "data": payload}
        executor = cls._get_executor()
        futures = []
        for webhook in webhooks:
            logger.info(f"Triggering {event_type} webhook {webhook.pk} ({webhook.url})")
            futures.append(
                executor.submit(cls.deliver, webhook.url, webhook.secret, event_type, body)
            )
        return futures

    @staticmethod
    def deliver(url, secret, event_type, body) -> bool:
        """POST one event with optional HMAC-SHA256 signing. Never raises."""
        body_bytes = json.dumps(body, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": get_setting("WEBHOOK_USER_AGENT"),
            "X-Deskmail-Event": event_type,
        }
        if secret:
            headers["X-Deskmail-Signature"] = hmac.new(
                secret.encode("utf-8"),
                body_bytes,
                hashlib.sha256,
            ).hexdigest()

        try:
            response = requests.post(
                url,
                data=body_bytes,
                timeout=get_setting("WEBHOOK_TIMEOUT"),
                headers=headers,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to deliver {event_type} webhook to {url}: {e}")
            return False
        return True

    @classmethod
    def shutdown(cls, wait=True):
        """Wait for queued deliveries and release the pool."""
        with cls._executor_lock:
            executor, cls._executor = cls._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    @classmethod
    def _get_executor(cls):
        with cls._executor_lock:
            if cls._executor is None:
                cls._executor = ThreadPoolExecutor(
                    max_workers=get_setting("WEBHOOK_MAX_WORKERS"),
                    thread_name_prefix="deskmail-webhook",
                )
            return cls._executor
