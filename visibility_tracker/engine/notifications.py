"""
Run completion signal.

When a run ends (completed or failed) the engine hands a RunCompletion to a
Notifier. Delivery (email, chat, webhook) is up to the implementation;
failures are logged by the caller and never change the run status.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import httpx

from visibility_tracker.config.schema import NotificationSettings
from visibility_tracker.utils.logging import log_with_context

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10.0


@dataclass
class RunCompletion:
    run_id: int
    config_id: int
    owner_id: str
    domain_name: str
    prompt_count: int
    status: str


class Notifier(Protocol):
    async def notify(self, event: RunCompletion) -> None: ...


class LoggingNotifier:
    """Writes the completion event to the log."""

    async def notify(self, event: RunCompletion) -> None:
        log_with_context(
            logger,
            logging.INFO,
            f"Tracking run {event.status} for {event.domain_name}",
            context=asdict(event),
            run_id=event.run_id,
        )


class WebhookNotifier:
    """
    POSTs the completion event as JSON.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx responses
    """

    def __init__(self, url: str, timeout: float = WEBHOOK_TIMEOUT):
        if not url or url.isspace():
            raise ValueError("Webhook url cannot be empty")
        self.url = url
        self.timeout = timeout

    async def notify(self, event: RunCompletion) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json={"event": "run_completed", **asdict(event)})
            response.raise_for_status()
        logger.debug(f"Delivered completion of run {event.run_id} to webhook")


def build_notifier(settings: NotificationSettings | None) -> Notifier:
    if settings is not None and settings.webhook_url:
        return WebhookNotifier(settings.webhook_url)
    return LoggingNotifier()


async def safe_notify(notifier: Notifier, event: RunCompletion) -> None:
    """Deliver an event, logging instead of raising on failure."""
    try:
        await notifier.notify(event)
    except Exception as e:
        logger.error(f"Failed to deliver completion of run {event.run_id}: {e}")
