"""
Notification collaborator.

Delivery is fire-and-forget and best-effort: ``notify`` hands the event to a
worker thread and returns immediately. Failures are logged, never raised, so a
slow or unavailable transport cannot block or fail settlement logic.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

import redis

from shared.config.logging import get_logger
from shared.config.settings import settings
from .channels import channel_for_target
from .event_schema import MAX_EVENT_SIZE, Event
from .redis_pool import get_redis_sync_client

logger = get_logger(__name__)

PUBLISH_MAX_RETRIES = 3
PUBLISH_RETRY_DELAY = 0.1  # seconds, doubled per attempt


class Notifier(Protocol):
    """Anything that can deliver an event to a participant or the staff channel."""

    def notify(self, target: int | str, event: Event) -> None:
        """Deliver ``event`` to ``target`` without blocking the caller."""
        ...


class RedisNotifier:
    """
    Publishes events to Redis channels from a background thread pool.

    Usage:
        notifier = RedisNotifier()
        notifier.notify(participant_id, Event(type=..., session_id=...))
        ...
        notifier.shutdown()
    """

    def __init__(
        self,
        client_factory: Callable[[], redis.Redis] = get_redis_sync_client,
        max_workers: int | None = None,
    ):
        self._client_factory = client_factory
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.notification_workers,
            thread_name_prefix="notifier",
        )

    def notify(self, target: int | str, event: Event) -> None:
        channel = channel_for_target(target, event.session_id)
        self._executor.submit(self._publish, channel, event)

    def _publish(self, channel: str, event: Event) -> None:
        payload = event.to_json()
        if len(payload.encode("utf-8")) > MAX_EVENT_SIZE:
            logger.warning("Event dropped: too large", channel=channel, event_type=event.type)
            return

        for attempt in range(PUBLISH_MAX_RETRIES):
            try:
                self._client_factory().publish(channel, payload)
                return
            except redis.RedisError as e:
                if attempt < PUBLISH_MAX_RETRIES - 1:
                    time.sleep(PUBLISH_RETRY_DELAY * (2 ** attempt))
                    continue
                logger.warning(
                    "Notification delivery failed",
                    channel=channel,
                    event_type=event.type,
                    attempts=PUBLISH_MAX_RETRIES,
                    error=str(e),
                )

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events and optionally drain the queue."""
        self._executor.shutdown(wait=wait)
