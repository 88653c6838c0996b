"""
Notification events: schema, channel naming and the notifier collaborator.
"""

from .event_schema import Event, MAX_EVENT_SIZE
from .channels import channel_participant, channel_staff, channel_for_target
from .notifier import Notifier, RedisNotifier
from .redis_pool import get_redis_sync_client, close_redis_sync_client

__all__ = [
    "Event",
    "MAX_EVENT_SIZE",
    "channel_participant",
    "channel_staff",
    "channel_for_target",
    "Notifier",
    "RedisNotifier",
    "get_redis_sync_client",
    "close_redis_sync_client",
]
