"""
Redis Channel Naming.
"""

from __future__ import annotations

from shared.config.constants import STAFF_CHANNEL


def _validate_positive_id(id_value: int, name: str) -> None:
    if not isinstance(id_value, int) or id_value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {id_value}")


def channel_participant(participant_id: int) -> str:
    """Channel for direct notifications to one diner."""
    _validate_positive_id(participant_id, "participant_id")
    return f"participant:{participant_id}"


def channel_staff(session_id: int) -> str:
    """Channel for waiter/kitchen notifications about a table session."""
    _validate_positive_id(session_id, "session_id")
    return f"{STAFF_CHANNEL}:session:{session_id}"


def channel_for_target(target: int | str, session_id: int) -> str:
    """Resolve a notification target (participant id or staff) to a channel."""
    if target == STAFF_CHANNEL:
        return channel_staff(session_id)
    if isinstance(target, int):
        return channel_participant(target)
    raise ValueError(f"Unknown notification target: {target!r}")
