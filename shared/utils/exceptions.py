"""
Centralized exceptions for consistent error handling.

Every domain error maps to an HTTP status code so an API layer can surface
it unchanged. Exceptions log themselves on construction with their context.

Usage:
    from shared.utils.exceptions import NotFoundError, NameTakenError

    raise OrderNotFoundError(order_id)
    raise NameTakenError("Brave Wolf", session_id=session_id)
"""

from typing import Any

from fastapi import HTTPException, status

from shared.config.logging import get_logger

logger = get_logger(__name__)


class AppException(HTTPException):
    """
    Base exception with automatic logging.

    All custom exceptions should inherit from this class
    to ensure consistent logging and response format.
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        log_level: str = "warning",
        headers: dict[str, str] | None = None,
        **log_context: Any,
    ):
        log_fn = getattr(logger, log_level, logger.warning)
        log_fn(detail, status_code=status_code, **log_context)

        self.context = log_context
        super().__init__(status_code=status_code, detail=detail, headers=headers)

    def __str__(self) -> str:
        return str(self.detail)


# =============================================================================
# 404 Not Found Errors
# =============================================================================


class NotFoundError(AppException):
    """
    Entity not found error (404).

    Usage:
        raise NotFoundError("Order", 123)
    """

    def __init__(self, entity: str, entity_id: int | str | None = None, **log_context: Any):
        if entity_id is not None:
            detail = f"{entity} {entity_id} not found"
        else:
            detail = f"{entity} not found"

        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            log_level="warning",
            entity=entity,
            entity_id=entity_id,
            **log_context,
        )


class SessionNotFoundError(NotFoundError):
    """Table session not found."""

    def __init__(self, session_id: int | None = None, **log_context: Any):
        super().__init__("Table session", session_id, **log_context)


class ParticipantNotFoundError(NotFoundError):
    """Participant not found."""

    def __init__(self, participant_id: int | None = None, **log_context: Any):
        super().__init__("Participant", participant_id, **log_context)


class OrderNotFoundError(NotFoundError):
    """Order not found."""

    def __init__(self, order_id: int | None = None, **log_context: Any):
        super().__init__("Order", order_id, **log_context)


class OrderItemNotFoundError(NotFoundError):
    """Order item not found."""

    def __init__(self, order_item_id: int | None = None, **log_context: Any):
        super().__init__("Order item", order_item_id, **log_context)


class SplitSessionNotFoundError(NotFoundError):
    """Split session not found."""

    def __init__(self, split_session_id: int | None = None, **log_context: Any):
        super().__init__("Split session", split_session_id, **log_context)


class ContributionNotFoundError(NotFoundError):
    """No contribution for this participant in the split session."""

    def __init__(self, split_session_id: int, participant_id: int, **log_context: Any):
        super().__init__(
            "Contribution",
            f"for participant {participant_id} in split session {split_session_id}",
            split_session_id=split_session_id,
            participant_id=participant_id,
            **log_context,
        )


# =============================================================================
# 403 Forbidden Errors
# =============================================================================


class ForbiddenError(AppException):
    """
    Authorization error (403).

    Usage:
        raise ForbiddenError("transfer another participant's order")
    """

    def __init__(self, action: str | None = None, **log_context: Any):
        if action:
            detail = f"Not allowed to {action}"
        else:
            detail = "Access denied"

        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            log_level="warning",
            action=action,
            **log_context,
        )


# =============================================================================
# 400 Bad Request Errors
# =============================================================================


class ValidationError(AppException):
    """
    Input validation error (400).

    Usage:
        raise ValidationError("Quantity must be positive", field="quantity", value=-1)
    """

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            log_level="warning",
            **log_context,
        )


class EmptyCartError(ValidationError):
    """Confirming an order without items."""

    def __init__(self, order_id: int, **log_context: Any):
        super().__init__(f"Order {order_id} has no items", order_id=order_id, **log_context)


class QuantityError(ValidationError):
    """Quantity out of bounds."""

    def __init__(self, quantity: int, reason: str, **log_context: Any):
        super().__init__(f"Invalid quantity ({quantity}): {reason}", quantity=quantity, **log_context)


class InvalidNameError(ValidationError):
    """Fantasy name has an invalid format."""

    def __init__(self, name: str, **log_context: Any):
        super().__init__(
            f"Invalid fantasy name '{name}': use 1-50 letters, digits or spaces",
            name=name,
            **log_context,
        )


class SplitMismatchError(ValidationError):
    """Split amounts do not reconcile with the amount to settle."""

    def __init__(self, expected_cents: int, actual_cents: int, what: str = "split amounts", **log_context: Any):
        super().__init__(
            f"The {what} sum to {actual_cents}, expected exactly {expected_cents}",
            expected_cents=expected_cents,
            actual_cents=actual_cents,
            **log_context,
        )


# =============================================================================
# 409 State Errors
# =============================================================================


class StateError(AppException):
    """
    Entity is in a state that does not allow the operation (409).

    Usage:
        raise StateError("Order 4 is not a cart", order_id=4, status="confirmed")
    """

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            log_level="warning",
            **log_context,
        )


class InvalidStateError(StateError):
    """Entity is in an invalid state for the operation."""

    def __init__(self, entity: str, current_state: str, expected_states: list[str] | None = None, **log_context: Any):
        if expected_states:
            states_str = ", ".join(expected_states)
            detail = f"{entity} is '{current_state}', expected one of: {states_str}"
        else:
            detail = f"{entity} cannot be '{current_state}' for this operation"

        super().__init__(detail, entity=entity, current_state=current_state, **log_context)


class InvalidTransitionError(StateError):
    """Invalid status transition."""

    def __init__(self, entity: str, from_status: str, to_status: str, **log_context: Any):
        detail = f"Invalid transition from '{from_status}' to '{to_status}' for {entity}"
        super().__init__(detail, entity=entity, from_status=from_status, to_status=to_status, **log_context)


class SessionNotActiveError(StateError):
    """Table session has ended."""

    def __init__(self, session_id: int, **log_context: Any):
        super().__init__(f"Table session {session_id} is not active", session_id=session_id, **log_context)


class SessionNotSettleableError(StateError):
    """Session still has open orders or unsettled splits."""

    def __init__(self, session_id: int, reasons: list[str], **log_context: Any):
        self.reasons = reasons
        super().__init__(
            f"Table session {session_id} cannot end: {'; '.join(reasons)}",
            session_id=session_id,
            reasons=reasons,
            **log_context,
        )


# =============================================================================
# 409 Conflict Errors
# =============================================================================


class ConflictError(AppException):
    """
    Resource conflict error (409).

    Usage:
        raise ConflictError("Table 3 already has an active session")
    """

    def __init__(self, detail: str, log_level: str = "warning", **log_context: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            log_level=log_level,
            **log_context,
        )


class ActiveSessionExistsError(ConflictError):
    """The table already has an active session."""

    def __init__(self, table_id: int, session_id: int | None = None, **log_context: Any):
        self.session_id = session_id
        super().__init__(
            f"Table {table_id} already has an active session",
            table_id=table_id,
            session_id=session_id,
            **log_context,
        )


class NameTakenError(ConflictError):
    """Fantasy name already used by an active participant."""

    def __init__(self, name: str, **log_context: Any):
        super().__init__(f"Fantasy name '{name}' is already taken", name=name, **log_context)


class ConcurrentModificationError(ConflictError):
    """Optimistic version check failed; the caller should reload and retry."""

    def __init__(self, entity: str, entity_id: int, **log_context: Any):
        super().__init__(
            f"{entity} {entity_id} was modified concurrently, please retry",
            entity=entity,
            entity_id=entity_id,
            **log_context,
        )


class LockTimeoutError(ConflictError):
    """Could not acquire the per-session lock in time."""

    def __init__(self, key: str, timeout_seconds: float, **log_context: Any):
        super().__init__(
            f"Timed out after {timeout_seconds:.1f}s waiting for {key}",
            key=key,
            timeout_seconds=timeout_seconds,
            **log_context,
        )


class AlreadySettledError(ConflictError):
    """
    Contribution is already paid.

    Payment callbacks are delivered at least once, so this is an expected
    condition: the settlement service turns it into an idempotent success.
    """

    def __init__(self, contribution_id: int, **log_context: Any):
        self.contribution_id = contribution_id
        super().__init__(
            f"Contribution {contribution_id} is already paid",
            log_level="info",
            contribution_id=contribution_id,
            **log_context,
        )


# =============================================================================
# 503 External Service Errors
# =============================================================================


class PaymentProviderUnavailableError(AppException):
    """Payment provider circuit is open."""

    def __init__(self, provider: str, retry_after: float, **log_context: Any):
        retry_seconds = max(1, int(retry_after))
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Payment provider {provider} temporarily unavailable",
            log_level="error",
            headers={"Retry-After": str(retry_seconds)},
            provider=provider,
            retry_after=retry_seconds,
            **log_context,
        )
