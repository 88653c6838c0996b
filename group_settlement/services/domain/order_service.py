"""
Cart/Order Manager.

Each participant owns their orders. A "pending" order is the mutable cart;
confirming hands it to the kitchen, after which only status transitions
(and ownership transfer while still "confirmed") are allowed.

Cart edits are single-row writes guarded by the order's version column; a
concurrent edit of the same cart raises ConcurrentModificationError and the
caller retries. Ownership transfer and cancellation touch session-level
invariants and run under the per-session guard.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from shared.config.constants import (
    BILLABLE_ORDER_STATUSES,
    ORDER_TRANSITIONS,
    TRANSFERABLE_ORDER_STATUSES,
    EventType,
    Limits,
    OrderStatus,
    SplitStatus,
    STAFF_CHANNEL,
)
from shared.config.logging import orders_logger as logger
from shared.infrastructure.db import safe_commit
from shared.utils.exceptions import (
    ConcurrentModificationError,
    EmptyCartError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    OrderItemNotFoundError,
    OrderNotFoundError,
    ParticipantNotFoundError,
    QuantityError,
    SessionNotActiveError,
    StateError,
    ValidationError,
)
from group_settlement.models import Order, OrderItem, Participant, SplitSession, TableSession, utcnow
from group_settlement.services.base_service import DomainService
from group_settlement.services.pricing import MenuPricing


def split_tax_inclusive(total_cents: int, tax_rate_bps: int) -> tuple[int, int]:
    """
    Split a tax-inclusive total into (subtotal, tax).

    subtotal = round_half_up(total * 10000 / (10000 + rate)), tax = total - subtotal,
    so subtotal + tax == total exactly.
    """
    denominator = Limits.BPS_DENOMINATOR + tax_rate_bps
    subtotal = (2 * total_cents * Limits.BPS_DENOMINATOR + denominator) // (2 * denominator)
    return subtotal, total_cents - subtotal


def _validate_quantity(quantity: int, allow_zero: bool) -> None:
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise QuantityError(quantity, "must be positive")
    if quantity > Limits.MAX_ITEM_QUANTITY:
        raise QuantityError(quantity, f"maximum is {Limits.MAX_ITEM_QUANTITY}")


def _validate_notes(notes: str | None, limit: int = Limits.MAX_NOTES_LENGTH) -> str | None:
    if notes is None:
        return None
    notes = notes.strip()
    if len(notes) > limit:
        raise ValidationError(f"Notes exceed {limit} characters", length=len(notes))
    return notes or None


class OrderService(DomainService):
    """
    Domain service for carts and orders.
    """

    def __init__(self, *args, pricing: MenuPricing, **kwargs):
        super().__init__(*args, **kwargs)
        self._pricing = pricing

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: int) -> Order:
        order = self._db.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, session_id: int) -> list[Order]:
        return list(self._db.scalars(
            select(Order).where(Order.session_id == session_id).order_by(Order.id)
        ))

    # =========================================================================
    # Cart
    # =========================================================================

    def open_cart(self, session_id: int, participant_id: int) -> Order:
        """Return the participant's cart, creating it if needed."""
        with self._session_guard(session_id):
            participant = self._db.get(Participant, participant_id)
            if participant is None or participant.session_id != session_id or not participant.is_active:
                raise ParticipantNotFoundError(participant_id, session_id=session_id)

            cart = self._db.scalar(
                select(Order)
                .where(
                    Order.owner_participant_id == participant_id,
                    Order.status == OrderStatus.PENDING,
                )
                .order_by(Order.id)
            )
            if cart is not None:
                return cart

            cart = Order(
                session_id=session_id,
                owner_participant_id=participant_id,
                status=OrderStatus.PENDING,
                subtotal_cents=0,
                tax_amount_cents=0,
                total_amount_cents=0,
            )
            self._db.add(cart)
            safe_commit(self._db)

        logger.info("Cart opened", session_id=session_id, participant_id=participant_id, order_id=cart.id)
        return cart

    def add_item(
        self,
        order_id: int,
        menu_item_id: int,
        quantity: int,
        customizations: Iterable[str] = (),
        notes: str | None = None,
    ) -> OrderItem:
        """Add a line to a cart. Price is locked in from the menu now."""
        _validate_quantity(quantity, allow_zero=False)
        notes = _validate_notes(notes)
        chosen = sorted(set(customizations))

        with self._cart_write(order_id) as order:
            quote = self._pricing.quote(menu_item_id, chosen)
            quote.validate(menu_item_id)

            item = OrderItem(
                menu_item_id=menu_item_id,
                quantity=quantity,
                unit_price_cents=quote.unit_price_cents,
                customizations=chosen,
                surcharge_cents=quote.surcharge_cents,
                notes=notes,
            )
            item.recompute_total()
            order.items.append(item)
            self._recompute_totals(order)

        logger.info(
            "Item added to cart",
            order_id=order_id,
            order_item_id=item.id,
            menu_item_id=menu_item_id,
            quantity=quantity,
            total_price_cents=item.total_price_cents,
        )
        return item

    def update_quantity(self, order_item_id: int, quantity: int) -> Order:
        """Change a line's quantity; 0 removes the line."""
        _validate_quantity(quantity, allow_zero=True)

        item = self._db.get(OrderItem, order_item_id)
        if item is None:
            raise OrderItemNotFoundError(order_item_id)

        with self._cart_write(item.order_id) as order:
            item = next((i for i in order.items if i.id == order_item_id), None)
            if item is None:
                raise OrderItemNotFoundError(order_item_id)
            if quantity == 0:
                order.items.remove(item)
            else:
                item.quantity = quantity
                item.recompute_total()
            self._recompute_totals(order)

        logger.info("Cart quantity updated", order_id=order.id, order_item_id=order_item_id, quantity=quantity)
        return order

    def confirm(self, order_id: int, notes: str | None = None) -> Order:
        """
        Confirm a cart: pending -> confirmed. The order becomes visible to
        the kitchen and is immutable from now on.
        """
        notes = _validate_notes(notes)
        with self._cart_write(order_id) as order:
            if not order.items:
                raise EmptyCartError(order_id)
            owner = self._db.get(Participant, order.owner_participant_id)
            if owner is None or not owner.is_active:
                raise ParticipantNotFoundError(order.owner_participant_id, order_id=order_id)
            order.status = OrderStatus.CONFIRMED
            order.confirmed_at = utcnow()
            if notes is not None:
                order.notes = notes

        logger.info(
            "Order confirmed",
            order_id=order_id,
            session_id=order.session_id,
            total_amount_cents=order.total_amount_cents,
        )
        self._emit(
            STAFF_CHANNEL, EventType.ORDER_CONFIRMED, order.session_id,
            order_id=order.id,
            participant_id=order.owner_participant_id,
            item_count=len(order.items),
            total_amount_cents=order.total_amount_cents,
        )
        self._dispatch()
        return order

    @contextmanager
    def _cart_write(self, order_id: int) -> Iterator[Order]:
        """
        Single-row write on a pending order of an active session.

        The order's version column turns a concurrent write into
        ConcurrentModificationError.
        """
        self._db.expire_all()
        order = self.get_order(order_id)
        if order.status != OrderStatus.PENDING:
            raise InvalidStateError(f"Order {order_id}", order.status, [OrderStatus.PENDING])
        table_session = self._db.get(TableSession, order.session_id)
        if table_session is None or not table_session.is_active:
            raise SessionNotActiveError(order.session_id)

        try:
            yield order
            self._db.flush()
            safe_commit(self._db)
        except StaleDataError:
            self._db.rollback()
            raise ConcurrentModificationError("Order", order_id) from None
        except Exception:
            self._db.rollback()
            raise

    def _recompute_totals(self, order: Order) -> None:
        total = sum(i.total_price_cents for i in order.items)
        order.subtotal_cents, order.tax_amount_cents = split_tax_inclusive(total, self._settings.tax_rate_bps)
        order.total_amount_cents = total
        # Bumps the version even when the total is unchanged
        order.updated_at = utcnow()

    # =========================================================================
    # Ownership
    # =========================================================================

    def transfer_ownership(
        self,
        order_id: int,
        from_participant_id: int,
        to_participant_id: int,
        actor_participant_id: int | None = None,
    ) -> Order:
        """
        Reassign an order to another participant of the same session.

        ``actor_participant_id`` is who asks: the current owner, or the
        session creator acting on their behalf. None means staff.
        Items, totals and status are never touched.
        """
        session_id = self.get_order(order_id).session_id

        with self._session_guard(session_id) as table_session:
            order = self._db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            if actor_participant_id is not None and actor_participant_id not in (
                from_participant_id,
                table_session.creator_participant_id,
            ):
                raise ForbiddenError(
                    "transfer another participant's order",
                    order_id=order_id,
                    actor_participant_id=actor_participant_id,
                )

            if order.owner_participant_id != from_participant_id:
                raise StateError(
                    f"Order {order_id} is not owned by participant {from_participant_id}",
                    order_id=order_id,
                    owner_participant_id=order.owner_participant_id,
                )
            if order.status not in TRANSFERABLE_ORDER_STATUSES:
                raise InvalidStateError(
                    f"Order {order_id}", order.status, sorted(TRANSFERABLE_ORDER_STATUSES)
                )
            if from_participant_id == to_participant_id:
                raise ValidationError("Cannot transfer an order to its owner", order_id=order_id)

            for pid in (from_participant_id, to_participant_id):
                p = self._db.get(Participant, pid)
                if p is None or p.session_id != session_id or not p.is_active:
                    raise ParticipantNotFoundError(pid, session_id=session_id)

            order.owner_participant_id = to_participant_id
            for pid in (from_participant_id, to_participant_id):
                self._emit(
                    pid, EventType.ORDER_TRANSFERRED, session_id,
                    order_id=order_id,
                    from_participant_id=from_participant_id,
                    to_participant_id=to_participant_id,
                )
            self._flush_versioned(order)

        logger.info(
            "Order ownership transferred",
            order_id=order_id,
            from_participant_id=from_participant_id,
            to_participant_id=to_participant_id,
            by_staff=actor_participant_id is None,
        )
        self._dispatch()
        return order

    # =========================================================================
    # Kitchen transitions
    # =========================================================================

    def advance(self, order_id: int, to_status: str) -> Order:
        """
        Kitchen-driven transition: confirmed -> preparing -> ready -> delivered.
        Use ``cancel`` for cancellations and ``confirm`` for carts.
        """
        self._db.expire_all()
        order = self.get_order(order_id)
        if (
            to_status in (OrderStatus.CANCELLED, OrderStatus.CONFIRMED)
            or to_status not in ORDER_TRANSITIONS.get(order.status, frozenset())
        ):
            raise InvalidTransitionError(f"Order {order_id}", order.status, to_status)

        from_status = order.status
        order.status = to_status
        if to_status == OrderStatus.DELIVERED:
            order.delivered_at = utcnow()
        self._flush_versioned(order)

        logger.info("Order status changed", order_id=order_id, from_status=from_status, to_status=to_status)
        self._emit(
            order.owner_participant_id, EventType.ORDER_STATUS_CHANGED, order.session_id,
            order_id=order_id, from_status=from_status, to_status=to_status,
        )
        self._emit(
            STAFF_CHANNEL, EventType.ORDER_STATUS_CHANGED, order.session_id,
            order_id=order_id, from_status=from_status, to_status=to_status,
        )
        self._dispatch()
        return order

    def cancel(self, order_id: int, reason: str | None = None) -> Order:
        """
        Cancel a non-terminal order.

        After confirmation a reason is required and staff are notified.
        Orders covered by a live split session cannot be cancelled.
        """
        reason = _validate_notes(reason, Limits.MAX_CANCEL_REASON_LENGTH)
        session_id = self.get_order(order_id).session_id

        with self._session_guard(session_id, require_active=False):
            order = self._db.get(Order, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if OrderStatus.CANCELLED not in ORDER_TRANSITIONS.get(order.status, frozenset()):
                raise InvalidTransitionError(f"Order {order_id}", order.status, OrderStatus.CANCELLED)

            was_confirmed = order.status != OrderStatus.PENDING
            if was_confirmed and not reason:
                raise ValidationError(
                    "A reason is required to cancel a confirmed order", order_id=order_id
                )
            if order.status in BILLABLE_ORDER_STATUSES:
                covering = self._live_split_covering(session_id, order_id)
                if covering is not None:
                    raise StateError(
                        f"Order {order_id} is being settled by split session {covering}",
                        order_id=order_id,
                        split_session_id=covering,
                    )

            order.status = OrderStatus.CANCELLED
            order.cancelled_at = utcnow()
            order.cancel_reason = reason

            self._emit(
                order.owner_participant_id, EventType.ORDER_CANCELLED, session_id,
                order_id=order_id, reason=reason,
            )
            if was_confirmed:
                self._emit(
                    STAFF_CHANNEL, EventType.ORDER_CANCELLED, session_id,
                    order_id=order_id, reason=reason,
                    total_amount_cents=order.total_amount_cents,
                )
            self._flush_versioned(order)

        logger.info("Order cancelled", order_id=order_id, after_confirmation=was_confirmed)
        self._dispatch()
        return order

    def _live_split_covering(self, session_id: int, order_id: int) -> int | None:
        live = self._db.scalars(
            select(SplitSession).where(
                SplitSession.table_session_id == session_id,
                SplitSession.status.in_(SplitStatus.LIVE),
            )
        )
        for split in live:
            if order_id in split.order_ids:
                return split.id
        return None

    def _flush_versioned(self, order: Order) -> None:
        try:
            self._db.flush()
            safe_commit(self._db)
        except StaleDataError:
            self._db.rollback()
            raise ConcurrentModificationError("Order", order.id) from None
