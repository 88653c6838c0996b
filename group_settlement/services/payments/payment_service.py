"""
Payment orchestration.

    start_payment (session lock) -> gateway.charge (no lock) -> record_payment (session lock)

The charge itself runs outside the per-session lock so a slow provider never
blocks other diners of the table.
"""

from __future__ import annotations

from shared.config.constants import PaymentOutcome
from shared.config.logging import get_logger
from shared.utils.exceptions import AlreadySettledError, PaymentProviderUnavailableError
from group_settlement.services.domain.settlement_service import PaymentResult, SettlementService
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerError
from .gateway import ChargeResult, PaymentGateway

logger = get_logger(__name__)


class PaymentService:
    """
    Charges one participant's contribution and records the outcome.
    """

    def __init__(
        self,
        settlement: SettlementService,
        gateway: PaymentGateway,
        breaker: CircuitBreaker | None = None,
    ):
        self._settlement = settlement
        self._gateway = gateway
        self._breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig.from_settings(gateway.name, settlement.settings)
        )

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def pay(self, split_session_id: int, participant_id: int, method: str) -> PaymentResult:
        """
        Charge the participant's amount due.

        A failed or raising charge is recorded as a failed outcome and the
        diner may retry. An already-paid contribution returns unchanged.

        Raises:
            PaymentProviderUnavailableError: The circuit is open; the
                contribution is marked failed so it can be retried later.
        """
        try:
            contribution = self._settlement.start_payment(split_session_id, participant_id, method)
        except AlreadySettledError:
            contribution = self._settlement.get_contribution(split_session_id, participant_id)
            split = self._settlement.get_split_session(split_session_id)
            return PaymentResult(contribution, split.status, changed=False)

        amount_cents = contribution.amount_due_cents
        try:
            # A decline is a result, not a provider failure
            with self._breaker.call():
                result = self._gateway.charge(participant_id, amount_cents, method)
        except CircuitBreakerError as e:
            self._settlement.record_payment(
                split_session_id, participant_id, PaymentOutcome.FAILED, method=method
            )
            raise PaymentProviderUnavailableError(
                self._gateway.name, e.retry_after,
                split_session_id=split_session_id, participant_id=participant_id,
            ) from e
        except Exception as e:
            logger.error(
                "Payment gateway error",
                provider=self._gateway.name,
                split_session_id=split_session_id,
                participant_id=participant_id,
                error=str(e),
            )
            result = ChargeResult(succeeded=False, error=str(e))

        outcome = PaymentOutcome.SUCCEEDED if result.succeeded else PaymentOutcome.FAILED
        return self._settlement.record_payment(
            split_session_id, participant_id, outcome, payment_ref=result.payment_ref, method=method
        )

