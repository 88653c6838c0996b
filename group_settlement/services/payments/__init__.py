"""
Payment Services - charging diners and recording outcomes.

Provides:
- PaymentService: start -> charge -> record orchestration
- PaymentGateway protocol for the provider
- Circuit breaker for provider resilience
"""

from .gateway import ChargeResult, PaymentGateway
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    CircuitBreakerStats,
    CircuitState,
)
from .payment_service import PaymentService

__all__ = [
    "ChargeResult",
    "PaymentGateway",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerStats",
    "CircuitState",
    "PaymentService",
]
