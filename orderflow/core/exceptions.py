"""
Orderflow Exception Hierarchy

Structured exception classes for the order lifecycle and its collaborators.
All exceptions include code, message, and details for the tracking log and
for debugging.

Exception Hierarchy:
    OrderflowError
    ├── OrderNotFound
    ├── InvalidTransition
    │   └── PaymentMismatch
    ├── StaleOrderError
    ├── PaymentError
    │   ├── GatewayTransient
    │   └── GatewayTerminal
    ├── LedgerSyncFailure
    ├── NotifierFailure
    ├── PartnerUnavailable
    └── RetentionSkip
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class OrderflowError(Exception):
    """
    Base exception for all Orderflow custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "ORDERFLOW_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# ORDER STORE / LIFECYCLE ERRORS
# =============================================================================

class OrderNotFound(OrderflowError):
    """No order exists for the given order code."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"

    def __init__(self, order_code: str, **kwargs):
        details = kwargs.pop("details", {})
        details["order_code"] = order_code
        super().__init__(f"Order {order_code} not found", details=details, **kwargs)


class InvalidTransition(OrderflowError):
    """Event is not legal for the order's current (status, payment, refund) triple."""
    default_code = "INVALID_TRANSITION"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        order_code: Optional[str] = None,
        event: Optional[str] = None,
        state: Optional[Dict[str, str]] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_code": order_code,
            "event": event,
            "state": state,
        })
        super().__init__(message, details=details, **kwargs)


class PaymentMismatch(InvalidTransition):
    """Captured payment does not belong to the order (wrong intent or short amount)."""
    default_code = "PAYMENT_MISMATCH"
    default_severity = "P1"


class StaleOrderError(OrderflowError):
    """Order row changed underneath a read-modify-write (version mismatch)."""
    default_code = "STALE_ORDER"
    default_severity = "P3"


# =============================================================================
# PAYMENT ERRORS
# =============================================================================

class PaymentError(OrderflowError):
    """Base exception for payment gateway errors."""
    default_code = "PAYMENT_ERROR"
    default_severity = "P0"  # Anything touching money is critical


class GatewayTransient(PaymentError):
    """
    Retryable gateway failure (server/network errors).

    ``timing`` marks the bad-request class the gateway returns when a payment
    is too fresh to refund; it is retried with a longer delay.
    ``response_received`` is False only when the request never reached the
    gateway, so a retry may safely reuse the same idempotency key.
    """
    default_code = "GATEWAY_TRANSIENT"
    default_severity = "P1"

    def __init__(
        self,
        message: str,
        gateway_code: Optional[str] = None,
        timing: bool = False,
        response_received: bool = True,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({"gateway_code": gateway_code, "timing": timing})
        super().__init__(message, details=details, **kwargs)
        self.gateway_code = gateway_code
        self.timing = timing
        self.response_received = response_received


class GatewayTerminal(PaymentError):
    """Non-retryable gateway failure (already refunded, not captured, declined)."""
    default_code = "GATEWAY_TERMINAL"

    def __init__(self, message: str, gateway_code: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["gateway_code"] = gateway_code
        super().__init__(message, details=details, **kwargs)
        self.gateway_code = gateway_code


# =============================================================================
# MIRROR / SIDE-CHANNEL ERRORS (logged, never escalated)
# =============================================================================

class LedgerSyncFailure(OrderflowError):
    """Ledger mirror could not be updated; the Order Store is unaffected."""
    default_code = "LEDGER_SYNC_FAILED"
    default_severity = "P2"

    def __init__(self, message: str, order_code: Optional[str] = None, bucket: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"order_code": order_code, "bucket": bucket})
        super().__init__(message, details=details, **kwargs)


class NotifierFailure(OrderflowError):
    """Outbound message could not be delivered."""
    default_code = "NOTIFIER_FAILED"
    default_severity = "P3"

    def __init__(self, message: str, channel: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["channel"] = channel
        super().__init__(message, details=details, **kwargs)


class PartnerUnavailable(OrderflowError):
    """Delivery partner missing or inactive."""
    default_code = "PARTNER_UNAVAILABLE"
    default_severity = "P3"

    def __init__(self, partner_id, **kwargs):
        details = kwargs.pop("details", {})
        details["partner_id"] = partner_id
        super().__init__(f"Delivery partner {partner_id} is not available", details=details, **kwargs)


class RetentionSkip(OrderflowError):
    """Order is not yet eligible for a retention step. Not an error."""
    default_code = "RETENTION_SKIP"
    default_severity = "P3"


EXCEPTION_CATALOG = {
    "ORDER_NOT_FOUND": {"class": OrderNotFound, "severity": "P3", "http_status": 404},
    "INVALID_TRANSITION": {"class": InvalidTransition, "severity": "P3", "http_status": 409},
    "PAYMENT_MISMATCH": {"class": PaymentMismatch, "severity": "P1", "http_status": 400},
    "STALE_ORDER": {"class": StaleOrderError, "severity": "P3", "http_status": 409},
    "PAYMENT_ERROR": {"class": PaymentError, "severity": "P0", "http_status": 502},
    "GATEWAY_TRANSIENT": {"class": GatewayTransient, "severity": "P1", "http_status": 502},
    "GATEWAY_TERMINAL": {"class": GatewayTerminal, "severity": "P0", "http_status": 502},
    "LEDGER_SYNC_FAILED": {"class": LedgerSyncFailure, "severity": "P2", "http_status": 502},
    "NOTIFIER_FAILED": {"class": NotifierFailure, "severity": "P3", "http_status": 502},
    "PARTNER_UNAVAILABLE": {"class": PartnerUnavailable, "severity": "P3", "http_status": 409},
    "RETENTION_SKIP": {"class": RetentionSkip, "severity": "P3", "http_status": 409},
}


def http_status_for(exc: OrderflowError) -> int:
    """HTTP status for an error reaching the API layer; unknown codes are 500."""
    entry = EXCEPTION_CATALOG.get(exc.code)
    return entry["http_status"] if entry else 500
