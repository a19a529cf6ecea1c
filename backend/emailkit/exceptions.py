"""Exceptions raised by the metering and credit-billing path."""
from decimal import Decimal
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for usage metering and billing."""
    pass


class StorageError(BillingError):
    """Raised when the usage ledger cannot be read or written."""

    def __init__(self, message: str = "Usage ledger unavailable", operation: str = None):
        self.operation = operation
        super().__init__(f"{message} ({operation})" if operation else message)


class GatewayUnavailable(BillingError):
    """Raised when the payment provider is unreachable, times out or is not configured."""

    def __init__(self, message: str = "Payment provider unavailable", timeout: float = None):
        self.timeout = timeout
        super().__init__(f"{message} after {timeout}s" if timeout else message)


class ReportRejected(BillingError):
    """
    Raised when the payment provider explicitly refuses a usage report.

    Retried like GatewayUnavailable, but a report that keeps being rejected
    points at a configuration problem (unknown customer, missing meter).
    """

    def __init__(self, message: str, code: str = None):
        self.code = code
        super().__init__(message)


class InsufficientCredits(BillingError):
    """Raised by the credit gate when the owner cannot afford an operation."""

    def __init__(
        self,
        required: Decimal,
        available: Optional[Decimal],
        shortfall: Decimal,
        payment_link: Optional[str] = None,
    ):
        self.required = required
        self.available = available
        self.shortfall = shortfall
        self.payment_link = payment_link
        available_text = f"{available:.4f}" if available is not None else "unknown"
        super().__init__(
            f"This operation requires {required:.4f} credits, "
            f"but you only have {available_text} available."
        )

    def to_dict(self) -> Dict[str, Any]:
        """Response payload for a denied credit check."""
        return {
            "error": "Insufficient credits",
            "message": str(self),
            "required": float(self.required),
            "available": float(self.available) if self.available is not None else None,
            "shortfall": float(self.shortfall),
            "payment_link": self.payment_link,
        }
