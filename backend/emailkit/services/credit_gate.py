"""
Pre-flight credit check for billable requests.
Rejects a request early when the owner's balance cannot cover its estimated
cost; allows it whenever the balance is unknown.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from emailkit.exceptions import InsufficientCredits
from emailkit.services.credit_calculator import CreditCalculator, credit_calculator
from emailkit.services.payment_gateway import PaymentGateway, get_payment_gateway
from emailkit.utils.logging import log_credit_check_denied
from emailkit.utils.metrics import credit_checks_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a credit check."""
    allowed: bool
    required: Decimal
    available: Optional[Decimal] = None
    shortfall: Decimal = Decimal("0")
    payment_link: Optional[str] = None

    def to_exception(self) -> InsufficientCredits:
        return InsufficientCredits(
            required=self.required,
            available=self.available,
            shortfall=self.shortfall,
            payment_link=self.payment_link,
        )


class CreditGate:
    """Admission control in front of billable operations."""

    def __init__(self, gateway: Optional[PaymentGateway] = None, calculator: Optional[CreditCalculator] = None):
        self._gateway = gateway
        self.calculator = calculator or credit_calculator

    @property
    def gateway(self) -> PaymentGateway:
        # Resolved per call so the gateway selected at startup is picked up
        return self._gateway or get_payment_gateway()

    async def check(self, owner_id: str, estimated_credits: Decimal, preview: bool = False) -> GateDecision:
        """
        Decide whether an operation costing `estimated_credits` may proceed.

        Previews are never charged and always pass. With the gateway disabled
        or unable to read the balance the check fails open.
        """
        required = Decimal(estimated_credits)

        if preview:
            credit_checks_total.labels(result="preview").inc()
            return GateDecision(allowed=True, required=Decimal("0"))

        gateway = self.gateway
        if not gateway.is_enabled():
            credit_checks_total.labels(result="disabled").inc()
            return GateDecision(allowed=True, required=required)

        # has_sufficient_credits fails open on gateway errors
        result = await gateway.has_sufficient_credits(owner_id, required)

        if result.sufficient:
            credit_checks_total.labels(result="allowed" if result.available is not None else "unknown").inc()
            return GateDecision(allowed=True, required=required, available=result.available)

        credit_checks_total.labels(result="denied").inc()
        log_credit_check_denied(
            logger,
            owner_id=owner_id,
            required=float(required),
            available=float(result.available) if result.available is not None else None,
            shortfall=float(result.shortfall),
        )
        return GateDecision(
            allowed=False,
            required=required,
            available=result.available,
            shortfall=result.shortfall,
            payment_link=gateway.payment_link(owner_id),
        )

    async def enforce(self, owner_id: str, estimated_credits: Decimal, preview: bool = False) -> GateDecision:
        """
        Same as check, but raises on denial.

        Raises:
            InsufficientCredits: If the owner cannot afford the operation
        """
        decision = await self.check(owner_id, estimated_credits, preview=preview)
        if not decision.allowed:
            raise decision.to_exception()
        return decision

    async def check_send(self, owner_id: str, recipient_count: int, preview: bool = False) -> GateDecision:
        """Check using the calculator's conservative per-recipient estimate."""
        estimate = self.calculator.estimate_send(recipient_count)
        return await self.check(owner_id, estimate, preview=preview)


credit_gate = CreditGate()
