"""
Payment gateway for credit-based billing.

The payment provider is optional infrastructure: a gateway is selected once
at startup. When billing is switched off, not configured or unreachable the
DisabledPaymentGateway is used and every check fails open, so sending email
never depends on the billing vendor being available.
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import stripe

from emailkit.config import Settings, settings
from emailkit.exceptions import BillingError, GatewayUnavailable, ReportRejected
from emailkit.utils.logging import log_payment_gateway_status

logger = logging.getLogger(__name__)

# Stripe credit balances are monetary amounts in minor units; one credit = one major unit
MINOR_UNITS_PER_CREDIT = Decimal("100")


@dataclass(frozen=True)
class CreditBalance:
    """Credit balance held by the payment provider."""
    available: Decimal
    pending: Decimal
    total: Decimal


@dataclass(frozen=True)
class CreditCheck:
    """Result of comparing a balance against a required amount."""
    sufficient: bool
    required: Decimal
    available: Optional[Decimal]  # None when the balance is unknown
    shortfall: Decimal


class PaymentGateway(ABC):
    """
    Capability interface for the external credit ledger.

    Implementations must be safe to call from request handlers: balance
    reads and usage reports either return or raise a BillingError subclass,
    they never block longer than their configured timeout.
    """

    def __init__(self, payment_page_url: str = "/payment"):
        self.payment_page_url = payment_page_url

    @abstractmethod
    def is_enabled(self) -> bool:
        """True only if the provider integration initialized successfully."""
        pass

    @abstractmethod
    async def get_balance(self, owner_id: str) -> Optional[CreditBalance]:
        """
        Read the owner's credit balance.

        Returns:
            CreditBalance, or None when the gateway is disabled

        Raises:
            GatewayUnavailable: If the provider cannot be reached
        """
        pass

    @abstractmethod
    async def report_usage(
        self,
        owner_id: str,
        credits: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        """
        Emit a metering event that deducts credits from the owner.

        A retried call with the same idempotency_key must not deduct twice.

        Returns:
            True when the provider acknowledged the report

        Raises:
            ReportRejected: If the provider refused the report
            GatewayUnavailable: If the provider cannot be reached or timed out
        """
        pass

    @abstractmethod
    async def create_credit_purchase_session(
        self,
        owner_id: str,
        credit_amount: int,
        success_url: str,
        cancel_url: str,
    ) -> Optional[Dict[str, str]]:
        """Create a hosted checkout for buying credits. None if unavailable."""
        pass

    @abstractmethod
    def status(self) -> Dict[str, Any]:
        """Gateway status for diagnostics: enabled flag and live/test/disabled mode."""
        pass

    async def has_sufficient_credits(self, owner_id: str, required: Decimal) -> CreditCheck:
        """
        Check whether the owner can afford `required` credits.

        Fails open: when the gateway is disabled or the balance cannot be
        read, the check reports sufficient with an unknown balance.
        """
        required = Decimal(required)
        try:
            balance = await self.get_balance(owner_id)
        except BillingError as e:
            logger.warning(f"Credit balance unavailable for {owner_id}, allowing: {e}")
            balance = None

        if balance is None:
            return CreditCheck(sufficient=True, required=required, available=None, shortfall=Decimal("0"))

        sufficient = balance.available >= required
        return CreditCheck(
            sufficient=sufficient,
            required=required,
            available=balance.available,
            shortfall=Decimal("0") if sufficient else required - balance.available,
        )

    def payment_link(self, owner_id: str) -> str:
        """URL where the owner can top up credits."""
        return f"{self.payment_page_url}?owner={quote(owner_id, safe='')}"


class DisabledPaymentGateway(PaymentGateway):
    """Null gateway used when credit billing is off or the provider is unavailable."""

    def is_enabled(self) -> bool:
        return False

    async def get_balance(self, owner_id: str) -> Optional[CreditBalance]:
        return None

    async def report_usage(
        self,
        owner_id: str,
        credits: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        # Nothing to charge
        return True

    async def create_credit_purchase_session(
        self,
        owner_id: str,
        credit_amount: int,
        success_url: str,
        cancel_url: str,
    ) -> Optional[Dict[str, str]]:
        return None

    def status(self) -> Dict[str, Any]:
        return {"enabled": False, "mode": "disabled"}


class StripePaymentGateway(PaymentGateway):
    """
    Stripe-backed gateway.

    Usage is reported as Billing Meter Events (the meter sums `value` per
    customer), balances come from the customer's credit balance summary.
    The Stripe SDK is synchronous, so calls run in a worker thread with a
    bounded timeout.
    """

    def __init__(
        self,
        api_key: str,
        meter_event_name: str,
        live_mode: bool = False,
        timeout: float = 10.0,
        credit_price_id: Optional[str] = None,
        identifier_prefix: str = "ek",
        meter_name: str = "Email Kit usage",
        payment_page_url: str = "/payment",
    ):
        super().__init__(payment_page_url=payment_page_url)
        self.api_key = api_key
        self.meter_event_name = meter_event_name
        self.meter_name = meter_name
        self.live_mode = live_mode
        self.timeout = timeout
        self.credit_price_id = credit_price_id
        self.identifier_prefix = identifier_prefix
        self._customers: Dict[str, str] = {}
        self._customer_lock = asyncio.Lock()

    def is_enabled(self) -> bool:
        return True

    def status(self) -> Dict[str, Any]:
        return {"enabled": True, "mode": "live" if self.live_mode else "test"}

    async def _call(self, fn: Callable, **params):
        """Run a Stripe SDK call off the event loop with a timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, api_key=self.api_key, **params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise GatewayUnavailable("Stripe request timed out", timeout=self.timeout) from e

    async def ensure_meter(self) -> None:
        """Make sure the usage meter exists, creating it on first start."""
        meters = await self._call(stripe.billing.Meter.list, status="active", limit=100)
        for meter in meters.data:
            if meter.event_name == self.meter_event_name:
                logger.info(f"Usage meter already exists: {self.meter_event_name}")
                return

        await self._call(
            stripe.billing.Meter.create,
            display_name=self.meter_name,
            event_name=self.meter_event_name,
            default_aggregation={"formula": "sum"},
            customer_mapping={"type": "by_id", "event_payload_key": "stripe_customer_id"},
            value_settings={"event_payload_key": "value"},
        )
        logger.info(f"Created usage meter: {self.meter_event_name}")

    async def get_or_create_customer(self, owner_id: str) -> str:
        """
        Resolve the Stripe customer for an owner, creating it if needed.

        Raises:
            GatewayUnavailable: If Stripe cannot be reached
            ReportRejected: If Stripe refuses the lookup or creation
        """
        cached = self._customers.get(owner_id)
        if cached:
            return cached

        async with self._customer_lock:
            cached = self._customers.get(owner_id)
            if cached:
                return cached

            escaped = owner_id.replace("\\", "\\\\").replace("'", "\\'")
            try:
                found = await self._call(
                    stripe.Customer.search,
                    query=f"metadata['owner_id']:'{escaped}'",
                    limit=1,
                )
                if found.data:
                    customer_id = found.data[0].id
                else:
                    # Search results lag behind writes; the idempotency key keeps a retry from duplicating
                    customer = await self._call(
                        stripe.Customer.create,
                        name=owner_id,
                        metadata={"owner_id": owner_id},
                        idempotency_key=f"{self.identifier_prefix}_customer_{owner_id}",
                    )
                    customer_id = customer.id
                    logger.info(f"Created Stripe customer {customer_id} for owner {owner_id}")
            except (stripe.InvalidRequestError, stripe.PermissionError, stripe.AuthenticationError) as e:
                raise ReportRejected(f"Stripe refused customer lookup: {e}", code=getattr(e, "code", None)) from e
            except stripe.StripeError as e:
                raise GatewayUnavailable(f"Stripe customer lookup failed: {e}") from e

            self._customers[owner_id] = customer_id
            return customer_id

    async def get_balance(self, owner_id: str) -> Optional[CreditBalance]:
        try:
            customer_id = await self.get_or_create_customer(owner_id)
            summary = await self._call(
                stripe.billing.CreditBalanceSummary.retrieve,
                customer=customer_id,
                filter={"type": "applicability_scope", "applicability_scope": {"price_type": "metered"}},
            )
        except ReportRejected as e:
            raise GatewayUnavailable(str(e)) from e
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe balance lookup failed: {e}") from e

        available = Decimal("0")
        total = Decimal("0")
        for balance in getattr(summary, "balances", None) or []:
            available += _monetary_value(getattr(balance, "available_balance", None))
            total += _monetary_value(getattr(balance, "ledger_balance", None))

        available = available / MINOR_UNITS_PER_CREDIT
        total = total / MINOR_UNITS_PER_CREDIT
        return CreditBalance(
            available=available,
            pending=max(total - available, Decimal("0")),
            total=total,
        )

    async def report_usage(
        self,
        owner_id: str,
        credits: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        identifier = idempotency_key or f"{self.identifier_prefix}_{uuid.uuid4().hex}"
        customer_id = await self.get_or_create_customer(owner_id)

        try:
            await self._call(
                stripe.billing.MeterEvent.create,
                event_name=self.meter_event_name,
                payload={
                    "stripe_customer_id": customer_id,
                    "value": _format_credits(credits),
                },
                identifier=identifier,
                timestamp=int(time.time()),
            )
        except (stripe.InvalidRequestError, stripe.PermissionError, stripe.AuthenticationError) as e:
            raise ReportRejected(f"Stripe rejected usage report: {e}", code=getattr(e, "code", None)) from e
        except stripe.StripeError as e:
            raise GatewayUnavailable(f"Stripe usage report failed: {e}") from e

        logger.debug(
            f"Reported {credits} credits for {owner_id} ({identifier})",
            extra={"owner_id": owner_id, "identifier": identifier, **(metadata or {})},
        )
        return True

    async def create_credit_purchase_session(
        self,
        owner_id: str,
        credit_amount: int,
        success_url: str,
        cancel_url: str,
    ) -> Optional[Dict[str, str]]:
        if not self.credit_price_id:
            logger.error("No credit price ID configured")
            return None

        try:
            customer_id = await self.get_or_create_customer(owner_id)
            session = await self._call(
                stripe.checkout.Session.create,
                mode="payment",
                customer=customer_id,
                line_items=[{"price": self.credit_price_id, "quantity": credit_amount}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"owner_id": owner_id, "credits": str(credit_amount)},
            )
        except (BillingError, stripe.StripeError) as e:
            logger.error(f"Failed to create credit checkout session for {owner_id}: {e}")
            return None

        return {"session_id": session.id, "url": session.url}


def _monetary_value(amount) -> Decimal:
    monetary = getattr(amount, "monetary", None) if amount is not None else None
    if monetary is None:
        return Decimal("0")
    return Decimal(getattr(monetary, "value", 0) or 0)


def _format_credits(credits: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    value = Decimal(credits).normalize()
    return format(value, "f")


# Gateway selected at startup
_gateway: PaymentGateway = DisabledPaymentGateway(payment_page_url=settings.payment_page_url)


async def initialize_payment_gateway(config: Optional[Settings] = None) -> PaymentGateway:
    """
    Select the payment gateway for this process.

    Best-effort: any missing configuration or startup failure leaves billing
    disabled instead of crashing the host process.
    """
    global _gateway
    config = config or settings

    gateway: PaymentGateway = DisabledPaymentGateway(payment_page_url=config.payment_page_url)
    mode = "live" if config.payment_live_mode else "test"

    if not config.credit_billing_enabled:
        log_payment_gateway_status(logger, enabled=False, mode="disabled", reason="credit billing disabled via config")
    elif not config.stripe_api_key:
        log_payment_gateway_status(logger, enabled=False, mode="disabled", reason=f"no Stripe {mode} key configured")
    else:
        candidate = StripePaymentGateway(
            api_key=config.stripe_api_key,
            meter_event_name=config.stripe_meter_event_name,
            meter_name=config.stripe_meter_name,
            live_mode=config.payment_live_mode,
            timeout=config.payment_request_timeout_seconds,
            credit_price_id=config.stripe_credit_price_id,
            identifier_prefix=config.usage_report_identifier_prefix,
            payment_page_url=config.payment_page_url,
        )
        try:
            await candidate.ensure_meter()
            gateway = candidate
            log_payment_gateway_status(logger, enabled=True, mode=mode)
        except (BillingError, stripe.StripeError) as e:
            log_payment_gateway_status(logger, enabled=False, mode="disabled", reason=f"Stripe unavailable: {e}")

    _gateway = gateway
    return gateway


def get_payment_gateway() -> PaymentGateway:
    """Gateway selected at startup (disabled until initialized)."""
    return _gateway


def set_payment_gateway(gateway: PaymentGateway) -> None:
    """Replace the process gateway."""
    global _gateway
    _gateway = gateway
