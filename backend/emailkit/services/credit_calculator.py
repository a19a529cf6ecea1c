"""
Credit calculation for billable operations.
Converts email counts and AI token counts into credits using configured rates.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from emailkit.config import settings

# Fixed precision for stored credit amounts (matches Numeric(20, 10))
CREDIT_PRECISION = Decimal("0.0000000001")
TOKENS_PER_RATE_UNIT = Decimal("1000")


@dataclass(frozen=True)
class CreditRates:
    """Per-unit credit rates."""
    email: Decimal  # per email sent
    ai_input_per_1k: Decimal  # per 1K input tokens
    ai_output_per_1k: Decimal  # per 1K output tokens

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name in ("email", "ai_input_per_1k", "ai_output_per_1k"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} rate must be >= 0")

    @classmethod
    def from_settings(cls) -> "CreditRates":
        return cls(
            email=Decimal(settings.email_credit_rate),
            ai_input_per_1k=Decimal(settings.ai_input_token_rate),
            ai_output_per_1k=Decimal(settings.ai_output_token_rate),
        )


class CreditCalculator:
    """Pure, stateless mapping from usage counts to credits."""

    def __init__(
        self,
        rates: Optional[CreditRates] = None,
        estimated_input_tokens_per_email: Optional[int] = None,
        estimated_output_tokens_per_email: Optional[int] = None,
    ):
        self.rates = rates or CreditRates.from_settings()
        self.estimated_input_tokens_per_email = (
            estimated_input_tokens_per_email
            if estimated_input_tokens_per_email is not None
            else settings.estimated_input_tokens_per_email
        )
        self.estimated_output_tokens_per_email = (
            estimated_output_tokens_per_email
            if estimated_output_tokens_per_email is not None
            else settings.estimated_output_tokens_per_email
        )

    def calculate(self, email_count: int = 0, ai_input_tokens: int = 0, ai_output_tokens: int = 0) -> Decimal:
        """
        Calculate credits for an operation.

        credits = emails * email_rate
                + (input_tokens / 1000) * input_rate
                + (output_tokens / 1000) * output_rate

        Args:
            email_count: Number of emails sent
            ai_input_tokens: AI prompt tokens consumed
            ai_output_tokens: AI completion tokens produced

        Returns:
            Credits rounded to 10 decimal places
        """
        credits = Decimal(email_count) * self.rates.email
        credits += (Decimal(ai_input_tokens) / TOKENS_PER_RATE_UNIT) * self.rates.ai_input_per_1k
        credits += (Decimal(ai_output_tokens) / TOKENS_PER_RATE_UNIT) * self.rates.ai_output_per_1k
        return credits.quantize(CREDIT_PRECISION, rounding=ROUND_HALF_UP)

    def estimate_send(self, recipient_count: int) -> Decimal:
        """
        Conservative cost estimate for sending to recipient_count recipients.

        Uses fixed per-email token assumptions; the authoritative charge is
        recorded later with the measured token counts.
        """
        recipients = max(1, recipient_count)
        return self.calculate(
            email_count=recipients,
            ai_input_tokens=self.estimated_input_tokens_per_email * recipients,
            ai_output_tokens=self.estimated_output_tokens_per_email * recipients,
        )


# Calculator bound to the configured rates
credit_calculator = CreditCalculator()
