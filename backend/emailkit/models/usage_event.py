"""
UsageEvent model: one row per billable operation.

The table is the audit trail for credit billing. Rows are never deleted and
only report_status (plus its bookkeeping timestamps and claim token) changes
after insert:

    unreported -> claimed -> reported
                  claimed -> unreported   (rollback after a failed report)

A rolled-back group keeps its claim token and is claimed again as a whole,
never mixed with newer events.

credits_used is computed once when the row is created so later rate
changes never alter history.
"""
import enum
from decimal import Decimal

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, Numeric, String

from emailkit.models.base import Base, generate_uuid, utcnow


class UsageKind(str, enum.Enum):
    """Kind of billable operation."""
    EMAIL_SENT = "email_sent"
    AI_GENERATION = "ai_generation"
    PREVIEW = "preview"  # always free, logged for analytics


class ReportStatus(str, enum.Enum):
    """Reporting state of a usage event towards the payment provider."""
    UNREPORTED = "unreported"
    CLAIMED = "claimed"
    REPORTED = "reported"


class ReportChannel(str, enum.Enum):
    """Which reporting path delivered the event."""
    BATCH = "batch"
    IMMEDIATE = "immediate"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class UsageEvent(Base):
    """Ledger entry for a billable operation."""

    __tablename__ = "usage_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    owner_id = Column(String(128), nullable=False)
    api_key_id = Column(String(36), nullable=True)

    kind = Column(
        Enum(UsageKind, name="usage_kind", native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
    )
    brand = Column(String(50), nullable=True)
    intent = Column(String(100), nullable=True)

    # Measured usage
    email_count = Column(Integer, nullable=False, default=0)
    ai_input_tokens = Column(Integer, nullable=False, default=0)
    ai_output_tokens = Column(Integer, nullable=False, default=0)
    credits_used = Column(Numeric(20, 10), nullable=False, default=Decimal("0"))

    # Reporting state
    report_status = Column(
        Enum(ReportStatus, name="usage_report_status", native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
        default=ReportStatus.UNREPORTED,
    )
    report_channel = Column(
        Enum(ReportChannel, name="usage_report_channel", native_enum=False, values_callable=_enum_values, length=20),
        nullable=True,
    )
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    # Report group set by the first claim and kept across resets; the provider
    # identifier is derived from it, so a group is always re-sent under one key
    claim_token = Column(String(64), nullable=True)
    reported_at = Column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_usage_events_owner", "owner_id"),
        Index("idx_usage_events_status", "report_status"),
        Index("idx_usage_events_created", "created_at"),
        Index("idx_usage_events_claim", "owner_id", "report_status", "created_at"),
        Index("idx_usage_events_claim_token", "claim_token"),
    )

    def __repr__(self):
        return (
            f"<UsageEvent(id={self.id}, owner_id={self.owner_id}, kind={self.kind}, "
            f"credits={self.credits_used}, status={self.report_status})>"
        )
