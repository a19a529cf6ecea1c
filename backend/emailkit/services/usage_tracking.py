"""
Usage tracking entry point for the send pipeline.

Called after a billable operation has succeeded. Billing problems never turn
a successful send into a failure: a recording or reporting error is logged
for reconciliation and the caller carries on.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from emailkit.exceptions import BillingError, StorageError
from emailkit.models.usage_event import UsageEvent, UsageKind
from emailkit.services.usage_ledger import UsageLedger, usage_ledger
from emailkit.services.usage_reporting import UsageReportingScheduler, usage_reporter
from emailkit.utils.logging import log_usage_record_failed, log_usage_recorded
from emailkit.utils.metrics import usage_events_recorded_total, usage_record_failures_total

logger = logging.getLogger(__name__)


async def track_usage(
    db: AsyncSession,
    owner_id: str,
    kind: UsageKind,
    email_count: int = 0,
    ai_input_tokens: int = 0,
    ai_output_tokens: int = 0,
    brand: Optional[str] = None,
    intent: Optional[str] = None,
    api_key_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    report_immediately: bool = False,
    ledger: Optional[UsageLedger] = None,
    reporter: Optional[UsageReportingScheduler] = None,
) -> Optional[UsageEvent]:
    """
    Record a completed billable operation.

    Args:
        db: Database session
        owner_id: Billed party
        kind: Operation kind
        report_immediately: Report the event right away instead of waiting
            for the next reporting cycle
        ledger: Ledger override (defaults to the process ledger)
        reporter: Reporter override (defaults to the process reporter)

    Returns:
        The recorded event, or None if it could not be recorded

    Raises:
        ValueError: If owner_id is empty or a count is negative
    """
    ledger = ledger or usage_ledger
    reporter = reporter or usage_reporter
    kind = UsageKind(kind)

    try:
        event = await ledger.record(
            db,
            owner_id=owner_id,
            kind=kind,
            email_count=email_count,
            ai_input_tokens=ai_input_tokens,
            ai_output_tokens=ai_output_tokens,
            brand=brand,
            intent=intent,
            api_key_id=api_key_id,
            metadata=metadata,
        )
    except StorageError as e:
        usage_record_failures_total.inc()
        log_usage_record_failed(logger, owner_id=owner_id, kind=kind.value, error=str(e))
        return None

    usage_events_recorded_total.labels(kind=kind.value).inc()
    log_usage_recorded(
        logger,
        event_id=event.id,
        owner_id=owner_id,
        kind=kind.value,
        credits=float(event.credits_used),
    )

    if report_immediately and reporter.gateway.is_enabled():
        try:
            await reporter.report_event_immediately(event.id, db=db)
        except BillingError as e:
            # The event stays unreported or claimed and the batch path picks it up
            logger.warning(f"Immediate usage report failed for {event.id}: {e}")

    return event
