"""
Usage reporting: moves recorded usage to the payment provider.

Every cycle claims each owner's oldest unreported events, reports their
summed credits in one provider call and then either marks the batch
reported or puts it back for the next cycle. Claims are atomic in the
database, so several reporters (API timer, Celery worker, the immediate
path) can run at once without reporting an event twice.
"""
import asyncio
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from emailkit.config import Settings, settings
from emailkit.database import AsyncSessionLocal
from emailkit.exceptions import BillingError, ReportRejected, StorageError
from emailkit.models.base import utcnow
from emailkit.models.usage_event import ReportChannel, UsageEvent
from emailkit.services.payment_gateway import PaymentGateway, get_payment_gateway
from emailkit.services.usage_ledger import UsageLedger, usage_ledger
from emailkit.utils.logging import log_usage_report_failed, log_usage_reported
from emailkit.utils.metrics import (
    usage_credits_reported_total,
    usage_report_cycle_duration_seconds,
    usage_report_cycle_in_progress,
    usage_report_cycles_skipped_total,
    usage_reports_total,
)

logger = logging.getLogger(__name__)

# A report may need customer lookup, customer creation and the meter event
GATEWAY_CALLS_PER_REPORT = 3


def report_idempotency_key(prefix: str, claim_token: str) -> str:
    """Provider identifier of a report group; a re-sent group always maps to the same key."""
    return f"{prefix}_{claim_token}"


class UsageReportingScheduler:
    """Periodic claim -> report -> mark/reset loop."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        gateway: Optional[PaymentGateway] = None,
        ledger: Optional[UsageLedger] = None,
        config: Optional[Settings] = None,
    ):
        config = config or settings
        self.session_factory = session_factory or AsyncSessionLocal
        self._gateway = gateway
        self.ledger = ledger or usage_ledger
        self.interval = config.usage_report_interval_seconds
        self.batch_size = config.usage_report_batch_size
        self.max_owners = config.usage_report_max_owners_per_cycle
        self.claim_timeout = timedelta(seconds=config.usage_claim_timeout_seconds)
        self.report_timeout = config.payment_request_timeout_seconds * GATEWAY_CALLS_PER_REPORT
        self.identifier_prefix = config.usage_report_identifier_prefix

        self._task: Optional[asyncio.Task] = None
        self._is_processing = False
        self.last_cycle: Optional[Dict[str, Any]] = None

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_payment_gateway()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Start the reporting timer on the running event loop.

        Runs one cycle immediately, then one every `interval` seconds.
        Does nothing when the gateway is disabled or the timer already runs.

        Returns:
            True if the timer was started
        """
        if self.is_running:
            logger.debug("Usage reporter already running")
            return False
        if not self.gateway.is_enabled():
            logger.info("Payment gateway disabled, usage reporter not started")
            return False

        self._task = asyncio.create_task(self._run_forever(), name="usage-reporter")
        logger.info(f"Usage reporter started (every {self.interval}s)")
        return True

    async def stop(self) -> None:
        """Cancel the timer and wait for the current cycle to unwind."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Usage reporter stopped")

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception:
                # Keep the timer alive; the events stay unreported or claimed and are retried
                logger.exception("Usage reporting cycle crashed")
            await asyncio.sleep(self.interval)

    async def run_cycle(self) -> Dict[str, Any]:
        """
        Run one reporting cycle over every owner with unreported usage.

        A call that arrives while another cycle is still running returns
        immediately with `skipped` set.

        Returns:
            Cycle summary (owners, reported/failed event counts, credits)
        """
        if self._is_processing:
            usage_report_cycles_skipped_total.inc()
            return {"skipped": True}

        self._is_processing = True
        usage_report_cycle_in_progress.set(1)
        start_time = time.perf_counter()
        summary = {
            "skipped": False,
            "released": 0,
            "owners": 0,
            "reported_events": 0,
            "failed_events": 0,
            "credits": Decimal("0"),
        }
        try:
            async with self.session_factory() as db:
                summary["released"] = await self.ledger.release_stale_claims(
                    db, older_than=utcnow() - self.claim_timeout
                )
                if summary["released"]:
                    logger.warning(f"Released {summary['released']} stale usage claims")

                owners = await self.ledger.owners_with_unreported(db, limit=self.max_owners)
                for owner_id in owners:
                    result = await self.report_owner(db, owner_id)
                    summary["owners"] += 1
                    summary["reported_events"] += result["reported"]
                    summary["failed_events"] += result["failed"]
                    summary["credits"] += result["credits"]
        except StorageError as e:
            logger.error(f"Usage reporting cycle aborted: {e}")
            summary["error"] = str(e)
        finally:
            self._is_processing = False
            usage_report_cycle_in_progress.set(0)
            usage_report_cycle_duration_seconds.observe(time.perf_counter() - start_time)

        self.last_cycle = {**summary, "finished_at": utcnow().isoformat()}
        return summary

    async def report_owner(self, db: AsyncSession, owner_id: str) -> Dict[str, Any]:
        """
        Claim one report group for the owner and report it.

        Returns:
            Dict with claimed, reported and failed event counts and reported credits
        """
        events = await self.ledger.claim_unreported(db, owner_id, self.batch_size)
        if not events:
            return {"claimed": 0, "reported": 0, "failed": 0, "credits": Decimal("0")}

        ids = [event.id for event in events]
        # Stored amounts only; rates may have changed since the events were recorded
        total = sum((Decimal(event.credits_used) for event in events), Decimal("0"))
        metadata = {"source": "batch", "record_ids": ids, "batch_size": len(ids)}

        ok = await self._deliver(db, owner_id, ids, total, metadata, events[0].claim_token, ReportChannel.BATCH)
        if ok:
            return {"claimed": len(ids), "reported": len(ids), "failed": 0, "credits": total}
        return {"claimed": len(ids), "reported": 0, "failed": len(ids), "credits": Decimal("0")}

    async def report_event_immediately(self, event_id: str, db: Optional[AsyncSession] = None) -> bool:
        """
        Report a single freshly recorded event without waiting for the timer.

        The event goes through the same claim as the batch path, so whichever
        path claims it first is the only one that reports it.

        Returns:
            True if this call reported the event
        """
        if not self.gateway.is_enabled():
            return False

        if db is not None:
            return await self._report_event(db, event_id)
        async with self.session_factory() as session:
            return await self._report_event(session, event_id)

    async def _report_event(self, db: AsyncSession, event_id: str) -> bool:
        event: Optional[UsageEvent] = await self.ledger.claim_event(db, event_id)
        if event is None:
            # Already claimed or reported by another path
            return False

        metadata = {
            "source": "immediate",
            "record_id": event.id,
            "kind": event.kind.value if event.kind else None,
        }
        return await self._deliver(
            db,
            event.owner_id,
            [event.id],
            Decimal(event.credits_used),
            metadata,
            event.claim_token,
            ReportChannel.IMMEDIATE,
        )

    async def _deliver(
        self,
        db: AsyncSession,
        owner_id: str,
        ids: List[str],
        credits: Decimal,
        metadata: Dict[str, Any],
        claim_token: str,
        channel: ReportChannel,
    ) -> bool:
        """Report a claimed group, then mark it reported or hand it back."""
        if credits == 0:
            # Free usage such as previews has nothing to deduct
            await self.ledger.mark_reported(db, ids, channel)
            return True

        try:
            ok = await self._report(
                owner_id,
                credits,
                metadata,
                report_idempotency_key(self.identifier_prefix, claim_token),
                channel,
            )
        except (Exception, asyncio.CancelledError):
            # The group keeps its token, so the retry is de-duplicated by the provider
            await self.ledger.reset_claimed(db, ids)
            raise

        if ok:
            await self.ledger.mark_reported(db, ids, channel)
        else:
            await self.ledger.reset_claimed(db, ids)
        return ok

    async def _report(
        self,
        owner_id: str,
        credits: Decimal,
        metadata: Dict[str, Any],
        idempotency_key: str,
        channel: ReportChannel,
    ) -> bool:
        """Call the gateway; every failure mode collapses to False."""
        record_count = len(metadata.get("record_ids", [])) or 1
        start_time = time.perf_counter()
        rejected = False
        try:
            ok = await asyncio.wait_for(
                self.gateway.report_usage(owner_id, credits, metadata, idempotency_key=idempotency_key),
                timeout=self.report_timeout,
            )
            error = None if ok else "payment provider did not acknowledge the report"
        except asyncio.TimeoutError:
            ok, error = False, f"timed out after {self.report_timeout}s"
        except ReportRejected as e:
            ok, error, rejected = False, str(e), True
        except BillingError as e:
            # GatewayUnavailable and any other provider-side failure
            ok, error = False, str(e)

        if ok:
            usage_reports_total.labels(channel=channel.value, status="success").inc()
            usage_credits_reported_total.labels(channel=channel.value).inc(float(credits))
            log_usage_reported(
                logger,
                owner_id=owner_id,
                channel=channel.value,
                record_count=record_count,
                credits=float(credits),
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )
            return True

        usage_reports_total.labels(channel=channel.value, status="rejected" if rejected else "failed").inc()
        log_usage_report_failed(
            logger,
            owner_id=owner_id,
            channel=channel.value,
            record_count=record_count,
            error=error,
            rejected=rejected,
        )
        return False

    def status(self) -> Dict[str, Any]:
        """Reporter status for diagnostics."""
        return {
            "enabled": self.gateway.is_enabled(),
            "running": self.is_running,
            "interval": self.interval,
            "is_processing": self._is_processing,
            "last_cycle": _jsonable(self.last_cycle),
        }


def _jsonable(summary: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if summary is None:
        return None
    return {key: float(value) if isinstance(value, Decimal) else value for key, value in summary.items()}


# Reporter for this process
usage_reporter = UsageReportingScheduler()
