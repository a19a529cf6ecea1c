"""
Usage ledger service.
Durable log of billable events with atomic claim semantics for reporting.

Status transitions are done with conditional UPDATE statements only
(compare-and-swap on report_status), never read-then-write, so concurrent
reporters always receive disjoint batches.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from emailkit.exceptions import StorageError
from emailkit.models.base import utcnow
from emailkit.models.usage_event import ReportChannel, ReportStatus, UsageEvent, UsageKind
from emailkit.services.credit_calculator import CreditCalculator, credit_calculator

logger = logging.getLogger(__name__)

UNKNOWN_BRAND = "unknown"


def _date_filters(start_date: Optional[datetime], end_date: Optional[datetime]) -> list:
    filters = []
    if start_date is not None:
        filters.append(UsageEvent.created_at >= start_date)
    if end_date is not None:
        filters.append(UsageEvent.created_at <= end_date)
    return filters


class UsageLedger:
    """Service for recording usage events and driving their report status."""

    def __init__(self, calculator: Optional[CreditCalculator] = None):
        self.calculator = calculator or credit_calculator

    async def record(
        self,
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
    ) -> UsageEvent:
        """
        Record a completed billable operation.

        Must be called only after the operation succeeded; a failed send
        is never charged.

        Args:
            db: Database session
            owner_id: Billed party
            kind: Operation kind
            email_count: Emails sent
            ai_input_tokens: Measured AI input tokens
            ai_output_tokens: Measured AI output tokens
            brand: Brand used (for breakdowns)
            intent: Intent used (for breakdowns)
            api_key_id: API key that made the call
            metadata: Free-form diagnostic context

        Returns:
            The persisted UsageEvent in 'unreported' status

        Raises:
            ValueError: If owner_id is empty or a count is negative
            StorageError: If the ledger cannot be written
        """
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id is required")
        for name, value in (
            ("email_count", email_count),
            ("ai_input_tokens", ai_input_tokens),
            ("ai_output_tokens", ai_output_tokens),
        ):
            if value < 0:
                raise ValueError(f"{name} cannot be negative")

        kind = UsageKind(kind)
        if kind == UsageKind.PREVIEW:
            credits = Decimal("0")
        else:
            credits = self.calculator.calculate(email_count, ai_input_tokens, ai_output_tokens)

        now = utcnow()
        event = UsageEvent(
            owner_id=owner_id,
            api_key_id=api_key_id,
            kind=kind,
            brand=brand,
            intent=intent,
            email_count=email_count,
            ai_input_tokens=ai_input_tokens,
            ai_output_tokens=ai_output_tokens,
            credits_used=credits,
            report_status=ReportStatus.UNREPORTED,
            meta=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

        try:
            db.add(event)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError(str(e), operation="record") from e

        return event

    async def claim_unreported(self, db: AsyncSession, owner_id: str, batch_size: int = 100) -> List[UsageEvent]:
        """
        Atomically claim the owner's next report group.

        A group that was claimed before and rolled back (failed report or a
        stale claim) is claimed again as a whole under its existing token.
        Otherwise up to batch_size of the oldest never-claimed events form a
        new group with a fresh token.

        Each claim is a single UPDATE that flips only rows still 'unreported'
        when the statement runs. On PostgreSQL the candidate rows are locked
        first (SKIP LOCKED for new groups, ordered locks for an existing
        group), so no event is ever returned to two callers and an existing
        group is never split.

        Returns:
            Claimed events, oldest first (empty if nothing is unreported)

        Raises:
            StorageError: If the ledger cannot be updated
        """
        if batch_size < 1:
            return []

        try:
            pending_token = (
                await db.execute(
                    select(UsageEvent.claim_token)
                    .where(UsageEvent.owner_id == owner_id)
                    .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                    .where(UsageEvent.claim_token.isnot(None))
                    .order_by(UsageEvent.created_at, UsageEvent.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError(str(e), operation="claim_unreported") from e

        now = utcnow()
        if pending_token is not None:
            candidates = (
                select(UsageEvent.id)
                .where(UsageEvent.claim_token == pending_token)
                .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                .order_by(UsageEvent.id)
                .with_for_update()
            )
            stmt = (
                update(UsageEvent)
                .where(UsageEvent.id.in_(candidates))
                .where(UsageEvent.claim_token == pending_token)
                .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                .values(report_status=ReportStatus.CLAIMED, claimed_at=now, updated_at=now)
            )
        else:
            candidates = (
                select(UsageEvent.id)
                .where(UsageEvent.owner_id == owner_id)
                .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                .where(UsageEvent.claim_token.is_(None))
                .order_by(UsageEvent.created_at, UsageEvent.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            stmt = (
                update(UsageEvent)
                .where(UsageEvent.id.in_(candidates))
                .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                .where(UsageEvent.claim_token.is_(None))
                .values(
                    report_status=ReportStatus.CLAIMED,
                    claim_token=f"batch_{uuid.uuid4().hex}",
                    claimed_at=now,
                    updated_at=now,
                )
            )
        stmt = stmt.returning(UsageEvent).execution_options(synchronize_session=False, populate_existing=True)

        try:
            result = await db.execute(stmt)
            events = list(result.scalars().all())
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError(str(e), operation="claim_unreported") from e

        events.sort(key=lambda event: (event.created_at, event.id))
        return events

    async def claim_event(self, db: AsyncSession, event_id: str) -> Optional[UsageEvent]:
        """
        Atomically claim a single unreported event as its own report group.

        Events that already belong to a multi-event group are left to the
        batch claim, which re-sends that group under its original token.

        Returns:
            The claimed event, or None if it is not claimable on its own
        """
        token = f"evt_{event_id}"
        now = utcnow()
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id == event_id)
            .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
            .where(or_(UsageEvent.claim_token.is_(None), UsageEvent.claim_token == token))
            .values(report_status=ReportStatus.CLAIMED, claim_token=token, claimed_at=now, updated_at=now)
            .returning(UsageEvent)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        try:
            result = await db.execute(stmt)
            event = result.scalar_one_or_none()
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError(str(e), operation="claim_event") from e

        return event

    async def mark_reported(
        self,
        db: AsyncSession,
        ids: Iterable[str],
        channel: ReportChannel = ReportChannel.BATCH,
    ) -> int:
        """
        Transition claimed -> reported for exactly the given ids.
        Ids that are not currently claimed are left untouched.

        Returns:
            Number of events marked reported
        """
        ids = list(ids)
        if not ids:
            return 0

        now = utcnow()
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id.in_(ids))
            .where(UsageEvent.report_status == ReportStatus.CLAIMED)
            .values(
                report_status=ReportStatus.REPORTED,
                report_channel=ReportChannel(channel),
                reported_at=now,
                updated_at=now,
            )
        )
        return await self._execute_transition(db, stmt, "mark_reported")

    async def reset_claimed(self, db: AsyncSession, ids: Iterable[str]) -> int:
        """
        Transition claimed -> unreported (rollback after a failed report).
        The events keep their claim token, so the next claim re-sends the
        same group under the same provider identifier.

        Returns:
            Number of events returned to unreported
        """
        ids = list(ids)
        if not ids:
            return 0

        stmt = (
            update(UsageEvent)
            .where(UsageEvent.id.in_(ids))
            .where(UsageEvent.report_status == ReportStatus.CLAIMED)
            .values(report_status=ReportStatus.UNREPORTED, claimed_at=None, updated_at=utcnow())
        )
        return await self._execute_transition(db, stmt, "reset_claimed")

    async def release_stale_claims(self, db: AsyncSession, older_than: datetime) -> int:
        """
        Return events claimed before older_than to unreported.
        Recovers claims left behind by a reporter that died mid-cycle, or
        whose bookkeeping failed after the provider accepted the report; the
        group keeps its token and is re-sent under the same identifier.

        Returns:
            Number of released events
        """
        stmt = (
            update(UsageEvent)
            .where(UsageEvent.report_status == ReportStatus.CLAIMED)
            .where(UsageEvent.claimed_at < older_than)
            .values(report_status=ReportStatus.UNREPORTED, claimed_at=None, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return await self._execute_transition(db, stmt, "release_stale_claims")

    async def _execute_transition(self, db: AsyncSession, stmt, operation: str) -> int:
        try:
            result = await db.execute(stmt)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise StorageError(str(e), operation=operation) from e
        return result.rowcount or 0

    async def owners_with_unreported(self, db: AsyncSession, limit: int = 500) -> List[str]:
        """Distinct owners that currently have unreported events."""
        try:
            result = await db.execute(
                select(UsageEvent.owner_id)
                .where(UsageEvent.report_status == ReportStatus.UNREPORTED)
                .group_by(UsageEvent.owner_id)
                .order_by(func.min(UsageEvent.created_at))
                .limit(limit)
            )
        except SQLAlchemyError as e:
            raise StorageError(str(e), operation="owners_with_unreported") from e
        return list(result.scalars().all())

    async def stats_for(
        self,
        db: AsyncSession,
        owner_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregate usage for an owner over an optional date range.

        Returns:
            Dict with totals and breakdowns by kind and by brand
        """
        filters = [UsageEvent.owner_id == owner_id, *_date_filters(start_date, end_date)]

        totals_stmt = select(
            func.count(UsageEvent.id),
            func.coalesce(func.sum(UsageEvent.email_count), 0),
            func.coalesce(func.sum(UsageEvent.ai_input_tokens), 0),
            func.coalesce(func.sum(UsageEvent.ai_output_tokens), 0),
            func.sum(UsageEvent.credits_used),
        ).where(*filters)

        kind_stmt = (
            select(
                UsageEvent.kind,
                func.count(UsageEvent.id),
                func.coalesce(func.sum(UsageEvent.email_count), 0),
                func.sum(UsageEvent.credits_used),
            )
            .where(*filters)
            .group_by(UsageEvent.kind)
        )

        brand_stmt = (
            select(
                UsageEvent.brand,
                func.count(UsageEvent.id),
                func.coalesce(func.sum(UsageEvent.email_count), 0),
                func.sum(UsageEvent.credits_used),
            )
            .where(*filters)
            .group_by(UsageEvent.brand)
        )

        try:
            totals = (await db.execute(totals_stmt)).one()
            kind_rows = (await db.execute(kind_stmt)).all()
            brand_rows = (await db.execute(brand_stmt)).all()
        except SQLAlchemyError as e:
            raise StorageError(str(e), operation="stats_for") from e

        total_events, total_emails, total_input, total_output, total_credits = totals

        by_kind = {}
        for kind, events, emails, credits in kind_rows:
            key = kind.value if isinstance(kind, UsageKind) else str(kind)
            by_kind[key] = {"events": events, "emails": int(emails), "credits": Decimal(credits or 0)}

        by_brand: Dict[str, Dict[str, Any]] = {}
        for brand, events, emails, credits in brand_rows:
            entry = by_brand.setdefault(brand or UNKNOWN_BRAND, {"events": 0, "emails": 0, "credits": Decimal("0")})
            entry["events"] += events
            entry["emails"] += int(emails)
            entry["credits"] += Decimal(credits or 0)

        return {
            "total_events": total_events,
            "total_emails": int(total_emails),
            "total_ai_input_tokens": int(total_input),
            "total_ai_output_tokens": int(total_output),
            "total_ai_tokens": int(total_input) + int(total_output),
            "total_credits": Decimal(total_credits or 0),
            "by_kind": by_kind,
            "by_brand": by_brand,
        }

    async def history_for(
        self,
        db: AsyncSession,
        owner_id: str,
        kind: Optional[UsageKind] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[UsageEvent], int]:
        """
        Page through an owner's raw usage events, newest first.

        Returns:
            Tuple of (events, total matching count)
        """
        filters = [UsageEvent.owner_id == owner_id, *_date_filters(start_date, end_date)]
        if kind is not None:
            filters.append(UsageEvent.kind == UsageKind(kind))

        try:
            total = (await db.execute(select(func.count(UsageEvent.id)).where(*filters))).scalar_one()
            result = await db.execute(
                select(UsageEvent)
                .where(*filters)
                .order_by(UsageEvent.created_at.desc(), UsageEvent.id.desc())
                .limit(limit)
                .offset(offset)
            )
        except SQLAlchemyError as e:
            raise StorageError(str(e), operation="history_for") from e

        return list(result.scalars().all()), total

    async def unreported_total(self, db: AsyncSession, owner_id: str) -> Dict[str, Any]:
        """Credits and event count not yet acknowledged by the payment provider."""
        try:
            row = (
                await db.execute(
                    select(func.sum(UsageEvent.credits_used), func.count(UsageEvent.id))
                    .where(UsageEvent.owner_id == owner_id)
                    .where(UsageEvent.report_status.in_([ReportStatus.UNREPORTED, ReportStatus.CLAIMED]))
                )
            ).one()
        except SQLAlchemyError as e:
            raise StorageError(str(e), operation="unreported_total") from e

        total_credits, record_count = row
        return {"total_credits": Decimal(total_credits or 0), "record_count": record_count}


# Singleton instance
usage_ledger = UsageLedger()
