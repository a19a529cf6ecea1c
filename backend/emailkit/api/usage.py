"""
Usage endpoints.
Statistics, history and cost estimates for the authenticated owner.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from emailkit.auth.dependencies import get_current_owner
from emailkit.database import get_db
from emailkit.middleware.credit_check import credit_check
from emailkit.models.usage_event import UsageKind
from emailkit.schemas.usage import (
    EstimateRequest,
    EstimateResponse,
    Pagination,
    PeriodSummary,
    UnreportedUsageResponse,
    UsageEventResponse,
    UsageHistoryResponse,
    UsagePeriod,
    UsageStats,
    UsageStatsResponse,
    UsageSummaryResponse,
    display_credits,
)
from emailkit.services.credit_calculator import credit_calculator
from emailkit.services.credit_gate import GateDecision
from emailkit.services.usage_ledger import usage_ledger

router = APIRouter()

MAX_HISTORY_LIMIT = 100


def recipient_count_from_payload(payload: dict) -> int:
    """Recipient count of a send request: explicit count, else the recipient list length."""
    count = payload.get("recipient_count")
    if isinstance(count, int) and not isinstance(count, bool) and count >= 0:
        return count
    recipients = payload.get("recipients")
    if isinstance(recipients, list):
        return len(recipients)
    return 1


def estimate_send_cost(payload: dict) -> Decimal:
    return credit_calculator.estimate_send(recipient_count_from_payload(payload))


@router.get("", response_model=UsageStatsResponse)
async def get_usage_stats(
    start_date: Optional[datetime] = Query(None, description="Inclusive start (ISO 8601)"),
    end_date: Optional[datetime] = Query(None, description="Inclusive end (ISO 8601)"),
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Aggregated usage for the authenticated owner."""
    stats = await usage_ledger.stats_for(db, owner_id, start_date=start_date, end_date=end_date)
    return UsageStatsResponse(
        period=UsagePeriod(start=start_date, end=end_date),
        stats=UsageStats.from_stats(stats),
    )


@router.get("/history", response_model=UsageHistoryResponse)
async def get_usage_history(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    kind: Optional[UsageKind] = Query(None, alias="type"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Raw usage events, newest first. `limit` is capped at 100."""
    limit = min(limit, MAX_HISTORY_LIMIT)
    events, total = await usage_ledger.history_for(
        db,
        owner_id,
        kind=kind,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    return UsageHistoryResponse(
        pagination=Pagination(
            limit=limit,
            offset=offset,
            total=total,
            has_more=offset + len(events) < total,
        ),
        records=[UsageEventResponse.model_validate(event) for event in events],
    )


@router.get("/summary", response_model=UsageSummaryResponse)
async def get_usage_summary(
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Emails and credits for today, this month and all time (UTC)."""
    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = today_start.replace(day=1)

    periods = {}
    for name, start in (("today", today_start), ("this_month", month_start), ("all_time", None)):
        stats = await usage_ledger.stats_for(db, owner_id, start_date=start)
        periods[name] = PeriodSummary(emails=stats["total_emails"], credits=display_credits(stats["total_credits"]))

    return UsageSummaryResponse(**periods)


@router.get("/unreported", response_model=UnreportedUsageResponse)
async def get_unreported_usage(
    db: AsyncSession = Depends(get_db),
    owner_id: str = Depends(get_current_owner),
):
    """Credits recorded but not yet deducted by the payment provider."""
    totals = await usage_ledger.unreported_total(db, owner_id)
    return UnreportedUsageResponse(
        total_credits=display_credits(totals["total_credits"]),
        record_count=totals["record_count"],
    )


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_usage(
    request: EstimateRequest,
    decision: GateDecision = Depends(credit_check(estimate_send_cost)),
):
    """
    Estimate the cost of a send and check the owner can afford it.
    Responds 402 with a top-up link when the balance is too low.
    """
    payload = request.model_dump()
    estimated = Decimal("0") if request.preview else estimate_send_cost(payload)
    return EstimateResponse(
        allowed=decision.allowed,
        preview=request.preview,
        recipient_count=recipient_count_from_payload(payload),
        estimated_credits=display_credits(estimated),
        available=float(decision.available) if decision.available is not None else None,
    )
