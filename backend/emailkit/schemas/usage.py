"""
Pydantic schemas for usage endpoints.
"""
from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from emailkit.models.usage_event import UsageKind, ReportStatus, ReportChannel

DISPLAY_PRECISION = Decimal("0.000001")


def display_credits(value) -> float:
    """Round a credit amount to 6 decimal places for display."""
    return float(Decimal(value or 0).quantize(DISPLAY_PRECISION, rounding=ROUND_HALF_UP))


class UsagePeriod(BaseModel):
    """Date range a statistic covers (None = unbounded)."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class UsageBreakdown(BaseModel):
    """Usage grouped by kind or brand."""
    events: int
    emails: int
    credits: float


class UsageStats(BaseModel):
    """Aggregated usage for an owner."""
    total_events: int
    total_emails: int
    total_ai_input_tokens: int
    total_ai_output_tokens: int
    total_ai_tokens: int
    total_credits: float
    by_kind: Dict[str, UsageBreakdown]
    by_brand: Dict[str, UsageBreakdown]

    @classmethod
    def from_stats(cls, stats: dict) -> "UsageStats":
        def breakdown(groups: dict) -> Dict[str, UsageBreakdown]:
            return {
                key: UsageBreakdown(events=g["events"], emails=g["emails"], credits=display_credits(g["credits"]))
                for key, g in groups.items()
            }

        return cls(
            total_events=stats["total_events"],
            total_emails=stats["total_emails"],
            total_ai_input_tokens=stats["total_ai_input_tokens"],
            total_ai_output_tokens=stats["total_ai_output_tokens"],
            total_ai_tokens=stats["total_ai_tokens"],
            total_credits=display_credits(stats["total_credits"]),
            by_kind=breakdown(stats["by_kind"]),
            by_brand=breakdown(stats["by_brand"]),
        )


class UsageStatsResponse(BaseModel):
    """Schema for GET /usage."""
    period: UsagePeriod
    stats: UsageStats


class UsageEventResponse(BaseModel):
    """Schema for a single usage event."""
    id: str
    kind: UsageKind
    brand: Optional[str] = None
    intent: Optional[str] = None
    email_count: int
    ai_input_tokens: int
    ai_output_tokens: int
    credits_used: float
    report_status: ReportStatus
    report_channel: Optional[ReportChannel] = None
    created_at: datetime
    reported_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class UsageHistoryResponse(BaseModel):
    """Schema for GET /usage/history."""
    pagination: Pagination
    records: List[UsageEventResponse]


class PeriodSummary(BaseModel):
    emails: int
    credits: float


class UsageSummaryResponse(BaseModel):
    """Schema for GET /usage/summary (dashboard totals)."""
    today: PeriodSummary
    this_month: PeriodSummary
    all_time: PeriodSummary


class UnreportedUsageResponse(BaseModel):
    """Schema for GET /usage/unreported."""
    total_credits: float
    record_count: int


class EstimateRequest(BaseModel):
    """Schema for estimating the cost of a send."""
    recipient_count: Optional[int] = Field(None, ge=0, description="Number of recipients")
    recipients: Optional[List[str]] = Field(None, description="Recipient list; its length is used when recipient_count is absent")
    preview: bool = Field(False, description="Preview requests are never charged")


class EstimateResponse(BaseModel):
    """Schema for an allowed estimate."""
    allowed: bool
    preview: bool
    recipient_count: int
    estimated_credits: float
    available: Optional[float] = None
