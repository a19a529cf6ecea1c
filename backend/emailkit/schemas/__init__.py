"""
Pydantic schemas for API request/response validation.
"""
from emailkit.schemas.usage import (
    UsageStatsResponse,
    UsageHistoryResponse,
    UsageSummaryResponse,
    UnreportedUsageResponse,
    UsageEventResponse,
    EstimateRequest,
    EstimateResponse,
)
from emailkit.schemas.billing import (
    BillingStatusResponse,
    BalanceResponse,
    PurchaseRequest,
    PurchaseResponse,
)

__all__ = [
    "UsageStatsResponse",
    "UsageHistoryResponse",
    "UsageSummaryResponse",
    "UnreportedUsageResponse",
    "UsageEventResponse",
    "EstimateRequest",
    "EstimateResponse",
    "BillingStatusResponse",
    "BalanceResponse",
    "PurchaseRequest",
    "PurchaseResponse",
]
