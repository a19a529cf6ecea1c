"""
Database models package.
"""
from emailkit.models.base import Base
from emailkit.models.usage_event import UsageEvent, UsageKind, ReportStatus, ReportChannel

__all__ = [
    "Base",
    "UsageEvent",
    "UsageKind",
    "ReportStatus",
    "ReportChannel",
]
