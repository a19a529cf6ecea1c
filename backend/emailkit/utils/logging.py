"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- owner_id
- event_id
- duration_ms

Usage:
    from emailkit.utils.logging import configure_logging, log_usage_recorded

    configure_logging('emailkit-api', 'INFO')
    log_usage_recorded(logger, event_id='123', owner_id='456', kind='email_sent', credits=0.01)
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (emailkit-api or emailkit-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    owner_id: Optional[str] = None,
    event_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        owner_id: Optional billed owner
        event_id: Optional usage event ID
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if owner_id:
        extra["owner_id"] = owner_id
    if event_id:
        extra["event_id"] = event_id
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Usage ledger events

def log_usage_recorded(
    logger: logging.Logger,
    event_id: str,
    owner_id: str,
    kind: str,
    credits: float,
    **kwargs
):
    """Log a billable operation written to the usage ledger."""
    extra = _build_log_extra(
        event="usage_recorded",
        owner_id=owner_id,
        event_id=event_id,
        kind=kind,
        credits=credits,
        **kwargs
    )
    logger.info(f"Usage recorded: {event_id} ({kind}, {credits} credits)", extra=extra)


def log_usage_record_failed(
    logger: logging.Logger,
    owner_id: str,
    kind: str,
    error: str,
    **kwargs
):
    """
    Log a usage event that could not be recorded.

    The billable operation already succeeded, so this is a warning kept for
    reconciliation rather than an error surfaced to the caller.
    """
    extra = _build_log_extra(
        event="usage_record_failed",
        owner_id=owner_id,
        kind=kind,
        error=str(error),
        **kwargs
    )
    logger.warning(f"Failed to record usage for {owner_id} - {error}", extra=extra)


# Reporting events

def log_usage_reported(
    logger: logging.Logger,
    owner_id: str,
    channel: str,
    record_count: int,
    credits: float,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log usage acknowledged by the payment provider.

    Args:
        logger: Logger instance
        owner_id: Billed owner (required)
        channel: Reporting path (batch or immediate)
        record_count: Number of usage events covered by the report
        credits: Credits deducted
        duration_ms: Optional provider call duration
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="usage_reported",
        owner_id=owner_id,
        duration_ms=duration_ms,
        channel=channel,
        record_count=record_count,
        credits=credits,
        **kwargs
    )
    logger.info(f"Reported {record_count} usage records ({credits} credits) for {owner_id}", extra=extra)


def log_usage_report_failed(
    logger: logging.Logger,
    owner_id: str,
    channel: str,
    record_count: int,
    error: str,
    rejected: bool = False,
    include_traceback: bool = False,
    **kwargs
):
    """
    Log a usage report that failed and was rolled back for retry.

    Args:
        logger: Logger instance
        owner_id: Billed owner (required)
        channel: Reporting path (batch or immediate)
        record_count: Number of usage events released for retry
        error: Error message
        rejected: True when the provider explicitly refused the report
        include_traceback: Whether to include stack trace
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="usage_report_failed",
        owner_id=owner_id,
        channel=channel,
        record_count=record_count,
        rejected=rejected,
        error=str(error),
        **kwargs
    )

    if rejected:
        message = f"Payment provider rejected usage report for {owner_id} - {error}"
    else:
        message = f"Usage report failed for {owner_id} - {error}"

    exc_info = sys.exc_info() if include_traceback else None
    if exc_info and exc_info[0] is not None:
        logger.error(message, extra=extra, exc_info=exc_info)
    else:
        logger.error(message, extra=extra)


# Credit gate and gateway events

def log_credit_check_denied(
    logger: logging.Logger,
    owner_id: str,
    required: float,
    available: Optional[float],
    shortfall: float,
    **kwargs
):
    """Log a request refused for insufficient credits."""
    extra = _build_log_extra(
        event="credit_check_denied",
        owner_id=owner_id,
        required=required,
        available=available,
        shortfall=shortfall,
        **kwargs
    )
    logger.info(f"Insufficient credits for {owner_id}: required {required}, available {available}", extra=extra)


def log_payment_gateway_status(
    logger: logging.Logger,
    enabled: bool,
    mode: str,
    reason: Optional[str] = None,
    **kwargs
):
    """Log which payment gateway was selected at startup."""
    extra = _build_log_extra(
        event="payment_gateway_status",
        enabled=enabled,
        mode=mode,
        **kwargs
    )
    if reason:
        extra["reason"] = reason

    if enabled:
        logger.info(f"Payment gateway enabled ({mode} mode)", extra=extra)
    else:
        logger.warning(f"Payment gateway disabled: {reason or 'not configured'}", extra=extra)


def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
