"""
Celery task running one usage reporting cycle.
Scheduled by beat every USAGE_REPORT_INTERVAL_SECONDS; safe to run next to
the API's in-process reporter because claims are atomic.

Each worker process keeps one event loop, engine and reporter. The payment
gateway is set up once per process and reused across ticks, so the provider
meter lookup and the customer cache survive between cycles.
"""
import asyncio
import logging
from typing import Optional

from celery.signals import worker_process_init, worker_process_shutdown
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker

from emailkit.config import settings
from emailkit.database import engine_options
from emailkit.services.payment_gateway import initialize_payment_gateway
from emailkit.services.usage_reporting import UsageReportingScheduler
from emailkit.workers.celery_app import celery_app, REPORT_USAGE_TASK

logger = logging.getLogger(__name__)

# Per-process state; the engine's connections belong to _loop
_loop: Optional[asyncio.AbstractEventLoop] = None
_engine: Optional[AsyncEngine] = None
_reporter: Optional[UsageReportingScheduler] = None


def _run(coro):
    """Run a coroutine on the worker process loop."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


async def get_worker_reporter() -> UsageReportingScheduler:
    """
    Reporter for this worker process.

    The gateway is initialized on first use and kept. While billing is
    disabled the selection is retried on every call, so a worker that
    started before the provider was reachable picks it up later.
    """
    global _engine, _reporter
    if _reporter is not None and _reporter.gateway.is_enabled():
        return _reporter

    gateway = await initialize_payment_gateway(settings)
    if _engine is None:
        _engine = create_async_engine(settings.database_url, echo=False, **engine_options(settings.database_url))
    session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    _reporter = UsageReportingScheduler(session_factory=session_factory, gateway=gateway)
    return _reporter


@worker_process_init.connect
def init_worker_reporter(**kwargs) -> None:
    """Select the gateway as soon as the worker process starts."""
    try:
        _run(get_worker_reporter())
    except Exception:
        # The first task retries the setup
        logger.exception("Failed to initialize usage reporter in worker process")


@worker_process_shutdown.connect
def shutdown_worker_reporter(**kwargs) -> None:
    """Dispose the process engine and close its loop."""
    global _loop, _engine, _reporter
    if _engine is not None:
        _run(_engine.dispose())
    if _loop is not None and not _loop.is_closed():
        _loop.close()
    asyncio.set_event_loop(None)
    _loop = None
    _engine = None
    _reporter = None


@celery_app.task(name=REPORT_USAGE_TASK)
def report_usage_task() -> dict:
    """
    Report unreported usage for all owners.

    Returns:
        Cycle summary with credits as a float (JSON result backend)
    """
    summary = _run(_report_usage_async())

    if "credits" in summary:
        summary["credits"] = float(summary["credits"])
    return summary


async def _report_usage_async() -> dict:
    reporter = await get_worker_reporter()
    if not reporter.gateway.is_enabled():
        logger.debug("Payment gateway disabled, skipping usage report")
        return {"skipped": True, "reason": "payment gateway disabled"}
    return await reporter.run_cycle()
