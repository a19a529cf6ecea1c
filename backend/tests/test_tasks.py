"""
Tests for the Celery usage reporting task.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from emailkit.config import Settings
from emailkit.tasks import report_usage

from conftest import FakePaymentGateway

CYCLE = {"skipped": False, "reported_events": 2, "credits": Decimal("0.03")}


@pytest.fixture(autouse=True)
def worker_settings(tmp_path):
    config = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}")
    with patch.object(report_usage, "settings", config):
        yield config
    report_usage.shutdown_worker_reporter()


class TestReportUsageTask:
    """Tests for report_usage_task."""

    def test_gateway_initialized_once_per_process(self):
        init = AsyncMock(return_value=FakePaymentGateway())
        with patch.object(report_usage, "initialize_payment_gateway", init), patch.object(
            report_usage.UsageReportingScheduler, "run_cycle", AsyncMock(return_value=dict(CYCLE))
        ) as run_cycle:
            first = report_usage.report_usage_task()
            second = report_usage.report_usage_task()

        assert init.await_count == 1
        assert run_cycle.await_count == 2
        assert first["credits"] == 0.03
        assert second["reported_events"] == 2

    def test_process_init_selects_gateway_before_first_tick(self):
        init = AsyncMock(return_value=FakePaymentGateway())
        with patch.object(report_usage, "initialize_payment_gateway", init), patch.object(
            report_usage.UsageReportingScheduler, "run_cycle", AsyncMock(return_value=dict(CYCLE))
        ):
            report_usage.init_worker_reporter()
            report_usage.report_usage_task()

        assert init.await_count == 1

    def test_disabled_gateway_is_retried_on_next_tick(self):
        init = AsyncMock(side_effect=[FakePaymentGateway(enabled=False), FakePaymentGateway()])
        with patch.object(report_usage, "initialize_payment_gateway", init), patch.object(
            report_usage.UsageReportingScheduler, "run_cycle", AsyncMock(return_value=dict(CYCLE))
        ) as run_cycle:
            skipped = report_usage.report_usage_task()
            reported = report_usage.report_usage_task()
            report_usage.report_usage_task()

        assert skipped == {"skipped": True, "reason": "payment gateway disabled"}
        assert reported["credits"] == 0.03
        assert init.await_count == 2
        assert run_cycle.await_count == 2

    def test_shutdown_resets_process_state(self):
        with patch.object(report_usage, "initialize_payment_gateway", AsyncMock(return_value=FakePaymentGateway())):
            report_usage.init_worker_reporter()

        report_usage.shutdown_worker_reporter()

        assert report_usage._reporter is None
        assert report_usage._engine is None
