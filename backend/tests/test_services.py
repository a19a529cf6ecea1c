"""
Tests for service layer business logic.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import AsyncMock, patch

from emailkit.exceptions import GatewayUnavailable, InsufficientCredits, StorageError
from emailkit.models.base import utcnow
from emailkit.models.usage_event import ReportChannel, ReportStatus, UsageKind
from emailkit.services.credit_calculator import CreditCalculator, CreditRates
from emailkit.services.credit_gate import CreditGate
from emailkit.services.payment_gateway import DisabledPaymentGateway
from emailkit.services.usage_ledger import UsageLedger
from emailkit.services.usage_reporting import UsageReportingScheduler
from emailkit.services.usage_tracking import track_usage

from conftest import FakePaymentGateway, fetch_event, record_emails

RATES = CreditRates(email=Decimal("0.01"), ai_input_per_1k=Decimal("0.001"), ai_output_per_1k=Decimal("0.003"))


class TestCreditCalculator:
    """Tests for CreditCalculator."""

    def test_zero_usage_costs_nothing(self):
        assert CreditCalculator(RATES).calculate(0, 0, 0) == Decimal("0")

    def test_email_only(self):
        """100 emails at 0.01 cost exactly 1 credit."""
        assert CreditCalculator(RATES).calculate(email_count=100) == Decimal("1")

    def test_tokens_are_priced_per_thousand(self):
        credits = CreditCalculator(RATES).calculate(email_count=1, ai_input_tokens=1500, ai_output_tokens=500)
        # 0.01 + 1.5 * 0.001 + 0.5 * 0.003
        assert credits == Decimal("0.013")

    def test_deterministic(self):
        calculator = CreditCalculator(RATES)
        results = {calculator.calculate(7, 1234, 567) for _ in range(5)}
        assert len(results) == 1

    def test_rounds_to_ten_places(self):
        credits = CreditCalculator(RATES).calculate(ai_input_tokens=1)
        assert credits == Decimal("0.0000010000")
        assert credits.as_tuple().exponent == -10

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            CreditRates(email=Decimal("-0.01"), ai_input_per_1k=Decimal("0"), ai_output_per_1k=Decimal("0"))

    def test_estimate_send_uses_token_assumptions(self):
        calculator = CreditCalculator(RATES, estimated_input_tokens_per_email=500, estimated_output_tokens_per_email=200)
        # per email: 0.01 + 0.5 * 0.001 + 0.2 * 0.003 = 0.0111
        assert calculator.estimate_send(10) == Decimal("0.111")

    def test_estimate_send_counts_at_least_one_recipient(self):
        calculator = CreditCalculator(RATES)
        assert calculator.estimate_send(0) == calculator.estimate_send(1)


class TestUsageLedgerRecord:
    """Tests for recording usage."""

    @pytest.mark.asyncio
    async def test_record_computes_credits(self, db_session: AsyncSession, ledger: UsageLedger):
        event = await ledger.record(
            db_session,
            "owner-1",
            UsageKind.EMAIL_SENT,
            email_count=2,
            ai_input_tokens=1000,
            ai_output_tokens=1000,
            brand="acme",
            intent="welcome",
            metadata={"message_id": "msg-1"},
        )

        assert event.id is not None
        assert event.report_status == ReportStatus.UNREPORTED
        assert event.credits_used == Decimal("0.024")
        assert event.meta == {"message_id": "msg-1"}

    @pytest.mark.asyncio
    async def test_preview_is_free(self, db_session: AsyncSession, ledger: UsageLedger):
        event = await ledger.record(db_session, "owner-1", UsageKind.PREVIEW, email_count=1, ai_input_tokens=5000)
        assert event.credits_used == Decimal("0")

    @pytest.mark.asyncio
    async def test_rejects_empty_owner(self, db_session: AsyncSession, ledger: UsageLedger):
        with pytest.raises(ValueError):
            await ledger.record(db_session, "  ", UsageKind.EMAIL_SENT, email_count=1)

    @pytest.mark.asyncio
    async def test_rejects_negative_counts(self, db_session: AsyncSession, ledger: UsageLedger):
        with pytest.raises(ValueError):
            await ledger.record(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=-1)

    @pytest.mark.asyncio
    async def test_credits_not_recomputed_after_rate_change(self, db_session: AsyncSession, session_factory):
        cheap = UsageLedger(CreditCalculator(RATES))
        event = await cheap.record(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=10)

        expensive = UsageLedger(CreditCalculator(CreditRates(
            email=Decimal("1"), ai_input_per_1k=Decimal("0"), ai_output_per_1k=Decimal("0"),
        )))
        stats = await expensive.stats_for(db_session, "owner-1")

        assert stats["total_credits"] == Decimal("0.1")
        assert (await fetch_event(session_factory, event.id)).credits_used == Decimal("0.1")

    @pytest.mark.asyncio
    async def test_storage_failure_raises_storage_error(self, db_session: AsyncSession, ledger: UsageLedger):
        with patch.object(db_session, "commit", AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))):
            with pytest.raises(StorageError):
                await ledger.record(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=1)


class TestUsageLedgerClaims:
    """Tests for the claim / mark / reset state machine."""

    @pytest.mark.asyncio
    async def test_claim_returns_oldest_first(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1, 2, 3, 4])

        claimed = await ledger.claim_unreported(db_session, "owner-1", batch_size=3)

        assert [e.id for e in claimed] == [e.id for e in events[:3]]
        assert all(e.report_status == ReportStatus.CLAIMED for e in claimed)

    @pytest.mark.asyncio
    async def test_claim_only_touches_owner(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1])
        other = await record_emails(ledger, db_session, "owner-2", [1])

        claimed = await ledger.claim_unreported(db_session, "owner-2")

        assert [e.id for e in claimed] == [other[0].id]

    @pytest.mark.asyncio
    async def test_claim_empty_when_nothing_unreported(self, db_session: AsyncSession, ledger: UsageLedger):
        assert await ledger.claim_unreported(db_session, "owner-1") == []

    @pytest.mark.asyncio
    async def test_claim_with_zero_batch_size(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1])
        assert await ledger.claim_unreported(db_session, "owner-1", batch_size=0) == []

    @pytest.mark.asyncio
    async def test_claimed_events_are_not_claimed_again(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1, 1])
        first = await ledger.claim_unreported(db_session, "owner-1")
        second = await ledger.claim_unreported(db_session, "owner-1")

        assert len(first) == 2
        assert second == []

    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(self, session_factory, ledger: UsageLedger):
        """Two claimers racing for 5 events never receive the same event."""
        async with session_factory() as db:
            events = await record_emails(ledger, db, "owner-1", [1, 1, 1, 1, 1])

        async def claim():
            async with session_factory() as db:
                return await ledger.claim_unreported(db, "owner-1", batch_size=100)

        batches = await asyncio.gather(claim(), claim())

        ids = [e.id for batch in batches for e in batch]
        assert len(ids) == len(set(ids))
        assert set(ids) == {e.id for e in events}
        assert sorted(len(batch) for batch in batches) == [0, 5]

    @pytest.mark.asyncio
    async def test_many_concurrent_claimers_partition_events(self, session_factory, ledger: UsageLedger):
        async with session_factory() as db:
            events = await record_emails(ledger, db, "owner-1", [1] * 12)

        async def claim():
            async with session_factory() as db:
                return await ledger.claim_unreported(db, "owner-1", batch_size=3)

        batches = await asyncio.gather(*(claim() for _ in range(6)))

        ids = [e.id for batch in batches for e in batch]
        assert len(ids) == len(set(ids)) == 12
        assert set(ids) == {e.id for e in events}

    @pytest.mark.asyncio
    async def test_mark_reported(self, db_session: AsyncSession, ledger: UsageLedger, session_factory):
        events = await record_emails(ledger, db_session, "owner-1", [1, 1])
        claimed = await ledger.claim_unreported(db_session, "owner-1")

        updated = await ledger.mark_reported(db_session, [e.id for e in claimed], ReportChannel.BATCH)

        assert updated == 2
        for event in events:
            stored = await fetch_event(session_factory, event.id)
            assert stored.report_status == ReportStatus.REPORTED
            assert stored.report_channel == ReportChannel.BATCH
            assert stored.reported_at is not None

    @pytest.mark.asyncio
    async def test_mark_reported_ignores_unclaimed_events(self, db_session: AsyncSession, ledger: UsageLedger, session_factory):
        """Marking a never-claimed event is a no-op."""
        events = await record_emails(ledger, db_session, "owner-1", [1])

        updated = await ledger.mark_reported(db_session, [events[0].id])

        assert updated == 0
        assert (await fetch_event(session_factory, events[0].id)).report_status == ReportStatus.UNREPORTED

    @pytest.mark.asyncio
    async def test_reset_makes_events_claimable_again(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1, 2, 3])
        claimed = await ledger.claim_unreported(db_session, "owner-1")
        ids = [e.id for e in claimed]

        assert await ledger.reset_claimed(db_session, ids) == 3

        reclaimed = await ledger.claim_unreported(db_session, "owner-1")
        assert [e.id for e in reclaimed] == ids

    @pytest.mark.asyncio
    async def test_reset_group_is_reclaimed_without_newer_events(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1, 1, 1])
        group = await ledger.claim_unreported(db_session, "owner-1", batch_size=2)
        token = group[0].claim_token
        await ledger.reset_claimed(db_session, [e.id for e in group])
        newer = await record_emails(ledger, db_session, "owner-1", [1])

        reclaimed = await ledger.claim_unreported(db_session, "owner-1", batch_size=100)
        rest = await ledger.claim_unreported(db_session, "owner-1", batch_size=100)

        assert [e.id for e in reclaimed] == [e.id for e in events[:2]]
        assert {e.claim_token for e in reclaimed} == {token}
        assert [e.id for e in rest] == [events[2].id, newer[0].id]
        assert rest[0].claim_token != token

    @pytest.mark.asyncio
    async def test_claim_event_skips_event_in_batch_group(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1])
        await ledger.claim_unreported(db_session, "owner-1")
        await ledger.reset_claimed(db_session, [events[0].id])

        assert await ledger.claim_event(db_session, events[0].id) is None

    @pytest.mark.asyncio
    async def test_claim_event_keeps_its_token_across_resets(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1])
        first = await ledger.claim_event(db_session, events[0].id)
        await ledger.reset_claimed(db_session, [events[0].id])

        again = await ledger.claim_event(db_session, events[0].id)

        assert first.claim_token == f"evt_{events[0].id}"
        assert again is not None
        assert again.claim_token == first.claim_token

    @pytest.mark.asyncio
    async def test_reported_events_never_change(self, db_session: AsyncSession, ledger: UsageLedger, session_factory):
        events = await record_emails(ledger, db_session, "owner-1", [1])
        event_id = events[0].id
        await ledger.claim_unreported(db_session, "owner-1")
        await ledger.mark_reported(db_session, [event_id])

        assert await ledger.reset_claimed(db_session, [event_id]) == 0
        assert await ledger.mark_reported(db_session, [event_id], ReportChannel.IMMEDIATE) == 0
        assert await ledger.claim_event(db_session, event_id) is None
        assert await ledger.claim_unreported(db_session, "owner-1") == []
        assert await ledger.release_stale_claims(db_session, utcnow() + timedelta(days=1)) == 0

        stored = await fetch_event(session_factory, event_id)
        assert stored.report_status == ReportStatus.REPORTED
        assert stored.report_channel == ReportChannel.BATCH

    @pytest.mark.asyncio
    async def test_claim_event(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1])

        claimed = await ledger.claim_event(db_session, events[0].id)
        again = await ledger.claim_event(db_session, events[0].id)

        assert claimed is not None
        assert claimed.report_status == ReportStatus.CLAIMED
        assert again is None

    @pytest.mark.asyncio
    async def test_release_stale_claims(self, db_session: AsyncSession, ledger: UsageLedger, session_factory):
        events = await record_emails(ledger, db_session, "owner-1", [1, 1])
        claimed = await ledger.claim_unreported(db_session, "owner-1")

        assert await ledger.release_stale_claims(db_session, utcnow() - timedelta(minutes=15)) == 0
        assert await ledger.release_stale_claims(db_session, utcnow() + timedelta(seconds=1)) == 2

        for event in events:
            stored = await fetch_event(session_factory, event.id)
            assert stored.report_status == ReportStatus.UNREPORTED
            assert stored.claimed_at is None
            assert stored.claim_token == claimed[0].claim_token

    @pytest.mark.asyncio
    async def test_owners_with_unreported(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1])
        await record_emails(ledger, db_session, "owner-2", [1])
        await record_emails(ledger, db_session, "owner-3", [1])
        await ledger.claim_unreported(db_session, "owner-2")

        owners = await ledger.owners_with_unreported(db_session)

        assert owners == ["owner-1", "owner-3"]


class TestUsageLedgerQueries:
    """Tests for statistics and history."""

    @pytest.mark.asyncio
    async def test_stats_total_credits(self, db_session: AsyncSession, ledger: UsageLedger):
        """Events of 0.01, 0.02 and 0.03 credits add up to 0.06."""
        await record_emails(ledger, db_session, "U1", [1, 2, 3])

        stats = await ledger.stats_for(db_session, "U1")

        assert stats["total_credits"] == Decimal("0.06")
        assert stats["total_emails"] == 6
        assert stats["total_events"] == 3

    @pytest.mark.asyncio
    async def test_stats_equal_sum_of_events(self, db_session: AsyncSession, ledger: UsageLedger):
        recorded = [
            await ledger.record(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=3, ai_input_tokens=1200, ai_output_tokens=300, brand="acme"),
            await ledger.record(db_session, "owner-1", UsageKind.AI_GENERATION, ai_input_tokens=800, ai_output_tokens=900, brand="acme"),
            await ledger.record(db_session, "owner-1", UsageKind.PREVIEW, email_count=1, ai_input_tokens=100),
            await ledger.record(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=5, brand="globex"),
        ]
        await ledger.record(db_session, "someone-else", UsageKind.EMAIL_SENT, email_count=50)

        stats = await ledger.stats_for(db_session, "owner-1")

        assert stats["total_events"] == len(recorded)
        assert stats["total_emails"] == sum(e.email_count for e in recorded)
        assert stats["total_ai_input_tokens"] == sum(e.ai_input_tokens for e in recorded)
        assert stats["total_ai_output_tokens"] == sum(e.ai_output_tokens for e in recorded)
        assert stats["total_ai_tokens"] == stats["total_ai_input_tokens"] + stats["total_ai_output_tokens"]
        assert stats["total_credits"] == sum((e.credits_used for e in recorded), Decimal("0"))

        assert stats["by_kind"]["email_sent"]["events"] == 2
        assert stats["by_kind"]["email_sent"]["emails"] == 8
        assert stats["by_kind"]["preview"]["credits"] == Decimal("0")
        assert stats["by_brand"]["acme"]["events"] == 2
        assert stats["by_brand"]["globex"]["emails"] == 5
        assert stats["by_brand"]["unknown"]["events"] == 1

    @pytest.mark.asyncio
    async def test_stats_for_unknown_owner(self, db_session: AsyncSession, ledger: UsageLedger):
        stats = await ledger.stats_for(db_session, "nobody")

        assert stats["total_events"] == 0
        assert stats["total_credits"] == Decimal("0")
        assert stats["by_kind"] == {}

    @pytest.mark.asyncio
    async def test_stats_date_range(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1, 2])

        future = await ledger.stats_for(db_session, "owner-1", start_date=utcnow() + timedelta(days=1))
        past = await ledger.stats_for(db_session, "owner-1", end_date=utcnow() - timedelta(days=1))
        window = await ledger.stats_for(
            db_session, "owner-1",
            start_date=utcnow() - timedelta(days=1),
            end_date=utcnow() + timedelta(days=1),
        )

        assert future["total_events"] == 0
        assert past["total_events"] == 0
        assert window["total_emails"] == 3

    @pytest.mark.asyncio
    async def test_history_newest_first_with_total(self, db_session: AsyncSession, ledger: UsageLedger):
        events = await record_emails(ledger, db_session, "owner-1", [1, 2, 3])
        await ledger.record(db_session, "owner-1", UsageKind.PREVIEW, email_count=1)

        page, total = await ledger.history_for(db_session, "owner-1", kind=UsageKind.EMAIL_SENT, limit=2, offset=0)

        assert total == 3
        assert [e.id for e in page] == [events[2].id, events[1].id]

    @pytest.mark.asyncio
    async def test_unreported_total_counts_claimed(self, db_session: AsyncSession, ledger: UsageLedger):
        await record_emails(ledger, db_session, "owner-1", [1, 2])
        claimed = await ledger.claim_unreported(db_session, "owner-1", batch_size=1)
        await record_emails(ledger, db_session, "owner-1", [4])

        totals = await ledger.unreported_total(db_session, "owner-1")
        assert totals == {"total_credits": Decimal("0.07"), "record_count": 3}

        await ledger.mark_reported(db_session, [e.id for e in claimed])
        totals = await ledger.unreported_total(db_session, "owner-1")
        assert totals == {"total_credits": Decimal("0.06"), "record_count": 2}


class TestCreditGate:
    """Tests for the pre-flight credit check."""

    @pytest.mark.asyncio
    async def test_disabled_gateway_always_allows(self):
        gate = CreditGate(DisabledPaymentGateway())

        decision = await gate.check("owner-1", Decimal("999999"))

        assert decision.allowed is True
        assert decision.available is None

    @pytest.mark.asyncio
    async def test_allows_when_balance_covers_cost(self):
        gate = CreditGate(FakePaymentGateway(available=Decimal("5")))

        decision = await gate.check("owner-1", Decimal("5"))

        assert decision.allowed is True
        assert decision.available == Decimal("5")

    @pytest.mark.asyncio
    async def test_denies_with_shortfall_and_payment_link(self):
        gate = CreditGate(FakePaymentGateway(available=Decimal("0.5")))

        decision = await gate.check("owner-1", Decimal("2"))

        assert decision.allowed is False
        assert decision.shortfall == Decimal("1.5")
        assert decision.payment_link == "https://billing.example/top-up?owner=owner-1"

    @pytest.mark.asyncio
    async def test_preview_always_allowed(self):
        gate = CreditGate(FakePaymentGateway(available=Decimal("0")))

        decision = await gate.check("owner-1", Decimal("10"), preview=True)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_fails_open_on_gateway_error(self):
        gateway = FakePaymentGateway(available=Decimal("0"))
        gateway.balance_error = GatewayUnavailable("Stripe down")

        decision = await CreditGate(gateway).check("owner-1", Decimal("10"))

        assert decision.allowed is True
        assert decision.available is None

    @pytest.mark.asyncio
    async def test_enforce_raises(self):
        gate = CreditGate(FakePaymentGateway(available=Decimal("1")))

        with pytest.raises(InsufficientCredits) as exc_info:
            await gate.enforce("owner-1", Decimal("3"))

        payload = exc_info.value.to_dict()
        assert payload["required"] == 3.0
        assert payload["available"] == 1.0
        assert payload["shortfall"] == 2.0
        assert payload["payment_link"].endswith("owner=owner-1")

    @pytest.mark.asyncio
    async def test_check_send_uses_estimate(self):
        gate = CreditGate(
            FakePaymentGateway(available=Decimal("0.1")),
            calculator=CreditCalculator(RATES, estimated_input_tokens_per_email=500, estimated_output_tokens_per_email=200),
        )

        assert (await gate.check_send("owner-1", 9)).allowed is True  # 0.0999
        assert (await gate.check_send("owner-1", 10)).allowed is False  # 0.111


class TestUsageTracking:
    """Tests for the tracking facade used by the send pipeline."""

    @pytest.mark.asyncio
    async def test_records_event(self, db_session: AsyncSession, ledger: UsageLedger, session_factory, gateway):
        reporter = UsageReportingScheduler(session_factory=session_factory, gateway=gateway, ledger=ledger)

        event = await track_usage(db_session, "owner-1", "email_sent", email_count=3, ledger=ledger, reporter=reporter)

        assert event is not None
        assert event.kind == UsageKind.EMAIL_SENT
        assert gateway.reports == []

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_fatal(self, db_session: AsyncSession, ledger: UsageLedger):
        with patch.object(ledger, "record", AsyncMock(side_effect=StorageError("db down", operation="record"))):
            event = await track_usage(db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=1, ledger=ledger)

        assert event is None

    @pytest.mark.asyncio
    async def test_report_immediately(self, db_session: AsyncSession, ledger: UsageLedger, session_factory, gateway):
        reporter = UsageReportingScheduler(session_factory=session_factory, gateway=gateway, ledger=ledger)

        event = await track_usage(
            db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=2,
            report_immediately=True, ledger=ledger, reporter=reporter,
        )

        stored = await fetch_event(session_factory, event.id)
        assert stored.report_status == ReportStatus.REPORTED
        assert stored.report_channel == ReportChannel.IMMEDIATE
        assert gateway.reports[0]["credits"] == Decimal("0.02")
        assert gateway.reports[0]["idempotency_key"] == f"ek_evt_{event.id}"

    @pytest.mark.asyncio
    async def test_report_immediately_failure_leaves_event_for_batch(self, db_session: AsyncSession, ledger: UsageLedger, session_factory, gateway):
        gateway.report_error = GatewayUnavailable("Stripe down")
        reporter = UsageReportingScheduler(session_factory=session_factory, gateway=gateway, ledger=ledger)

        event = await track_usage(
            db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=1,
            report_immediately=True, ledger=ledger, reporter=reporter,
        )

        assert event is not None
        assert (await fetch_event(session_factory, event.id)).report_status == ReportStatus.UNREPORTED

    @pytest.mark.asyncio
    async def test_report_immediately_skipped_when_disabled(self, db_session: AsyncSession, ledger: UsageLedger, session_factory):
        gateway = FakePaymentGateway(enabled=False)
        reporter = UsageReportingScheduler(session_factory=session_factory, gateway=gateway, ledger=ledger)

        event = await track_usage(
            db_session, "owner-1", UsageKind.EMAIL_SENT, email_count=1,
            report_immediately=True, ledger=ledger, reporter=reporter,
        )

        assert (await fetch_event(session_factory, event.id)).report_status == ReportStatus.UNREPORTED
        assert gateway.report_calls == 0
