"""Tests for revenue apportionment, payouts and settlement callbacks."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from tokenengine.database import transaction
from tokenengine.errors import (
    DistributionInProgressError,
    IllegalTransitionError,
    NotFoundError,
    ValidationError,
)
from tokenengine.models import AssetStatus, DistributionStatus, EngineEvent, PayoutStatus
from tokenengine.services import distribution, ledger, lifecycle
from tokenengine.services.distribution import allocate, withholding


# ============================================================================
# Apportionment
# ============================================================================


class TestAllocate:
    """Largest remainder allocation in cents."""

    def test_even_split(self):
        result = allocate(100000, 1000, [("alice", 600), ("bob", 400)])

        assert result.shares == {"alice": 60000, "bob": 40000}
        assert result.unallocated == 0
        assert result.per_unit == 100

    def test_leftover_cent_goes_to_first_holder_on_tie(self):
        result = allocate(100, 3, [("c", 1), ("a", 1), ("b", 1)])

        assert result.shares == {"a": 34, "b": 33, "c": 33}

    def test_leftover_goes_to_largest_remainder(self):
        # exact shares: a 42.86, b 28.57, unheld 28.57
        result = allocate(100, 7, [("a", 3), ("b", 2)])

        assert result.shares == {"a": 43, "b": 29}
        assert result.unallocated == 28

    def test_unheld_units_are_unallocated(self):
        result = allocate(10000, 1000, [("alice", 300)])

        assert result.shares == {"alice": 3000}
        assert result.unallocated == 7000

    @pytest.mark.parametrize(
        "revenue,supply,holdings",
        [
            (1, 1000, [("a", 500), ("b", 500)]),
            (99999, 7, [("a", 1), ("b", 1), ("c", 1), ("d", 1), ("e", 1), ("f", 1), ("g", 1)]),
            (123457, 1000, [("a", 333), ("b", 333), ("c", 1)]),
            (5, 1000000, [("a", 999999)]),
        ],
    )
    def test_nothing_created_or_lost(self, revenue, supply, holdings):
        result = allocate(revenue, supply, holdings)

        assert sum(result.shares.values()) + result.unallocated == revenue
        for holder_id, units in holdings:
            exact = revenue * units / supply
            assert abs(result.shares[holder_id] - exact) < 1

    def test_more_held_than_supply(self):
        with pytest.raises(ValueError):
            allocate(100, 10, [("a", 11)])

    def test_withholding_rounds_half_up(self):
        assert withholding(Decimal("0.05"), Decimal("0.10")) == (
            Decimal("0.01"),
            Decimal("0.04"),
        )
        assert withholding(Decimal("600.00"), Decimal("0.10")) == (
            Decimal("60.00"),
            Decimal("540.00"),
        )

    @pytest.mark.parametrize("revenue", [Decimal("0"), Decimal("-5.00"), Decimal("1.001")])
    def test_invalid_revenue(self, revenue):
        with pytest.raises(ValidationError):
            distribution.validate_revenue(revenue)


# ============================================================================
# Distribution lifecycle
# ============================================================================


def lines_by_holder(dist_event):
    return {line.holder_id: line for line in dist_event.lines}


class TestDistributions:

    @pytest.mark.asyncio
    async def test_compute_lines(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 600, "bob": 400})

        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("1000.00"), source_description="March rent"
        )

        assert dist_event.status == DistributionStatus.COMPUTED
        assert dist_event.per_unit_amount == Decimal("1.00")
        assert dist_event.subscribed_units == 1000
        assert dist_event.unallocated_amount == Decimal("0.00")

        lines = lines_by_holder(dist_event)
        assert lines["alice"].amount == Decimal("600.00")
        assert lines["alice"].tax_withheld == Decimal("60.00")
        assert lines["alice"].net_amount == Decimal("540.00")
        assert lines["bob"].amount == Decimal("400.00")
        assert lines["bob"].tax_withheld == Decimal("40.00")
        assert lines["bob"].net_amount == Decimal("360.00")
        assert all(line.settlement_status == PayoutStatus.PENDING for line in lines.values())
        assert all(line.settlement_key == line.id for line in lines.values())

    @pytest.mark.asyncio
    async def test_sole_holder_receives_everything(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 1000})

        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10000.00")
        )

        lines = lines_by_holder(dist_event)
        assert list(lines) == ["alice"]
        assert lines["alice"].amount == Decimal("10000.00")
        assert lines["alice"].net_amount == Decimal("9000.00")

    @pytest.mark.asyncio
    async def test_partial_subscription_leaves_unallocated(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 300})

        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("100.00")
        )

        assert lines_by_holder(dist_event)["alice"].amount == Decimal("30.00")
        assert dist_event.unallocated_amount == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_zero_net_lines_are_settled_at_once(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 500, "bob": 500})

        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("0.01")
        )

        lines = lines_by_holder(dist_event)
        assert lines["alice"].net_amount == Decimal("0.01")
        assert lines["alice"].settlement_status == PayoutStatus.PENDING
        assert lines["bob"].net_amount == Decimal("0.00")
        assert lines["bob"].settlement_status == PayoutStatus.SETTLED
        assert dist_event.status == DistributionStatus.COMPUTED

    @pytest.mark.asyncio
    async def test_nothing_payable_completes_immediately(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 1000})

        async with transaction(test_session):
            dist_event = await distribution.compute_distribution(
                test_session,
                asset.id,
                Decimal("0.01"),
                withholding_rate=Decimal("0.99"),
            )

        assert dist_event.status == DistributionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_one_open_distribution_per_asset(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 100})
        asset_id = asset.id
        await distribution.create_distribution_event(test_session, asset_id, Decimal("50.00"))

        with pytest.raises(DistributionInProgressError):
            await distribution.create_distribution_event(
                test_session, asset_id, Decimal("50.00")
            )

        assert len(await distribution.list_distributions(test_session, asset_id)) == 1

    @pytest.mark.asyncio
    async def test_distribution_requires_live_asset(self, test_session, make_asset):
        asset = await make_asset("sale_active", holders={"alice": 100})

        with pytest.raises(IllegalTransitionError):
            await distribution.create_distribution_event(
                test_session, asset.id, Decimal("50.00")
            )

    @pytest.mark.asyncio
    async def test_paused_asset_still_distributes(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 100})
        asset = await lifecycle.pause(test_session, asset.id, asset.version)

        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("50.00")
        )

        assert dist_event.status == DistributionStatus.COMPUTED

    @pytest.mark.asyncio
    async def test_paused_primary_sale_does_not_distribute(self, test_session, make_asset):
        asset = await make_asset("sale_active", holders={"alice": 10})
        asset = await lifecycle.pause(test_session, asset.id, asset.version, "Legal hold")
        asset_id, version = asset.id, asset.version

        with pytest.raises(IllegalTransitionError) as exc_info:
            await distribution.create_distribution_event(
                test_session, asset_id, Decimal("100.00")
            )
        assert exc_info.value.detail["paused_from"] == "sale_active"

        assert await distribution.list_distributions(test_session, asset_id) == []
        asset = await ledger.require_asset(test_session, asset_id)
        assert asset.status == AssetStatus.PAUSED
        assert asset.version == version

    @pytest.mark.asyncio
    async def test_unknown_distribution(self, test_session):
        with pytest.raises(NotFoundError):
            await distribution.get_distribution(test_session, "missing")


class TestPayouts:

    @pytest.mark.asyncio
    async def test_disburse_and_settle(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 600, "bob": 400})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("1000.00")
        )
        event_id = dist_event.id

        dist_event = await distribution.disburse_distribution(test_session, event_id, gateway)

        assert dist_event.status == DistributionStatus.DISBURSING
        lines = lines_by_holder(dist_event)
        assert {line.settlement_status for line in lines.values()} == {PayoutStatus.SUBMITTED}
        assert sorted(p[1:] for p in gateway.payouts) == [
            ("alice", Decimal("540.00"), lines["alice"].settlement_key),
            ("bob", Decimal("360.00"), lines["bob"].settlement_key),
        ]

        await distribution.record_payout_result(test_session, lines["alice"].settlement_key, True)
        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.DISBURSING

        line = await distribution.record_payout_result(
            test_session, lines["bob"].settlement_key, True
        )
        assert line.settlement_status == PayoutStatus.SETTLED
        assert line.settled_at is not None

        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.COMPLETED

        result = await test_session.execute(
            select(EngineEvent).where(EngineEvent.event_type == "distribution.completed")
        )
        completed = result.scalar_one()
        assert completed.payload["settled"] == 2

    @pytest.mark.asyncio
    async def test_disburse_twice_refused(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 100})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10.00")
        )
        event_id = dist_event.id
        await distribution.disburse_distribution(test_session, event_id, gateway)

        with pytest.raises(IllegalTransitionError):
            await distribution.disburse_distribution(test_session, event_id, gateway)

        assert len(gateway.payouts) == 1

    @pytest.mark.asyncio
    async def test_failure_then_retry_with_same_key(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 600, "bob": 400})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("1000.00")
        )
        event_id = dist_event.id
        dist_event = await distribution.disburse_distribution(test_session, event_id, gateway)
        lines = lines_by_holder(dist_event)
        bob_key = lines["bob"].settlement_key
        bob_id = lines["bob"].id

        await distribution.record_payout_result(test_session, lines["alice"].settlement_key, True)
        line = await distribution.record_payout_result(
            test_session, bob_key, False, "Account closed"
        )
        assert line.settlement_status == PayoutStatus.FAILED
        assert line.failure_reason == "Account closed"

        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.FAILED

        line = await distribution.retry_payout_line(test_session, bob_id, gateway)
        assert line.settlement_status == PayoutStatus.SUBMITTED
        assert line.attempts == 2
        assert gateway.payouts[-1][3] == bob_key
        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.DISBURSING

        await distribution.record_payout_result(test_session, bob_key, True)
        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.COMPLETED

        # Proportions never change on retry
        assert lines_by_holder(dist_event)["bob"].net_amount == Decimal("360.00")

    @pytest.mark.asyncio
    async def test_submission_failure_leaves_line_submitted(
        self, test_session, gateway, make_asset
    ):
        asset = await make_asset("active", holders={"alice": 100})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10.00")
        )
        gateway.fail_next = 1

        dist_event = await distribution.disburse_distribution(
            test_session, dist_event.id, gateway
        )

        line = dist_event.lines[0]
        assert line.settlement_status == PayoutStatus.SUBMITTED
        assert gateway.payouts == []

        line = await distribution.retry_payout_line(test_session, line.id, gateway)
        assert line.attempts == 2
        assert gateway.payouts == [(line.id, "alice", Decimal("0.90"), line.settlement_key)]

    @pytest.mark.asyncio
    async def test_retry_pending_line_refused(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 100})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10.00")
        )

        with pytest.raises(IllegalTransitionError):
            await distribution.retry_payout_line(
                test_session, dist_event.lines[0].id, gateway
            )

    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_honored(
        self, test_session, gateway, make_asset
    ):
        asset = await make_asset("active", holders={"alice": 100})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10.00")
        )
        dist_event = await distribution.disburse_distribution(
            test_session, dist_event.id, gateway
        )
        key = dist_event.lines[0].settlement_key

        await distribution.record_payout_result(test_session, key, False, "Timeout")
        line = await distribution.record_payout_result(test_session, key, True)

        assert line.settlement_status == PayoutStatus.SETTLED
        assert line.failure_reason is None

    @pytest.mark.asyncio
    async def test_duplicate_and_late_failure_callbacks_ignored(
        self, test_session, gateway, make_asset
    ):
        asset = await make_asset("active", holders={"alice": 100})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("10.00")
        )
        dist_event = await distribution.disburse_distribution(
            test_session, dist_event.id, gateway
        )
        key = dist_event.lines[0].settlement_key

        line = await distribution.record_payout_result(test_session, key, True)
        version = line.version

        line = await distribution.record_payout_result(test_session, key, True)
        assert line.version == version
        line = await distribution.record_payout_result(test_session, key, False, "late")
        assert line.settlement_status == PayoutStatus.SETTLED
        assert line.version == version

    @pytest.mark.asyncio
    async def test_abandon_failed_line(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 600, "bob": 400})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("1000.00")
        )
        event_id = dist_event.id
        dist_event = await distribution.disburse_distribution(test_session, event_id, gateway)
        lines = lines_by_holder(dist_event)
        bob_key = lines["bob"].settlement_key
        bob_id = lines["bob"].id
        alice_id = lines["alice"].id

        await distribution.record_payout_result(test_session, lines["alice"].settlement_key, True)

        with pytest.raises(IllegalTransitionError):
            await distribution.abandon_payout_line(test_session, alice_id, "No longer owed")

        await distribution.record_payout_result(test_session, bob_key, False, "Account closed")

        with pytest.raises(ValidationError):
            await distribution.abandon_payout_line(test_session, bob_id, " ")

        line = await distribution.abandon_payout_line(
            test_session, bob_id, "Holder unreachable"
        )
        assert line.settlement_status == PayoutStatus.ABANDONED

        dist_event = await distribution.get_distribution(test_session, event_id)
        assert dist_event.status == DistributionStatus.COMPLETED

        # A late success for an abandoned line changes nothing
        line = await distribution.record_payout_result(test_session, bob_key, True)
        assert line.settlement_status == PayoutStatus.ABANDONED

        with pytest.raises(IllegalTransitionError):
            await distribution.retry_payout_line(test_session, bob_id, gateway)

    @pytest.mark.asyncio
    async def test_unknown_payout_key(self, test_session):
        with pytest.raises(NotFoundError):
            await distribution.record_payout_result(test_session, "missing", True)

    @pytest.mark.asyncio
    async def test_holder_payouts(self, test_session, gateway, make_asset):
        asset = await make_asset("active", holders={"alice": 600, "bob": 400})
        dist_event = await distribution.create_distribution_event(
            test_session, asset.id, Decimal("1000.00")
        )
        await distribution.disburse_distribution(test_session, dist_event.id, gateway)

        payouts = await distribution.list_holder_payouts(test_session, "alice")
        assert len(payouts) == 1
        assert payouts[0].net_amount == Decimal("540.00")

        settled = await distribution.list_holder_payouts(
            test_session, "alice", status=PayoutStatus.SETTLED
        )
        assert settled == []
