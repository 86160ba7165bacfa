"""Tests for the tokenization state machine."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from tokenengine.database import utcnow
from tokenengine.errors import (
    AssetFrozenError,
    ConcurrentModificationError,
    IllegalTransitionError,
    InvariantViolation,
    NotFoundError,
    SettlementSubmissionError,
    ValidationError,
)
from tokenengine.models import (
    AssetStatus,
    DistributionEvent,
    DistributionStatus,
    EngineEvent,
    HoldingRecord,
)
from tokenengine.schemas.asset import AssetUpdate
from tokenengine.services import ledger, lifecycle, trading
from tokenengine.services.lifecycle import AssetEvent, TRANSITIONS, allowed_events, next_status

from conftest import asset_data


# ============================================================================
# Transition table
# ============================================================================


class TestTransitionTable:
    """The table is the only source of legal moves."""

    def test_only_cancelled_is_terminal(self):
        for status in AssetStatus:
            if status == AssetStatus.CANCELLED:
                assert allowed_events(status) == []
            else:
                assert allowed_events(status), f"{status} has no outgoing transition"

    def test_every_event_is_used(self):
        used = {event for (_, event) in TRANSITIONS}
        assert used == set(AssetEvent)

    def test_happy_path_sequence(self):
        status = AssetStatus.DRAFT
        for event in [
            AssetEvent.SUBMIT,
            AssetEvent.APPROVE,
            AssetEvent.REQUEST_ISSUANCE,
            AssetEvent.ISSUANCE_CONFIRMED,
            AssetEvent.OPEN_SALE,
            AssetEvent.CLOSE_SALE,
            AssetEvent.BEGIN_DISTRIBUTION,
            AssetEvent.GO_LIVE,
        ]:
            status = next_status(status, event)
        assert status == AssetStatus.ACTIVE

    def test_illegal_event_raises(self):
        with pytest.raises(IllegalTransitionError):
            next_status(AssetStatus.DRAFT, AssetEvent.APPROVE)

        with pytest.raises(IllegalTransitionError):
            next_status(AssetStatus.ACTIVE, AssetEvent.SUBMIT)

    def test_pause_targets(self):
        assert next_status(AssetStatus.ACTIVE, AssetEvent.PAUSE) == AssetStatus.PAUSED
        assert next_status(AssetStatus.SALE_ACTIVE, AssetEvent.PAUSE) == AssetStatus.PAUSED
        assert next_status(AssetStatus.PAUSED, AssetEvent.RESUME) == AssetStatus.ACTIVE
        assert (
            next_status(AssetStatus.PAUSED, AssetEvent.RESUME_SALE)
            == AssetStatus.SALE_ACTIVE
        )


# ============================================================================
# Draft and review
# ============================================================================


class TestDraftAndReview:

    @pytest.mark.asyncio
    async def test_create_starts_in_draft(self, make_asset):
        asset = await make_asset("draft")

        assert asset.status == AssetStatus.DRAFT
        assert asset.version == 1
        assert asset.symbol == "HVA"
        assert asset.units_sold == 0
        assert asset.remaining_supply == 1000

    @pytest.mark.asyncio
    async def test_create_emits_event(self, test_session, make_asset):
        asset = await make_asset("draft")

        result = await test_session.execute(
            select(EngineEvent).where(EngineEvent.asset_id == asset.id)
        )
        events = result.scalars().all()
        assert [e.event_type for e in events] == ["asset.created"]
        assert events[0].payload["total_supply"] == 1000

    @pytest.mark.asyncio
    async def test_update_draft(self, test_session, make_asset):
        asset = await make_asset("draft")

        updated = await lifecycle.update_draft(
            test_session,
            asset.id,
            AssetUpdate(expected_version=1, total_supply=500, symbol="hvx"),
        )

        assert updated.total_supply == 500
        assert updated.symbol == "HVX"
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_draft_rejects_inverted_window(self, test_session, make_asset):
        asset = await make_asset("draft")

        with pytest.raises(ValidationError):
            await lifecycle.update_draft(
                test_session,
                asset.id,
                AssetUpdate(expected_version=1, sale_end=asset.sale_start - timedelta(days=1)),
            )

    @pytest.mark.asyncio
    async def test_update_after_submit_refused(self, test_session, make_asset):
        asset = await make_asset("pending_approval")

        with pytest.raises(IllegalTransitionError):
            await lifecycle.update_draft(
                test_session,
                asset.id,
                AssetUpdate(expected_version=asset.version, total_supply=5),
            )

    @pytest.mark.asyncio
    async def test_submit_requires_sale_window(self, test_session):
        asset = await lifecycle.create_tokenized_asset(
            test_session, asset_data(sale_start=None, sale_end=None)
        )
        asset_id = asset.id

        with pytest.raises(ValidationError) as exc_info:
            await lifecycle.submit_for_approval(test_session, asset_id, 1)

        assert set(exc_info.value.detail["missing"]) == {"sale_start", "sale_end"}
        asset = await ledger.require_asset(test_session, asset_id)
        assert asset.status == AssetStatus.DRAFT
        assert asset.version == 1

    @pytest.mark.asyncio
    async def test_reject_returns_to_draft_with_reason(self, test_session, make_asset):
        asset = await make_asset("pending_approval")

        asset = await lifecycle.reject(
            test_session, asset.id, asset.version, "reviewer-1", "Valuation report missing"
        )

        assert asset.status == AssetStatus.DRAFT
        assert asset.status_reason == "Valuation report missing"

    @pytest.mark.asyncio
    async def test_approve_requires_reviewer(self, test_session, make_asset):
        asset = await make_asset("pending_approval")

        with pytest.raises(ValidationError):
            await lifecycle.approve(test_session, asset.id, asset.version, "  ")

    @pytest.mark.asyncio
    async def test_approve_draft_is_illegal(self, test_session, make_asset):
        asset = await make_asset("draft")

        with pytest.raises(IllegalTransitionError):
            await lifecycle.approve(test_session, asset.id, 1, "reviewer-1")

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, test_session, make_asset):
        asset = await make_asset("pending_approval")
        asset_id, current = asset.id, asset.version

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await lifecycle.approve(test_session, asset_id, current - 1, "reviewer-1")

        assert exc_info.value.detail["current_version"] == current
        asset = await ledger.require_asset(test_session, asset_id)
        assert asset.status == AssetStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_unknown_asset(self, test_session):
        with pytest.raises(NotFoundError):
            await lifecycle.submit_for_approval(test_session, "missing", 1)

    @pytest.mark.asyncio
    async def test_every_transition_bumps_version_and_emits(self, test_session, make_asset):
        asset = await make_asset("approved")

        assert asset.version == 3
        result = await test_session.execute(
            select(EngineEvent.event_type).where(EngineEvent.asset_id == asset.id)
        )
        assert sorted(result.scalars().all()) == [
            "asset.approve",
            "asset.created",
            "asset.submit",
        ]


# ============================================================================
# Issuance
# ============================================================================


class TestIssuance:

    @pytest.mark.asyncio
    async def test_request_issuance_sends_keyed_intent(self, gateway, make_asset):
        asset = await make_asset("issuing")

        assert asset.status == AssetStatus.ISSUING
        assert asset.issuance_attempt == 1
        assert asset.issuance_key == f"{asset.id}:1"
        assert gateway.issuances == [(asset.id, 1000, f"{asset.id}:1")]

    @pytest.mark.asyncio
    async def test_submission_failure_leaves_issuing(self, test_session, gateway, make_asset):
        asset = await make_asset("approved")
        gateway.fail_next = 1

        with pytest.raises(SettlementSubmissionError):
            await lifecycle.request_issuance(test_session, asset.id, asset.version, gateway)

        asset = await ledger.require_asset(test_session, asset.id)
        assert asset.status == AssetStatus.ISSUING
        assert gateway.issuances == []

        await lifecycle.resend_issuance(test_session, asset.id, gateway)
        assert gateway.issuances == [(asset.id, 1000, f"{asset.id}:1")]

    @pytest.mark.asyncio
    async def test_resend_requires_issuing(self, test_session, gateway, make_asset):
        asset = await make_asset("approved")

        with pytest.raises(IllegalTransitionError):
            await lifecycle.resend_issuance(test_session, asset.id, gateway)

    @pytest.mark.asyncio
    async def test_success_opens_sale_when_window_started(self, test_session, make_asset):
        asset = await make_asset("issuing")

        asset = await lifecycle.record_issuance_result(
            test_session, asset.issuance_key, True
        )

        assert asset.status == AssetStatus.SALE_ACTIVE

    @pytest.mark.asyncio
    async def test_success_before_window_waits_in_issued(self, test_session, make_asset):
        now = utcnow()
        asset = await make_asset(
            "issuing",
            sale_start=now + timedelta(days=2),
            sale_end=now + timedelta(days=10),
        )

        asset = await lifecycle.record_issuance_result(
            test_session, asset.issuance_key, True
        )

        assert asset.status == AssetStatus.ISSUED

    @pytest.mark.asyncio
    async def test_failure_then_resubmit_uses_new_key(
        self, test_session, gateway, make_asset
    ):
        asset = await make_asset("issuing")
        first_key = asset.issuance_key

        asset = await lifecycle.record_issuance_result(
            test_session, first_key, False, "Custodian rejected the mint"
        )
        assert asset.status == AssetStatus.ISSUANCE_FAILED
        assert asset.status_reason == "Custodian rejected the mint"

        asset = await lifecycle.resubmit_issuance(
            test_session, asset.id, asset.version, gateway
        )
        assert asset.status == AssetStatus.ISSUING
        assert asset.issuance_key == f"{asset.id}:2"
        assert gateway.issuances[-1][2] == f"{asset.id}:2"

        # A late success for the superseded attempt is ignored
        stale = await lifecycle.record_issuance_result(test_session, first_key, True)
        assert stale.status == AssetStatus.ISSUING
        assert stale.version == asset.version

    @pytest.mark.asyncio
    async def test_duplicate_callback_is_noop(self, test_session, make_asset):
        asset = await make_asset("issuing")
        asset = await lifecycle.record_issuance_result(
            test_session, asset.issuance_key, True
        )
        version = asset.version

        again = await lifecycle.record_issuance_result(
            test_session, asset.issuance_key, False, "late failure"
        )

        assert again.status == AssetStatus.SALE_ACTIVE
        assert again.version == version

    @pytest.mark.asyncio
    async def test_unknown_key(self, test_session):
        with pytest.raises(NotFoundError):
            await lifecycle.record_issuance_result(test_session, "nope:1", True)


# ============================================================================
# Sale, go-live and operations
# ============================================================================


class TestSaleAndOperations:

    @pytest.mark.asyncio
    async def test_close_sale_early_requires_full_subscription(
        self, test_session, make_asset
    ):
        asset = await make_asset("sale_active", holders={"alice": 400})

        with pytest.raises(IllegalTransitionError):
            await lifecycle.close_sale_early(test_session, asset.id, asset.version)

    @pytest.mark.asyncio
    async def test_close_sale_early_when_sold_out(self, test_session, make_asset):
        asset = await make_asset(
            "sale_active", holders={"alice": 600, "bob": 400}
        )

        asset = await lifecycle.close_sale_early(test_session, asset.id, asset.version)

        assert asset.status == AssetStatus.SALE_ENDED
        result = await test_session.execute(
            select(EngineEvent).where(
                EngineEvent.asset_id == asset.id, EngineEvent.event_type == "sale.closed"
            )
        )
        closed = result.scalar_one()
        assert closed.payload["total_units_sold"] == 1000
        assert closed.payload["total_investors"] == 2

    @pytest.mark.asyncio
    async def test_close_with_no_sales_cancels(self, test_session, make_asset):
        asset = await make_asset("sale_active")

        asset = await lifecycle.close_sale_window(test_session, asset.id, asset.version)

        assert asset.status == AssetStatus.CANCELLED
        assert asset.status_reason == "No subscriptions received"

    @pytest.mark.asyncio
    async def test_close_loses_to_concurrent_purchase(self, test_session, make_asset):
        asset = await make_asset("sale_active", holders={"alice": 10})
        version = asset.version

        await trading.purchase_primary(test_session, asset.id, "bob", 5, Decimal("10.00"))

        with pytest.raises(ConcurrentModificationError):
            await lifecycle.close_sale_window(test_session, asset.id, version)

    @pytest.mark.asyncio
    async def test_go_live_without_revenue(self, make_asset):
        asset = await make_asset("active", holders={"alice": 100})

        assert asset.status == AssetStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_go_live_with_initial_revenue(self, test_session, make_asset):
        asset = await make_asset("sale_ended", holders={"alice": 600, "bob": 400})

        asset, dist_event = await lifecycle.confirm_go_live(
            test_session, asset.id, asset.version, initial_revenue=Decimal("1000.00")
        )

        assert asset.status == AssetStatus.ACTIVE
        assert dist_event.status == DistributionStatus.COMPUTED
        result = await test_session.execute(
            select(EngineEvent.event_type).where(EngineEvent.asset_id == asset.id)
        )
        types = set(result.scalars().all())
        assert {"asset.begin_distribution", "distribution.created", "asset.go_live"} <= types

    @pytest.mark.asyncio
    async def test_go_live_refuses_bad_revenue(self, test_session, make_asset):
        asset = await make_asset("sale_ended", holders={"alice": 100})
        asset_id, version = asset.id, asset.version

        with pytest.raises(ValidationError):
            await lifecycle.confirm_go_live(
                test_session, asset_id, version, initial_revenue=Decimal("10.001")
            )

        asset = await ledger.require_asset(test_session, asset_id)
        assert asset.status == AssetStatus.SALE_ENDED
        assert asset.version == version
        result = await test_session.execute(select(DistributionEvent))
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_pause_and_resume_active(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 100})

        asset = await lifecycle.pause(test_session, asset.id, asset.version, "Audit")
        assert asset.status == AssetStatus.PAUSED
        assert asset.paused_from == AssetStatus.ACTIVE

        asset = await lifecycle.resume(test_session, asset.id, asset.version)
        assert asset.status == AssetStatus.ACTIVE
        assert asset.paused_from is None

    @pytest.mark.asyncio
    async def test_pause_and_resume_sale(self, test_session, make_asset):
        asset = await make_asset("sale_active")

        asset = await lifecycle.pause(test_session, asset.id, asset.version)
        asset = await lifecycle.resume(test_session, asset.id, asset.version)

        assert asset.status == AssetStatus.SALE_ACTIVE

    @pytest.mark.asyncio
    async def test_archive_draft(self, test_session, make_asset):
        asset = await make_asset("draft")

        asset = await lifecycle.archive_asset(test_session, asset.id, asset.version)

        assert asset.archived_at is not None
        assert await lifecycle.list_assets(test_session) == []
        assert len(await lifecycle.list_assets(test_session, include_archived=True)) == 1

        with pytest.raises(IllegalTransitionError):
            await lifecycle.submit_for_approval(test_session, asset.id, asset.version)

    @pytest.mark.asyncio
    async def test_archive_refused_after_sales(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 1})

        with pytest.raises(IllegalTransitionError):
            await lifecycle.archive_asset(test_session, asset.id, asset.version)

    @pytest.mark.asyncio
    async def test_unfreeze_requires_consistent_ledger(self, test_session, make_asset):
        asset = await make_asset("active", holders={"alice": 100})
        asset_id = asset.id
        asset = await lifecycle.freeze(test_session, asset_id, asset.version, "Manual check")
        assert asset.is_frozen
        version = asset.version

        holding = await ledger.get_holding(test_session, asset_id, "alice")
        holding.units_owned = 150
        await test_session.commit()

        with pytest.raises(InvariantViolation):
            await lifecycle.unfreeze_asset(test_session, asset_id, version)

        holding = await ledger.get_holding(test_session, asset_id, "alice")
        holding.units_owned = 100
        await test_session.commit()

        asset = await lifecycle.unfreeze_asset(test_session, asset_id, version)
        assert not asset.is_frozen

        result = await test_session.execute(
            select(HoldingRecord.units_owned).where(HoldingRecord.asset_id == asset_id)
        )
        assert result.scalar_one() == 100

    @pytest.mark.asyncio
    async def test_frozen_asset_refuses_transitions(self, test_session, make_asset):
        asset = await make_asset("sale_ended", holders={"alice": 100})
        asset_id = asset.id
        asset = await lifecycle.freeze(test_session, asset_id, asset.version, "Audit")
        version = asset.version

        with pytest.raises(AssetFrozenError):
            await lifecycle.confirm_go_live(test_session, asset_id, version)

        asset = await ledger.require_asset(test_session, asset_id)
        assert asset.status == AssetStatus.SALE_ENDED
        assert asset.version == version

        asset = await lifecycle.unfreeze_asset(test_session, asset_id, version)
        asset, _ = await lifecycle.confirm_go_live(test_session, asset_id, asset.version)
        assert asset.status == AssetStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_frozen_draft_cannot_be_edited_or_archived(self, test_session, make_asset):
        asset = await make_asset("draft")
        asset_id = asset.id
        asset = await lifecycle.freeze(test_session, asset_id, asset.version, "Audit")
        version = asset.version

        with pytest.raises(AssetFrozenError):
            await lifecycle.update_draft(
                test_session,
                asset_id,
                AssetUpdate(expected_version=version, name="Renamed"),
            )
        with pytest.raises(AssetFrozenError):
            await lifecycle.archive_asset(test_session, asset_id, version)
