from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from kitchen_api.core.errors import ConflictError, NotFoundError, ValidationError
from kitchen_api.models.loyalty import PointsTransaction, PointsTransactionType, Redemption, RedemptionStatus, RewardOffer
from kitchen_api.services.loyalty import LoyaltyProfileService, ProfileEvents, RedemptionService


@pytest.mark.asyncio
async def test_redeem_debits_exact_cost(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-1", points=700)
    offer = await seed_offer("free-fries", points_cost=500, cogs_value=Decimal("2.10"), max_redemptions=10)
    events = ProfileEvents()
    received = []
    events.subscribe(received.append)

    result = await RedemptionService(session_factory, events=events).redeem("diner-1", offer.id)

    assert result.success is True
    assert result.points_deducted == 500
    assert result.new_balance == 200
    redemption = result.redemption
    assert redemption.status is RedemptionStatus.ACTIVE
    assert redemption.cogs_value == Decimal("2.10")
    assert len(redemption.code) == 8
    assert received[0].current_points == 200

    async with session_factory() as session:
        stored_offer = await session.get(RewardOffer, offer.id)
        assert stored_offer.current_redemptions == 1
        entry = await session.get(PointsTransaction, redemption.ledger_entry_id)
        assert entry.transaction_type is PointsTransactionType.REDEMPTION
        assert entry.points == -500
        assert entry.metadata_json["redemption_id"] == str(redemption.id)

    check = await LoyaltyProfileService(session_factory).verify("diner-1")
    assert check.consistent


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_everything_untouched(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-2", points=300)
    offer = await seed_offer("family-meal", points_cost=500)

    with pytest.raises(ConflictError, match="insufficient points"):
        await RedemptionService(session_factory).redeem("diner-2", offer.id)

    profile = await LoyaltyProfileService(session_factory).get_profile("diner-2")
    assert profile.current_points == 300
    async with session_factory() as session:
        assert (await session.execute(select(Redemption))).first() is None
        assert (await session.get(RewardOffer, offer.id)).current_redemptions == 0


@pytest.mark.asyncio
async def test_unavailable_offers_are_conflicts(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-3", points=1000)
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    inactive = await seed_offer("retired", points_cost=10, is_active=False)
    future = await seed_offer("next-month", points_cost=10, valid_from=now + timedelta(days=10))
    lapsed = await seed_offer("last-month", points_cost=10, valid_until=now - timedelta(days=1))
    sold_out = await seed_offer("sold-out", points_cost=10, max_redemptions=2, current_redemptions=2)

    service = RedemptionService(session_factory)
    for offer in (inactive, future, lapsed, sold_out):
        with pytest.raises(ConflictError, match="offer unavailable"):
            await service.redeem("diner-3", offer.id, reference_time=now)

    with pytest.raises(NotFoundError):
        await service.redeem("diner-3", uuid4(), reference_time=now)

    offers = await service.list_offers(reference_time=now)
    assert offers == []


@pytest.mark.asyncio
async def test_redeem_without_profile_is_not_found(session_factory, seed_offer) -> None:
    offer = await seed_offer("coffee", points_cost=50)
    with pytest.raises(NotFoundError):
        await RedemptionService(session_factory).redeem("stranger", offer.id)


@pytest.mark.asyncio
async def test_mark_used_by_code_once(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-4", points=200)
    offer = await seed_offer("shake", points_cost=150)
    service = RedemptionService(session_factory)
    result = await service.redeem("diner-4", offer.id)

    used = await service.mark_used(code=result.redemption.code.lower(), order_reference="KB-260601-ABC123")
    assert used.status is RedemptionStatus.USED
    assert used.order_reference == "KB-260601-ABC123"
    assert used.used_at is not None

    with pytest.raises(ConflictError, match="already used"):
        await service.mark_used(redemption_id=result.redemption.id)

    with pytest.raises(ValidationError):
        await service.mark_used()


@pytest.mark.asyncio
async def test_mark_used_after_expiry_records_expiry(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-5", points=200)
    offer = await seed_offer("cookie", points_cost=20)
    redeemed_at = datetime(2026, 5, 1, tzinfo=timezone.utc)
    service = RedemptionService(session_factory)
    result = await service.redeem("diner-5", offer.id, reference_time=redeemed_at)

    with pytest.raises(ConflictError, match="redemption expired"):
        await service.mark_used(redemption_id=result.redemption.id, reference_time=redeemed_at + timedelta(days=31))

    redemptions = await service.list_redemptions("diner-5")
    assert [item.status for item in redemptions] == [RedemptionStatus.EXPIRED]


@pytest.mark.asyncio
async def test_expire_redemptions_sweep(session_factory, seed_profile, seed_offer) -> None:
    await seed_profile("diner-6", points=200)
    offer = await seed_offer("soda", points_cost=20)
    redeemed_at = datetime(2026, 5, 1, tzinfo=timezone.utc)
    service = RedemptionService(session_factory)
    await service.redeem("diner-6", offer.id, reference_time=redeemed_at)
    await service.redeem("diner-6", offer.id, reference_time=redeemed_at + timedelta(days=20))

    expired = await service.expire_redemptions(reference_time=redeemed_at + timedelta(days=35))

    assert expired == 1
    active = await service.list_redemptions("diner-6", status=RedemptionStatus.ACTIVE)
    assert len(active) == 1
