"""Catalogue-bound point redemptions."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.clock import as_utc, utcnow
from kitchen_api.core.errors import ConflictError, NotFoundError, ValidationError
from kitchen_api.core.settings import settings
from kitchen_api.db.transactions import run_in_transaction
from kitchen_api.models.loyalty import (
    PointsTransactionType,
    Redemption,
    RedemptionStatus,
    RewardOffer,
)
from kitchen_api.services.loyalty.events import ProfileChange, ProfileEvents
from kitchen_api.services.loyalty.ledger import LoyaltyLedger


@dataclass(slots=True)
class RedemptionResult:
    success: bool
    redemption: Redemption
    points_deducted: int
    new_balance: int


def offer_is_available(offer: RewardOffer, now: datetime) -> bool:
    if not offer.is_active:
        return False
    if offer.valid_from is not None and now < as_utc(offer.valid_from):
        return False
    if offer.valid_until is not None and now > as_utc(offer.valid_until):
        return False
    if offer.max_redemptions is not None and offer.current_redemptions >= offer.max_redemptions:
        return False
    return True


def _generate_code() -> str:
    return secrets.token_hex(4).upper()


class RedemptionService:
    """Spend points on reward offers and track the resulting vouchers.

    ``redeem`` debits the profile, appends the ledger entry, creates the
    redemption and bumps the offer counter in one transaction.  Offers and
    profiles are version-checked, so two requests racing for the last unit of
    a capped offer (or the last points of a balance) cannot both commit; the
    loser is replayed and fails the availability or balance check.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        events: ProfileEvents | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._events = events or ProfileEvents()

    async def list_offers(self, *, reference_time: datetime | None = None) -> list[RewardOffer]:
        now = reference_time or utcnow()
        async with self._session_factory() as session:
            stmt = select(RewardOffer).where(RewardOffer.is_active.is_(True)).order_by(RewardOffer.points_cost, RewardOffer.name)
            offers = list((await session.execute(stmt)).scalars().all())
        return [offer for offer in offers if offer_is_available(offer, now)]

    async def redeem(self, user_id: str, offer_id: UUID, *, reference_time: datetime | None = None) -> RedemptionResult:
        async def _redeem(session: AsyncSession) -> tuple[RedemptionResult, ProfileChange]:
            now = reference_time or utcnow()
            offer = await session.get(RewardOffer, offer_id)
            if offer is None:
                raise NotFoundError(f"Reward offer {offer_id} not found")
            if not offer_is_available(offer, now):
                raise ConflictError("offer unavailable")

            ledger = LoyaltyLedger(session)
            profile = await ledger.require_profile(user_id)
            if profile.current_points < offer.points_cost:
                raise ConflictError("insufficient points")

            redemption_id = uuid4()
            entry = await ledger.append_entry(
                profile,
                PointsTransactionType.REDEMPTION,
                -offer.points_cost,
                description=f"Redeemed {offer.name}",
                metadata={"offer_id": str(offer.id), "redemption_id": str(redemption_id)},
                now=now,
            )
            redemption = Redemption(
                id=redemption_id,
                user_id=user_id,
                offer_id=offer.id,
                ledger_entry_id=entry.id,
                code=_generate_code(),
                points_used=offer.points_cost,
                cogs_value=offer.cogs_value,
                status=RedemptionStatus.ACTIVE,
                redeemed_at=now,
                expires_at=now + timedelta(days=settings.redemption_validity_days),
            )
            redemption.offer = offer
            session.add(redemption)
            offer.current_redemptions += 1
            await session.flush()
            result = RedemptionResult(
                success=True,
                redemption=redemption,
                points_deducted=offer.points_cost,
                new_balance=profile.current_points,
            )
            return result, ProfileChange.from_profile(profile, "redemption")

        result, change = await run_in_transaction(self._session_factory, _redeem, name="redemption")
        logger.info(
            "Reward redeemed",
            user_id=user_id,
            offer_id=str(offer_id),
            redemption_id=str(result.redemption.id),
            points=result.points_deducted,
        )
        self._events.publish(change)
        return result

    async def mark_used(
        self,
        *,
        redemption_id: UUID | None = None,
        code: str | None = None,
        order_reference: str | None = None,
        reference_time: datetime | None = None,
    ) -> Redemption:
        """Consume an active redemption against an order."""

        if redemption_id is None and not code:
            raise ValidationError("Provide a redemption id or code")

        async def _consume(session: AsyncSession) -> tuple[Redemption, bool]:
            now = reference_time or utcnow()
            stmt = select(Redemption)
            if redemption_id is not None:
                stmt = stmt.where(Redemption.id == redemption_id)
            else:
                stmt = stmt.where(Redemption.code == code.strip().upper())
            redemption = (await session.execute(stmt)).unique().scalar_one_or_none()
            if redemption is None:
                raise NotFoundError("Redemption not found")
            if redemption.status is RedemptionStatus.USED:
                raise ConflictError("redemption already used")
            if redemption.status is RedemptionStatus.EXPIRED:
                raise ConflictError("redemption expired")
            if as_utc(redemption.expires_at) <= now:
                redemption.status = RedemptionStatus.EXPIRED
                await session.flush()
                return redemption, False

            redemption.status = RedemptionStatus.USED
            redemption.used_at = now
            redemption.order_reference = order_reference
            await session.flush()
            return redemption, True

        redemption, consumed = await run_in_transaction(self._session_factory, _consume, name="redemption_use")
        if not consumed:
            logger.info("Redemption expired on use", redemption_id=str(redemption.id))
            raise ConflictError("redemption expired")
        logger.info(
            "Redemption marked used",
            redemption_id=str(redemption.id),
            order_reference=order_reference,
        )
        return redemption

    async def expire_redemptions(self, *, reference_time: datetime | None = None) -> int:
        horizon = reference_time or utcnow()

        async def _expire(session: AsyncSession) -> int:
            stmt = select(Redemption).where(
                Redemption.status == RedemptionStatus.ACTIVE,
                Redemption.expires_at <= horizon,
            )
            stale = list((await session.execute(stmt)).unique().scalars().all())
            for redemption in stale:
                redemption.status = RedemptionStatus.EXPIRED
            await session.flush()
            return len(stale)

        count = await run_in_transaction(self._session_factory, _expire, name="redemption_expiry")
        logger.info("Expired stale redemptions", count=count, reference_time=horizon.isoformat())
        return count

    async def list_redemptions(self, user_id: str, *, status: RedemptionStatus | None = None) -> list[Redemption]:
        async with self._session_factory() as session:
            stmt = (
                select(Redemption)
                .where(Redemption.user_id == user_id)
                .order_by(Redemption.redeemed_at.desc())
            )
            if status is not None:
                stmt = stmt.where(Redemption.status == status)
            return list((await session.execute(stmt)).unique().scalars().all())
