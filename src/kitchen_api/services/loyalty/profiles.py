"""Profile reads and administrative balance operations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.clock import utcnow
from kitchen_api.core.errors import ValidationError
from kitchen_api.core.settings import settings
from kitchen_api.db.transactions import run_in_transaction
from kitchen_api.models.loyalty import LoyaltyProfile, LoyaltyTierEnum, PointsTransaction, PointsTransactionType
from kitchen_api.services.loyalty.events import ProfileChange, ProfileEvents
from kitchen_api.services.loyalty.ledger import BalanceCheck, LoyaltyLedger


@dataclass(slots=True)
class AdjustmentResult:
    profile: LoyaltyProfile
    entry: PointsTransaction


@dataclass(slots=True)
class ExpirySweepResult:
    reference_time: datetime
    profiles_touched: int
    lots_closed: int
    points_expired: int


class LoyaltyProfileService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        events: ProfileEvents | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._events = events or ProfileEvents()

    async def get_profile(self, user_id: str) -> LoyaltyProfile:
        async with self._session_factory() as session:
            return await LoyaltyLedger(session).require_profile(user_id)

    async def history(
        self,
        user_id: str,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        entry_types: Sequence[PointsTransactionType] | None = None,
    ) -> tuple[list[PointsTransaction], Tuple[datetime, UUID] | None]:
        async with self._session_factory() as session:
            ledger = LoyaltyLedger(session)
            await ledger.require_profile(user_id)
            return await ledger.list_entries(user_id, limit=limit, cursor=cursor, entry_types=entry_types)

    async def verify(self, user_id: str) -> BalanceCheck:
        async with self._session_factory() as session:
            return await LoyaltyLedger(session).verify_profile(user_id)

    async def adjust_points(self, user_id: str, delta: int, *, reason: str, actor_id: str) -> AdjustmentResult:
        """Admin credit or debit; never drives the balance below zero."""

        limit = settings.loyalty_admin_adjustment_limit
        if delta == 0:
            raise ValidationError("Adjustment must be a non-zero number of points")
        if abs(delta) > limit:
            raise ValidationError(f"Adjustment cannot exceed {limit} points")
        if not reason or not reason.strip():
            raise ValidationError("Adjustment reason is required")

        async def _apply(session: AsyncSession) -> AdjustmentResult:
            ledger = LoyaltyLedger(session)
            profile = await ledger.require_profile(user_id)
            entry = await ledger.append_entry(
                profile,
                PointsTransactionType.ADMIN_ADJUSTMENT,
                delta,
                description=f"Admin adjustment: {reason.strip()}",
                metadata={"reason": reason.strip(), "admin_id": actor_id},
            )
            return AdjustmentResult(profile=profile, entry=entry)

        result = await run_in_transaction(self._session_factory, _apply, name="admin_adjustment")
        logger.info("Admin adjusted loyalty points", user_id=user_id, delta=delta, admin_id=actor_id)
        self._events.publish(ProfileChange.from_profile(result.profile, "admin_adjustment"))
        return result

    async def set_tier(self, user_id: str, tier: LoyaltyTierEnum, *, actor_id: str) -> LoyaltyProfile:
        async def _apply(session: AsyncSession) -> LoyaltyProfile:
            profile = await LoyaltyLedger(session).require_profile(user_id)
            profile.tier = tier
            profile.updated_at = utcnow()
            await session.flush()
            return profile

        profile = await run_in_transaction(self._session_factory, _apply, name="set_tier")
        logger.info("Loyalty tier updated", user_id=user_id, tier=tier.value, admin_id=actor_id)
        self._events.publish(ProfileChange.from_profile(profile, "tier_change"))
        return profile

    async def set_spin_enabled(self, user_id: str, enabled: bool, *, actor_id: str) -> LoyaltyProfile:
        async def _apply(session: AsyncSession) -> LoyaltyProfile:
            profile = await LoyaltyLedger(session).require_profile(user_id)
            profile.can_spin = enabled
            profile.updated_at = utcnow()
            await session.flush()
            return profile

        profile = await run_in_transaction(self._session_factory, _apply, name="set_spin_enabled")
        logger.info("Spin eligibility updated", user_id=user_id, can_spin=enabled, admin_id=actor_id)
        self._events.publish(ProfileChange.from_profile(profile, "spin_eligibility"))
        return profile

    async def expire_points(self, *, reference_time: datetime | None = None) -> ExpirySweepResult:
        """Reconciliation pass closing purchase lots past their expiry.

        Each profile is handled in its own transaction so one contended
        profile does not hold back the rest of the sweep.
        """

        horizon = reference_time or utcnow()
        async with self._session_factory() as session:
            lots = await LoyaltyLedger(session).due_lots(reference_time=horizon)
        candidates = list(dict.fromkeys(lot.user_id for lot in lots))

        touched = closed = expired_points = 0
        for user_id in candidates:

            async def _expire(session: AsyncSession, user_id: str = user_id) -> tuple[LoyaltyProfile, list[PointsTransaction]]:
                ledger = LoyaltyLedger(session)
                lots = await ledger.due_lots(reference_time=horizon, user_id=user_id)
                profile = await ledger.require_profile(user_id)
                return profile, await ledger.expire_lots(profile, lots, reference_time=horizon)

            profile, entries = await run_in_transaction(self._session_factory, _expire, name="points_expiry")
            if not entries:
                continue
            touched += 1
            closed += len(entries)
            user_expired = sum(-entry.points for entry in entries)
            expired_points += user_expired
            if user_expired:
                self._events.publish(ProfileChange.from_profile(profile, "points_expired"))

        logger.info(
            "Points expiry sweep finished",
            reference_time=horizon.isoformat(),
            profiles=touched,
            lots_closed=closed,
            points_expired=expired_points,
        )
        return ExpirySweepResult(
            reference_time=horizon,
            profiles_touched=touched,
            lots_closed=closed,
            points_expired=expired_points,
        )
