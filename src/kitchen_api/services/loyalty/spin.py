"""Daily spin wheel: weighted draw paid for with points."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.clock import as_utc, utcnow
from kitchen_api.core.errors import ConflictError
from kitchen_api.core.settings import settings
from kitchen_api.db.transactions import run_in_transaction
from kitchen_api.models.loyalty import LoyaltyProfile, LoyaltyTierEnum, PointsTransactionType
from kitchen_api.services.loyalty.events import ProfileChange, ProfileEvents
from kitchen_api.services.loyalty.ledger import LoyaltyLedger


@dataclass(frozen=True, slots=True)
class SpinSegment:
    points: int
    probability: float
    is_jackpot: bool = False


SPIN_SEGMENTS: tuple[SpinSegment, ...] = (
    SpinSegment(points=5, probability=30),
    SpinSegment(points=10, probability=30),
    SpinSegment(points=20, probability=25),
    SpinSegment(points=25, probability=13),
    SpinSegment(points=50, probability=2, is_jackpot=True),
)


def _validate_segments(segments: tuple[SpinSegment, ...]) -> None:
    total = sum(segment.probability for segment in segments)
    if abs(total - 100) > 1e-9:
        raise RuntimeError(f"Spin segment probabilities must sum to 100, got {total}")


_validate_segments(SPIN_SEGMENTS)

JACKPOT_POINTS = frozenset(segment.points for segment in SPIN_SEGMENTS if segment.is_jackpot)


class RandomSource(Protocol):
    def random(self) -> float: ...


def draw_segment(rng: RandomSource, segments: tuple[SpinSegment, ...] = SPIN_SEGMENTS) -> tuple[SpinSegment, float]:
    """Walk cumulative bounds for a uniform draw in [0, 100)."""

    draw = rng.random() * 100
    cumulative = 0.0
    for segment in segments:
        cumulative += segment.probability
        if cumulative >= draw:
            return segment, draw
    return segments[0], draw


@dataclass(slots=True)
class SpinResult:
    points: int
    is_jackpot: bool
    cost: int
    draw: float
    new_balance: int
    next_spin_available: datetime


@dataclass(slots=True)
class SpinStatus:
    can_spin: bool
    reason: str | None
    cost: int
    current_points: int
    last_spin_date: datetime | None
    next_spin_available: datetime | None


def spin_cost_for(profile: LoyaltyProfile) -> int:
    if profile.tier is LoyaltyTierEnum.SENIOR:
        return settings.spin_cost_points_senior
    return settings.spin_cost_points


def _blocking_reason(profile: LoyaltyProfile, now: datetime) -> str | None:
    if not profile.can_spin:
        return "spins disabled"
    last_spin = as_utc(profile.last_spin_date)
    if last_spin is not None and now - last_spin < timedelta(hours=settings.spin_cooldown_hours):
        return "spin cooldown active"
    if profile.current_points < spin_cost_for(profile):
        return "insufficient points"
    return None


class SpinService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        events: ProfileEvents | None = None,
        rng: RandomSource | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._events = events or ProfileEvents()
        self._rng: RandomSource = rng or random.SystemRandom()

    async def spin_status(self, user_id: str, *, reference_time: datetime | None = None) -> SpinStatus:
        now = reference_time or utcnow()
        async with self._session_factory() as session:
            profile = await LoyaltyLedger(session).require_profile(user_id)
        reason = _blocking_reason(profile, now)
        last_spin = as_utc(profile.last_spin_date)
        next_available = last_spin + timedelta(hours=settings.spin_cooldown_hours) if last_spin else None
        return SpinStatus(
            can_spin=reason is None,
            reason=reason,
            cost=spin_cost_for(profile),
            current_points=profile.current_points,
            last_spin_date=last_spin,
            next_spin_available=next_available,
        )

    async def spin(self, user_id: str, *, reference_time: datetime | None = None) -> SpinResult:
        """Charge the spin cost, draw server-side and credit the winnings."""

        async def _spin(session: AsyncSession) -> tuple[SpinResult, ProfileChange]:
            now = reference_time or utcnow()
            ledger = LoyaltyLedger(session)
            profile = await ledger.require_profile(user_id)
            reason = _blocking_reason(profile, now)
            if reason is not None:
                raise ConflictError(reason)

            cost = spin_cost_for(profile)
            await ledger.append_entry(
                profile,
                PointsTransactionType.SPIN_COST,
                -cost,
                description="Spin wheel entry",
                metadata={"tier": profile.tier.value},
                now=now,
            )
            segment, draw = draw_segment(self._rng)
            await ledger.append_entry(
                profile,
                PointsTransactionType.SPIN_WIN,
                segment.points,
                description="Spin wheel jackpot" if segment.is_jackpot else "Spin wheel prize",
                metadata={"is_jackpot": segment.is_jackpot, "draw": round(draw, 4)},
                now=now,
            )
            profile.last_spin_date = now
            profile.lifetime_spins += 1
            await session.flush()

            result = SpinResult(
                points=segment.points,
                is_jackpot=segment.is_jackpot,
                cost=cost,
                draw=draw,
                new_balance=profile.current_points,
                next_spin_available=now + timedelta(hours=settings.spin_cooldown_hours),
            )
            return result, ProfileChange.from_profile(profile, "spin")

        result, change = await run_in_transaction(self._session_factory, _spin, name="spin")
        logger.info(
            "Spin completed",
            user_id=user_id,
            points=result.points,
            is_jackpot=result.is_jackpot,
            cost=result.cost,
        )
        self._events.publish(change)
        return result
