"""Profile-level change notifications for read models that want live updates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from loguru import logger

from kitchen_api.core.clock import utcnow
from kitchen_api.models.loyalty import LoyaltyProfile, LoyaltyTierEnum


@dataclass(frozen=True, slots=True)
class ProfileChange:
    user_id: str
    reason: str
    current_points: int
    total_earned: int
    total_redeemed: int
    total_expired: int
    tier: LoyaltyTierEnum
    can_spin: bool
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_profile(cls, profile: LoyaltyProfile, reason: str) -> "ProfileChange":
        return cls(
            user_id=profile.user_id,
            reason=reason,
            current_points=profile.current_points,
            total_earned=profile.total_earned,
            total_redeemed=profile.total_redeemed,
            total_expired=profile.total_expired,
            tier=profile.tier,
            can_spin=profile.can_spin,
        )


Subscriber = Callable[[ProfileChange], None]


class ProfileEvents:
    """Fan committed profile changes out to subscribers.

    Publish only after the owning transaction commits; subscribers never see
    rolled-back state.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, change: ProfileChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:  # noqa: BLE001
                logger.exception("Profile change subscriber failed", user_id=change.user_id, reason=change.reason)
