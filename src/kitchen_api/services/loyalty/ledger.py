"""Append-only points ledger and the profile balance it maintains."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from kitchen_api.core.clock import as_utc, utcnow
from kitchen_api.core.errors import ConflictError, NotFoundError, ValidationError
from kitchen_api.core.settings import settings
from kitchen_api.models.loyalty import LoyaltyProfile, LoyaltyTierEnum, PointsTransaction, PointsTransactionType
from kitchen_api.services.loyalty.eligibility import points_for_amount

T = PointsTransactionType

CREDIT_TYPES = frozenset({T.PURCHASE, T.SPIN_WIN, T.ADMIN_ADJUSTMENT})
DEBIT_TYPES = frozenset({T.REDEMPTION, T.SPIN_COST, T.ADMIN_ADJUSTMENT})


@dataclass(slots=True)
class AccrualResult:
    profile: LoyaltyProfile
    entry: PointsTransaction | None
    points: int
    profile_created: bool


@dataclass(slots=True)
class BalanceCheck:
    """Ledger-derived totals compared with the cached profile projection."""

    user_id: str
    ledger_balance: int
    earned: int
    redeemed: int
    expired: int
    cached_balance: int

    @property
    def consistent(self) -> bool:
        return self.ledger_balance == self.cached_balance == self.earned - self.redeemed - self.expired


def _apply_to_buckets(profile: LoyaltyProfile, entry_type: PointsTransactionType, points: int) -> None:
    if entry_type is T.EXPIRY:
        profile.total_expired += -points
    elif points > 0:
        profile.total_earned += points
    else:
        profile.total_redeemed += -points


class LoyaltyLedger:
    """Single writer for loyalty balances.

    Every balance change reads the profile, computes the new balance, appends
    one ledger entry and updates the profile inside the caller's transaction.
    Nothing else may assign ``current_points`` or the bucket totals.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_profile(self, user_id: str) -> LoyaltyProfile | None:
        return await self._db.get(LoyaltyProfile, user_id)

    async def require_profile(self, user_id: str) -> LoyaltyProfile:
        profile = await self.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"Loyalty profile for user {user_id} not found")
        return profile

    async def ensure_profile(self, user_id: str) -> tuple[LoyaltyProfile, bool]:
        """Fetch or lazily create the profile.

        A concurrent creator makes our flush fail with ``IntegrityError``; the
        transaction runner replays the whole operation and we find theirs.
        """

        profile = await self.get_profile(user_id)
        if profile is not None:
            return profile, False

        now = utcnow()
        profile = LoyaltyProfile(
            user_id=user_id,
            current_points=0,
            total_earned=0,
            total_redeemed=0,
            total_expired=0,
            tier=LoyaltyTierEnum.REGULAR,
            can_spin=True,
            lifetime_spins=0,
            created_at=now,
            updated_at=now,
        )
        self._db.add(profile)
        await self._db.flush()
        logger.info("Created loyalty profile", user_id=user_id)
        return profile, True

    async def append_entry(
        self,
        profile: LoyaltyProfile,
        entry_type: PointsTransactionType,
        points: int,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        order_id: UUID | None = None,
        source_entry_id: UUID | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> PointsTransaction:
        """Record one signed ledger entry and move the profile balance with it."""

        if points == 0 and entry_type is not T.EXPIRY:
            raise ValidationError("Ledger entries require a non-zero point amount")
        if entry_type is T.EXPIRY and points > 0:
            raise ValidationError("Expiry entries cannot credit points")
        if entry_type is not T.ADMIN_ADJUSTMENT:
            if entry_type in CREDIT_TYPES and points < 0:
                raise ValidationError(f"{entry_type.value} entries must credit points")
            if entry_type in DEBIT_TYPES and points > 0:
                raise ValidationError(f"{entry_type.value} entries must debit points")

        new_balance = profile.current_points + points
        if new_balance < 0:
            raise ConflictError("insufficient points")

        timestamp = now or utcnow()
        entry = PointsTransaction(
            user_id=profile.user_id,
            transaction_type=entry_type,
            points=points,
            balance_after=new_balance,
            description=description,
            metadata_json=metadata or {},
            order_id=order_id,
            source_entry_id=source_entry_id,
            created_at=timestamp,
            expires_at=expires_at,
        )
        self._db.add(entry)

        profile.current_points = new_balance
        _apply_to_buckets(profile, entry_type, points)
        profile.updated_at = timestamp

        await self._db.flush()
        logger.info(
            "Recorded points ledger entry",
            user_id=profile.user_id,
            entry_type=entry_type.value,
            points=points,
            balance_after=new_balance,
        )
        return entry

    async def accrue_purchase(
        self,
        user_id: str,
        amount: Decimal,
        *,
        order_id: UUID | None = None,
        source_event_id: str | None = None,
        now: datetime | None = None,
    ) -> AccrualResult:
        """Credit points for an eligible purchase amount, creating the profile if needed."""

        points = points_for_amount(amount)
        profile, created = await self.ensure_profile(user_id)
        if points <= 0:
            return AccrualResult(profile=profile, entry=None, points=0, profile_created=created)

        timestamp = now or utcnow()
        metadata: dict[str, Any] = {"eligible_amount": str(amount)}
        if source_event_id:
            metadata["source_event_id"] = source_event_id
        if order_id:
            metadata["order_id"] = str(order_id)

        entry = await self.append_entry(
            profile,
            T.PURCHASE,
            points,
            description=f"Points earned on ${amount} purchase",
            metadata=metadata,
            order_id=order_id,
            expires_at=timestamp + timedelta(days=settings.loyalty_points_expiry_days),
            now=timestamp,
        )
        return AccrualResult(profile=profile, entry=entry, points=points, profile_created=created)

    async def due_lots(self, *, reference_time: datetime, user_id: str | None = None) -> list[PointsTransaction]:
        """Purchase entries past ``expires_at`` that no expiry entry has closed yet."""

        closing = aliased(PointsTransaction)
        stmt = (
            select(PointsTransaction)
            .where(
                PointsTransaction.transaction_type == T.PURCHASE,
                PointsTransaction.expires_at.is_not(None),
                PointsTransaction.expires_at <= reference_time,
                ~exists().where(
                    closing.source_entry_id == PointsTransaction.id,
                    closing.transaction_type == T.EXPIRY,
                ),
            )
            .order_by(PointsTransaction.user_id, PointsTransaction.created_at, PointsTransaction.id)
        )
        if user_id is not None:
            stmt = stmt.where(PointsTransaction.user_id == user_id)
        return list((await self._db.execute(stmt)).scalars().all())

    async def expire_lots(
        self,
        profile: LoyaltyProfile,
        lots: Sequence[PointsTransaction],
        *,
        reference_time: datetime,
    ) -> list[PointsTransaction]:
        """Expire the unspent remainder of each lot, oldest first.

        Spending is treated as FIFO, so whatever the balance holds beyond the
        credits granted after a lot belongs to that lot.  Fully spent lots get
        a zero-point expiry entry so they are not scanned again.
        """

        entries: list[PointsTransaction] = []
        for lot in sorted(lots, key=lambda item: (as_utc(item.created_at), str(item.id))):
            later_credits = await self._credits_after(profile.user_id, lot)
            remaining = min(lot.points, max(0, profile.current_points - later_credits))
            entry = await self.append_entry(
                profile,
                T.EXPIRY,
                -remaining,
                description="Points expired" if remaining else "Points lot fully spent before expiry",
                metadata={"lot_points": lot.points, "lot_expires_at": as_utc(lot.expires_at).isoformat()},
                order_id=lot.order_id,
                source_entry_id=lot.id,
                now=reference_time,
            )
            entries.append(entry)
        return entries

    async def _credits_after(self, user_id: str, lot: PointsTransaction) -> int:
        stmt = select(func.coalesce(func.sum(PointsTransaction.points), 0)).where(
            PointsTransaction.user_id == user_id,
            PointsTransaction.points > 0,
            PointsTransaction.created_at > lot.created_at,
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def list_entries(
        self,
        user_id: str,
        *,
        limit: int = 25,
        cursor: Tuple[datetime, UUID] | None = None,
        entry_types: Sequence[PointsTransactionType] | None = None,
    ) -> tuple[list[PointsTransaction], Tuple[datetime, UUID] | None]:
        """Return a newest-first page of ledger entries plus the next cursor."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(PointsTransaction)
            .where(PointsTransaction.user_id == user_id)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
        )
        if entry_types:
            stmt = stmt.where(PointsTransaction.transaction_type.in_(list(entry_types)))
        if cursor:
            cursor_time, cursor_id = cursor
            stmt = stmt.where(
                or_(
                    PointsTransaction.created_at < cursor_time,
                    and_(PointsTransaction.created_at == cursor_time, PointsTransaction.id < cursor_id),
                )
            )

        rows = list((await self._db.execute(stmt.limit(bounded_limit + 1))).scalars().all())
        entries = rows[:bounded_limit]
        next_cursor: Tuple[datetime, UUID] | None = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = (as_utc(tail.created_at), tail.id)
        return entries, next_cursor

    async def verify_profile(self, user_id: str) -> BalanceCheck:
        """Recompute the balance from the ledger, which is authoritative."""

        profile = await self.require_profile(user_id)
        stmt = (
            select(PointsTransaction.transaction_type, PointsTransaction.points)
            .where(PointsTransaction.user_id == user_id)
        )
        earned = redeemed = expired = 0
        for entry_type, points in (await self._db.execute(stmt)).all():
            if entry_type is T.EXPIRY:
                expired += -points
            elif points > 0:
                earned += points
            else:
                redeemed += -points

        check = BalanceCheck(
            user_id=user_id,
            ledger_balance=earned - redeemed - expired,
            earned=earned,
            redeemed=redeemed,
            expired=expired,
            cached_balance=profile.current_points,
        )
        if not check.consistent:
            logger.error(
                "Loyalty profile drifted from ledger",
                user_id=user_id,
                ledger_balance=check.ledger_balance,
                cached_balance=check.cached_balance,
            )
        return check


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    """Decode a history cursor; malformed cursors are a validation error."""

    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        timestamp_str, identifier_str = raw.split("|", 1)
        return as_utc(datetime.fromisoformat(timestamp_str)), UUID(identifier_str)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid history cursor") from exc
