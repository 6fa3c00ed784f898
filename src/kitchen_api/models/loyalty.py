"""Loyalty profile, points ledger, reward catalogue and redemption models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    event,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import object_session, relationship

from kitchen_api.core.clock import utcnow
from kitchen_api.db.base import Base, enum_values


class LoyaltyTierEnum(str, Enum):
    REGULAR = "regular"
    SENIOR = "senior"
    VOLUNTEER = "volunteer"


class PointsTransactionType(str, Enum):
    """Ledger entry kinds; the sign of ``points`` carries the direction."""

    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    SPIN_COST = "spin_cost"
    SPIN_WIN = "spin_win"
    EXPIRY = "expiry"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class RedemptionStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class LoyaltyProfile(Base):
    """Per-user balance projection maintained alongside the ledger."""

    __tablename__ = "loyalty_profiles"

    user_id = Column(String(128), primary_key=True)
    current_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_earned = Column(Integer, nullable=False, default=0, server_default="0")
    total_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    total_expired = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(LoyaltyTierEnum, name="loyalty_tier_enum", values_callable=enum_values),
        nullable=False,
        default=LoyaltyTierEnum.REGULAR,
        server_default=LoyaltyTierEnum.REGULAR.value,
    )
    can_spin = Column(Boolean, nullable=False, default=True, server_default=true())
    last_spin_date = Column(DateTime(timezone=True), nullable=True)
    lifetime_spins = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (CheckConstraint("current_points >= 0", name="ck_loyalty_profiles_non_negative"),)
    __mapper_args__ = {"version_id_col": version}


class PointsTransaction(Base):
    """Immutable ledger entry; never updated or deleted once flushed."""

    __tablename__ = "points_transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        String(128),
        ForeignKey("loyalty_profiles.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    transaction_type = Column(
        "type",
        SqlEnum(PointsTransactionType, name="points_transaction_type", values_callable=enum_values),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(String(255), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    source_entry_id = Column(
        UUID(as_uuid=True),
        ForeignKey("points_transactions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)


Index("ix_points_transactions_user_created", PointsTransaction.user_id, PointsTransaction.created_at)
Index("ix_points_transactions_type_created", PointsTransaction.transaction_type, PointsTransaction.created_at)


@event.listens_for(PointsTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target: PointsTransaction) -> None:  # noqa: ARG001
    session = object_session(target)
    if session is not None and session.is_modified(target, include_collections=False):
        raise RuntimeError(f"Ledger entry {target.id} is immutable")


@event.listens_for(PointsTransaction, "before_delete")
def _reject_ledger_delete(mapper, connection, target: PointsTransaction) -> None:  # noqa: ARG001
    raise RuntimeError(f"Ledger entry {target.id} cannot be deleted")


class RewardOffer(Base):
    """Catalogue entry redeemable for points."""

    __tablename__ = "reward_offers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String(64), nullable=False, unique=True, index=True)
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(64), nullable=False, default="food", server_default="food")
    points_cost = Column(Integer, nullable=False)
    cogs_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    max_redemptions = Column(Integer, nullable=True)
    current_redemptions = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class Redemption(Base):
    """Points spent on an offer, consumed later against an order."""

    __tablename__ = "redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(
        String(128),
        ForeignKey("loyalty_profiles.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    offer_id = Column(UUID(as_uuid=True), ForeignKey("reward_offers.id"), nullable=False, index=True)
    ledger_entry_id = Column(UUID(as_uuid=True), ForeignKey("points_transactions.id"), nullable=True)
    code = Column(String(16), nullable=False, unique=True)
    points_used = Column(Integer, nullable=False)
    cogs_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    status = Column(
        SqlEnum(RedemptionStatus, name="redemption_status", values_callable=enum_values),
        nullable=False,
        default=RedemptionStatus.ACTIVE,
        server_default=RedemptionStatus.ACTIVE.value,
    )
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    order_reference = Column(String(128), nullable=True)

    offer = relationship("RewardOffer", lazy="joined")
