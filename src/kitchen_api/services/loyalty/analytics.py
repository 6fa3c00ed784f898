"""Admin rewards economics: giveback, liability and spin fairness."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen_api.core.clock import as_utc, utcnow
from kitchen_api.core.errors import ValidationError
from kitchen_api.core.settings import settings
from kitchen_api.models.loyalty import (
    LoyaltyProfile,
    LoyaltyTierEnum,
    PointsTransaction,
    PointsTransactionType,
    Redemption,
    RewardOffer,
)
from kitchen_api.models.order import Order
from kitchen_api.services.loyalty.spin import JACKPOT_POINTS

PERIOD_DAYS: Dict[str, int] = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_PERIOD = "30d"

T = PointsTransactionType


def _money(value: object) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class ReportPeriod:
    start: datetime
    end: datetime
    days: int


@dataclass(slots=True)
class FinancialSummary:
    eligible_revenue: Decimal
    redemption_costs: Decimal
    giveback_percentage: float
    point_liability: Decimal
    target_giveback_percentage: float


@dataclass(slots=True)
class PointsSummary:
    total_earned: int
    total_redeemed: int
    total_expired: int
    total_adjusted: int
    outstanding_points: int
    net_points_issued: int


@dataclass(slots=True)
class TransactionSummary:
    purchase_count: int
    order_count: int
    redemption_count: int
    average_order_value: Decimal
    redemption_rate: float


@dataclass(slots=True)
class SpinSummary:
    total_spins: int
    total_spin_costs: int
    total_spin_winnings: int
    jackpot_wins: int
    jackpot_rate: float
    result_breakdown: Dict[int, int] = field(default_factory=dict)


@dataclass(slots=True)
class UserSummary:
    total_active: int
    regular_tier: int
    senior_tier: int
    volunteer_tier: int


@dataclass(slots=True)
class CategoryBreakdown:
    count: int
    total_cost: Decimal


@dataclass(slots=True)
class OfferBreakdown:
    offer_id: str
    name: str
    count: int
    points_used: int
    total_cost: Decimal


@dataclass(slots=True)
class RedemptionSummary:
    by_category: Dict[str, CategoryBreakdown]
    by_offer: List[OfferBreakdown]
    average_cost: Decimal


@dataclass(slots=True)
class AnalyticsAlert:
    type: str
    severity: str
    message: str


@dataclass(slots=True)
class RewardsAnalyticsReport:
    generated_at: datetime
    period: ReportPeriod
    financial: FinancialSummary
    points: PointsSummary
    transactions: TransactionSummary
    spins: SpinSummary
    users: UserSummary
    redemptions: RedemptionSummary
    alerts: List[AnalyticsAlert]


def resolve_period(
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    period: str | None = None,
    reference_time: datetime | None = None,
) -> ReportPeriod:
    """Explicit bounds win when both are given; otherwise look back ``period``."""

    if start is not None and end is not None:
        window_start, window_end = as_utc(start), as_utc(end)
        if window_start > window_end:
            raise ValidationError("startDate must not be after endDate")
    else:
        key = period or DEFAULT_PERIOD
        if key not in PERIOD_DAYS:
            raise ValidationError(f"Unknown analytics period '{key}'; expected one of {', '.join(PERIOD_DAYS)}")
        window_end = reference_time or utcnow()
        window_start = window_end - timedelta(days=PERIOD_DAYS[key])

    span = window_end - window_start
    days = span.days + (1 if span % timedelta(days=1) else 0)
    return ReportPeriod(start=window_start, end=window_end, days=days)


def build_alerts(financial: FinancialSummary, spins: SpinSummary) -> list[AnalyticsAlert]:
    alerts: list[AnalyticsAlert] = []
    if financial.giveback_percentage > float(settings.analytics_giveback_target_percentage):
        alerts.append(
            AnalyticsAlert(
                type="warning",
                severity="high",
                message=(
                    f"Giveback percentage ({financial.giveback_percentage:.2f}%) exceeds target of "
                    f"{float(settings.analytics_giveback_target_percentage):g}%"
                ),
            )
        )
    if financial.point_liability > settings.analytics_point_liability_threshold:
        alerts.append(
            AnalyticsAlert(
                type="info",
                severity="medium",
                message=f"High point liability: ${financial.point_liability:.2f}",
            )
        )
    if spins.total_spins > 0 and spins.jackpot_rate > settings.analytics_jackpot_rate_target:
        alerts.append(
            AnalyticsAlert(
                type="warning",
                severity="medium",
                message=(
                    f"Jackpot rate ({spins.jackpot_rate * 100:.2f}%) exceeds "
                    f"{settings.analytics_jackpot_rate_target * 100:g}% target"
                ),
            )
        )
    return alerts


class RewardsAnalyticsService:
    """Aggregate ledger, order and redemption data for the admin dashboard."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def compute_report(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        period: str | None = None,
        reference_time: datetime | None = None,
    ) -> RewardsAnalyticsReport:
        window = resolve_period(start=start, end=end, period=period, reference_time=reference_time)

        points, purchase_count, spins = await self._ledger_totals(window)
        outstanding, users = await self._profile_totals()
        points.outstanding_points = outstanding
        eligible_revenue, order_count, order_value_total = await self._order_totals(window)
        redemptions, redemption_count, redemption_costs = await self._redemption_totals(window)

        liability = (Decimal(outstanding) * settings.loyalty_point_value).quantize(Decimal("0.01"))
        giveback = float(redemption_costs / eligible_revenue * 100) if eligible_revenue > 0 else 0.0
        financial = FinancialSummary(
            eligible_revenue=eligible_revenue,
            redemption_costs=redemption_costs,
            giveback_percentage=round(giveback, 4),
            point_liability=liability,
            target_giveback_percentage=float(settings.analytics_giveback_target_percentage),
        )
        transactions = TransactionSummary(
            purchase_count=purchase_count,
            order_count=order_count,
            redemption_count=redemption_count,
            average_order_value=_money(order_value_total / order_count) if order_count else Decimal("0.00"),
            redemption_rate=round(redemption_count / purchase_count * 100, 4) if purchase_count else 0.0,
        )
        report = RewardsAnalyticsReport(
            generated_at=utcnow(),
            period=window,
            financial=financial,
            points=points,
            transactions=transactions,
            spins=spins,
            users=users,
            redemptions=redemptions,
            alerts=build_alerts(financial, spins),
        )
        logger.info(
            "Computed rewards analytics",
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            giveback_percentage=financial.giveback_percentage,
            point_liability=str(liability),
            alerts=len(report.alerts),
        )
        return report

    async def _ledger_totals(self, window: ReportPeriod) -> tuple[PointsSummary, int, SpinSummary]:
        in_window = (
            PointsTransaction.created_at >= window.start,
            PointsTransaction.created_at <= window.end,
        )
        stmt = (
            select(
                PointsTransaction.transaction_type,
                func.count(PointsTransaction.id),
                func.coalesce(func.sum(PointsTransaction.points), 0),
            )
            .where(*in_window)
            .group_by(PointsTransaction.transaction_type)
        )
        counts: dict[PointsTransactionType, int] = {}
        sums: dict[PointsTransactionType, int] = {}
        for entry_type, count, total in (await self._db.execute(stmt)).all():
            counts[entry_type] = int(count)
            sums[entry_type] = int(total)

        earned = sums.get(T.PURCHASE, 0)
        redeemed = -sums.get(T.REDEMPTION, 0)
        expired = -sums.get(T.EXPIRY, 0)
        points = PointsSummary(
            total_earned=earned,
            total_redeemed=redeemed,
            total_expired=expired,
            total_adjusted=sums.get(T.ADMIN_ADJUSTMENT, 0),
            outstanding_points=0,
            net_points_issued=earned - redeemed - expired,
        )

        wins_stmt = (
            select(PointsTransaction.points, func.count(PointsTransaction.id))
            .where(*in_window, PointsTransaction.transaction_type == T.SPIN_WIN)
            .group_by(PointsTransaction.points)
        )
        breakdown = {int(value): int(count) for value, count in (await self._db.execute(wins_stmt)).all()}
        total_spins = counts.get(T.SPIN_COST, 0)
        jackpot_wins = sum(count for value, count in breakdown.items() if value in JACKPOT_POINTS)
        spins = SpinSummary(
            total_spins=total_spins,
            total_spin_costs=-sums.get(T.SPIN_COST, 0),
            total_spin_winnings=sums.get(T.SPIN_WIN, 0),
            jackpot_wins=jackpot_wins,
            jackpot_rate=jackpot_wins / total_spins if total_spins else 0.0,
            result_breakdown=breakdown,
        )
        return points, counts.get(T.PURCHASE, 0), spins

    async def _profile_totals(self) -> tuple[int, UserSummary]:
        outstanding_stmt = select(func.coalesce(func.sum(LoyaltyProfile.current_points), 0))
        outstanding = int((await self._db.execute(outstanding_stmt)).scalar_one())

        tier_stmt = select(LoyaltyProfile.tier, func.count(LoyaltyProfile.user_id)).group_by(LoyaltyProfile.tier)
        per_tier = {tier: int(count) for tier, count in (await self._db.execute(tier_stmt)).all()}
        users = UserSummary(
            total_active=sum(per_tier.values()),
            regular_tier=per_tier.get(LoyaltyTierEnum.REGULAR, 0),
            senior_tier=per_tier.get(LoyaltyTierEnum.SENIOR, 0),
            volunteer_tier=per_tier.get(LoyaltyTierEnum.VOLUNTEER, 0),
        )
        return outstanding, users

    async def _order_totals(self, window: ReportPeriod) -> tuple[Decimal, int, Decimal]:
        stmt = select(
            func.coalesce(func.sum(Order.eligible_amount), 0),
            func.count(Order.id),
            func.coalesce(func.sum(Order.total), 0),
        ).where(Order.created_at >= window.start, Order.created_at <= window.end)
        eligible, count, total = (await self._db.execute(stmt)).one()
        return _money(eligible), int(count), Decimal(str(total or 0))

    async def _redemption_totals(self, window: ReportPeriod) -> tuple[RedemptionSummary, int, Decimal]:
        stmt = (
            select(
                RewardOffer.id,
                RewardOffer.name,
                RewardOffer.category,
                func.count(Redemption.id),
                func.coalesce(func.sum(Redemption.points_used), 0),
                func.coalesce(func.sum(Redemption.cogs_value), 0),
            )
            .join(RewardOffer, RewardOffer.id == Redemption.offer_id)
            .where(Redemption.redeemed_at >= window.start, Redemption.redeemed_at <= window.end)
            .group_by(RewardOffer.id, RewardOffer.name, RewardOffer.category)
            .order_by(RewardOffer.name)
        )
        by_category: dict[str, CategoryBreakdown] = {}
        by_offer: list[OfferBreakdown] = []
        total_count = 0
        total_cost = Decimal("0.00")
        for offer_id, name, category, count, points_used, cogs in (await self._db.execute(stmt)).all():
            cost = _money(cogs)
            by_offer.append(
                OfferBreakdown(
                    offer_id=str(offer_id),
                    name=name,
                    count=int(count),
                    points_used=int(points_used),
                    total_cost=cost,
                )
            )
            bucket = by_category.setdefault(category or "other", CategoryBreakdown(count=0, total_cost=Decimal("0.00")))
            bucket.count += int(count)
            bucket.total_cost += cost
            total_count += int(count)
            total_cost += cost

        summary = RedemptionSummary(
            by_category=by_category,
            by_offer=by_offer,
            average_cost=_money(total_cost / total_count) if total_count else Decimal("0.00"),
        )
        return summary, total_count, total_cost
