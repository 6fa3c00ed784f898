"""Admin rewards operations: analytics, balance adjustments, tiers and expiry."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from kitchen_api.api.dependencies.identity import require_admin
from kitchen_api.api.dependencies.services import get_profile_service, get_redemption_service
from kitchen_api.api.v1.endpoints.rewards import (
    LoyaltyProfileResponse,
    PointsTransactionResponse,
    profile_response,
    transaction_response,
)
from kitchen_api.core.errors import ValidationError
from kitchen_api.db.session import get_session
from kitchen_api.models.loyalty import LoyaltyTierEnum
from kitchen_api.services.identity import CallerIdentity
from kitchen_api.services.loyalty import LoyaltyProfileService, RedemptionService, RewardsAnalyticsService


router = APIRouter(prefix="/rewards/admin", tags=["rewards-admin"])


class PeriodPayload(BaseModel):
    start: datetime
    end: datetime
    days: int


class FinancialPayload(BaseModel):
    totalPurchaseAmount: Decimal
    totalRedemptionCosts: Decimal
    givebackPercentage: float
    pointLiability: Decimal
    targetGivebackPercentage: float


class PointsPayload(BaseModel):
    totalEarned: int
    totalRedeemed: int
    totalExpired: int
    totalAdjusted: int
    outstandingPoints: int
    netPointsIssued: int


class TransactionsPayload(BaseModel):
    purchaseCount: int
    orderCount: int
    redemptionCount: int
    averageOrderValue: Decimal
    redemptionRate: float


class SpinsPayload(BaseModel):
    totalSpins: int
    totalSpinCosts: int
    totalSpinWinnings: int
    jackpotWins: int
    jackpotRate: float
    resultBreakdown: Dict[str, int]


class UsersPayload(BaseModel):
    totalActive: int
    regularTier: int
    seniorTier: int
    volunteerTier: int


class CategoryPayload(BaseModel):
    count: int
    totalCost: Decimal


class OfferPayload(BaseModel):
    offerId: str
    name: str
    count: int
    pointsUsed: int
    totalCost: Decimal


class RedemptionsPayload(BaseModel):
    byCategory: Dict[str, CategoryPayload]
    byOffer: List[OfferPayload]
    averageCost: Decimal


class AlertPayload(BaseModel):
    type: str
    severity: str
    message: str


class AnalyticsResponse(BaseModel):
    generatedAt: datetime
    period: PeriodPayload
    financial: FinancialPayload
    points: PointsPayload
    transactions: TransactionsPayload
    spins: SpinsPayload
    users: UsersPayload
    redemptions: RedemptionsPayload
    alerts: List[AlertPayload]


class AdjustPointsRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    points: int = Field(..., description="Signed delta; negative values debit the balance")
    reason: str = Field(..., min_length=1, max_length=255)


class AdjustPointsResponse(BaseModel):
    profile: LoyaltyProfileResponse
    transaction: PointsTransactionResponse


class SetTierRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    tier: str


class SpinEligibilityRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    canSpin: bool


class ExpiryRunResponse(BaseModel):
    referenceTime: datetime
    profilesTouched: int
    lotsClosed: int
    pointsExpired: int
    redemptionsExpired: int


class BalanceCheckResponse(BaseModel):
    userId: str
    consistent: bool
    ledgerBalance: int
    cachedBalance: int
    earned: int
    redeemed: int
    expired: int


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_rewards_analytics(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    period: str = Query("30d"),
    admin: CallerIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
) -> AnalyticsResponse:
    report = await RewardsAnalyticsService(session).compute_report(start=start_date, end=end_date, period=period)
    return AnalyticsResponse(
        generatedAt=report.generated_at,
        period=PeriodPayload(start=report.period.start, end=report.period.end, days=report.period.days),
        financial=FinancialPayload(
            totalPurchaseAmount=report.financial.eligible_revenue,
            totalRedemptionCosts=report.financial.redemption_costs,
            givebackPercentage=report.financial.giveback_percentage,
            pointLiability=report.financial.point_liability,
            targetGivebackPercentage=report.financial.target_giveback_percentage,
        ),
        points=PointsPayload(
            totalEarned=report.points.total_earned,
            totalRedeemed=report.points.total_redeemed,
            totalExpired=report.points.total_expired,
            totalAdjusted=report.points.total_adjusted,
            outstandingPoints=report.points.outstanding_points,
            netPointsIssued=report.points.net_points_issued,
        ),
        transactions=TransactionsPayload(
            purchaseCount=report.transactions.purchase_count,
            orderCount=report.transactions.order_count,
            redemptionCount=report.transactions.redemption_count,
            averageOrderValue=report.transactions.average_order_value,
            redemptionRate=report.transactions.redemption_rate,
        ),
        spins=SpinsPayload(
            totalSpins=report.spins.total_spins,
            totalSpinCosts=report.spins.total_spin_costs,
            totalSpinWinnings=report.spins.total_spin_winnings,
            jackpotWins=report.spins.jackpot_wins,
            jackpotRate=report.spins.jackpot_rate,
            resultBreakdown={str(points): count for points, count in report.spins.result_breakdown.items()},
        ),
        users=UsersPayload(
            totalActive=report.users.total_active,
            regularTier=report.users.regular_tier,
            seniorTier=report.users.senior_tier,
            volunteerTier=report.users.volunteer_tier,
        ),
        redemptions=RedemptionsPayload(
            byCategory={
                category: CategoryPayload(count=bucket.count, totalCost=bucket.total_cost)
                for category, bucket in report.redemptions.by_category.items()
            },
            byOffer=[
                OfferPayload(
                    offerId=offer.offer_id,
                    name=offer.name,
                    count=offer.count,
                    pointsUsed=offer.points_used,
                    totalCost=offer.total_cost,
                )
                for offer in report.redemptions.by_offer
            ],
            averageCost=report.redemptions.average_cost,
        ),
        alerts=[AlertPayload(type=alert.type, severity=alert.severity, message=alert.message) for alert in report.alerts],
    )


@router.post("/adjust", response_model=AdjustPointsResponse)
async def adjust_points(
    payload: AdjustPointsRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> AdjustPointsResponse:
    result = await service.adjust_points(payload.userId, payload.points, reason=payload.reason, actor_id=admin.user_id)
    return AdjustPointsResponse(profile=profile_response(result.profile), transaction=transaction_response(result.entry))


@router.post("/tier", response_model=LoyaltyProfileResponse)
async def set_tier(
    payload: SetTierRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> LoyaltyProfileResponse:
    try:
        tier = LoyaltyTierEnum(payload.tier.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown loyalty tier '{payload.tier}'") from exc
    return profile_response(await service.set_tier(payload.userId, tier, actor_id=admin.user_id))


@router.post("/spin-eligibility", response_model=LoyaltyProfileResponse)
async def set_spin_eligibility(
    payload: SpinEligibilityRequest,
    admin: CallerIdentity = Depends(require_admin),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> LoyaltyProfileResponse:
    return profile_response(await service.set_spin_enabled(payload.userId, payload.canSpin, actor_id=admin.user_id))


@router.post("/expire", response_model=ExpiryRunResponse)
async def run_expiry(
    admin: CallerIdentity = Depends(require_admin),
    profiles: LoyaltyProfileService = Depends(get_profile_service),
    redemptions: RedemptionService = Depends(get_redemption_service),
) -> ExpiryRunResponse:
    """Close expired purchase lots, then mark stale vouchers expired."""

    sweep = await profiles.expire_points()
    expired_redemptions = await redemptions.expire_redemptions(reference_time=sweep.reference_time)
    return ExpiryRunResponse(
        referenceTime=sweep.reference_time,
        profilesTouched=sweep.profiles_touched,
        lotsClosed=sweep.lots_closed,
        pointsExpired=sweep.points_expired,
        redemptionsExpired=expired_redemptions,
    )


@router.get("/verify", response_model=BalanceCheckResponse)
async def verify_balance(
    user_id: str = Query(..., alias="userId"),
    admin: CallerIdentity = Depends(require_admin),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> BalanceCheckResponse:
    check = await service.verify(user_id)
    return BalanceCheckResponse(
        userId=check.user_id,
        consistent=check.consistent,
        ledgerBalance=check.ledger_balance,
        cachedBalance=check.cached_balance,
        earned=check.earned,
        redeemed=check.redeemed,
        expired=check.expired,
    )
