"""Customer-facing rewards endpoints: profile, history, offers, redemption and spins."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from kitchen_api.api.dependencies.identity import ensure_can_act_for, require_caller, require_staff
from kitchen_api.api.dependencies.services import get_profile_service, get_redemption_service, get_spin_service
from kitchen_api.core.clock import as_utc
from kitchen_api.core.errors import ValidationError
from kitchen_api.models.loyalty import LoyaltyProfile, PointsTransaction, PointsTransactionType, Redemption, RedemptionStatus, RewardOffer
from kitchen_api.services.identity import CallerIdentity
from kitchen_api.services.loyalty import (
    LoyaltyProfileService,
    RedemptionService,
    SpinService,
    decode_time_uuid_cursor,
    encode_time_uuid_cursor,
)


router = APIRouter(prefix="/rewards", tags=["rewards"])


class LoyaltyProfileResponse(BaseModel):
    userId: str
    currentPoints: int
    totalEarned: int
    totalRedeemed: int
    totalExpired: int
    tier: str
    canSpin: bool
    lastSpinDate: Optional[datetime]
    lifetimeSpins: int
    updatedAt: datetime


class PointsTransactionResponse(BaseModel):
    id: UUID
    type: str
    points: int
    balanceAfter: int
    description: Optional[str]
    orderId: Optional[UUID]
    metadata: dict[str, Any]
    createdAt: datetime
    expiresAt: Optional[datetime]


class PointsHistoryResponse(BaseModel):
    entries: List[PointsTransactionResponse]
    nextCursor: Optional[str]


class RewardOfferResponse(BaseModel):
    id: UUID
    slug: str
    name: str
    description: Optional[str]
    category: str
    pointsCost: int
    validUntil: Optional[datetime]
    remaining: Optional[int]


class RedemptionResponse(BaseModel):
    id: UUID
    offerId: UUID
    offerName: Optional[str]
    code: str
    pointsUsed: int
    status: str
    redeemedAt: datetime
    expiresAt: datetime
    usedAt: Optional[datetime]
    orderReference: Optional[str]


class RedeemRequest(BaseModel):
    userId: str = Field(..., min_length=1)
    offerId: UUID


class RedeemResponse(BaseModel):
    success: bool
    redemption: RedemptionResponse
    pointsDeducted: int
    newBalance: int


class RedemptionUseRequest(BaseModel):
    redemptionId: Optional[UUID] = Field(None, description="Redemption to consume")
    code: Optional[str] = Field(None, description="Voucher code shown to the customer")
    orderReference: Optional[str] = Field(None, description="Order the reward was applied to")

    @model_validator(mode="after")
    def _require_reference(self) -> "RedemptionUseRequest":
        if self.redemptionId is None and not self.code:
            raise ValueError("redemptionId or code must be provided")
        return self


class SpinRequest(BaseModel):
    userId: str = Field(..., min_length=1)


class SpinResponse(BaseModel):
    points: int
    isJackpot: bool
    cost: int
    newBalance: int
    nextSpinAvailable: datetime


class SpinStatusResponse(BaseModel):
    canSpin: bool
    reason: Optional[str]
    cost: int
    currentPoints: int
    lastSpinDate: Optional[datetime]
    nextSpinAvailable: Optional[datetime]


def profile_response(profile: LoyaltyProfile) -> LoyaltyProfileResponse:
    return LoyaltyProfileResponse(
        userId=profile.user_id,
        currentPoints=profile.current_points,
        totalEarned=profile.total_earned,
        totalRedeemed=profile.total_redeemed,
        totalExpired=profile.total_expired,
        tier=profile.tier.value,
        canSpin=profile.can_spin,
        lastSpinDate=as_utc(profile.last_spin_date),
        lifetimeSpins=profile.lifetime_spins,
        updatedAt=as_utc(profile.updated_at),
    )


def transaction_response(entry: PointsTransaction) -> PointsTransactionResponse:
    return PointsTransactionResponse(
        id=entry.id,
        type=entry.transaction_type.value,
        points=entry.points,
        balanceAfter=entry.balance_after,
        description=entry.description,
        orderId=entry.order_id,
        metadata=dict(entry.metadata_json or {}),
        createdAt=as_utc(entry.created_at),
        expiresAt=as_utc(entry.expires_at),
    )


def _offer_response(offer: RewardOffer) -> RewardOfferResponse:
    remaining = None
    if offer.max_redemptions is not None:
        remaining = max(0, offer.max_redemptions - offer.current_redemptions)
    return RewardOfferResponse(
        id=offer.id,
        slug=offer.slug,
        name=offer.name,
        description=offer.description,
        category=offer.category,
        pointsCost=offer.points_cost,
        validUntil=as_utc(offer.valid_until),
        remaining=remaining,
    )


def _redemption_response(redemption: Redemption) -> RedemptionResponse:
    return RedemptionResponse(
        id=redemption.id,
        offerId=redemption.offer_id,
        offerName=redemption.offer.name if redemption.offer is not None else None,
        code=redemption.code,
        pointsUsed=redemption.points_used,
        status=redemption.status.value,
        redeemedAt=as_utc(redemption.redeemed_at),
        expiresAt=as_utc(redemption.expires_at),
        usedAt=as_utc(redemption.used_at),
        orderReference=redemption.order_reference,
    )


def _parse_enum(enum_cls, raw: str, label: str):
    try:
        return enum_cls(raw.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown {label} '{raw}'") from exc


@router.get("/profile", response_model=LoyaltyProfileResponse)
async def get_profile(
    user_id: Optional[str] = Query(None, alias="userId"),
    caller: CallerIdentity = Depends(require_caller),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> LoyaltyProfileResponse:
    target = user_id or caller.user_id
    ensure_can_act_for(caller, target)
    return profile_response(await service.get_profile(target))


@router.get("/history", response_model=PointsHistoryResponse)
async def get_history(
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(25, ge=1, le=100),
    cursor: Optional[str] = Query(None),
    entry_type: Optional[List[str]] = Query(None, alias="type"),
    caller: CallerIdentity = Depends(require_caller),
    service: LoyaltyProfileService = Depends(get_profile_service),
) -> PointsHistoryResponse:
    target = user_id or caller.user_id
    ensure_can_act_for(caller, target)
    decoded = decode_time_uuid_cursor(cursor) if cursor else None
    types = [_parse_enum(PointsTransactionType, raw, "transaction type") for raw in entry_type or []]
    entries, next_cursor = await service.history(target, limit=limit, cursor=decoded, entry_types=types or None)
    return PointsHistoryResponse(
        entries=[transaction_response(entry) for entry in entries],
        nextCursor=encode_time_uuid_cursor(*next_cursor) if next_cursor else None,
    )


@router.get("/offers", response_model=List[RewardOfferResponse])
async def list_offers(
    caller: CallerIdentity = Depends(require_caller),
    service: RedemptionService = Depends(get_redemption_service),
) -> List[RewardOfferResponse]:
    return [_offer_response(offer) for offer in await service.list_offers()]


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_offer(
    payload: RedeemRequest,
    caller: CallerIdentity = Depends(require_caller),
    service: RedemptionService = Depends(get_redemption_service),
) -> RedeemResponse:
    ensure_can_act_for(caller, payload.userId)
    result = await service.redeem(payload.userId, payload.offerId)
    return RedeemResponse(
        success=result.success,
        redemption=_redemption_response(result.redemption),
        pointsDeducted=result.points_deducted,
        newBalance=result.new_balance,
    )


@router.get("/redemptions", response_model=List[RedemptionResponse])
async def list_redemptions(
    user_id: Optional[str] = Query(None, alias="userId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    caller: CallerIdentity = Depends(require_caller),
    service: RedemptionService = Depends(get_redemption_service),
) -> List[RedemptionResponse]:
    target = user_id or caller.user_id
    ensure_can_act_for(caller, target)
    status_value = _parse_enum(RedemptionStatus, status_filter, "redemption status") if status_filter else None
    redemptions = await service.list_redemptions(target, status=status_value)
    return [_redemption_response(redemption) for redemption in redemptions]


@router.post("/redemptions/use", response_model=RedemptionResponse)
async def use_redemption(
    payload: RedemptionUseRequest,
    caller: CallerIdentity = Depends(require_staff),
    service: RedemptionService = Depends(get_redemption_service),
) -> RedemptionResponse:
    redemption = await service.mark_used(
        redemption_id=payload.redemptionId,
        code=payload.code,
        order_reference=payload.orderReference,
    )
    return _redemption_response(redemption)


@router.post("/spin", response_model=SpinResponse)
async def spin_wheel(
    payload: SpinRequest,
    caller: CallerIdentity = Depends(require_caller),
    service: SpinService = Depends(get_spin_service),
) -> SpinResponse:
    ensure_can_act_for(caller, payload.userId)
    result = await service.spin(payload.userId)
    return SpinResponse(
        points=result.points,
        isJackpot=result.is_jackpot,
        cost=result.cost,
        newBalance=result.new_balance,
        nextSpinAvailable=result.next_spin_available,
    )


@router.get("/spin/status", response_model=SpinStatusResponse)
async def spin_status(
    user_id: Optional[str] = Query(None, alias="userId"),
    caller: CallerIdentity = Depends(require_caller),
    service: SpinService = Depends(get_spin_service),
) -> SpinStatusResponse:
    target = user_id or caller.user_id
    ensure_can_act_for(caller, target)
    status_info = await service.spin_status(target)
    return SpinStatusResponse(
        canSpin=status_info.can_spin,
        reason=status_info.reason,
        cost=status_info.cost,
        currentPoints=status_info.current_points,
        lastSpinDate=status_info.last_spin_date,
        nextSpinAvailable=status_info.next_spin_available,
    )
