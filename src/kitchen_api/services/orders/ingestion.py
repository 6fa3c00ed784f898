"""Materialise orders from payment gateway events exactly once.

The ``processed_events`` row is written in the same transaction as the order
and its points accrual.  Gateways deliver at least once and out of order, so
that marker (plus a secondary check on the payment intent, which Stripe
reports through both checkout and payment-intent events) is the only thing
that decides whether an event has already produced an order.  When the
payment intent wins the race, the later checkout event rebuilds that order
from the session line items and settles the points difference.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.clock import utcnow
from kitchen_api.core.errors import ExternalServiceError, ValidationError
from kitchen_api.core.settings import settings
from kitchen_api.db.transactions import run_in_transaction
from kitchen_api.models.loyalty import LoyaltyProfile, LoyaltyTierEnum, PointsTransactionType
from kitchen_api.models.order import Order, OrderItem, OrderStatusEnum, OrderTypeEnum
from kitchen_api.models.order_status_event import OrderStatusEvent
from kitchen_api.models.processed_event import ProcessedEvent
from kitchen_api.services.identity import IdentityProvider
from kitchen_api.services.loyalty.eligibility import (
    CENT,
    EligibilityPolicy,
    KeywordEligibilityPolicy,
    LineItem,
    eligible_amount,
    points_for_amount,
)
from kitchen_api.services.loyalty.events import ProfileChange, ProfileEvents
from kitchen_api.services.loyalty.ledger import LoyaltyLedger
from kitchen_api.services.payments.stripe_gateway import StripeGateway, cents_to_dollars

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
SUPPORTED_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED, PAYMENT_SUCCEEDED})

MESSAGE_CREATED = "Order created successfully"
MESSAGE_REPLAY = "Event already processed"
MESSAGE_DUPLICATE_PAYMENT = "Payment already recorded"
MESSAGE_RECONCILED = "Order updated from checkout session"
MESSAGE_IGNORED = "Event type ignored"


@dataclass(slots=True)
class IngestionResult:
    order_id: UUID | None
    message: str
    created: bool = False
    points_earned: int = 0


@dataclass(slots=True)
class PaymentSnapshot:
    """Gateway-agnostic view of the paid checkout."""

    event_id: str
    event_type: str
    total: Decimal
    tax: Decimal
    other_discount: Decimal
    currency: str
    shipping: Decimal = Decimal("0.00")
    items: list[LineItem] = field(default_factory=list)
    email: str | None = None
    customer_name: str | None = None
    payment_reference: str | None = None
    checkout_session_id: str | None = None
    order_type: OrderTypeEnum = OrderTypeEnum.PICKUP

    is_test: bool = False

    @property
    def subtotal(self) -> Decimal:
        return self.total - self.tax - self.shipping


def _parse_order_type(metadata: Mapping[str, Any] | None) -> OrderTypeEnum:
    raw = str((metadata or {}).get("order_type") or "").strip().lower()
    try:
        return OrderTypeEnum(raw) if raw else OrderTypeEnum.PICKUP
    except ValueError as exc:
        raise ValidationError(f"Unknown order type '{raw}'") from exc


def _line_items_from_payload(raw_items: list[Mapping[str, Any]]) -> list[LineItem]:
    items: list[LineItem] = []
    for raw in raw_items:
        product = (raw.get("price") or {}).get("product")
        product_name = product.get("name") if isinstance(product, Mapping) else None
        items.append(
            LineItem(
                name=product_name or raw.get("description") or "Unknown Item",
                quantity=int(raw.get("quantity") or 1),
                amount=cents_to_dollars(raw.get("amount_total")),
            )
        )
    return items


def _generate_order_number(now: datetime) -> str:
    return f"KB-{now:%y%m%d}-{secrets.token_hex(3).upper()}"


class OrderIngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        identity: IdentityProvider,
        gateway: StripeGateway | None = None,
        policy: EligibilityPolicy | None = None,
        events: ProfileEvents | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._identity = identity
        self._gateway = gateway
        self._policy = policy or KeywordEligibilityPolicy()
        self._events = events or ProfileEvents()

    async def ingest(self, event: Mapping[str, Any]) -> IngestionResult:
        """Turn a verified gateway event into an order; replays are no-op successes."""

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("Payment event is missing an id or type")

        if event_type not in SUPPORTED_EVENT_TYPES:
            logger.info("Ignoring unsupported payment event", event_id=event_id, event_type=event_type)
            return IngestionResult(order_id=None, message=MESSAGE_IGNORED)

        async with self._session_factory() as session:
            marker = await session.get(ProcessedEvent, event_id)
        if marker is not None:
            logger.info("Payment event already processed", event_id=event_id, order_id=str(marker.order_id))
            return IngestionResult(order_id=marker.order_id, message=MESSAGE_REPLAY)

        snapshot = await self._build_snapshot(event_id, event_type, (event.get("data") or {}).get("object") or {})
        user_id = await self._identity.resolve_user_id(snapshot.email) if snapshot.email else None

        async def _materialize(session: AsyncSession) -> tuple[IngestionResult, ProfileChange | None]:
            return await self._materialize(session, snapshot, user_id)

        result, change = await run_in_transaction(self._session_factory, _materialize, name="order_ingestion")
        if change is not None:
            self._events.publish(change)
        return result

    async def _build_snapshot(self, event_id: str, event_type: str, payload: Mapping[str, Any]) -> PaymentSnapshot:
        if event_type == PAYMENT_SUCCEEDED:
            amount = cents_to_dollars(payload.get("amount_received") or payload.get("amount"))
            return PaymentSnapshot(
                event_id=event_id,
                event_type=event_type,
                total=amount,
                tax=Decimal("0.00"),
                other_discount=Decimal("0.00"),
                currency=payload.get("currency") or "usd",
                items=[LineItem(name=payload.get("description") or "Payment", quantity=1, amount=amount)],
                email=payload.get("receipt_email"),
                payment_reference=payload.get("id"),
                order_type=_parse_order_type(payload.get("metadata")),
                is_test=not payload.get("livemode", False),
            )

        session_id = payload.get("id")
        embedded = (payload.get("line_items") or {}).get("data")
        if embedded is not None:
            items = _line_items_from_payload(embedded)
        elif self._gateway is not None and session_id:
            items = await self._gateway.list_line_items(session_id)
        else:
            raise ExternalServiceError(f"Line items unavailable for checkout session {session_id}")

        totals = payload.get("total_details") or {}
        customer = payload.get("customer_details") or {}
        return PaymentSnapshot(
            event_id=event_id,
            event_type=event_type,
            total=cents_to_dollars(payload.get("amount_total")),
            tax=cents_to_dollars(totals.get("amount_tax")),
            other_discount=cents_to_dollars(totals.get("amount_discount")),
            currency=payload.get("currency") or "usd",
            shipping=cents_to_dollars(totals.get("amount_shipping")),
            items=items,
            email=customer.get("email") or payload.get("customer_email"),
            customer_name=customer.get("name"),
            payment_reference=payload.get("payment_intent"),
            checkout_session_id=session_id,
            order_type=_parse_order_type(payload.get("metadata")),
            is_test=not payload.get("livemode", False),
        )

    def _volunteer_discount(
        self,
        profile: LoyaltyProfile | None,
        eligible: Decimal,
        snapshot: PaymentSnapshot,
    ) -> Decimal:
        if (
            profile is None
            or profile.tier is not LoyaltyTierEnum.VOLUNTEER
            or eligible < settings.volunteer_discount_threshold
            or snapshot.other_discount != 0
        ):
            return Decimal("0.00")
        return (eligible * settings.volunteer_discount_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    def _order_items(self, snapshot: PaymentSnapshot) -> list[OrderItem]:
        return [
            OrderItem(
                name=item.name,
                quantity=item.quantity,
                unit_price=(item.amount / item.quantity).quantize(CENT),
                total_price=item.amount,
                points_eligible=self._policy.is_eligible(item),
            )
            for item in snapshot.items
        ]

    async def _materialize(
        self,
        session: AsyncSession,
        snapshot: PaymentSnapshot,
        user_id: str | None,
    ) -> tuple[IngestionResult, ProfileChange | None]:
        marker = await session.get(ProcessedEvent, snapshot.event_id)
        if marker is not None:
            return IngestionResult(order_id=marker.order_id, message=MESSAGE_REPLAY), None

        now = utcnow()
        if snapshot.payment_reference:
            stmt = select(Order).where(Order.payment_reference == snapshot.payment_reference)
            existing = (await session.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                result = IngestionResult(order_id=existing.id, message=MESSAGE_DUPLICATE_PAYMENT)
                change: ProfileChange | None = None
                # a bare payment intent landed first; the checkout session carries the real basket
                if snapshot.event_type == CHECKOUT_COMPLETED and existing.checkout_session_id is None:
                    result, change = await self._reconcile_with_checkout(session, existing, snapshot, user_id, now)
                session.add(
                    ProcessedEvent(
                        external_event_id=snapshot.event_id,
                        event_type=snapshot.event_type,
                        order_id=existing.id,
                        processed_at=now,
                    )
                )
                await session.flush()
                logger.info(
                    "Payment already materialised by a sibling event",
                    event_id=snapshot.event_id,
                    order_id=str(existing.id),
                    reconciled=result.message == MESSAGE_RECONCILED,
                )
                return result, change

        ledger = LoyaltyLedger(session)
        eligible = eligible_amount(snapshot.subtotal, snapshot.items, self._policy)
        profile = await ledger.get_profile(user_id) if user_id else None
        discount = self._volunteer_discount(profile, eligible, snapshot)

        order = Order(
            id=uuid4(),
            order_number=_generate_order_number(now),
            user_id=user_id,
            customer_email=snapshot.email,
            customer_name=snapshot.customer_name,
            status=OrderStatusEnum.PENDING,
            order_type=snapshot.order_type,
            subtotal=snapshot.subtotal,
            tax=snapshot.tax,
            discount=discount,
            total=snapshot.total - discount,
            eligible_amount=eligible,
            points_earned=0,
            has_volunteer_discount=discount > 0,
            currency=snapshot.currency,
            is_test=snapshot.is_test,
            source_event_id=snapshot.event_id,
            payment_reference=snapshot.payment_reference,
            checkout_session_id=snapshot.checkout_session_id,
            created_at=now,
            updated_at=now,
        )
        order.items = self._order_items(snapshot)
        order.status_events = [
            OrderStatusEvent(
                from_status=None,
                to_status=OrderStatusEnum.PENDING.value,
                reason="Payment received",
                created_at=now,
            )
        ]
        session.add(order)
        await session.flush()

        change = None
        if user_id and eligible > 0:
            accrual = await ledger.accrue_purchase(
                user_id,
                eligible,
                order_id=order.id,
                source_event_id=snapshot.event_id,
                now=now,
            )
            order.points_earned = accrual.points
            if accrual.entry is not None:
                change = ProfileChange.from_profile(accrual.profile, "purchase")

        session.add(
            ProcessedEvent(
                external_event_id=snapshot.event_id,
                event_type=snapshot.event_type,
                order_id=order.id,
                processed_at=now,
            )
        )
        await session.flush()

        logger.info(
            "Order materialised from payment event",
            event_id=snapshot.event_id,
            order_id=str(order.id),
            user_id=user_id,
            eligible_amount=str(eligible),
            points_earned=order.points_earned,
            volunteer_discount=str(discount),
        )
        result = IngestionResult(
            order_id=order.id,
            message=MESSAGE_CREATED,
            created=True,
            points_earned=order.points_earned,
        )
        return result, change

    async def _reconcile_with_checkout(
        self,
        session: AsyncSession,
        order: Order,
        snapshot: PaymentSnapshot,
        user_id: str | None,
        now: datetime,
    ) -> tuple[IngestionResult, ProfileChange | None]:
        """Rebuild a payment-intent order from its checkout session and settle the points difference."""

        ledger = LoyaltyLedger(session)
        owner = order.user_id or user_id
        eligible = eligible_amount(snapshot.subtotal, snapshot.items, self._policy)
        profile = await ledger.get_profile(owner) if owner else None
        discount = self._volunteer_discount(profile, eligible, snapshot)

        order.user_id = owner
        order.customer_email = order.customer_email or snapshot.email
        order.customer_name = order.customer_name or snapshot.customer_name
        order.order_type = snapshot.order_type
        order.subtotal = snapshot.subtotal
        order.tax = snapshot.tax
        order.discount = discount
        order.total = snapshot.total - discount
        order.eligible_amount = eligible
        order.has_volunteer_discount = discount > 0
        order.checkout_session_id = snapshot.checkout_session_id
        order.items = self._order_items(snapshot)
        order.updated_at = now

        delta = (points_for_amount(eligible) if owner else 0) - order.points_earned
        change: ProfileChange | None = None
        if delta and owner:
            if profile is None:
                profile, _ = await ledger.ensure_profile(owner)
            if delta < 0:
                # points already spent stay spent
                delta = max(delta, -profile.current_points)
        if delta and profile is not None:
            metadata = {
                "eligible_amount": str(eligible),
                "source_event_id": snapshot.event_id,
                "order_id": str(order.id),
            }
            if delta > 0:
                await ledger.append_entry(
                    profile,
                    PointsTransactionType.PURCHASE,
                    delta,
                    description=f"Points earned on ${eligible} purchase",
                    metadata=metadata,
                    order_id=order.id,
                    expires_at=now + timedelta(days=settings.loyalty_points_expiry_days),
                    now=now,
                )
            else:
                await ledger.append_entry(
                    profile,
                    PointsTransactionType.ADMIN_ADJUSTMENT,
                    delta,
                    description="Points corrected from checkout line items",
                    metadata={**metadata, "reason": "checkout_reconciliation"},
                    order_id=order.id,
                    now=now,
                )
            order.points_earned += delta
            change = ProfileChange.from_profile(profile, "purchase")

        await session.flush()
        logger.info(
            "Order reconciled with checkout session",
            event_id=snapshot.event_id,
            order_id=str(order.id),
            user_id=owner,
            eligible_amount=str(eligible),
            points_delta=delta,
            points_earned=order.points_earned,
        )
        result = IngestionResult(order_id=order.id, message=MESSAGE_RECONCILED, points_earned=order.points_earned)
        return result, change
