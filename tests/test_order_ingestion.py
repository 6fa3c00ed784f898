from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import func, select

from kitchen_api.core.errors import ExternalServiceError
from kitchen_api.models.loyalty import LoyaltyTierEnum, PointsTransaction, PointsTransactionType
from kitchen_api.models.order import Order, OrderStatusEnum, OrderTypeEnum
from kitchen_api.models.processed_event import ProcessedEvent
from kitchen_api.services.loyalty import LoyaltyProfileService, ProfileEvents
from kitchen_api.services.loyalty.eligibility import LineItem
from kitchen_api.services.orders.ingestion import OrderIngestionService


class FakeIdentity:
    def __init__(self, directory: dict[str, str] | None = None) -> None:
        self.directory = directory or {}

    async def resolve_user_id(self, email: str) -> str | None:
        return self.directory.get(email.lower())


class FakeGateway:
    def __init__(self, items: list[LineItem]) -> None:
        self.items = items
        self.calls: list[str] = []

    async def list_line_items(self, checkout_session_id: str) -> list[LineItem]:
        self.calls.append(checkout_session_id)
        return self.items


def _line(name: str, cents: int, quantity: int = 1) -> dict[str, Any]:
    return {
        "description": name,
        "quantity": quantity,
        "amount_total": cents,
        "price": {"product": {"name": name}},
    }


def checkout_event(
    event_id: str,
    *,
    items: list[dict[str, Any]] | None,
    email: str | None = "dee@example.com",
    tax: int = 0,
    discount: int = 0,
    shipping: int = 0,
    payment_intent: str | None = "pi_default",
    session_id: str = "cs_test_1",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    subtotal = sum(item["amount_total"] for item in items or [])
    session: dict[str, Any] = {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": subtotal + tax + shipping - discount,
        "currency": "usd",
        "customer_details": {"email": email, "name": "Dee Diner"},
        "payment_intent": payment_intent,
        "total_details": {"amount_tax": tax, "amount_discount": discount, "amount_shipping": shipping},
        "metadata": metadata or {},
        "livemode": False,
    }
    if items is not None:
        session["line_items"] = {"data": items}
    return {"id": event_id, "type": "checkout.session.completed", "data": {"object": session}}


def payment_intent_event(event_id: str, intent_id: str, cents: int, *, email: str | None = None) -> dict[str, Any]:
    intent: dict[str, Any] = {"id": intent_id, "amount": cents, "amount_received": cents, "currency": "usd"}
    if email:
        intent["receipt_email"] = email
    return {"id": event_id, "type": "payment_intent.succeeded", "data": {"object": intent}}


STANDARD_ITEMS = [
    _line("Smash Burger", 1800),
    _line("Loaded Fries", 700),
    _line("Tip", 500),
    _line("Delivery Fee", 350),
]


async def _count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        column = list(model.__table__.primary_key.columns)[0]
        stmt = select(func.count(column))
        if criteria:
            stmt = stmt.where(*criteria)
        return (await session.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_checkout_creates_order_and_accrues_points(session_factory) -> None:
    events = ProfileEvents()
    received = []
    events.subscribe(received.append)
    service = OrderIngestionService(
        session_factory,
        identity=FakeIdentity({"dee@example.com": "user-dee"}),
        events=events,
    )

    result = await service.ingest(
        checkout_event("evt_1", items=STANDARD_ITEMS, metadata={"order_type": "delivery"})
    )

    assert result.message == "Order created successfully"
    assert result.created is True
    assert result.points_earned == 250

    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
        assert order.user_id == "user-dee"
        assert order.status is OrderStatusEnum.PENDING
        assert order.order_type is OrderTypeEnum.DELIVERY
        assert order.subtotal == Decimal("33.50")
        assert order.eligible_amount == Decimal("25.00")
        assert order.points_earned == 250
        assert order.order_number.startswith("KB-")
        assert {item.name: item.points_eligible for item in order.items}["Tip"] is False
        assert [(event.from_status, event.to_status) for event in order.status_events] == [(None, "pending")]

        entry = (await session.execute(select(PointsTransaction))).scalars().one()
        assert entry.transaction_type is PointsTransactionType.PURCHASE
        assert entry.order_id == order.id
        assert entry.metadata_json["source_event_id"] == "evt_1"

        marker = await session.get(ProcessedEvent, "evt_1")
        assert marker.order_id == order.id

    profile = await LoyaltyProfileService(session_factory).get_profile("user-dee")
    assert profile.current_points == 250
    assert received[0].reason == "purchase"


@pytest.mark.asyncio
async def test_replayed_event_is_a_no_op(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"dee@example.com": "user-dee"}))
    event = checkout_event("evt_123", items=STANDARD_ITEMS)

    first = await service.ingest(event)
    second = await service.ingest(event)

    assert second.order_id == first.order_id
    assert second.message == "Event already processed"
    assert second.created is False
    assert await _count(session_factory, Order) == 1
    assert await _count(session_factory, PointsTransaction) == 1
    profile = await LoyaltyProfileService(session_factory).get_profile("user-dee")
    assert profile.current_points == 250


@pytest.mark.asyncio
async def test_sibling_payment_event_reuses_order(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"dee@example.com": "user-dee"}))
    first = await service.ingest(checkout_event("evt_checkout", items=STANDARD_ITEMS, payment_intent="pi_42"))

    second = await service.ingest(
        {
            "id": "evt_payment",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": "pi_42",
                    "amount": 3350,
                    "amount_received": 3350,
                    "currency": "usd",
                    "receipt_email": "dee@example.com",
                }
            },
        }
    )

    assert second.order_id == first.order_id
    assert second.message == "Payment already recorded"
    assert await _count(session_factory, Order) == 1
    assert await _count(session_factory, PointsTransaction) == 1
    assert await _count(session_factory, ProcessedEvent) == 2


@pytest.mark.asyncio
async def test_checkout_after_bare_payment_intent_links_customer_and_accrues(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"dee@example.com": "user-dee"}))
    first = await service.ingest(payment_intent_event("evt_payment", "pi_42", 3350))
    assert first.created is True
    assert first.points_earned == 0

    second = await service.ingest(checkout_event("evt_checkout", items=STANDARD_ITEMS, payment_intent="pi_42"))

    assert second.order_id == first.order_id
    assert second.message == "Order updated from checkout session"
    assert second.points_earned == 250
    assert await _count(session_factory, Order) == 1
    assert await _count(session_factory, ProcessedEvent) == 2

    async with session_factory() as session:
        order = await session.get(Order, first.order_id)
        assert order.user_id == "user-dee"
        assert order.customer_email == "dee@example.com"
        assert order.checkout_session_id == "cs_test_1"
        assert order.eligible_amount == Decimal("25.00")
        assert order.points_earned == 250
        assert sorted(item.name for item in order.items) == ["Delivery Fee", "Loaded Fries", "Smash Burger", "Tip"]

        entry = (await session.execute(select(PointsTransaction))).scalars().one()
        assert entry.transaction_type is PointsTransactionType.PURCHASE
        assert entry.points == 250
        assert entry.expires_at is not None

    # a late replay of either event changes nothing
    again = await service.ingest(checkout_event("evt_checkout", items=STANDARD_ITEMS, payment_intent="pi_42"))
    assert again.message == "Event already processed"
    assert (await LoyaltyProfileService(session_factory).get_profile("user-dee")).current_points == 250


@pytest.mark.asyncio
async def test_checkout_after_payment_intent_removes_ineligible_points(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"dee@example.com": "user-dee"}))
    first = await service.ingest(payment_intent_event("evt_payment", "pi_43", 3350, email="dee@example.com"))
    assert first.points_earned == 335

    second = await service.ingest(checkout_event("evt_checkout", items=STANDARD_ITEMS, payment_intent="pi_43"))

    assert second.order_id == first.order_id
    assert second.points_earned == 250

    profile = await LoyaltyProfileService(session_factory).get_profile("user-dee")
    assert profile.current_points == 250
    assert profile.current_points == profile.total_earned - profile.total_redeemed - profile.total_expired
    check = await LoyaltyProfileService(session_factory).verify("user-dee")
    assert check.consistent

    async with session_factory() as session:
        order = await session.get(Order, first.order_id)
        assert order.points_earned == 250
        assert order.eligible_amount == Decimal("25.00")


@pytest.mark.asyncio
async def test_stripe_shipping_is_not_eligible_for_points(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"dee@example.com": "user-dee"}))

    result = await service.ingest(
        checkout_event(
            "evt_shipping",
            items=[_line("Smash Burger", 1800), _line("Loaded Fries", 700)],
            shipping=500,
        )
    )

    assert result.points_earned == 250
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
        assert order.subtotal == Decimal("25.00")
        assert order.total == Decimal("30.00")
        assert order.eligible_amount == Decimal("25.00")


@pytest.mark.asyncio
async def test_payment_intent_event_creates_single_item_order(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"pat@example.com": "user-pat"}))

    result = await service.ingest(
        {
            "id": "evt_pi_only",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": "pi_77",
                    "amount": 1234,
                    "currency": "usd",
                    "description": "Counter order",
                    "receipt_email": "PAT@example.com",
                }
            },
        }
    )

    assert result.points_earned == 123
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
        assert order.payment_reference == "pi_77"
        assert [item.name for item in order.items] == ["Counter order"]
        assert order.order_type is OrderTypeEnum.PICKUP


@pytest.mark.asyncio
async def test_volunteer_discount_applies_above_threshold(session_factory, seed_profile) -> None:
    await seed_profile("user-vol", tier=LoyaltyTierEnum.VOLUNTEER)
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"vol@example.com": "user-vol"}))

    result = await service.ingest(
        checkout_event("evt_vol", items=[_line("Catering Tray", 6000)], email="vol@example.com", tax=480)
    )

    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
    assert order.has_volunteer_discount is True
    assert order.discount == Decimal("6.00")
    assert order.total == Decimal("58.80")
    assert order.points_earned == 600


@pytest.mark.asyncio
async def test_volunteer_discount_skipped_when_other_discount_present(session_factory, seed_profile) -> None:
    await seed_profile("user-vol2", tier=LoyaltyTierEnum.VOLUNTEER)
    service = OrderIngestionService(session_factory, identity=FakeIdentity({"vol2@example.com": "user-vol2"}))

    result = await service.ingest(
        checkout_event("evt_vol2", items=[_line("Catering Tray", 6000)], email="vol2@example.com", discount=500)
    )

    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
    assert order.has_volunteer_discount is False
    assert order.discount == Decimal("0.00")


@pytest.mark.asyncio
async def test_unknown_payer_creates_unlinked_order(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity())

    result = await service.ingest(checkout_event("evt_guest", items=STANDARD_ITEMS, email="guest@example.com"))

    assert result.points_earned == 0
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
    assert order.user_id is None
    assert order.customer_email == "guest@example.com"
    assert await _count(session_factory, PointsTransaction) == 0


@pytest.mark.asyncio
async def test_unsupported_event_type_is_ignored(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity())

    result = await service.ingest({"id": "evt_refund", "type": "charge.refunded", "data": {"object": {}}})

    assert result.order_id is None
    assert result.message == "Event type ignored"
    assert await _count(session_factory, ProcessedEvent) == 0


@pytest.mark.asyncio
async def test_line_items_fetched_from_gateway_when_not_expanded(session_factory) -> None:
    gateway = FakeGateway([LineItem(name="Wings", quantity=2, amount=Decimal("14.00"))])
    service = OrderIngestionService(session_factory, identity=FakeIdentity(), gateway=gateway)
    event = checkout_event("evt_lookup", items=None, session_id="cs_lookup")
    event["data"]["object"]["amount_total"] = 1400

    result = await service.ingest(event)

    assert gateway.calls == ["cs_lookup"]
    async with session_factory() as session:
        order = await session.get(Order, result.order_id)
    assert order.eligible_amount == Decimal("14.00")
    assert order.items[0].unit_price == Decimal("7.00")


@pytest.mark.asyncio
async def test_missing_line_items_without_gateway_fails_cleanly(session_factory) -> None:
    service = OrderIngestionService(session_factory, identity=FakeIdentity())

    with pytest.raises(ExternalServiceError):
        await service.ingest(checkout_event("evt_no_items", items=None))

    assert await _count(session_factory, Order) == 0
    assert await _count(session_factory, ProcessedEvent) == 0
