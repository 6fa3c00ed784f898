from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from kitchen_api.core.clock import utcnow
from kitchen_api.core.errors import ValidationError
from kitchen_api.services.loyalty import RedemptionService, RewardsAnalyticsService, SpinService
from kitchen_api.services.loyalty.analytics import FinancialSummary, SpinSummary, build_alerts, resolve_period
from kitchen_api.services.orders.ingestion import OrderIngestionService


class _Identity:
    async def resolve_user_id(self, email: str) -> str | None:
        return {"ana@example.com": "user-ana"}.get(email)


class _Jackpot:
    def random(self) -> float:
        return 0.99


def _checkout(event_id: str, cents: int) -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "amount_total": cents,
                "currency": "usd",
                "customer_details": {"email": "ana@example.com"},
                "payment_intent": f"pi_{event_id}",
                "total_details": {"amount_tax": 0, "amount_discount": 0},
                "line_items": {"data": [{"description": "Brisket Plate", "quantity": 1, "amount_total": cents}]},
            }
        },
    }


def test_resolve_period_defaults_and_bounds() -> None:
    reference = datetime(2026, 10, 19, tzinfo=timezone.utc)

    window = resolve_period(period="7d", reference_time=reference)
    assert window.start == reference - timedelta(days=7)
    assert window.days == 7

    explicit = resolve_period(start=reference - timedelta(days=2), end=reference)
    assert explicit.days == 2

    assert resolve_period(reference_time=reference).days == 30


def test_resolve_period_rejects_bad_input() -> None:
    reference = datetime(2026, 10, 19, tzinfo=timezone.utc)
    with pytest.raises(ValidationError):
        resolve_period(period="2w", reference_time=reference)
    with pytest.raises(ValidationError):
        resolve_period(start=reference, end=reference - timedelta(days=1))


def _financial(giveback: float = 0.0, liability: str = "0.00") -> FinancialSummary:
    return FinancialSummary(
        eligible_revenue=Decimal("100.00"),
        redemption_costs=Decimal("0.00"),
        giveback_percentage=giveback,
        point_liability=Decimal(liability),
        target_giveback_percentage=8.0,
    )


def _spins(total: int = 0, jackpots: int = 0) -> SpinSummary:
    return SpinSummary(
        total_spins=total,
        total_spin_costs=total * 10,
        total_spin_winnings=0,
        jackpot_wins=jackpots,
        jackpot_rate=jackpots / total if total else 0.0,
    )


def test_alert_thresholds() -> None:
    assert build_alerts(_financial(giveback=7.99, liability="9999.99"), _spins(100, 2)) == []

    alerts = build_alerts(_financial(giveback=9.5, liability="12500.00"), _spins(100, 3))

    assert [alert.message for alert in alerts] == [
        "Giveback percentage (9.50%) exceeds target of 8%",
        "High point liability: $12500.00",
        "Jackpot rate (3.00%) exceeds 2% target",
    ]
    assert [alert.severity for alert in alerts] == ["high", "medium", "medium"]


@pytest.mark.asyncio
async def test_report_aggregates_orders_redemptions_and_spins(session_factory, seed_offer) -> None:
    await OrderIngestionService(session_factory, identity=_Identity()).ingest(_checkout("evt_a1", 2500))
    offer = await seed_offer("pie-slice", points_cost=200, cogs_value=Decimal("2.10"), category="dessert")
    await RedemptionService(session_factory).redeem("user-ana", offer.id)
    await SpinService(session_factory, rng=_Jackpot()).spin("user-ana")

    async with session_factory() as session:
        report = await RewardsAnalyticsService(session).compute_report(
            period="7d", reference_time=utcnow() + timedelta(minutes=1)
        )

    assert report.financial.eligible_revenue == Decimal("25.00")
    assert report.financial.redemption_costs == Decimal("2.10")
    assert report.financial.giveback_percentage == pytest.approx(8.4)
    assert report.financial.point_liability == Decimal("9.00")

    assert report.points.total_earned == 250
    assert report.points.total_redeemed == 200
    assert report.points.net_points_issued == 50
    assert report.points.outstanding_points == 90

    assert report.transactions.order_count == 1
    assert report.transactions.purchase_count == 1
    assert report.transactions.average_order_value == Decimal("25.00")
    assert report.transactions.redemption_rate == pytest.approx(100.0)

    assert report.spins.total_spins == 1
    assert report.spins.total_spin_costs == 10
    assert report.spins.total_spin_winnings == 50
    assert report.spins.result_breakdown == {50: 1}
    assert report.spins.jackpot_rate == pytest.approx(1.0)

    assert report.users.total_active == 1
    assert report.users.regular_tier == 1
    assert report.redemptions.by_category["dessert"].count == 1
    assert report.redemptions.by_offer[0].points_used == 200
    assert report.redemptions.average_cost == Decimal("2.10")

    messages = [alert.message for alert in report.alerts]
    assert "Giveback percentage (8.40%) exceeds target of 8%" in messages
    assert "Jackpot rate (100.00%) exceeds 2% target" in messages


@pytest.mark.asyncio
async def test_report_window_excludes_older_activity(session_factory) -> None:
    await OrderIngestionService(session_factory, identity=_Identity()).ingest(_checkout("evt_a2", 1000))

    async with session_factory() as session:
        report = await RewardsAnalyticsService(session).compute_report(
            period="7d", reference_time=utcnow() - timedelta(days=30)
        )

    assert report.transactions.order_count == 0
    assert report.financial.giveback_percentage == 0.0
    assert report.points.total_earned == 0
    # balances are point-in-time, not windowed
    assert report.points.outstanding_points == 100
    assert report.alerts == []
