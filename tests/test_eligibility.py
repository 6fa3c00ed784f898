from decimal import Decimal

from kitchen_api.services.loyalty.eligibility import (
    KeywordEligibilityPolicy,
    LineItem,
    eligible_amount,
    points_for_amount,
)


def _item(name: str, amount: str, quantity: int = 1) -> LineItem:
    return LineItem(name=name, quantity=quantity, amount=Decimal(amount))


def test_tax_and_tip_are_excluded() -> None:
    items = [
        _item("Smash Burger", "18.00"),
        _item("Loaded Fries", "7.00"),
        _item("Tip", "5.00"),
        _item("Delivery Fee", "3.50"),
    ]
    amount = eligible_amount(Decimal("33.50"), items, KeywordEligibilityPolicy())

    assert amount == Decimal("25.00")
    assert points_for_amount(amount) == 250


def test_alcohol_and_gift_cards_are_excluded() -> None:
    policy = KeywordEligibilityPolicy()
    assert not policy.is_eligible(_item("Craft Beer Flight", "12.00"))
    assert not policy.is_eligible(_item("House Red Wine", "9.00"))
    assert not policy.is_eligible(_item("$25 Gift Card", "25.00"))
    assert policy.is_eligible(_item("Chicken Sandwich", "11.00"))


def test_keyword_match_is_substring_based() -> None:
    # known limitation of the keyword heuristic
    assert not KeywordEligibilityPolicy().is_eligible(_item("Tax Day Special", "10.00"))


def test_custom_policy_replaces_keywords() -> None:
    policy = KeywordEligibilityPolicy(keywords=["merch"])
    items = [_item("Merch Hoodie", "40.00"), _item("Tip", "4.00")]
    assert eligible_amount(Decimal("44.00"), items, policy) == Decimal("4.00")


def test_eligible_amount_never_negative() -> None:
    items = [_item("Gift Card", "50.00")]
    assert eligible_amount(Decimal("20.00"), items, KeywordEligibilityPolicy()) == Decimal("0.00")


def test_points_round_down() -> None:
    assert points_for_amount(Decimal("0.09")) == 0
    assert points_for_amount(Decimal("12.34")) == 123
    assert points_for_amount(Decimal("0")) == 0
    assert points_for_amount(Decimal("10.00"), point_value=Decimal("1.00")) == 10
