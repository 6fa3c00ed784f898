import sys
from decimal import Decimal
from pathlib import Path

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import kitchen_api.models  # noqa: E402,F401
from kitchen_api.app import create_app  # noqa: E402
from kitchen_api.db.base import Base  # noqa: E402
from kitchen_api.db.session import get_session, get_session_factory  # noqa: E402
from kitchen_api.models.loyalty import LoyaltyTierEnum, PointsTransactionType, RewardOffer  # noqa: E402
from kitchen_api.models.user import User  # noqa: E402
from kitchen_api.services.loyalty.ledger import LoyaltyLedger  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def seed_profile(session_factory):
    """Create a profile (and optionally a linked user) holding ``points``."""

    async def _seed(
        user_id: str,
        *,
        points: int = 0,
        tier: LoyaltyTierEnum = LoyaltyTierEnum.REGULAR,
        email: str | None = None,
        can_spin: bool = True,
    ):
        async with session_factory() as session:
            async with session.begin():
                if email:
                    session.add(User(id=user_id, email=email))
                ledger = LoyaltyLedger(session)
                profile, _ = await ledger.ensure_profile(user_id)
                profile.tier = tier
                profile.can_spin = can_spin
                if points:
                    await ledger.append_entry(
                        profile,
                        PointsTransactionType.ADMIN_ADJUSTMENT,
                        points,
                        description="Opening balance",
                        metadata={"reason": "seed"},
                    )
        return profile

    return _seed


@pytest_asyncio.fixture
async def seed_offer(session_factory):
    async def _seed(
        slug: str,
        *,
        points_cost: int,
        cogs_value: Decimal = Decimal("1.50"),
        category: str = "food",
        max_redemptions: int | None = None,
        **fields,
    ) -> RewardOffer:
        offer = RewardOffer(
            slug=slug,
            name=fields.pop("name", slug.replace("-", " ").title()),
            category=category,
            points_cost=points_cost,
            cogs_value=cogs_value,
            max_redemptions=max_redemptions,
            **fields,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(offer)
        return offer

    return _seed
