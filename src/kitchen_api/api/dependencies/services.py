"""Service factories resolved per request."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.db.session import get_session_factory
from kitchen_api.services.identity import DatabaseIdentityProvider, IdentityProvider
from kitchen_api.services.loyalty import LoyaltyProfileService, ProfileEvents, RedemptionService, SpinService
from kitchen_api.services.orders.ingestion import OrderIngestionService
from kitchen_api.services.orders.status_service import OrderStatusService
from kitchen_api.services.payments import StripeGateway


def get_profile_events(request: Request) -> ProfileEvents:
    events = getattr(request.app.state, "profile_events", None)
    if events is None:
        events = ProfileEvents()
        request.app.state.profile_events = events
    return events


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()


def get_identity_provider(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> IdentityProvider:
    return DatabaseIdentityProvider(session_factory)


def get_profile_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    events: ProfileEvents = Depends(get_profile_events),
) -> LoyaltyProfileService:
    return LoyaltyProfileService(session_factory, events=events)


def get_redemption_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    events: ProfileEvents = Depends(get_profile_events),
) -> RedemptionService:
    return RedemptionService(session_factory, events=events)


def get_spin_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    events: ProfileEvents = Depends(get_profile_events),
) -> SpinService:
    return SpinService(session_factory, events=events)


def get_order_status_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> OrderStatusService:
    return OrderStatusService(session_factory)


def get_ingestion_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    identity: IdentityProvider = Depends(get_identity_provider),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    events: ProfileEvents = Depends(get_profile_events),
) -> OrderIngestionService:
    return OrderIngestionService(session_factory, identity=identity, gateway=gateway, events=events)
