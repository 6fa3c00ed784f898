"""Caller identity and email-to-account resolution.

Credential checks happen upstream; this module only models the verified
``{user_id, role}`` pair handed to us and the lookup used to link payers to
local accounts.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kitchen_api.core.errors import ValidationError
from kitchen_api.models.user import User


class CallerRole(str, Enum):
    CUSTOMER = "customer"
    KITCHEN = "kitchen"
    ADMIN = "admin"

    @classmethod
    def parse(cls, raw: str | "CallerRole") -> "CallerRole":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown role '{raw}'") from exc


@dataclass(frozen=True, slots=True)
class CallerIdentity:
    user_id: str
    role: CallerRole

    @property
    def is_admin(self) -> bool:
        return self.role is CallerRole.ADMIN

    def can_act_for(self, user_id: str | None) -> bool:
        """Customers may only act on their own records; staff on anyone's."""

        if self.role is CallerRole.CUSTOMER:
            return user_id is not None and user_id == self.user_id
        return True


class IdentityProvider(Protocol):
    async def resolve_user_id(self, email: str) -> str | None:
        """Return the local user id for ``email`` or ``None`` when unknown."""


class DatabaseIdentityProvider:
    """Resolve payer emails against the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve_user_id(self, email: str) -> str | None:
        normalized = email.strip().lower()
        if not normalized:
            return None
        async with self._session_factory() as session:
            stmt = select(User.id).where(func.lower(User.email) == normalized)
            user_id = (await session.execute(stmt)).scalar_one_or_none()
        if user_id is None:
            logger.debug("No account linked to payer email", email=normalized)
        return user_id
