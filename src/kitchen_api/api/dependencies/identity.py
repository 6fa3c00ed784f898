"""Caller identity forwarded by the upstream auth layer."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, status

from kitchen_api.services.identity import CallerIdentity, CallerRole


async def require_caller(
    caller_id: str | None = Header(None, alias="X-Caller-Id"),
    caller_role: str | None = Header(None, alias="X-Caller-Role"),
) -> CallerIdentity:
    """Build the verified caller from forwarded headers.

    The role defaults to ``customer``; an unrecognised role is a validation
    error rather than a silent downgrade.
    """

    if not caller_id or not caller_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    role = CallerRole.parse(caller_role) if caller_role else CallerRole.CUSTOMER
    return CallerIdentity(user_id=caller_id.strip(), role=role)


async def require_staff(caller: CallerIdentity = Depends(require_caller)) -> CallerIdentity:
    if caller.role not in (CallerRole.KITCHEN, CallerRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Kitchen or admin role required",
        )
    return caller


async def require_admin(caller: CallerIdentity = Depends(require_caller)) -> CallerIdentity:
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return caller


def ensure_can_act_for(caller: CallerIdentity, user_id: str) -> None:
    if not caller.can_act_for(user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Callers may only act on their own account",
        )
