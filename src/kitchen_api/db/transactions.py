"""Bounded-retry transaction runner.

Every mutating rewards or ordering operation executes inside exactly one
database transaction.  Rows that act as serialization points (loyalty
profiles, reward offers, orders) carry a version counter, so two writers that
read the same row race at flush time and the loser sees ``StaleDataError``.
Unique-key collisions (duplicate webhook markers) and SQLite lock timeouts are
treated the same way: roll back, back off, and replay the whole operation
against fresh state.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from kitchen_api.core.errors import InternalError
from kitchen_api.core.settings import settings

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[Exception], ...] = (StaleDataError, IntegrityError, OperationalError)


def _compute_retry_delay(attempt: int, base_delay: float) -> float:
    return base_delay * (2 ** max(attempt - 1, 0))


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    name: str = "transaction",
    max_attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run ``operation`` in a fresh session, committing once it returns.

    Domain errors raised by ``operation`` roll back and propagate untouched.
    Contention errors are retried; when attempts run out ``InternalError`` is
    raised with the last storage error chained.
    """

    attempts = max_attempts or settings.transaction_max_attempts
    delay = settings.transaction_retry_base_delay_seconds if base_delay is None else base_delay
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await operation(session)
        except RETRYABLE_ERRORS as exc:
            last_error = exc
            logger.warning(
                "Transaction conflict",
                transaction=name,
                attempt=attempt,
                max_attempts=attempts,
                error_type=type(exc).__name__,
            )
        if attempt < attempts:
            await asyncio.sleep(_compute_retry_delay(attempt, delay))

    logger.error("Transaction retries exhausted", transaction=name, attempts=attempts)
    raise InternalError(f"{name} could not be committed after {attempts} attempts") from last_error
