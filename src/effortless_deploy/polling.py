"""Fixed-interval polling and conflict retry for eventually consistent APIs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from botocore.exceptions import ClientError

from .exceptions import ResourceConflictError, WaitTimeoutError, is_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded fixed-interval retry budget."""

    attempts: int
    interval: float

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")


FUNCTION_ACTIVE = RetryPolicy(attempts=30, interval=2.0)
TABLE_ACTIVE = RetryPolicy(attempts=30, interval=2.0)
DISTRIBUTION_DEPLOYED = RetryPolicy(attempts=45, interval=10.0)
CONFLICT_RETRY = RetryPolicy(attempts=5, interval=3.0)


async def wait_until(
    check: Callable[[], Awaitable[tuple[bool, str | None]]],
    policy: RetryPolicy,
    description: str,
) -> None:
    """
    Poll ``check`` until it reports ready.

    Args:
        check: Coroutine factory returning ``(ready, state)``
        policy: Attempt count and sleep interval
        description: Human readable target used in logs and errors

    Raises:
        WaitTimeoutError: If the check is not ready within the budget
    """
    state: str | None = None
    for attempt in range(1, policy.attempts + 1):
        ready, state = await check()
        if ready:
            return
        logger.debug(
            "Waiting for %s (attempt %d/%d, state=%s)",
            description,
            attempt,
            policy.attempts,
            state,
        )
        if attempt < policy.attempts:
            await asyncio.sleep(policy.interval)
    raise WaitTimeoutError(description, policy.attempts, state)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    resource_kind: str,
    name: str,
    before_retry: Callable[[], Awaitable[object]] | None = None,
) -> T:
    """
    Run ``operation``, retrying while the provider reports a conflict.

    ``before_retry`` (typically a wait-until-stable check) runs before each
    retry instead of the plain sleep.
    """
    last: ClientError | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await operation()
        except ClientError as e:
            if not is_conflict(e):
                raise
            last = e
            logger.debug(
                "%s %s busy (attempt %d/%d): %s",
                resource_kind,
                name,
                attempt,
                policy.attempts,
                e,
            )
            if attempt == policy.attempts:
                break
            if before_retry is not None:
                await before_retry()
            else:
                await asyncio.sleep(policy.interval)
    raise ResourceConflictError(resource_kind, name, str(last))
