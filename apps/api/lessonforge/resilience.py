from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import RetryExhaustedError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    timeout: float = 90.0
    max_retries: int = 1
    retry_delay: float = 2.0

    @property
    def attempts(self) -> int:
        return max(0, self.max_retries) + 1


def _never_fatal(exc: BaseException) -> bool:
    return False


async def attempt_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_fatal: Callable[[BaseException], bool] = _never_fatal,
    label: str = "operation",
) -> T:
    """Run ``operation`` under ``policy``.

    Each attempt is bounded by ``policy.timeout``. Fatal errors are re-raised
    as-is; otherwise the last error becomes the cause of a
    ``RetryExhaustedError``.
    """
    last_exc: Exception | None = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.TimeoutError as exc:
            last_exc = exc
            logger.warning("%s timed out after %.1fs (attempt %d/%d)", label, policy.timeout, attempt, policy.attempts)
        except Exception as exc:  # noqa: BLE001
            if is_fatal(exc):
                raise
            last_exc = exc
            logger.warning("%s failed (attempt %d/%d): %s", label, attempt, policy.attempts, exc)
        if attempt < policy.attempts and policy.retry_delay > 0:
            await asyncio.sleep(policy.retry_delay)
    raise RetryExhaustedError(label, policy.attempts) from last_exc
