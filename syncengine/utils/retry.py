"""Retry helpers for provider HTTP calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from syncengine.errors import DeadlineExceededError, ProviderRequestError, RetryExhaustedError
from syncengine.utils.dates import utcnow

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
RETRY_EXCEPTIONS = (httpx.TransportError,)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0

    def backoff(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)


class Deadline:
    """Wall-clock budget for one tenant's run."""

    def __init__(self, seconds: float | None) -> None:
        self.seconds = seconds
        self._expires = time.monotonic() + seconds if seconds is not None else None

    def remaining(self) -> float | None:
        if self._expires is None:
            return None
        return self._expires - time.monotonic()

    def check(self, what: str = "sync") -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceededError(f"Deadline of {self.seconds:.0f}s exceeded during {what}")

    def ensure_room(self, delay: float, what: str = "sync") -> None:
        """Fail now if waiting ``delay`` seconds would run past the budget."""
        self.check(what)
        remaining = self.remaining()
        if remaining is not None and delay >= remaining:
            raise DeadlineExceededError(f"Wait of {delay:.1f}s exceeds remaining budget for {what}")


def retry_after_seconds(value: str | None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max((when - utcnow()).total_seconds(), 0.0)


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: RetryPolicy,
    *,
    context: str,
    sleep: Sleep = asyncio.sleep,
    deadline: Deadline | None = None,
) -> httpx.Response:
    """Call ``send`` until it yields a non-retryable response.

    Makes at most ``policy.max_retries + 1`` calls. A 429 with ``Retry-After``
    waits for the server-supplied delay instead of the computed backoff.
    """
    last_status: int | None = None
    for attempt in range(policy.max_retries + 1):
        if deadline:
            deadline.check(context)
        try:
            response = await send()
        except RETRY_EXCEPTIONS as exc:
            last_status = None
            delay = policy.backoff(attempt)
            logger.warning("Transport error on %s (attempt %s): %s", context, attempt + 1, exc)
        else:
            if response.status_code < 400:
                return response
            if response.status_code not in RETRY_STATUSES:
                raise ProviderRequestError(
                    f"HTTP {response.status_code}: {response.text[:500]}",
                    status_code=response.status_code,
                    context=context,
                )
            last_status = response.status_code
            delay = policy.backoff(attempt)
            if response.status_code == 429:
                server_delay = retry_after_seconds(response.headers.get("Retry-After"))
                if server_delay is not None:
                    delay = server_delay
            logger.warning(
                "HTTP %s on %s (attempt %s), retrying in %.1fs",
                response.status_code,
                context,
                attempt + 1,
                delay,
            )
        if attempt == policy.max_retries:
            break
        if deadline:
            deadline.ensure_room(delay, context)
        await sleep(delay)
    raise RetryExhaustedError(
        f"Gave up on {context} after {policy.max_retries + 1} attempts (last status {last_status})",
        attempts=policy.max_retries + 1,
        last_status=last_status,
    )
