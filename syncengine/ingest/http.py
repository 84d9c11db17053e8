"""Shared HTTP transport for provider clients."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlparse

import httpx

from syncengine.errors import ProviderResponseError
from syncengine.utils.rate_limit import RateLimiter
from syncengine.utils.retry import Deadline, RetryPolicy, Sleep, send_with_retry

logger = logging.getLogger(__name__)

USER_AGENT = "syncengine/1.0"


class ProviderHTTP:
    """httpx session with per-host spacing, retries and a run deadline."""

    def __init__(
        self,
        *,
        session: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Sleep = asyncio.sleep,
        deadline: Deadline | None = None,
    ) -> None:
        self._owns_session = session is None
        self.session = session or httpx.AsyncClient(timeout=60.0, headers={"User-Agent": USER_AGENT})
        self.policy = policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter(rate=4.0, sleep=sleep)
        self.sleep = sleep
        self.deadline = deadline

    async def close(self) -> None:
        if self._owns_session:
            await self.session.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        context: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
        data: Any = None,
    ) -> httpx.Response:
        host = urlparse(url).netloc

        async def send() -> httpx.Response:
            await self.rate_limiter.wait_for_host(host)
            return await self.session.request(method, url, headers=headers, json=json, data=data)

        return await send_with_retry(
            send, self.policy, context=context, sleep=self.sleep, deadline=self.deadline
        )

    async def post_json(self, url: str, *, context: str, headers: dict[str, str] | None = None, json: Any = None) -> Any:
        response = await self.request("POST", url, context=context, headers=headers, json=json)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderResponseError(f"Invalid JSON from {context}: {response.text[:200]}") from exc

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        context: str,
        headers: dict[str, str] | None = None,
        json: Any = None,
    ) -> AsyncIterator[httpx.Response]:
        """Retrying request whose successful body is left unread for incremental consumption."""
        host = urlparse(url).netloc

        async def send() -> httpx.Response:
            await self.rate_limiter.wait_for_host(host)
            request = self.session.build_request(method, url, headers=headers, json=json)
            response = await self.session.send(request, stream=True)
            if response.status_code >= 400:
                # Error bodies are small; read them so retry logging can quote them.
                await response.aread()
                await response.aclose()
            return response

        response = await send_with_retry(
            send, self.policy, context=context, sleep=self.sleep, deadline=self.deadline
        )
        try:
            yield response
        finally:
            await response.aclose()

    async def pause(self, delay: float, *, context: str) -> None:
        """Provider-requested wait, bounded by the run deadline."""
        if self.deadline:
            self.deadline.ensure_room(delay, context)
        await self.sleep(delay)
