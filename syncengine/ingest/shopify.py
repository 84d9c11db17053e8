"""Shopify Admin GraphQL order client."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Iterable

from syncengine.errors import ProviderResponseError, RetryExhaustedError
from syncengine.ingest.http import ProviderHTTP
from syncengine.ingest.models import FetchResult

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
IDS_PER_QUERY = 50
THROTTLE_FLOOR = 100

ORDER_FIELDS = """
  id
  legacyResourceId
  name
  createdAt
  processedAt
  updatedAt
  cancelledAt
  test
  taxesIncluded
  displayFinancialStatus
  currencyCode
  customer { id }
  subtotalPriceSet { ...Money }
  totalDiscountsSet { ...Money }
  totalTaxSet { ...Money }
  totalShippingPriceSet { ...Money }
  shippingLines(first: 20) {
    edges { node { originalPriceSet { ...Money } taxLines { priceSet { ...Money } } } }
  }
  transactions(first: 50) {
    id kind status processedAt gateway
    amountSet { ...Money }
  }
  lineItems(first: 250) {
    edges {
      node {
        id sku name quantity
        originalUnitPriceSet { ...Money }
        totalDiscountSet { ...Money }
        discountAllocations { allocatedAmountSet { ...Money } }
        taxLines { rate priceSet { ...Money } }
      }
    }
  }
  refunds(first: 50) {
    id
    createdAt
    totalRefundedSet { ...Money }
    refundLineItems(first: 250) {
      edges {
        node {
          quantity
          subtotalSet { ...Money }
          totalTaxSet { ...Money }
          lineItem { id }
        }
      }
    }
    transactions(first: 50) {
      edges { node { id kind status processedAt gateway amountSet { ...Money } } }
    }
  }
"""

ORDERS_QUERY = (
    """
query OrdersForPeriod($cursor: String, $query: String) {
  orders(first: %d, after: $cursor, query: $query, sortKey: CREATED_AT) {
    edges { cursor node { %s } }
    pageInfo { hasNextPage endCursor }
  }
}
fragment Money on MoneyBag { shopMoney { amount currencyCode } }
"""
    % (PAGE_SIZE, ORDER_FIELDS)
)

GID_RE = re.compile(r"^gid://shopify/\w+/(\d+)$")


def normalize_shop_domain(domain: str) -> str:
    domain = re.sub(r"^https?://", "", domain.strip())
    domain = re.sub(r"^www\.", "", domain)
    return domain.rstrip("/").lower()


def legacy_id(value: str | int | None) -> str | None:
    if value is None:
        return None
    text = str(value)
    match = GID_RE.match(text)
    return match.group(1) if match else text


def window_query(start: date, end: date) -> str:
    """Orders created in the window, plus older orders updated in it (late refunds)."""
    since = start.isoformat()
    until = f"{end.isoformat()}T23:59:59"
    return (
        f"(created_at:>='{since}' AND created_at:<='{until}') OR "
        f"(updated_at:>='{since}' AND updated_at:<='{until}')"
    )


def ids_query(order_ids: Iterable[str]) -> str:
    return " OR ".join(f"id:{legacy_id(order_id)}" for order_id in order_ids)


class ShopifyClient:
    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        http: ProviderHTTP,
        api_version: str = "2024-07",
        page_ceiling: int = 50,
    ) -> None:
        self.shop_domain = normalize_shop_domain(shop_domain)
        self.access_token = access_token
        self.http = http
        self.api_version = api_version
        self.page_ceiling = page_ceiling

    @property
    def endpoint(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def fetch_orders(self, start: date, end: date) -> FetchResult:
        """All orders touching the window, following cursors up to the page ceiling."""
        return await self._paginate(window_query(start, end), context=f"{self.shop_domain} orders {start}..{end}")

    async def fetch_orders_by_ids(self, order_ids: list[str]) -> FetchResult:
        records: list[dict[str, Any]] = []
        pages = 0
        truncated = False
        for offset in range(0, len(order_ids), IDS_PER_QUERY):
            chunk = order_ids[offset : offset + IDS_PER_QUERY]
            result = await self._paginate(ids_query(chunk), context=f"{self.shop_domain} orders by id")
            records.extend(result.records)
            pages += result.pages
            truncated = truncated or result.truncated
        return FetchResult(records=records, pages=pages, truncated=truncated)

    async def _paginate(self, query: str, *, context: str) -> FetchResult:
        records: list[dict[str, Any]] = []
        cursor: str | None = None
        pages = 0
        while True:
            if pages >= self.page_ceiling:
                logger.warning("Page ceiling %s reached for %s; keeping %s orders", self.page_ceiling, context, len(records))
                return FetchResult(records=records, pages=pages, truncated=True)
            if self.http.deadline:
                self.http.deadline.check(context)
            variables: dict[str, Any] = {"query": query}
            if cursor:
                variables["cursor"] = cursor
            payload = await self._execute(ORDERS_QUERY, variables, context=f"{context} page {pages + 1}")
            pages += 1
            orders = ((payload.get("data") or {}).get("orders")) or {}
            edges = orders.get("edges") or []
            records.extend(edge["node"] for edge in edges if edge.get("node"))
            await self._respect_throttle(payload)
            page_info = orders.get("pageInfo") or {}
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                break
            cursor = page_info["endCursor"]
        logger.info("Fetched %s orders in %s pages for %s", len(records), pages, context)
        return FetchResult(records=records, pages=pages)

    async def _execute(self, query: str, variables: dict[str, Any], *, context: str) -> dict[str, Any]:
        headers = {"X-Shopify-Access-Token": self.access_token, "Content-Type": "application/json"}
        policy = self.http.policy
        for attempt in range(policy.max_retries + 1):
            payload = await self.http.post_json(
                self.endpoint, context=context, headers=headers, json={"query": query, "variables": variables}
            )
            errors = payload.get("errors") if isinstance(payload, dict) else None
            if not errors:
                return payload
            if not _is_throttled(errors):
                messages = ", ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
                raise ProviderResponseError(f"Shopify GraphQL errors on {context}: {messages}", errors=errors)
            if attempt == policy.max_retries:
                break
            delay = max(_throttle_wait(payload), policy.backoff(attempt))
            logger.warning("Shopify throttled %s (attempt %s), waiting %.1fs", context, attempt + 1, delay)
            await self.http.pause(delay, context=context)
        raise RetryExhaustedError(
            f"Shopify kept throttling {context}", attempts=policy.max_retries + 1, last_status=429
        )

    async def _respect_throttle(self, payload: dict[str, Any]) -> None:
        wait = _throttle_wait(payload)
        if wait > 0:
            logger.info("Shopify cost budget low for %s, waiting %.1fs", self.shop_domain, wait)
            await self.http.pause(wait, context=f"{self.shop_domain} cost budget")


def _is_throttled(errors: list[Any]) -> bool:
    for err in errors:
        if isinstance(err, dict) and (err.get("extensions") or {}).get("code") == "THROTTLED":
            return True
    return False


def _throttle_wait(payload: dict[str, Any]) -> float:
    cost = ((payload.get("extensions") or {}).get("cost")) or {}
    status = cost.get("throttleStatus") or {}
    available = status.get("currentlyAvailable")
    restore = status.get("restoreRate")
    if available is None or not restore:
        return 0.0
    needed = max(float(cost.get("requestedQueryCost") or 0), THROTTLE_FLOOR)
    if available >= needed:
        return 0.0
    return (needed - float(available)) / float(restore)
