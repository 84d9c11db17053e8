"""Google Ads reporting client (``googleAds:searchStream``)."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import date
from typing import Any

from syncengine.errors import ProviderResponseError
from syncengine.ingest.http import ProviderHTTP
from syncengine.ingest.models import FetchResult

logger = logging.getLogger(__name__)

GOOGLE_ADS_HOST = "https://googleads.googleapis.com"
LOCATION_TYPES = {"AREA_OF_INTEREST", "LOCATION_OF_PRESENCE"}
# Array brackets, commas and newlines between streamed chunks.
STREAM_SEPARATORS = " \t\r\n[],"

METRICS_QUERY = """
SELECT
  segments.date,
  customer.id,
  campaign.id,
  campaign.name,
  ad_group.id,
  ad_group.name,
  geographic_view.country_criterion_id,
  geographic_view.location_type,
  metrics.impressions,
  metrics.clicks,
  metrics.cost_micros,
  metrics.conversions,
  metrics.conversions_value
FROM geographic_view
WHERE segments.date BETWEEN '{start}' AND '{end}'
  AND campaign.status != 'REMOVED'
  AND ad_group.status != 'REMOVED'
""".strip()

CONVERSION_ACTIONS_QUERY = """
SELECT
  segments.date,
  campaign.id,
  ad_group.id,
  geographic_view.country_criterion_id,
  geographic_view.location_type,
  segments.conversion_action,
  metrics.conversions,
  metrics.conversions_value
FROM geographic_view
WHERE segments.date BETWEEN '{start}' AND '{end}'
  AND campaign.status != 'REMOVED'
  AND ad_group.status != 'REMOVED'
""".strip()

GEO_TARGET_QUERY = """
SELECT
  geo_target_constant.id,
  geo_target_constant.country_code,
  geo_target_constant.target_type
FROM geo_target_constant
WHERE geo_target_constant.target_type = 'Country'
""".strip()


def format_customer_id(value: str) -> str:
    return str(value).replace("-", "").strip()


def _chunk_results(chunk: Any) -> list[dict[str, Any]] | None:
    if not isinstance(chunk, dict):
        return None
    if "error" in chunk:
        raise ProviderResponseError(f"Google Ads stream error: {chunk['error']}", errors=[chunk["error"]])
    results = chunk.get("results")
    return results if isinstance(results, list) else None


class SearchStreamDecoder:
    """Incremental parser for searchStream bodies.

    The endpoint answers with a JSON array of ``{"results": [...]}`` chunks;
    some proxies re-emit it as newline-delimited JSON. Both shapes decode the
    same way: skip separators, then decode one chunk object at a time.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = json.JSONDecoder()

    def feed(self, text: str) -> list[list[dict[str, Any]]]:
        self._buffer += text
        batches: list[list[dict[str, Any]]] = []
        while True:
            self._buffer = self._buffer.lstrip(STREAM_SEPARATORS)
            if not self._buffer:
                break
            try:
                chunk, end = self._decoder.raw_decode(self._buffer)
            except json.JSONDecodeError:
                # Incomplete chunk; wait for more text.
                break
            self._buffer = self._buffer[end:]
            results = _chunk_results(chunk)
            if results is not None:
                batches.append(results)
        return batches

    def close(self) -> None:
        leftover = self._buffer.strip(STREAM_SEPARATORS)
        if leftover:
            raise ProviderResponseError(f"Unparseable searchStream data: {leftover[:120]}")


def parse_search_stream(body: str) -> list[list[dict[str, Any]]]:
    """Split a complete searchStream body into result batches."""
    decoder = SearchStreamDecoder()
    batches = decoder.feed(body)
    decoder.close()
    return batches


def _pick(obj: dict[str, Any] | None, camel: str, snake: str) -> Any:
    if not obj:
        return None
    value = obj.get(camel)
    return value if value is not None else obj.get(snake)


def _section(row: dict[str, Any], camel: str, snake: str) -> dict[str, Any]:
    return row.get(camel) or row.get(snake) or {}


def action_id(resource_name: str | None) -> str | None:
    """``customers/1/conversionActions/42`` -> ``42``."""
    if not resource_name or not isinstance(resource_name, str):
        return None
    tail = resource_name.rsplit("/", 1)[-1]
    return tail or None


def normalize_row(row: dict[str, Any]) -> dict[str, Any] | None:
    """Flatten one streamed row into a provider-neutral record."""
    segments = row.get("segments") or {}
    campaign = row.get("campaign") or {}
    ad_group = _section(row, "adGroup", "ad_group")
    geo = _section(row, "geographicView", "geographic_view")
    metrics = row.get("metrics") or {}
    customer = row.get("customer") or {}

    record = {
        "date": segments.get("date"),
        "customer_id": str(customer["id"]) if customer.get("id") else None,
        "campaign_id": str(campaign["id"]) if campaign.get("id") else None,
        "campaign_name": campaign.get("name"),
        "ad_group_id": str(ad_group["id"]) if ad_group.get("id") else None,
        "ad_group_name": ad_group.get("name"),
        "country_criterion_id": _pick(geo, "countryCriterionId", "country_criterion_id"),
        "location_type": _pick(geo, "locationType", "location_type"),
        "impressions": int(metrics.get("impressions") or 0),
        "clicks": int(metrics.get("clicks") or 0),
        "cost_micros": int(_pick(metrics, "costMicros", "cost_micros") or 0),
        "conversions": float(metrics.get("conversions") or 0),
        "conversions_value": float(_pick(metrics, "conversionsValue", "conversions_value") or 0),
        "conversion_action_id": action_id(_pick(segments, "conversionAction", "conversion_action")),
    }
    if not all(record[key] for key in ("date", "campaign_id", "ad_group_id", "country_criterion_id", "location_type")):
        return None
    if record["location_type"] not in LOCATION_TYPES:
        return None
    record["country_criterion_id"] = str(record["country_criterion_id"])
    return record


class GoogleAdsClient:
    def __init__(
        self,
        customer_id: str,
        access_token: str,
        *,
        developer_token: str,
        http: ProviderHTTP,
        login_customer_id: str | None = None,
        api_version: str = "v21",
        page_ceiling: int = 50,
    ) -> None:
        self.customer_id = format_customer_id(customer_id)
        self.login_customer_id = format_customer_id(login_customer_id) if login_customer_id else None
        self.access_token = access_token
        self.developer_token = developer_token
        self.http = http
        self.api_version = api_version
        self.page_ceiling = page_ceiling

    @property
    def endpoint(self) -> str:
        return f"{GOOGLE_ADS_HOST}/{self.api_version}/customers/{self.customer_id}/googleAds:searchStream"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "developer-token": self.developer_token,
            "Content-Type": "application/json",
        }
        if self.login_customer_id and self.login_customer_id != self.customer_id:
            headers["login-customer-id"] = self.login_customer_id
        return headers

    async def fetch_metrics(self, start: date, end: date) -> FetchResult:
        query = METRICS_QUERY.format(start=start.isoformat(), end=end.isoformat())
        return await self._report(query, context=f"customer {self.customer_id} geographic metrics {start}..{end}")

    async def fetch_conversion_actions(self, start: date, end: date) -> FetchResult:
        query = CONVERSION_ACTIONS_QUERY.format(start=start.isoformat(), end=end.isoformat())
        return await self._report(query, context=f"customer {self.customer_id} conversion actions {start}..{end}")

    async def fetch_country_codes(self) -> dict[str, str]:
        mapping: dict[str, str] = {}
        async with aclosing(self._batches(GEO_TARGET_QUERY, context="geo_target_constant countries")) as batches:
            async for batch in batches:
                for row in batch:
                    constant = _section(row, "geoTargetConstant", "geo_target_constant")
                    code = _pick(constant, "countryCode", "country_code")
                    if constant.get("id") and code:
                        mapping[str(constant["id"])] = code
        return mapping

    async def _report(self, query: str, *, context: str) -> FetchResult:
        records: list[dict[str, Any]] = []
        pages = 0
        skipped = 0
        truncated = False
        async with aclosing(self._batches(query, context=context)) as batches:
            async for batch in batches:
                if pages >= self.page_ceiling:
                    truncated = True
                    logger.warning("Page ceiling %s reached for %s; stopped reading the stream", self.page_ceiling, context)
                    break
                pages += 1
                for row in batch:
                    try:
                        record = normalize_row(row)
                    except (ValueError, TypeError) as exc:
                        skipped += 1
                        logger.warning("Skipping malformed Google Ads row in %s: %s", context, exc)
                        continue
                    if record is None:
                        skipped += 1
                        continue
                    record["customer_id"] = record["customer_id"] or self.customer_id
                    records.append(record)
        if skipped:
            logger.warning("Skipped %s rows in %s", skipped, context)
        logger.info("Fetched %s rows in %s batches for %s", len(records), pages, context)
        return FetchResult(records=records, pages=pages, truncated=truncated, skipped=skipped)

    async def _batches(self, query: str, *, context: str) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield result batches as they arrive, without buffering the whole body."""
        if self.http.deadline:
            self.http.deadline.check(context)
        decoder = SearchStreamDecoder()
        async with self.http.stream(
            "POST", self.endpoint, context=context, headers=self._headers(), json={"query": query}
        ) as response:
            async for text in response.aiter_text():
                for batch in decoder.feed(text):
                    yield batch
                if self.http.deadline:
                    self.http.deadline.check(context)
        decoder.close()
