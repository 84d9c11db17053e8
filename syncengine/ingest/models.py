"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, ClassVar, Mapping

from pydantic import BaseModel, ConfigDict, model_validator

STATE_VERSION = 1


class ConnectionState(BaseModel):
    """Typed view of a connection's ``meta`` map.

    Keys this engine does not know are kept as extras and written back
    untouched, since the admin console owns part of the map.
    """

    model_config = ConfigDict(extra="allow")

    legacy_aliases: ClassVar[dict[str, tuple[str, ...]]] = {}

    version: int = STATE_VERSION
    sync_start_date: date | None = None
    backfill_since: date | None = None
    backfill_cursor: date | None = None
    last_sync_day: date | None = None
    last_sync_at: str | None = None
    last_sync_summary: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _apply_aliases(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        values = dict(data)
        for target, aliases in cls.legacy_aliases.items():
            if values.get(target):
                continue
            for alias in aliases:
                if values.get(alias):
                    values[target] = values[alias]
                    break
        if not values.get("last_sync_at") and values.get("last_synced_at"):
            values["last_sync_at"] = values["last_synced_at"]
        for key in ("sync_start_date", "backfill_since", "backfill_cursor", "last_sync_day"):
            if values.get(key) == "":
                values[key] = None
        return values

    @property
    def in_backfill(self) -> bool:
        return self.backfill_cursor is not None or self.backfill_since is not None

    def to_meta(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ShopifyConnectionState(ConnectionState):
    legacy_aliases: ClassVar[dict[str, tuple[str, ...]]] = {"shop_domain": ("shop", "store_domain")}

    shop_domain: str | None = None
    timezone: str | None = None


class GoogleAdsConnectionState(ConnectionState):
    legacy_aliases: ClassVar[dict[str, tuple[str, ...]]] = {"customer_id": ("selected_customer_id",)}

    customer_id: str | None = None
    login_customer_id: str | None = None
    timezone: str | None = None

    @model_validator(mode="after")
    def _strip_dashes(self) -> "GoogleAdsConnectionState":
        if self.customer_id:
            self.customer_id = self.customer_id.replace("-", "")
        if self.login_customer_id:
            self.login_customer_id = self.login_customer_id.replace("-", "")
        return self


@dataclass(slots=True)
class Connection:
    id: Any
    tenant_id: str
    source: str
    status: str
    access_token_enc: Any
    refresh_token_enc: Any
    expires_at: str | None
    meta: dict[str, Any]
    state_version: int


@dataclass(slots=True)
class SyncWindow:
    start: date
    end: date
    mode: str
    next_state: dict[str, Any]

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(slots=True)
class FetchResult:
    records: list[dict[str, Any]]
    pages: int
    truncated: bool = False
    skipped: int = 0


@dataclass(slots=True)
class RefundRow:
    refund_id: str
    order_id: str
    refund_date: date
    returns_cents: int


@dataclass(slots=True)
class OrderRow:
    order_id: str
    name: str | None
    created_at: str
    processed_at: str | None
    cancelled_at: str | None
    order_date: date
    financial_status: str | None
    is_test: bool
    currency: str | None
    customer_id: str | None
    gross_cents: int
    discounts_cents: int
    returns_cents: int
    net_cents: int
    tax_cents: int | None
    shipping_cents: int | None
    revenue_cents: int
    counted: bool
    raw: Mapping[str, Any]
    refunds: list[RefundRow] = field(default_factory=list)
    customer_type: str = "GUEST"
    is_first_order: bool = False


@dataclass(slots=True)
class AdsPerformanceRow:
    customer_id: str
    date: date
    campaign_id: str
    campaign_name: str | None
    ad_group_id: str
    ad_group_name: str | None
    country_criterion_id: str
    location_type: str
    country_code: str | None
    impressions: int
    clicks: int
    cost_micros: int
    conversions: float
    conversions_value: float
    conversion_action_id: str | None
    conversion_actions: dict[str, float] = field(default_factory=dict)
