"""Per-provider sync strategies behind one interface."""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, ClassVar, TypeVar

from sqlalchemy.engine import Engine

from syncengine.config import SOURCE_GOOGLE_ADS, SOURCE_SHOPIFY, EngineConfig
from syncengine.db.repository import Repository
from syncengine.errors import ConfigurationError, MissingCredentialError
from syncengine.ingest.google_ads import GoogleAdsClient
from syncengine.ingest.http import ProviderHTTP
from syncengine.ingest.models import (
    Connection,
    ConnectionState,
    GoogleAdsConnectionState,
    ShopifyConnectionState,
    SyncWindow,
)
from syncengine.ingest.shopify import ShopifyClient
from syncengine.ingest.tokens import GoogleOAuthRefresher, TokenRefresher, needs_refresh
from syncengine.logic.classify import classify_orders
from syncengine.logic.daily import rebuild_google_ads_days, rebuild_shopify_days
from syncengine.logic.google_ads import merge_reports
from syncengine.logic.shopify_sales import transform_orders
from syncengine.utils.dates import date_range, to_utc_iso
from syncengine.utils.vault import CredentialVault

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run synchronous database work off the event loop."""
    return await asyncio.get_running_loop().run_in_executor(None, functools.partial(func, *args))


@dataclass(slots=True)
class SyncContext:
    config: EngineConfig
    engine: Engine
    repository: Repository
    vault: CredentialVault
    http: ProviderHTTP
    connection: Connection
    state: ConnectionState


@dataclass(slots=True)
class SyncOutcome:
    inserted: int
    affected_dates: list[date]
    skipped: int = 0
    pages: int = 0
    truncated: bool = False
    details: dict[str, Any] = field(default_factory=dict)


class ProviderSyncStrategy:
    """Fetch, transform and aggregate one provider for one tenant."""

    source: ClassVar[str]
    state_model: ClassVar[type[ConnectionState]] = ConnectionState
    supports_order_ids: ClassVar[bool] = False

    def parse_state(self, meta: dict[str, Any]) -> ConnectionState:
        return self.state_model.model_validate(meta or {})

    def timezone(self, ctx: SyncContext) -> str:
        return getattr(ctx.state, "timezone", None) or ctx.config.timezone

    def access_token(self, ctx: SyncContext) -> str:
        token = ctx.vault.decrypt(ctx.connection.access_token_enc, ctx.connection.tenant_id)
        if not token:
            raise MissingCredentialError(f"No {self.source} access token stored; reconnect this tenant.")
        return token

    async def prepare(self, ctx: SyncContext) -> None:
        """Hook run before fetching (token refresh)."""

    async def sync(self, ctx: SyncContext, window: SyncWindow | None, order_ids: list[str] | None = None) -> SyncOutcome:
        raise NotImplementedError


class ShopifyStrategy(ProviderSyncStrategy):
    source = SOURCE_SHOPIFY
    state_model = ShopifyConnectionState
    supports_order_ids = True

    async def sync(self, ctx: SyncContext, window: SyncWindow | None, order_ids: list[str] | None = None) -> SyncOutcome:
        state = ctx.state
        if not getattr(state, "shop_domain", None):
            raise MissingCredentialError("Shopify connection has no shop domain; reconnect this tenant.")
        tenant_id = ctx.connection.tenant_id
        tz = self.timezone(ctx)
        client = ShopifyClient(
            state.shop_domain,
            self.access_token(ctx),
            http=ctx.http,
            api_version=ctx.config.shopify_api_version,
            page_ceiling=ctx.config.page_ceiling,
        )
        if order_ids:
            fetched = await client.fetch_orders_by_ids(order_ids)
        else:
            fetched = await client.fetch_orders(window.start, window.end)
        rows, skipped = transform_orders(fetched.records, timezone=tz)

        demoted_dates = await run_blocking(classify_orders, ctx.repository, tenant_id, rows)
        inserted = await run_blocking(ctx.repository.upsert_orders, tenant_id, rows)

        affected: set[date] = set(demoted_dates)
        if window is not None:
            affected.update(date_range(window.start, window.end))
        for row in rows:
            affected.add(row.order_date)
            affected.update(refund.refund_date for refund in row.refunds)
        await run_blocking(rebuild_shopify_days, ctx.engine, tenant_id, sorted(affected))
        return SyncOutcome(
            inserted=inserted,
            affected_dates=sorted(affected),
            skipped=skipped,
            pages=fetched.pages,
            truncated=fetched.truncated,
            details={"orders_fetched": len(fetched.records)},
        )


class GoogleAdsStrategy(ProviderSyncStrategy):
    source = SOURCE_GOOGLE_ADS
    state_model = GoogleAdsConnectionState

    def __init__(self, refresher: TokenRefresher | None = None) -> None:
        self.refresher = refresher
        self._country_codes: dict[str, str] | None = None

    async def prepare(self, ctx: SyncContext) -> None:
        connection = ctx.connection
        if not connection.refresh_token_enc:
            return
        if not needs_refresh(connection.expires_at, ctx.config.token_refresh_buffer_seconds):
            return
        refresher = self.refresher or GoogleOAuthRefresher(
            ctx.config.google_client_id or "", ctx.config.google_client_secret or "", http=ctx.http
        )
        refresh_token = ctx.vault.decrypt(connection.refresh_token_enc, connection.tenant_id)
        if not refresh_token:
            raise MissingCredentialError("No Google Ads refresh token stored; reconnect this tenant.")
        refreshed = await refresher.refresh(refresh_token)
        sealed = ctx.vault.encrypt_text(refreshed.access_token, connection.tenant_id)
        await run_blocking(ctx.repository.update_access_token, connection, sealed, to_utc_iso(refreshed.expires_at))

    async def sync(self, ctx: SyncContext, window: SyncWindow | None, order_ids: list[str] | None = None) -> SyncOutcome:
        state = ctx.state
        if not getattr(state, "customer_id", None):
            raise MissingCredentialError("No Google Ads customer selected for this connection; reconnect this tenant.")
        tenant_id = ctx.connection.tenant_id
        client = GoogleAdsClient(
            state.customer_id,
            self.access_token(ctx),
            developer_token=ctx.config.google_developer_token or "",
            http=ctx.http,
            login_customer_id=state.login_customer_id,
            api_version=ctx.config.google_ads_api_version,
            page_ceiling=ctx.config.page_ceiling,
        )
        metrics = await client.fetch_metrics(window.start, window.end)
        actions = await client.fetch_conversion_actions(window.start, window.end)
        if self._country_codes is None:
            self._country_codes = await client.fetch_country_codes()
        rows = merge_reports(
            metrics.records, actions.records, customer_id=client.customer_id, country_codes=self._country_codes
        )
        inserted = await run_blocking(ctx.repository.upsert_ads_rows, tenant_id, rows)
        logger.info("Upserted %s Google Ads rows for tenant %s", inserted, tenant_id)
        affected = set(date_range(window.start, window.end))
        affected.update(row.date for row in rows)
        await run_blocking(rebuild_google_ads_days, ctx.engine, tenant_id, sorted(affected))
        return SyncOutcome(
            inserted=inserted,
            affected_dates=sorted(affected),
            skipped=metrics.skipped + actions.skipped,
            pages=metrics.pages + actions.pages,
            truncated=metrics.truncated or actions.truncated,
            details={"metric_rows": len(metrics.records), "action_rows": len(actions.records)},
        )


STRATEGIES: dict[str, Callable[[], ProviderSyncStrategy]] = {
    SOURCE_SHOPIFY: ShopifyStrategy,
    SOURCE_GOOGLE_ADS: GoogleAdsStrategy,
}


def strategy_for(source: str) -> ProviderSyncStrategy:
    try:
        return STRATEGIES[source]()
    except KeyError as exc:
        raise ConfigurationError(f"Unsupported source {source!r}") from exc
