"""Idempotent persistence of connections, detail rows and the customer ledger."""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import Any, Iterable, Mapping

from sqlalchemy import bindparam
from sqlalchemy.engine import Connection as SAConnection
from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

from syncengine.errors import StaleConnectionStateError
from syncengine.ingest.models import AdsPerformanceRow, Connection, OrderRow
from syncengine.utils.dates import parse_timestamp, to_utc_iso, utcnow

logger = logging.getLogger(__name__)

CONNECTION_COLUMNS = (
    "id, tenant_id, source, status, access_token_enc, refresh_token_enc, expires_at, meta, state_version"
)


def json_param(conn: SAConnection, name: str) -> str:
    """Placeholder for a JSON value, cast on PostgreSQL."""
    if conn.dialect.name == "sqlite":
        return f":{name}"
    return f"CAST(:{name} AS JSONB)"


def load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _row_to_connection(row: Mapping[str, Any]) -> Connection:
    return Connection(
        id=row["id"],
        tenant_id=row["tenant_id"],
        source=row["source"],
        status=row["status"],
        access_token_enc=row["access_token_enc"],
        refresh_token_enc=row["refresh_token_enc"],
        expires_at=row["expires_at"],
        meta=load_json(row["meta"]) or {},
        state_version=int(row["state_version"] or 0),
    )


class Repository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # connections

    def load_connection(self, tenant_id: str, source: str) -> Connection | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {CONNECTION_COLUMNS} FROM connections WHERE tenant_id = :tenant_id AND source = :source"),
                {"tenant_id": tenant_id, "source": source},
            ).mappings().first()
        return _row_to_connection(row) if row else None

    def list_sync_candidates(self, source: str, limit: int) -> list[Connection]:
        """Connected tenants for ``source``, least recently synced first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {CONNECTION_COLUMNS} FROM connections WHERE source = :source AND status = 'connected'"),
                {"source": source},
            ).mappings().all()
        connections = [_row_to_connection(row) for row in rows]

        def last_synced(connection: Connection) -> tuple[int, str, str]:
            raw = connection.meta.get("last_sync_at") or connection.meta.get("last_synced_at")
            try:
                stamp = to_utc_iso(raw)
            except (ValueError, TypeError):
                stamp = None
            return (0, "", connection.tenant_id) if stamp is None else (1, stamp, connection.tenant_id)

        connections.sort(key=last_synced)
        return connections[:limit]

    def save_connection_state(self, connection: Connection, meta: Mapping[str, Any]) -> int:
        """Write ``meta`` only if nobody else advanced the state since we read it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    f"""
                    UPDATE connections
                    SET meta = {json_param(conn, "meta")},
                        state_version = state_version + 1,
                        updated_at = :updated_at
                    WHERE id = :id AND state_version = :expected
                    """
                ),
                {
                    "meta": json.dumps(meta, sort_keys=True),
                    "updated_at": to_utc_iso(utcnow()),
                    "id": connection.id,
                    "expected": connection.state_version,
                },
            )
        if result.rowcount != 1:
            raise StaleConnectionStateError(
                f"Connection state for tenant {connection.tenant_id} ({connection.source}) changed during the run"
            )
        connection.meta = dict(meta)
        connection.state_version += 1
        return connection.state_version

    def update_access_token(self, connection: Connection, access_token_enc: str, expires_at: str | None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE connections
                    SET access_token_enc = :token, expires_at = :expires_at, updated_at = :updated_at
                    WHERE id = :id
                    """
                ),
                {
                    "token": access_token_enc,
                    "expires_at": expires_at,
                    "updated_at": to_utc_iso(utcnow()),
                    "id": connection.id,
                },
            )
        connection.access_token_enc = access_token_enc
        connection.expires_at = expires_at

    # shopify

    def upsert_orders(self, tenant_id: str, rows: Iterable[OrderRow]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        synced_at = to_utc_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO shopify_orders (
                        tenant_id, order_id, name, created_at, processed_at, cancelled_at, order_date,
                        financial_status, is_test, currency, customer_id, customer_type, is_first_order,
                        gross_cents, discounts_cents, returns_cents, net_cents, tax_cents, shipping_cents,
                        revenue_cents, counted, raw, synced_at
                    ) VALUES (
                        :tenant_id, :order_id, :name, :created_at, :processed_at, :cancelled_at, :order_date,
                        :financial_status, :is_test, :currency, :customer_id, :customer_type, :is_first_order,
                        :gross_cents, :discounts_cents, :returns_cents, :net_cents, :tax_cents, :shipping_cents,
                        :revenue_cents, :counted, {json_param(conn, "raw")}, :synced_at
                    )
                    ON CONFLICT (tenant_id, order_id) DO UPDATE SET
                      name = EXCLUDED.name,
                      created_at = EXCLUDED.created_at,
                      processed_at = EXCLUDED.processed_at,
                      cancelled_at = EXCLUDED.cancelled_at,
                      order_date = EXCLUDED.order_date,
                      financial_status = EXCLUDED.financial_status,
                      is_test = EXCLUDED.is_test,
                      currency = EXCLUDED.currency,
                      customer_id = EXCLUDED.customer_id,
                      customer_type = EXCLUDED.customer_type,
                      is_first_order = EXCLUDED.is_first_order,
                      gross_cents = EXCLUDED.gross_cents,
                      discounts_cents = EXCLUDED.discounts_cents,
                      returns_cents = EXCLUDED.returns_cents,
                      net_cents = EXCLUDED.net_cents,
                      tax_cents = EXCLUDED.tax_cents,
                      shipping_cents = EXCLUDED.shipping_cents,
                      revenue_cents = EXCLUDED.revenue_cents,
                      counted = EXCLUDED.counted,
                      raw = EXCLUDED.raw
                    """
                ),
                [
                    {
                        "tenant_id": tenant_id,
                        "order_id": row.order_id,
                        "name": row.name,
                        "created_at": row.created_at,
                        "processed_at": row.processed_at,
                        "cancelled_at": row.cancelled_at,
                        "order_date": row.order_date.isoformat(),
                        "financial_status": row.financial_status,
                        "is_test": row.is_test,
                        "currency": row.currency,
                        "customer_id": row.customer_id,
                        "customer_type": row.customer_type,
                        "is_first_order": row.is_first_order,
                        "gross_cents": row.gross_cents,
                        "discounts_cents": row.discounts_cents,
                        "returns_cents": row.returns_cents,
                        "net_cents": row.net_cents,
                        "tax_cents": row.tax_cents,
                        "shipping_cents": row.shipping_cents,
                        "revenue_cents": row.revenue_cents,
                        "counted": row.counted,
                        "raw": json.dumps(row.raw, sort_keys=True),
                        "synced_at": synced_at,
                    }
                    for row in rows
                ],
            )
            refunds = [
                {
                    "tenant_id": tenant_id,
                    "order_id": refund.order_id,
                    "refund_id": refund.refund_id,
                    "refund_date": refund.refund_date.isoformat(),
                    "returns_cents": refund.returns_cents,
                    "synced_at": synced_at,
                }
                for row in rows
                for refund in row.refunds
            ]
            if refunds:
                conn.execute(
                    text(
                        """
                        INSERT INTO shopify_refunds (tenant_id, order_id, refund_id, refund_date, returns_cents, synced_at)
                        VALUES (:tenant_id, :order_id, :refund_id, :refund_date, :returns_cents, :synced_at)
                        ON CONFLICT (tenant_id, order_id, refund_id) DO UPDATE SET
                          refund_date = EXCLUDED.refund_date,
                          returns_cents = EXCLUDED.returns_cents
                        """
                    ),
                    refunds,
                )
        logger.info("Upserted %s orders and %s refunds for tenant %s", len(rows), len(refunds), tenant_id)
        return len(rows)

    def merge_customer_ledger(self, tenant_id: str, candidates: Mapping[str, tuple[str, str]]) -> None:
        """MIN-merge (first_order_at, first_order_id) pairs; a stored pair only ever moves earlier."""
        if not candidates:
            return
        updated_at = to_utc_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO customer_ledger (tenant_id, customer_id, first_order_at, first_order_id, updated_at)
                    VALUES (:tenant_id, :customer_id, :first_order_at, :first_order_id, :updated_at)
                    ON CONFLICT (tenant_id, customer_id) DO UPDATE SET
                      first_order_at = EXCLUDED.first_order_at,
                      first_order_id = EXCLUDED.first_order_id,
                      updated_at = EXCLUDED.updated_at
                    WHERE EXCLUDED.first_order_at < customer_ledger.first_order_at
                       OR (EXCLUDED.first_order_at = customer_ledger.first_order_at
                           AND EXCLUDED.first_order_id < customer_ledger.first_order_id)
                    """
                ),
                [
                    {
                        "tenant_id": tenant_id,
                        "customer_id": customer_id,
                        "first_order_at": first_at,
                        "first_order_id": first_id,
                        "updated_at": updated_at,
                    }
                    for customer_id, (first_at, first_id) in sorted(candidates.items())
                ],
            )

    def load_customer_ledger(self, tenant_id: str, customer_ids: Iterable[str]) -> dict[str, tuple[str, str]]:
        ids = sorted(set(customer_ids))
        if not ids:
            return {}
        query = text(
            """
            SELECT customer_id, first_order_at, first_order_id
            FROM customer_ledger
            WHERE tenant_id = :tenant_id AND customer_id IN :ids
            """
        ).bindparams(bindparam("ids", expanding=True))
        with self.engine.connect() as conn:
            rows = conn.execute(query, {"tenant_id": tenant_id, "ids": ids}).fetchall()
        return {customer_id: (to_utc_iso(parse_timestamp(first_at)), str(first_id)) for customer_id, first_at, first_id in rows}

    def demote_superseded_first_orders(self, tenant_id: str, ledger: Mapping[str, tuple[str, str]]) -> set[date]:
        """Clear the first-order flag on stored orders the ledger no longer names.

        Returns the order dates touched so their daily summaries can be rebuilt.
        """
        if not ledger:
            return set()
        touched: set[date] = set()
        select_stale = text(
            """
            SELECT order_id, order_date FROM shopify_orders
            WHERE tenant_id = :tenant_id AND customer_id = :customer_id
              AND is_first_order = :is_first AND order_id <> :first_order_id
            """
        )
        demote = text(
            """
            UPDATE shopify_orders
            SET is_first_order = :not_first, customer_type = 'RETURNING'
            WHERE tenant_id = :tenant_id AND order_id = :order_id
            """
        )
        with self.engine.begin() as conn:
            for customer_id, (_, first_id) in sorted(ledger.items()):
                stale = conn.execute(
                    select_stale,
                    {"tenant_id": tenant_id, "customer_id": customer_id, "is_first": True, "first_order_id": first_id},
                ).fetchall()
                for order_id, order_date in stale:
                    conn.execute(demote, {"tenant_id": tenant_id, "order_id": order_id, "not_first": False})
                    touched.add(as_date(order_date))
        if touched:
            logger.info("Demoted superseded first orders for tenant %s on %s day(s)", tenant_id, len(touched))
        return touched

    # google ads

    def upsert_ads_rows(self, tenant_id: str, rows: Iterable[AdsPerformanceRow]) -> int:
        rows = list(rows)
        if not rows:
            return 0
        synced_at = to_utc_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"""
                    INSERT INTO google_ads_daily (
                        tenant_id, customer_id, date, campaign_id, campaign_name, ad_group_id, ad_group_name,
                        country_criterion_id, location_type, country_code, impressions, clicks, cost_micros,
                        conversions, conversions_value, conversion_action_id, conversion_actions, synced_at
                    ) VALUES (
                        :tenant_id, :customer_id, :date, :campaign_id, :campaign_name, :ad_group_id, :ad_group_name,
                        :country_criterion_id, :location_type, :country_code, :impressions, :clicks, :cost_micros,
                        :conversions, :conversions_value, :conversion_action_id, {json_param(conn, "conversion_actions")},
                        :synced_at
                    )
                    ON CONFLICT (tenant_id, customer_id, date, campaign_id, ad_group_id, country_criterion_id, location_type)
                    DO UPDATE SET
                      campaign_name = EXCLUDED.campaign_name,
                      ad_group_name = EXCLUDED.ad_group_name,
                      country_code = EXCLUDED.country_code,
                      impressions = EXCLUDED.impressions,
                      clicks = EXCLUDED.clicks,
                      cost_micros = EXCLUDED.cost_micros,
                      conversions = EXCLUDED.conversions,
                      conversions_value = EXCLUDED.conversions_value,
                      conversion_action_id = EXCLUDED.conversion_action_id,
                      conversion_actions = EXCLUDED.conversion_actions
                    """
                ),
                [
                    {
                        "tenant_id": tenant_id,
                        "customer_id": row.customer_id,
                        "date": row.date.isoformat(),
                        "campaign_id": row.campaign_id,
                        "campaign_name": row.campaign_name,
                        "ad_group_id": row.ad_group_id,
                        "ad_group_name": row.ad_group_name,
                        "country_criterion_id": row.country_criterion_id,
                        "location_type": row.location_type,
                        "country_code": row.country_code,
                        "impressions": row.impressions,
                        "clicks": row.clicks,
                        "cost_micros": row.cost_micros,
                        "conversions": row.conversions,
                        "conversions_value": row.conversions_value,
                        "conversion_action_id": row.conversion_action_id,
                        "conversion_actions": json.dumps(row.conversion_actions, sort_keys=True),
                        "synced_at": synced_at,
                    }
                    for row in rows
                ],
            )
        logger.info("Upserted %s Google Ads rows for tenant %s", len(rows), tenant_id)
        return len(rows)
