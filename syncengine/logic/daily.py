"""Daily KPI and sales-summary computation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from sqlalchemy import bindparam
from sqlalchemy.engine import Engine
from sqlalchemy.sql import text

from syncengine.db.repository import as_date
from syncengine.logic.classify import FIRST_TIME, GUEST
from syncengine.logic.signals import aov, cents_to_units, cos, micros_to_units, roas

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DailySales:
    date: date
    gross_cents: int = 0
    discounts_cents: int = 0
    returns_cents: int = 0
    tax_cents: int = 0
    shipping_cents: int = 0
    orders_count: int = 0
    new_customer_orders: int = 0
    new_customer_net_sales_cents: int = 0
    returning_customer_net_sales_cents: int = 0
    guest_net_sales_cents: int = 0
    currency: str | None = None

    @property
    def net_cents(self) -> int:
        return self.gross_cents - self.discounts_cents - self.returns_cents

    @property
    def revenue_cents(self) -> int:
        return self.net_cents + self.tax_cents + self.shipping_cents

    def add_net(self, customer_type: str | None, cents: int) -> None:
        if customer_type == FIRST_TIME:
            self.new_customer_net_sales_cents += cents
        elif customer_type == GUEST or customer_type is None:
            self.guest_net_sales_cents += cents
        else:
            self.returning_customer_net_sales_cents += cents


@dataclass(slots=True)
class DailyAds:
    date: date
    cost_micros: int = 0
    clicks: int = 0
    conversions: float = 0.0
    conversions_value: float = 0.0


def compute_shopify_days(engine: Engine, tenant_id: str, dates: Iterable[date]) -> list[DailySales]:
    """Recompute the sales summary for ``dates`` from every stored order and refund.

    Orders count on their own date; refunds count on the refund date. Only
    counted, non-test orders with positive gross sales take part.
    """
    days = {day: DailySales(date=day) for day in sorted(set(dates))}
    if not days:
        return []
    keys = [day.isoformat() for day in days]
    orders_query = text(
        """
        SELECT order_date, gross_cents, discounts_cents, tax_cents, shipping_cents, customer_type, currency
        FROM shopify_orders
        WHERE tenant_id = :tenant_id AND order_date IN :dates
          AND counted = :yes AND is_test = :no AND gross_cents > 0
        """
    ).bindparams(bindparam("dates", expanding=True))
    refunds_query = text(
        """
        SELECT r.refund_date, r.returns_cents, o.customer_type
        FROM shopify_refunds r
        JOIN shopify_orders o ON o.tenant_id = r.tenant_id AND o.order_id = r.order_id
        WHERE r.tenant_id = :tenant_id AND r.refund_date IN :dates
          AND o.counted = :yes AND o.is_test = :no AND o.gross_cents > 0
        """
    ).bindparams(bindparam("dates", expanding=True))
    params = {"tenant_id": tenant_id, "dates": keys, "yes": True, "no": False}
    with engine.connect() as conn:
        order_rows = conn.execute(orders_query, params).fetchall()
        refund_rows = conn.execute(refunds_query, params).fetchall()

    for order_date, gross, discounts, tax, shipping, customer_type, currency in order_rows:
        day = days[as_date(order_date)]
        day.gross_cents += int(gross or 0)
        day.discounts_cents += int(discounts or 0)
        day.tax_cents += int(tax or 0)
        day.shipping_cents += int(shipping or 0)
        day.orders_count += 1
        day.currency = day.currency or currency
        day.add_net(customer_type, int(gross or 0) - int(discounts or 0))
        if customer_type == FIRST_TIME:
            day.new_customer_orders += 1

    for refund_date, returns, customer_type in refund_rows:
        day = days[as_date(refund_date)]
        day.returns_cents += int(returns or 0)
        day.add_net(customer_type, -int(returns or 0))
    return list(days.values())


def compute_google_ads_days(engine: Engine, tenant_id: str, dates: Iterable[date]) -> list[DailyAds]:
    days = {day: DailyAds(date=day) for day in sorted(set(dates))}
    if not days:
        return []
    query = text(
        """
        SELECT date, SUM(cost_micros), SUM(clicks), SUM(conversions), SUM(conversions_value)
        FROM google_ads_daily
        WHERE tenant_id = :tenant_id AND date IN :dates
          AND (cost_micros > 0 OR conversions_value > 0)
        GROUP BY date
        """
    ).bindparams(bindparam("dates", expanding=True))
    with engine.connect() as conn:
        rows = conn.execute(query, {"tenant_id": tenant_id, "dates": [day.isoformat() for day in days]}).fetchall()
    for row_date, cost, clicks, conversions, value in rows:
        day = days[as_date(row_date)]
        day.cost_micros = int(cost or 0)
        day.clicks = int(clicks or 0)
        day.conversions = float(conversions or 0)
        day.conversions_value = float(value or 0)
    return list(days.values())


def persist_shopify_days(engine: Engine, tenant_id: str, days: list[DailySales]) -> int:
    if not days:
        return 0
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO shopify_daily_sales (
                    tenant_id, date, gross_cents, discounts_cents, returns_cents, net_cents, tax_cents,
                    shipping_cents, orders_count, new_customer_orders, new_customer_net_sales_cents,
                    returning_customer_net_sales_cents, guest_net_sales_cents, currency
                ) VALUES (
                    :tenant_id, :date, :gross_cents, :discounts_cents, :returns_cents, :net_cents, :tax_cents,
                    :shipping_cents, :orders_count, :new_customer_orders, :new_customer_net_sales_cents,
                    :returning_customer_net_sales_cents, :guest_net_sales_cents, :currency
                )
                ON CONFLICT (tenant_id, date) DO UPDATE SET
                  gross_cents = EXCLUDED.gross_cents,
                  discounts_cents = EXCLUDED.discounts_cents,
                  returns_cents = EXCLUDED.returns_cents,
                  net_cents = EXCLUDED.net_cents,
                  tax_cents = EXCLUDED.tax_cents,
                  shipping_cents = EXCLUDED.shipping_cents,
                  orders_count = EXCLUDED.orders_count,
                  new_customer_orders = EXCLUDED.new_customer_orders,
                  new_customer_net_sales_cents = EXCLUDED.new_customer_net_sales_cents,
                  returning_customer_net_sales_cents = EXCLUDED.returning_customer_net_sales_cents,
                  guest_net_sales_cents = EXCLUDED.guest_net_sales_cents,
                  currency = EXCLUDED.currency
                """
            ),
            [
                {
                    "tenant_id": tenant_id,
                    "date": day.date.isoformat(),
                    "gross_cents": day.gross_cents,
                    "discounts_cents": day.discounts_cents,
                    "returns_cents": day.returns_cents,
                    "net_cents": day.net_cents,
                    "tax_cents": day.tax_cents,
                    "shipping_cents": day.shipping_cents,
                    "orders_count": day.orders_count,
                    "new_customer_orders": day.new_customer_orders,
                    "new_customer_net_sales_cents": day.new_customer_net_sales_cents,
                    "returning_customer_net_sales_cents": day.returning_customer_net_sales_cents,
                    "guest_net_sales_cents": day.guest_net_sales_cents,
                    "currency": day.currency,
                }
                for day in days
            ],
        )
        _upsert_kpis(
            conn,
            [
                {
                    "tenant_id": tenant_id,
                    "date": day.date.isoformat(),
                    "source": "shopify",
                    "spend": None,
                    "clicks": None,
                    "conversions": day.orders_count,
                    "revenue": cents_to_units(day.revenue_cents),
                    "gross_sales": cents_to_units(day.gross_cents),
                    "net_sales": cents_to_units(day.net_cents),
                    "aov": aov(cents_to_units(day.revenue_cents), day.orders_count),
                    "cos": None,
                    "roas": None,
                }
                for day in days
            ],
        )
    return len(days)


def persist_google_ads_days(engine: Engine, tenant_id: str, days: list[DailyAds]) -> int:
    if not days:
        return 0
    rows = []
    for day in days:
        spend = micros_to_units(day.cost_micros)
        revenue = round(day.conversions_value, 6)
        rows.append(
            {
                "tenant_id": tenant_id,
                "date": day.date.isoformat(),
                "source": "google_ads",
                "spend": spend,
                "clicks": day.clicks,
                "conversions": round(day.conversions, 6),
                "revenue": revenue,
                "gross_sales": None,
                "net_sales": None,
                "aov": aov(revenue, day.conversions),
                "cos": cos(spend, revenue),
                "roas": roas(revenue, spend),
            }
        )
    with engine.begin() as conn:
        _upsert_kpis(conn, rows)
    return len(rows)


def _upsert_kpis(conn, rows: list[dict[str, object]]) -> None:
    conn.execute(
        text(
            """
            INSERT INTO kpi_daily (
                tenant_id, date, source, spend, clicks, conversions, revenue, gross_sales, net_sales, aov, cos, roas
            ) VALUES (
                :tenant_id, :date, :source, :spend, :clicks, :conversions, :revenue, :gross_sales, :net_sales,
                :aov, :cos, :roas
            )
            ON CONFLICT (tenant_id, date, source) DO UPDATE SET
              spend = EXCLUDED.spend,
              clicks = EXCLUDED.clicks,
              conversions = EXCLUDED.conversions,
              revenue = EXCLUDED.revenue,
              gross_sales = EXCLUDED.gross_sales,
              net_sales = EXCLUDED.net_sales,
              aov = EXCLUDED.aov,
              cos = EXCLUDED.cos,
              roas = EXCLUDED.roas
            """
        ),
        rows,
    )


def rebuild_shopify_days(engine: Engine, tenant_id: str, dates: Iterable[date]) -> int:
    days = compute_shopify_days(engine, tenant_id, dates)
    count = persist_shopify_days(engine, tenant_id, days)
    logger.info("Rebuilt %s Shopify day(s) for tenant %s", count, tenant_id)
    return count


def rebuild_google_ads_days(engine: Engine, tenant_id: str, dates: Iterable[date]) -> int:
    days = compute_google_ads_days(engine, tenant_id, dates)
    count = persist_google_ads_days(engine, tenant_id, days)
    logger.info("Rebuilt %s Google Ads day(s) for tenant %s", count, tenant_id)
    return count
