from datetime import date

import pytest
from sqlalchemy import text

from syncengine.ingest.models import AdsPerformanceRow, OrderRow, RefundRow
from syncengine.logic.daily import rebuild_google_ads_days, rebuild_shopify_days


def make_order(order_id, day, *, gross=10000, customer_type="FIRST_TIME", counted=True, is_test=False, refunds=()):
    return OrderRow(
        order_id=order_id,
        name=None,
        created_at=f"{day.isoformat()}T10:00:00.000000Z",
        processed_at=None,
        cancelled_at=None,
        order_date=day,
        financial_status="paid" if counted else "pending",
        is_test=is_test,
        currency="SEK",
        customer_id="c1",
        gross_cents=gross,
        discounts_cents=1000,
        returns_cents=sum(refund.returns_cents for refund in refunds),
        net_cents=gross - 1000,
        tax_cents=2250,
        shipping_cents=500,
        revenue_cents=gross - 1000 + 2750,
        counted=counted,
        raw={},
        refunds=list(refunds),
        customer_type=customer_type,
        is_first_order=customer_type == "FIRST_TIME",
    )


def ads_row(day, campaign, *, cost_micros, value, clicks=10, conversions=2.0):
    return AdsPerformanceRow(
        customer_id="1234567890",
        date=day,
        campaign_id=campaign,
        campaign_name=f"Campaign {campaign}",
        ad_group_id="1",
        ad_group_name="Group",
        country_criterion_id="2752",
        location_type="LOCATION_OF_PRESENCE",
        country_code="SE",
        impressions=100,
        clicks=clicks,
        cost_micros=cost_micros,
        conversions=conversions,
        conversions_value=value,
        conversion_action_id=None,
    )


def snapshot(engine, table):
    with engine.connect() as conn:
        return [tuple(row) for row in conn.execute(text(f"SELECT * FROM {table} ORDER BY 1, 2")).fetchall()]


def test_returns_land_on_refund_date(engine, repository):
    refund = RefundRow(refund_id="r1", order_id="o1", refund_date=date(2024, 3, 6), returns_cents=4000)
    repository.upsert_orders("t1", [make_order("o1", date(2024, 3, 1), refunds=[refund])])
    rebuild_shopify_days(engine, "t1", [date(2024, 3, 1), date(2024, 3, 6)])
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT date, gross_cents, returns_cents, net_cents, orders_count, new_customer_net_sales_cents "
                "FROM shopify_daily_sales WHERE tenant_id = 't1' ORDER BY date"
            )
        ).fetchall()
        kpi = conn.execute(
            text("SELECT date, net_sales, aov, spend, roas FROM kpi_daily WHERE source = 'shopify' ORDER BY date")
        ).fetchall()
    assert [tuple(row)[1:] for row in rows] == [
        (10000, 0, 9000, 1, 9000),
        (0, 4000, -4000, 0, -4000),
    ]
    assert float(kpi[0][1]) == pytest.approx(90.0)
    assert float(kpi[0][2]) == pytest.approx(117.5)
    assert kpi[1][2] is None
    assert kpi[1][3] is None and kpi[1][4] is None


def test_excluded_orders_do_not_count(engine, repository):
    day = date(2024, 3, 1)
    repository.upsert_orders(
        "t1",
        [
            make_order("o1", day, customer_type="RETURNING"),
            make_order("o2", day, is_test=True),
            make_order("o3", day, counted=False, gross=0),
            make_order("o4", day, gross=0),
            make_order("o5", day, customer_type="GUEST"),
        ],
    )
    rebuild_shopify_days(engine, "t1", [day])
    with engine.connect() as conn:
        row = conn.execute(
            text(
                "SELECT orders_count, new_customer_orders, returning_customer_net_sales_cents, guest_net_sales_cents "
                "FROM shopify_daily_sales"
            )
        ).one()
    assert tuple(row) == (2, 0, 9000, 9000)


def test_rebuild_is_idempotent(engine, repository):
    refund = RefundRow(refund_id="r1", order_id="o1", refund_date=date(2024, 3, 2), returns_cents=1500)
    repository.upsert_orders("t1", [make_order("o1", date(2024, 3, 1), refunds=[refund])])
    days = [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3)]
    rebuild_shopify_days(engine, "t1", days)
    first = (snapshot(engine, "shopify_daily_sales"), snapshot(engine, "kpi_daily"))
    rebuild_shopify_days(engine, "t1", days)
    assert (snapshot(engine, "shopify_daily_sales"), snapshot(engine, "kpi_daily")) == first


def test_ads_ratios_are_null_safe(engine, repository):
    repository.upsert_ads_rows(
        "t1",
        [
            ads_row(date(2024, 3, 1), "10", cost_micros=50_000_000, value=200.0),
            ads_row(date(2024, 3, 1), "11", cost_micros=0, value=0.0, clicks=99),
            ads_row(date(2024, 3, 2), "10", cost_micros=0, value=30.0),
        ],
    )
    rebuild_google_ads_days(engine, "t1", [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3)])
    with engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT date, spend, clicks, revenue, roas, cos, aov FROM kpi_daily "
                "WHERE source = 'google_ads' ORDER BY date"
            )
        ).fetchall()
    first, second, third = rows
    assert float(first[1]) == pytest.approx(50.0)
    assert first[2] == 10
    assert float(first[4]) == pytest.approx(4.0)
    assert float(first[5]) == pytest.approx(0.25)
    assert second[4] is None
    assert float(second[5]) == 0
    assert third[4] is None and third[5] is None and third[6] is None
