from datetime import date
from itertools import permutations

import pytest
from sqlalchemy import text

from syncengine.ingest.models import OrderRow
from syncengine.logic.classify import FIRST_TIME, GUEST, RETURNING, classify_orders


def make_order(order_id, created_at, customer_id="c1"):
    return OrderRow(
        order_id=order_id,
        name=f"#{order_id}",
        created_at=created_at,
        processed_at=None,
        cancelled_at=None,
        order_date=date.fromisoformat(created_at[:10]),
        financial_status="paid",
        is_test=False,
        currency="SEK",
        customer_id=customer_id,
        gross_cents=1000,
        discounts_cents=0,
        returns_cents=0,
        net_cents=1000,
        tax_cents=250,
        shipping_cents=0,
        revenue_cents=1250,
        counted=True,
        raw={},
    )


BATCHES = [
    ["o3"],
    ["o1", "g1"],
    ["o2"],
]
CREATED = {
    "o1": "2024-03-01T08:00:00.000000Z",
    "o2": "2024-03-02T08:00:00.000000Z",
    "o3": "2024-03-03T08:00:00.000000Z",
    "g1": "2024-03-01T09:00:00.000000Z",
}


def stored_flags(engine):
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT order_id, customer_type, is_first_order FROM shopify_orders")).fetchall()
    return {order_id: (customer_type, bool(first)) for order_id, customer_type, first in rows}


@pytest.mark.parametrize("order", list(permutations(range(len(BATCHES)))))
def test_first_order_is_independent_of_batching(engine, repository, order):
    for index in order:
        rows = [make_order(oid, CREATED[oid], None if oid.startswith("g") else "c1") for oid in BATCHES[index]]
        classify_orders(repository, "t1", rows)
        repository.upsert_orders("t1", rows)
    assert stored_flags(engine) == {
        "o1": (FIRST_TIME, True),
        "o2": (RETURNING, False),
        "o3": (RETURNING, False),
        "g1": (GUEST, False),
    }


def test_superseded_first_order_dates_are_returned(repository):
    later = [make_order("o3", CREATED["o3"])]
    assert classify_orders(repository, "t1", later) == set()
    repository.upsert_orders("t1", later)
    touched = classify_orders(repository, "t1", [make_order("o1", CREATED["o1"])])
    assert touched == {date(2024, 3, 3)}


def test_ledger_is_tenant_scoped(engine, repository):
    classify_orders(repository, "t1", [make_order("o1", CREATED["o1"])])
    rows = [make_order("o9", CREATED["o3"])]
    classify_orders(repository, "t2", rows)
    assert rows[0].is_first_order
    assert repository.load_customer_ledger("t2", ["c1"]) == {"c1": (CREATED["o3"], "o9")}
