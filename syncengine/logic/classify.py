"""First-order classification backed by the persisted customer ledger."""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from syncengine.db.repository import Repository
from syncengine.ingest.models import OrderRow

logger = logging.getLogger(__name__)

FIRST_TIME = "FIRST_TIME"
RETURNING = "RETURNING"
GUEST = "GUEST"


def first_order_candidates(orders: Iterable[OrderRow]) -> dict[str, tuple[str, str]]:
    """Earliest (created_at, order_id) per customer within one batch."""
    candidates: dict[str, tuple[str, str]] = {}
    for order in orders:
        if not order.customer_id:
            continue
        pair = (order.created_at, order.order_id)
        current = candidates.get(order.customer_id)
        if current is None or pair < current:
            candidates[order.customer_id] = pair
    return candidates


def apply_ledger(orders: Iterable[OrderRow], ledger: dict[str, tuple[str, str]]) -> None:
    for order in orders:
        if not order.customer_id:
            order.is_first_order = False
            order.customer_type = GUEST
            continue
        order.is_first_order = ledger.get(order.customer_id) == (order.created_at, order.order_id)
        order.customer_type = FIRST_TIME if order.is_first_order else RETURNING


def classify_orders(repository: Repository, tenant_id: str, orders: list[OrderRow]) -> set[date]:
    """Flag each order that *is* its customer's first order.

    Candidates are merged into the ledger first and the ledger is read back
    afterwards, so the outcome does not depend on how orders were batched.
    Returns the dates of previously stored orders that lost their flag.
    """
    candidates = first_order_candidates(orders)
    repository.merge_customer_ledger(tenant_id, candidates)
    ledger = repository.load_customer_ledger(tenant_id, candidates.keys())
    apply_ledger(orders, ledger)
    touched = repository.demote_superseded_first_orders(tenant_id, ledger)
    first = sum(1 for order in orders if order.is_first_order)
    logger.info("Classified %s orders for tenant %s (%s first orders)", len(orders), tenant_id, first)
    return touched
