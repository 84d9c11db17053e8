"""Shopify order accounting: tax-exclusive gross, discounts, returns and net sales.

Prices arrive tax-inclusive when the shop has ``taxesIncluded``; every figure
stored here is tax-exclusive. The per-order effective rate is inferred as
``tax / (subtotal - tax)``. When line items carry clearly different rates the
per-line rate is used instead.
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from syncengine.errors import RecordTransformError
from syncengine.ingest.models import OrderRow, RefundRow
from syncengine.ingest.shopify import legacy_id
from syncengine.utils.dates import local_date, to_utc_iso

logger = logging.getLogger(__name__)

COUNTED_STATUSES = frozenset({"paid", "partially_paid", "partially_refunded", "refunded"})
RATE_TOLERANCE = Decimal("0.0005")
ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_cents(value: Decimal | None) -> int | None:
    if value is None:
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money(node: Mapping[str, Any] | None, key: str) -> Decimal | None:
    """Read ``node[key].shopMoney.amount`` as a Decimal."""
    if not node:
        return None
    bag = node.get(key)
    if not bag:
        return None
    amount = (bag.get("shopMoney") or {}).get("amount")
    if amount in (None, ""):
        return None
    try:
        return Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"bad amount {amount!r} in {key}") from exc


def _edges(connection: Any) -> list[dict[str, Any]]:
    if isinstance(connection, list):
        return connection
    if not connection:
        return []
    return [edge["node"] for edge in connection.get("edges") or [] if edge.get("node")]


def financial_status(order: Mapping[str, Any]) -> str | None:
    status = order.get("displayFinancialStatus") or order.get("financial_status")
    return str(status).lower() if status else None


class _Line:
    __slots__ = ("id", "gross_incl", "discount_incl", "tax", "rate", "free")

    def __init__(self, node: Mapping[str, Any]) -> None:
        self.id = node.get("id")
        quantity = Decimal(int(node.get("quantity") or 0))
        unit = money(node, "originalUnitPriceSet") or ZERO
        self.gross_incl = unit * quantity
        allocated = sum(
            (money(alloc, "allocatedAmountSet") or ZERO for alloc in node.get("discountAllocations") or []),
            ZERO,
        )
        if not allocated:
            allocated = money(node, "totalDiscountSet") or ZERO
        self.discount_incl = allocated
        tax_lines = node.get("taxLines") or []
        self.tax = sum((money(tl, "priceSet") or ZERO for tl in tax_lines), ZERO)
        self.free = self.gross_incl > 0 and self.discount_incl >= self.gross_incl - CENT / 2
        self.rate = self._infer_rate(tax_lines)

    def _infer_rate(self, tax_lines: list[dict[str, Any]]) -> Decimal | None:
        if self.free:
            return None
        declared = [tl.get("rate") for tl in tax_lines if tl.get("rate") is not None]
        if declared:
            try:
                return sum((Decimal(str(rate)) for rate in declared), ZERO)
            except InvalidOperation:
                pass
        base = self.gross_incl - self.discount_incl - self.tax
        if base > 0:
            return self.tax / base
        return None


class OrderAccounting:
    """Tax-exclusive figures for one raw GraphQL order node."""

    def __init__(self, order: Mapping[str, Any]) -> None:
        self.order = order
        self.taxes_included = bool(order.get("taxesIncluded", True))
        self.subtotal = money(order, "subtotalPriceSet")
        self.tax = money(order, "totalTaxSet")
        self.lines = [_Line(node) for node in _edges(order.get("lineItems"))]
        self.lines_by_id = {line.id: line for line in self.lines if line.id}
        self.order_rate = self._order_rate()
        self.per_line = self._mixed_rates()

    def _order_rate(self) -> Decimal:
        if not self.taxes_included or not self.tax or self.subtotal is None:
            return ZERO
        base = self.subtotal - self.tax
        if base <= 0:
            return ZERO
        return self.tax / base

    def _mixed_rates(self) -> bool:
        rates = [line.rate for line in self.lines if line.rate is not None]
        if len(rates) < 2:
            return False
        return max(rates) - min(rates) > RATE_TOLERANCE

    def rate_for(self, line: _Line | None) -> Decimal:
        if line is not None and self.per_line and line.rate is not None:
            return line.rate
        return self.order_rate

    def exclusive(self, amount: Decimal, rate: Decimal) -> Decimal:
        if not self.taxes_included or rate <= 0:
            return amount
        return amount / (1 + rate)

    def embedded_tax(self, line: _Line) -> Decimal:
        return line.gross_incl - self.exclusive(line.gross_incl, self.order_rate)

    def gross(self) -> Decimal:
        total = ZERO
        for line in self.lines:
            total += self.exclusive(line.gross_incl, self.rate_for(line))
            if line.free:
                total += self.embedded_tax(line)
        return total

    def discounts(self) -> Decimal:
        free_addback = sum((self.embedded_tax(line) for line in self.lines if line.free), ZERO)
        order_total = money(self.order, "totalDiscountsSet")
        if order_total is None:
            summed = sum((self.exclusive(line.discount_incl, self.rate_for(line)) for line in self.lines), ZERO)
            return summed + free_addback
        if not self.per_line:
            return self.exclusive(order_total, self.order_rate) + free_addback
        allocated_incl = sum((line.discount_incl for line in self.lines), ZERO)
        allocated = sum((self.exclusive(line.discount_incl, self.rate_for(line)) for line in self.lines), ZERO)
        residual = order_total - allocated_incl
        return allocated + self.exclusive(residual, self.order_rate) + free_addback

    def refund_amount(self, refund: Mapping[str, Any]) -> Decimal:
        lines = _edges(refund.get("refundLineItems"))
        if lines:
            total = ZERO
            for node in lines:
                subtotal = money(node, "subtotalSet") or ZERO
                original = self.lines_by_id.get((node.get("lineItem") or {}).get("id"))
                total += self.exclusive(subtotal, self.rate_for(original))
            return total
        refunded = ZERO
        for txn in _edges(refund.get("transactions")):
            if str(txn.get("kind", "")).upper() == "REFUND" and str(txn.get("status", "")).upper() == "SUCCESS":
                refunded += money(txn, "amountSet") or ZERO
        return self.exclusive(refunded, self.order_rate)

    def shipping(self) -> Decimal | None:
        shipping = money(self.order, "totalShippingPriceSet")
        if shipping is None:
            return None
        if not self.taxes_included:
            return shipping
        shipping_lines = _edges(self.order.get("shippingLines"))
        if shipping_lines:
            shipping_tax = ZERO
            for node in shipping_lines:
                for tax_line in node.get("taxLines") or []:
                    shipping_tax += money(tax_line, "priceSet") or ZERO
            return shipping - shipping_tax
        return self.exclusive(shipping, self.order_rate)


def transform_order(order: Mapping[str, Any], *, timezone: str) -> OrderRow:
    order_id = legacy_id(order.get("legacyResourceId") or order.get("id"))
    if not order_id:
        raise RecordTransformError(None, "order without id")
    try:
        created_at = to_utc_iso(order.get("createdAt"))
    except ValueError as exc:
        raise RecordTransformError(order_id, f"bad createdAt: {exc}") from exc
    if not created_at:
        raise RecordTransformError(order_id, "order without createdAt")
    try:
        accounting = OrderAccounting(order)
        status = financial_status(order)
        counted = status in COUNTED_STATUSES
        refunds: list[RefundRow] = []
        for refund in order.get("refunds") or []:
            refund_id = legacy_id(refund.get("id"))
            refund_date = local_date(refund.get("createdAt"), timezone)
            if not refund_id or refund_date is None:
                raise RecordTransformError(order_id, "refund without id or createdAt")
            refunds.append(
                RefundRow(
                    refund_id=refund_id,
                    order_id=order_id,
                    refund_date=refund_date,
                    returns_cents=to_cents(accounting.refund_amount(refund)) or 0,
                )
            )
        tax_cents = to_cents(accounting.tax)
        shipping_cents = to_cents(accounting.shipping())
        if counted:
            gross_cents = to_cents(accounting.gross()) or 0
            discounts_cents = to_cents(accounting.discounts()) or 0
            returns_cents = sum(refund.returns_cents for refund in refunds)
        else:
            gross_cents = discounts_cents = returns_cents = 0
        net_cents = gross_cents - discounts_cents - returns_cents
        revenue_cents = net_cents + (tax_cents or 0) + (shipping_cents or 0) if counted else 0
        processed_at = to_utc_iso(order.get("processedAt"))
        cancelled_at = to_utc_iso(order.get("cancelledAt"))
    except (ValueError, TypeError, InvalidOperation) as exc:
        raise RecordTransformError(order_id, str(exc)) from exc

    customer = order.get("customer") or {}
    return OrderRow(
        order_id=order_id,
        name=order.get("name"),
        created_at=created_at,
        processed_at=processed_at,
        cancelled_at=cancelled_at,
        order_date=local_date(created_at, timezone),
        financial_status=status,
        is_test=bool(order.get("test")),
        currency=order.get("currencyCode"),
        customer_id=legacy_id(customer.get("id")),
        gross_cents=gross_cents,
        discounts_cents=discounts_cents,
        returns_cents=returns_cents,
        net_cents=net_cents,
        tax_cents=tax_cents,
        shipping_cents=shipping_cents,
        revenue_cents=revenue_cents,
        counted=counted,
        raw=order,
        refunds=refunds,
    )


def transform_orders(orders: Iterable[Mapping[str, Any]], *, timezone: str) -> tuple[list[OrderRow], int]:
    """Transform a batch; malformed orders are logged and skipped."""
    rows: list[OrderRow] = []
    skipped = 0
    for order in orders:
        try:
            rows.append(transform_order(order, timezone=timezone))
        except RecordTransformError as exc:
            skipped += 1
            logger.warning("Skipping Shopify order %s", exc)
    return rows, skipped
