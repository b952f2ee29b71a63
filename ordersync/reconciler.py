from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Sequence

from ordersync.catalog import VAT_RATE
from ordersync.errors import OrderValidationError, ReconciliationInvariantError
from ordersync.models import InvoiceLine, ReconciliationResult
from ordersync.money import ZERO, divide, money_equal, money_sum, quantize

logger = logging.getLogger(__name__)


def rows_subtotal(lines: Sequence[InvoiceLine]) -> Decimal:
    return quantize(money_sum(line.unit_price * line.quantity for line in lines))


def aggregate_tax(subtotal: Decimal, vat_rate: Decimal = VAT_RATE) -> Decimal:
    return quantize(subtotal * vat_rate)


def per_line_tax(lines: Sequence[InvoiceLine], vat_rate: Decimal = VAT_RATE) -> Decimal:
    """Tax as Merit books it: each row rounded on its own, then summed."""
    return money_sum(quantize(line.line_total * vat_rate) for line in lines)


def largest_line_index(lines: Sequence[InvoiceLine]) -> Optional[int]:
    """Index of the first row with the largest positive total, None if no row is positive."""
    best: Optional[int] = None
    largest = ZERO
    for index, line in enumerate(lines):
        if line.line_total > largest:
            best = index
            largest = line.line_total
    return best


def reconcile(
    lines: Sequence[InvoiceLine],
    source_total: Decimal,
    order_id: Optional[str] = None,
    vat_rate: Decimal = VAT_RATE,
) -> ReconciliationResult:
    """Make Merit's recomputed invoice total land exactly on the order total.

    Merit recalculates VAT per row and rounds each row, so two corrections are
    used: the largest row absorbs the pre-tax gap to ``total / (1 + VAT)``,
    and the rounding field absorbs whatever per-row tax rounding adds on top.
    The input lines are not modified.
    """
    source_total = quantize(source_total)
    working = [line.model_copy() for line in lines]

    if not working:
        if source_total != ZERO:
            raise OrderValidationError(
                f"Order {order_id} has no invoiceable lines but totals {source_total}"
            )
        logger.warning("Order %s has no lines and a zero total", order_id)
        return ReconciliationResult(
            lines=[],
            subtotal=ZERO,
            tax_amount=ZERO,
            naive_tax=ZERO,
            rounding=ZERO,
            source_total=source_total,
        )

    subtotal = rows_subtotal(working)
    naive_tax = aggregate_tax(subtotal, vat_rate)
    difference = quantize(source_total - (subtotal + naive_tax))
    logger.info(
        "Order %s totals: expected %s, rows %s, VAT %s, difference %s",
        order_id,
        source_total,
        subtotal,
        naive_tax,
        difference,
    )

    adjusted_index: Optional[int] = None
    if difference != ZERO:
        adjusted_index = largest_line_index(working)
    if adjusted_index is None and difference != ZERO:
        logger.warning("Order %s has no positive row to adjust; rounding takes the difference", order_id)
    elif adjusted_index is not None:
        line = working[adjusted_index]
        target_subtotal = quantize(divide(source_total, Decimal("1") + vat_rate))
        adjustment = target_subtotal - subtotal
        new_line_total = line.line_total + adjustment
        new_price = quantize(divide(new_line_total, Decimal(line.quantity)))
        logger.info(
            "Order %s: adjusting %r from %s to %s (pre-tax target %s, adjustment %s)",
            order_id,
            line.description,
            line.unit_price,
            new_price,
            target_subtotal,
            adjustment,
        )
        working[adjusted_index] = line.model_copy(update={"unit_price": new_price})

        subtotal = rows_subtotal(working)
        naive_tax = aggregate_tax(subtotal, vat_rate)

    predicted_tax = per_line_tax(working, vat_rate)
    drift = predicted_tax - naive_tax
    rounding = quantize(source_total - (subtotal + naive_tax) - drift)

    if not money_equal(subtotal + predicted_tax + rounding, source_total):
        error = ReconciliationInvariantError(order_id, subtotal, predicted_tax, rounding, source_total)
        logger.critical("Reconciliation invariant violated", extra=error.context())
        raise error

    logger.info(
        "Order %s reconciled: rows %s, VAT per row %s (drift %s), rounding %s",
        order_id,
        subtotal,
        predicted_tax,
        drift,
        rounding,
    )
    return ReconciliationResult(
        lines=working,
        subtotal=subtotal,
        tax_amount=predicted_tax,
        naive_tax=naive_tax,
        rounding=rounding,
        source_total=source_total,
        adjusted_index=adjusted_index,
    )
