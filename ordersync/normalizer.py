from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from ordersync.catalog import (
    DEFAULT_CODE,
    DEFAULT_UNIT,
    DISCOUNT_CODE,
    DISCOUNT_LABEL,
    SHIPPING_CODE,
    SHIPPING_DESCRIPTION,
    VAT_RATE,
    BundleDefinition,
    lookup_bundle,
    lookup_product,
)
from ordersync.errors import MoneyError
from ordersync.models import CouponLine, InvoiceLine, ShippingLine, SourceLineItem, SourceOrder
from ordersync.money import CENT, ZERO, divide, money_equal, money_sum, quantize

logger = logging.getLogger(__name__)

_TAX_DIVISOR = Decimal("1") + VAT_RATE


def remove_tax(amount: Decimal, tax: Optional[Decimal], prices_include_tax: bool) -> Decimal:
    """Pre-tax value of a storefront amount, unrounded."""
    if tax is not None:
        return amount - tax
    if prices_include_tax:
        return divide(amount, _TAX_DIVISOR)
    return amount


def pre_tax_amounts(item: SourceLineItem, prices_include_tax: bool) -> tuple[Decimal, Decimal]:
    """Return (unit price, line total) before tax, both in whole cents.

    Subtotals are preferred over line totals because coupon lines carry the
    discount separately. A line with only tax fields is degenerate and
    contributes nothing.
    """
    quantity = item.quantity

    if item.subtotal is not None:
        raw_total = remove_tax(item.subtotal, item.subtotal_tax, prices_include_tax)
    elif item.total is not None:
        raw_total = remove_tax(item.total, item.total_tax, prices_include_tax)
    elif item.price is not None:
        unit_price = quantize(remove_tax(item.price, None, prices_include_tax))
        return unit_price, quantize(unit_price * quantity)
    else:
        logger.warning("Line item %r has no usable price; using 0", item.name)
        return ZERO, ZERO

    return quantize(divide(raw_total, Decimal(quantity))), quantize(raw_total)


def _product_line(item: SourceLineItem, unit_price: Decimal, tax_id: str) -> InvoiceLine:
    product = lookup_product(item.name, item.sku)
    if product is not None:
        code, description, unit = product.code, product.description, product.unit
    else:
        code = item.sku or (str(item.product_id) if item.product_id else DEFAULT_CODE)
        description, unit = item.name, DEFAULT_UNIT
        logger.info("No catalog entry for %r; using code %s", item.name, code)

    return InvoiceLine(
        code=code,
        description=description,
        quantity=item.quantity,
        unit_price=unit_price,
        tax_id=tax_id,
        unit=unit,
    )


def expand_bundle(
    bundle: BundleDefinition, quantity: int, bundle_total: Decimal, tax_id: str
) -> list[InvoiceLine]:
    """Replace a campaign bundle by its real products at a common discount.

    Each component is priced at its reference price times
    ``bundle_total / reference_value``. Whatever the per-unit rounding leaves
    over goes to the residual component; when that amount does not divide
    evenly over its units, the leftover cents are carried by a second row of
    the same product, so the rows always add up to ``bundle_total``.
    """
    reference_value = bundle.reference_value(quantity)
    factor = divide(bundle_total, reference_value)
    logger.info(
        "Expanding bundle %r x%s: pre-tax %s, reference %s, factor %.4f",
        bundle.name,
        quantity,
        bundle_total,
        reference_value,
        factor,
    )

    priced: list[tuple[int, Decimal]] = []
    for component in bundle.components:
        units = component.units_per_bundle * quantity
        priced.append((units, quantize(component.reference_price * factor)))

    residual = bundle_total - money_sum(units * price for units, price in priced)

    lines: list[InvoiceLine] = []
    for index, component in enumerate(bundle.components):
        units, price = priced[index]
        product = component.product
        if index != bundle.residual_component or residual == 0:
            splits = [(units, price)]
        else:
            residual_cents = int(residual / CENT)
            per_unit, leftover = divmod(residual_cents, units)
            base_price = price + per_unit * CENT
            splits = [(units - leftover, base_price), (leftover, base_price + CENT)]
            logger.info(
                "Bundle residual %s applied to %s: %s x %s, %s x %s",
                residual,
                product.code,
                units - leftover,
                base_price,
                leftover,
                base_price + CENT,
            )

        for split_units, split_price in splits:
            if split_units <= 0:
                continue
            lines.append(
                InvoiceLine(
                    code=product.code,
                    description=product.description,
                    quantity=split_units,
                    unit_price=split_price,
                    tax_id=tax_id,
                    unit=product.unit,
                )
            )

    expanded_total = money_sum(line.line_total for line in lines)
    if not money_equal(expanded_total, bundle_total):
        raise MoneyError(
            f"Bundle {bundle.name!r} expanded to {expanded_total}, expected {bundle_total}"
        )
    return lines


def _shipping_line(shipping: ShippingLine, prices_include_tax: bool, tax_id: str) -> Optional[InvoiceLine]:
    if shipping.total is None:
        return None
    tax = shipping.total_tax if prices_include_tax else None
    amount = quantize(remove_tax(shipping.total, tax, prices_include_tax))
    if amount <= 0:
        return None
    return InvoiceLine(
        code=SHIPPING_CODE,
        description=SHIPPING_DESCRIPTION,
        quantity=1,
        unit_price=amount,
        tax_id=tax_id,
    )


def _discount_line(coupon: CouponLine, prices_include_tax: bool, tax_id: str) -> Optional[InvoiceLine]:
    if coupon.discount is None:
        return None
    tax = coupon.discount_tax if prices_include_tax else None
    amount = quantize(remove_tax(coupon.discount, tax, prices_include_tax))
    if amount <= 0:
        return None
    label = coupon.code or "Discount"
    return InvoiceLine(
        code=DISCOUNT_CODE,
        description=f"{DISCOUNT_LABEL} ({label})",
        quantity=1,
        unit_price=-amount,
        tax_id=tax_id,
    )


def normalize_order(order: SourceOrder, tax_id: str) -> list[InvoiceLine]:
    """Canonical invoice lines: products in order, then shipping, then discounts."""
    include_tax = order.prices_include_tax
    lines: list[InvoiceLine] = []

    for item in order.line_items:
        unit_price, line_total = pre_tax_amounts(item, include_tax)
        bundle = lookup_bundle(item.name)
        if bundle is not None:
            lines.extend(expand_bundle(bundle, item.quantity, line_total, tax_id))
            continue
        line = _product_line(item, unit_price, tax_id)
        logger.info(
            "Line %s %r: %s x %s = %s",
            line.code,
            line.description,
            line.quantity,
            line.unit_price,
            line.line_total,
        )
        lines.append(line)

    for shipping in order.shipping_lines:
        line = _shipping_line(shipping, include_tax, tax_id)
        if line is not None:
            lines.append(line)

    for coupon in order.coupon_lines:
        line = _discount_line(coupon, include_tax, tax_id)
        if line is not None:
            lines.append(line)

    return lines
