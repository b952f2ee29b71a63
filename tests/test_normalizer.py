"""Tests for turning storefront orders into pre-tax invoice lines."""

from decimal import Decimal

import pytest

from conftest import VAT_TAX_ID, make_order
from ordersync.catalog import BUNDLES, lookup_bundle
from ordersync.errors import OrderValidationError
from ordersync.models import SourceLineItem, SourceOrder
from ordersync.normalizer import expand_bundle, normalize_order, pre_tax_amounts

BUNDLE = BUNDLES["Toataimede Uus Algus"]
SOIL_CODE = "4744278011219"
CONCENTRATE_CODE = "4742022540022"


def _item(**fields):
    data = {"name": "Vertikaalne taimekast", "quantity": 1}
    data.update(fields)
    return SourceLineItem(**data)


def _rows(lines):
    return [(line.code, line.quantity, line.unit_price) for line in lines]


def _total(lines):
    return sum((line.line_total for line in lines), Decimal("0.00"))


# ---------------------------------------------------------------------------
# pre_tax_amounts
# ---------------------------------------------------------------------------

def test_tax_inclusive_unit_price_is_divided_by_vat():
    unit, total = pre_tax_amounts(_item(price="12.20", quantity=2), True)
    assert unit == Decimal("10.00")
    assert total == Decimal("20.00")


def test_tax_inclusive_unit_price_rounds_to_cents():
    unit, _ = pre_tax_amounts(_item(price="9.99"), True)
    assert unit == Decimal("8.19")


def test_tax_exclusive_unit_price_is_kept():
    unit, total = pre_tax_amounts(_item(price="4.50", quantity=3), False)
    assert unit == Decimal("4.50")
    assert total == Decimal("13.50")


def test_subtotal_minus_subtotal_tax_is_preferred():
    unit, total = pre_tax_amounts(_item(subtotal="16.39", subtotal_tax="3.61", price="99"), True)
    assert unit == Decimal("12.78")
    assert total == Decimal("12.78")


def test_subtotal_without_tax_is_divided_when_prices_include_tax():
    unit, total = pre_tax_amounts(_item(subtotal="24.40", quantity=2), True)
    assert unit == Decimal("10.00")
    assert total == Decimal("20.00")


def test_subtotal_without_tax_exclusive_prices():
    unit, total = pre_tax_amounts(_item(subtotal="10.00", quantity=3), False)
    assert unit == Decimal("3.33")
    assert total == Decimal("10.00")


def test_line_total_used_without_subtotal():
    unit, total = pre_tax_amounts(_item(total="5.00", total_tax="1.10"), True)
    assert (unit, total) == (Decimal("3.90"), Decimal("3.90"))


def test_only_tax_fields_is_degenerate_zero():
    unit, total = pre_tax_amounts(_item(subtotal_tax="1.00"), True)
    assert unit == Decimal("0.00")
    assert total == Decimal("0.00")


def test_line_without_pricing_fields_is_rejected():
    order = make_order(1, line_items=[{"name": "Vertikaalne taimekast", "quantity": 1}])
    with pytest.raises(OrderValidationError):
        SourceOrder.from_payload(order)


def test_non_positive_quantity_is_rejected():
    order = make_order(1, line_items=[{"name": "X", "quantity": 0, "price": "1.00"}])
    with pytest.raises(OrderValidationError):
        SourceOrder.from_payload(order)


# ---------------------------------------------------------------------------
# Bundle expansion
# ---------------------------------------------------------------------------

def test_bundle_lookup_is_by_exact_name():
    assert lookup_bundle("Toataimede Uus Algus") is BUNDLE
    assert lookup_bundle("toataimede uus algus") is None
    assert lookup_bundle(None) is None


def test_bundle_reference_value():
    assert BUNDLE.reference_value(1) == Decimal("14.58")


def test_single_bundle_without_residual():
    lines = expand_bundle(BUNDLE, 1, Decimal("8.20"), VAT_TAX_ID)
    assert _rows(lines) == [
        (SOIL_CODE, 4, Decimal("1.21")),
        (CONCENTRATE_CODE, 2, Decimal("1.68")),
    ]
    assert _total(lines) == Decimal("8.20")


def test_two_bundles_spread_residual_over_soil_units():
    lines = expand_bundle(BUNDLE, 2, Decimal("16.39"), VAT_TAX_ID)
    assert _rows(lines) == [
        (SOIL_CODE, 1, Decimal("1.20")),
        (SOIL_CODE, 7, Decimal("1.21")),
        (CONCENTRATE_CODE, 4, Decimal("1.68")),
    ]
    assert _total(lines) == Decimal("16.39")


def test_fifty_bundles_conserve_total():
    lines = expand_bundle(BUNDLE, 50, Decimal("409.84"), VAT_TAX_ID)
    assert _rows(lines) == [
        (SOIL_CODE, 16, Decimal("1.20")),
        (SOIL_CODE, 184, Decimal("1.21")),
        (CONCENTRATE_CODE, 100, Decimal("1.68")),
    ]
    assert _total(lines) == Decimal("409.84")


@pytest.mark.parametrize("quantity,total", [(1, "8.19"), (3, "24.61"), (7, "57.33"), (10, "1.00")])
def test_bundle_expansion_always_sums_to_bundle_total(quantity, total):
    lines = expand_bundle(BUNDLE, quantity, Decimal(total), VAT_TAX_ID)
    assert _total(lines) == Decimal(total)
    assert sum(line.quantity for line in lines) == 6 * quantity


def test_bundle_components_use_catalog_descriptions():
    lines = expand_bundle(BUNDLE, 1, Decimal("8.20"), VAT_TAX_ID)
    assert lines[0].description == "Toalillemuld 2, 5 l"
    assert all(line.tax_id == VAT_TAX_ID for line in lines)


def test_bundle_in_order_is_expanded_from_pre_tax_total():
    order = SourceOrder.from_payload(
        make_order(
            5,
            total="10.00",
            line_items=[
                {"name": "Toataimede Uus Algus", "quantity": 1, "subtotal": "10.00", "subtotal_tax": "1.80"}
            ],
        )
    )
    lines = normalize_order(order, VAT_TAX_ID)
    assert [line.code for line in lines] == [SOIL_CODE, CONCENTRATE_CODE]
    assert _total(lines) == Decimal("8.20")


# ---------------------------------------------------------------------------
# Products, shipping and discounts
# ---------------------------------------------------------------------------

def _order(**extra):
    return SourceOrder.from_payload(make_order(9, **extra))


def test_known_product_name_maps_to_catalog_code():
    order = _order(line_items=[{"name": "Biohuumus 5 l Ussimo", "quantity": 2, "price": "7.32"}])
    [line] = normalize_order(order, VAT_TAX_ID)
    assert line.code == "4744278010014"
    assert line.unit_price == Decimal("6.00")
    assert line.unit == "tk"


def test_known_sku_maps_to_catalog_item():
    order = _order(line_items=[{"name": "Pakiautomaat", "sku": "10012", "quantity": 1, "price": "3.00"}])
    [line] = normalize_order(order, VAT_TAX_ID)
    assert (line.code, line.description) == ("10012", "Omniva pakiautomaat")


def test_subscription_sku_keeps_its_unit():
    order = _order(line_items=[{"name": "Kuutasu", "sku": "10029", "quantity": 1, "price": "10.00"}])
    [line] = normalize_order(order, VAT_TAX_ID)
    assert line.unit == "kuu"


@pytest.mark.parametrize(
    "item,code",
    [
        ({"sku": "ABC-1", "product_id": 55}, "ABC-1"),
        ({"sku": "", "product_id": 55}, "55"),
        ({"sku": None, "product_id": None}, "NOSKU"),
    ],
)
def test_unknown_product_code_fallbacks(item, code):
    order = _order(line_items=[{"name": "Uus toode", "quantity": 1, "price": "1.22", **item}])
    [line] = normalize_order(order, VAT_TAX_ID)
    assert line.code == code
    assert line.description == "Uus toode"


def test_shipping_tax_removed_when_prices_include_tax():
    order = _order(shipping_lines=[{"method_title": "Omniva", "total": "3.28", "total_tax": "0.72"}])
    lines = normalize_order(order, VAT_TAX_ID)
    assert (lines[-1].code, lines[-1].description, lines[-1].unit_price) == (
        "Transport",
        "Pakiautomaat",
        Decimal("2.56"),
    )


def test_shipping_tax_ignored_for_exclusive_prices():
    order = _order(
        prices_include_tax=False,
        shipping_lines=[{"method_title": "Omniva", "total": "2.50", "total_tax": "0.55"}],
    )
    assert normalize_order(order, VAT_TAX_ID)[-1].unit_price == Decimal("2.50")


def test_free_shipping_is_omitted():
    order = _order(shipping_lines=[{"method_title": "Tasuta", "total": "0.00", "total_tax": "0.00"}])
    assert [line.code for line in normalize_order(order, VAT_TAX_ID)] == ["4744278010038"]


def test_discount_becomes_negative_line():
    order = _order(coupon_lines=[{"code": "kevad", "discount": "1.00", "discount_tax": "0.22"}])
    line = normalize_order(order, VAT_TAX_ID)[-1]
    assert line.code == "DISCOUNT"
    assert line.description == "Allahindlus (kevad)"
    assert line.unit_price == Decimal("-0.78")


def test_zero_discount_is_omitted():
    order = _order(coupon_lines=[{"code": "tühi", "discount": "0", "discount_tax": "0"}])
    assert len(normalize_order(order, VAT_TAX_ID)) == 1


def test_lines_are_products_then_shipping_then_discounts():
    order = _order(
        line_items=[
            {"name": "Biohuumus 5 l Ussimo", "quantity": 1, "price": "7.32"},
            {"name": "Vertikaalne taimekast", "quantity": 1, "price": "24.40"},
        ],
        shipping_lines=[{"method_title": "Omniva", "total": "3.28", "total_tax": "0.72"}],
        coupon_lines=[{"code": "kevad", "discount": "1.22", "discount_tax": "0.22"}],
    )
    codes = [line.code for line in normalize_order(order, VAT_TAX_ID)]
    assert codes == ["4744278010014", "4744278010038", "Transport", "DISCOUNT"]
