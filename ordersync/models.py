# ordersync/models.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ordersync.catalog import (
    ACCOUNTING_DOC_INVOICE,
    ANONYMOUS_CUSTOMER_NAME,
    DEFAULT_COUNTRY_CODE,
    DEFAULT_CURRENCY,
    DEFAULT_UNIT,
    ITEM_TYPE_SERVICE,
    LOCATION_CODE,
)
from ordersync.errors import OrderValidationError
from ordersync.money import ZERO, format_money, parse_date, parse_money, quantize, to_money


def _money_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    parsed = parse_money(value)
    if parsed is None:
        raise ValueError(f"not a monetary amount: {value!r}")
    return parsed


def _merit_timestamp(value: datetime) -> str:
    return value.strftime("%Y%m%d%H%M%S")


# ---------------------------------------------------------------------------
# Storefront order (WooCommerce JSON, read-only input)
# ---------------------------------------------------------------------------

class BillingContact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str = ""
    last_name: str = ""
    address_1: str = ""
    city: str = ""
    postcode: str = ""
    country: str = ""
    email: str = ""
    phone: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _none_to_blank(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class SourceLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    sku: Optional[str] = None
    product_id: Optional[int] = None
    quantity: int = Field(gt=0)

    price: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    subtotal_tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None

    @field_validator("price", "subtotal", "subtotal_tax", "total", "total_tax", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        return _money_or_none(value)

    @field_validator("sku", mode="before")
    @classmethod
    def _blank_sku(cls, value: Any) -> Any:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @model_validator(mode="after")
    def _require_pricing(self) -> "SourceLineItem":
        if all(
            v is None
            for v in (self.price, self.subtotal, self.subtotal_tax, self.total, self.total_tax)
        ):
            raise ValueError(f"line item {self.name!r} has no pricing fields")
        return self


class ShippingLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method_title: str = ""
    total: Optional[Decimal] = None
    total_tax: Optional[Decimal] = None

    @field_validator("total", "total_tax", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        return _money_or_none(value)


class CouponLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str = ""
    discount: Optional[Decimal] = None
    discount_tax: Optional[Decimal] = None

    @field_validator("discount", "discount_tax", mode="before")
    @classmethod
    def _parse_amount(cls, value: Any) -> Optional[Decimal]:
        return _money_or_none(value)


class SourceOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    status: str = ""
    currency: str = Field(default=DEFAULT_CURRENCY, pattern=r"^[A-Z]{3}$")
    total: Decimal = Field(ge=0)
    prices_include_tax: bool = False
    date_created: Optional[datetime] = None

    line_items: list[SourceLineItem] = []
    shipping_lines: list[ShippingLine] = []
    coupon_lines: list[CouponLine] = []
    billing: BillingContact = BillingContact()

    @field_validator("total", mode="before")
    @classmethod
    def _parse_total(cls, value: Any) -> Decimal:
        return to_money(value, "order total")

    @field_validator("date_created", mode="before")
    @classmethod
    def _parse_created(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_date(value)
        return value

    @field_validator("billing", mode="before")
    @classmethod
    def _blank_billing(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def grand_total(self) -> Decimal:
        return quantize(self.total)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SourceOrder":
        if not isinstance(payload, dict):
            raise OrderValidationError("Order payload must be an object")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            order_id = payload.get("id")
            raise OrderValidationError(f"Invalid order {order_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# Accounting side
# ---------------------------------------------------------------------------

class InvoiceLine(BaseModel):
    """One accounting invoice row, priced before tax."""

    code: str = Field(min_length=1)
    description: str
    quantity: int = Field(gt=0)
    unit_price: Decimal
    tax_id: str
    unit: str = DEFAULT_UNIT
    location_code: int = LOCATION_CODE

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)

    def to_row(self) -> Dict[str, Any]:
        return {
            "Item": {
                "Code": self.code,
                "Description": self.description,
                "Type": ITEM_TYPE_SERVICE,
                "UOMName": self.unit,
            },
            "Quantity": str(self.quantity),
            "Price": format_money(self.unit_price),
            "DiscountPct": 0,
            "DiscountAmount": 0,
            "TaxId": self.tax_id,
            "LocationCode": self.location_code,
        }


class ReconciliationResult(BaseModel):
    lines: list[InvoiceLine]
    subtotal: Decimal
    tax_amount: Decimal
    naive_tax: Decimal
    rounding: Decimal
    source_total: Decimal
    adjusted_index: Optional[int] = None

    @property
    def total(self) -> Decimal:
        return quantize(self.subtotal + self.tax_amount + self.rounding)

    @property
    def tax_drift(self) -> Decimal:
        return self.tax_amount - self.naive_tax


class Customer(BaseModel):
    name: str = ANONYMOUS_CUSTOMER_NAME
    address: str = ""
    city: str = ""
    country_code: str = DEFAULT_COUNTRY_CODE
    postal_code: str = ""
    email: str = ""
    phone: str = ""
    currency_code: str = DEFAULT_CURRENCY

    def to_payload(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "Address": self.address,
            "City": self.city,
            "CountryCode": self.country_code,
            "PostalCode": self.postal_code,
            "Email": self.email,
            "PhoneNo": self.phone,
            "CurrencyCode": self.currency_code,
        }


class Invoice(BaseModel):
    source_order_id: int
    invoice_no: str
    document_date: datetime
    due_date: datetime
    currency: str
    customer: Customer
    lines: list[InvoiceLine]
    subtotal: Decimal
    tax_amounts: Dict[str, Decimal]
    rounding: Decimal = ZERO
    header_comment: str
    footer_comment: str = ""

    @property
    def total(self) -> Decimal:
        return quantize(self.subtotal + sum(self.tax_amounts.values(), ZERO) + self.rounding)

    def to_payload(self) -> Dict[str, Any]:
        # Merit takes JSON numbers; amounts are already whole cents here
        return {
            "Customer": self.customer.to_payload(),
            "DocDate": _merit_timestamp(self.document_date),
            "DueDate": _merit_timestamp(self.due_date),
            "InvoiceNo": self.invoice_no,
            "CurrencyCode": self.currency,
            "InvoiceRow": [line.to_row() for line in self.lines],
            "TotalAmount": float(quantize(self.subtotal)),
            "TaxAmount": [
                {"TaxId": tax_id, "Amount": float(quantize(amount))}
                for tax_id, amount in self.tax_amounts.items()
            ],
            "RoundingAmount": float(quantize(self.rounding)),
            "HComment": self.header_comment,
            "FComment": self.footer_comment,
            "AccountingDoc": ACCOUNTING_DOC_INVOICE,
        }
