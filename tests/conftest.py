"""Shared fakes for the storefront and accounting sides."""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

import pytest

from ordersync.comments import format_header_comment
from ordersync.config import SyncSettings
from ordersync.errors import AccountingApiError


VAT_TAX_ID = "vat-22"


def make_order(
    order_id: int,
    status: str = "completed",
    total: str = "12.20",
    line_items: Optional[list[Dict[str, Any]]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    order: Dict[str, Any] = {
        "id": order_id,
        "status": status,
        "currency": "EUR",
        "total": total,
        "prices_include_tax": True,
        "date_created": "2024-05-01T10:30:00",
        "line_items": line_items
        if line_items is not None
        else [
            {
                "name": "Vertikaalne taimekast",
                "sku": "",
                "product_id": 77,
                "quantity": 1,
                "subtotal": "12.20",
                "subtotal_tax": "2.20",
            }
        ],
        "shipping_lines": [],
        "coupon_lines": [],
        "billing": {
            "first_name": "Malle",
            "last_name": "Tammekivi",
            "address_1": "Pikk 1",
            "city": "Tallinn",
            "postcode": "10111",
            "country": "EE",
            "email": "malle@example.com",
            "phone": "+3725550000",
        },
    }
    order.update(extra)
    return order


class FakeSource:
    def __init__(self, orders: Optional[list[Dict[str, Any]]] = None, delay: float = 0.0) -> None:
        self.orders = list(orders or [])
        self.delay = delay
        self.filters: list[Any] = []

    def fetch_orders(self, order_filter: Any) -> list[Dict[str, Any]]:
        self.filters.append(order_filter)
        if self.delay:
            time.sleep(self.delay)
        if order_filter.page > 1:
            return []
        return sorted(self.orders, key=lambda o: o["id"], reverse=order_filter.order == "desc")

    def fetch_order(self, order_id: Any) -> Dict[str, Any]:
        for order in self.orders:
            if str(order["id"]) == str(order_id):
                return order
        raise KeyError(order_id)


class FakeAccounting:
    def __init__(self, invoices: Optional[list[Dict[str, Any]]] = None, next_number: str = "1000") -> None:
        self.invoices = list(invoices or [])
        self.next_number = next_number
        self.submitted: list[Any] = []
        self.fail_orders: set[int] = set()
        self.fail_listing = False

    def submit_invoice(self, invoice: Any) -> Dict[str, Any]:
        if invoice.source_order_id in self.fail_orders:
            raise AccountingApiError("Merit sendinvoice failed with HTTP 400", status_code=400)
        self.submitted.append(invoice)
        return {"InvoiceId": f"guid-{invoice.invoice_no}", "InvoiceNo": invoice.invoice_no}

    def list_invoices(self, start: Any, end: Any, unpaid_only: bool = False) -> list[Dict[str, Any]]:
        if self.fail_listing:
            raise AccountingApiError("Merit getinvoices failed with HTTP 503", status_code=503)
        sent = [
            {"InvoiceNo": inv.invoice_no, "HComment": inv.header_comment} for inv in self.submitted
        ]
        return self.invoices + sent

    def get_next_invoice_number(self) -> str:
        return self.next_number


class FakeLedger:
    def __init__(self, claimed: Optional[set[str]] = None) -> None:
        self.claimed = set(claimed or set())
        self.records: Dict[str, Dict[str, Any]] = {}
        self.released: list[str] = []

    def reserve(self, order_id: str) -> bool:
        if order_id in self.claimed:
            return False
        self.claimed.add(order_id)
        return True

    def record(self, order_id: str, fields: Dict[str, Any]) -> None:
        self.records.setdefault(order_id, {}).update(fields)

    def release(self, order_id: str) -> None:
        self.claimed.discard(order_id)
        self.released.append(order_id)


def existing_invoice(order_id: int, invoice_no: str = "900") -> Dict[str, Any]:
    return {"InvoiceNo": invoice_no, "HComment": format_header_comment(order_id, "Earlier Buyer")}


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(vat_tax_id=VAT_TAX_ID, submit_delay_seconds=0, poll_interval_seconds=60)
