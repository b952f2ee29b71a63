#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict

from ordersync.assembler import build_invoice
from ordersync.config import DEFAULT_VAT_TAX_ID
from ordersync.merit_client import get_next_invoice_number, send_invoice
from ordersync.models import SourceOrder
from ordersync.woo_client import get_order


def _env(name: str) -> str | None:
    value = os.getenv(name)
    return value.strip() if value else None


def _load_order(args: argparse.Namespace) -> Dict[str, Any]:
    if args.order_file:
        return json.loads(Path(args.order_file).read_text(encoding="utf-8"))
    return get_order(args.order_id)


def main() -> None:
    parser = argparse.ArgumentParser(description="Show the Merit invoice a WooCommerce order would produce.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--order-file", help="WooCommerce order JSON, as returned by /wp-json/wc/v3/orders/<id>")
    source.add_argument("--order-id", type=int, help="Fetch the order from WooCommerce")
    parser.add_argument("--invoice-no", default=None, help="Invoice number, default PREVIEW or next in Merit")
    parser.add_argument("--tax-id", default=_env("MERIT_VAT_TAX_ID") or DEFAULT_VAT_TAX_ID)
    parser.add_argument("--submit", action="store_true", help="Send the invoice to Merit")
    args = parser.parse_args()

    order = SourceOrder.from_payload(_load_order(args))
    invoice_no = args.invoice_no or (get_next_invoice_number() if args.submit else "PREVIEW")
    invoice = build_invoice(order, invoice_no, args.tax_id)

    output: Dict[str, Any] = {
        "order_id": order.id,
        "order_total": str(order.grand_total),
        "rows_total": str(invoice.subtotal),
        "rounding": str(invoice.rounding),
        "payload": invoice.to_payload(),
    }
    if args.submit:
        output["merit"] = send_invoice(invoice)
    print(json.dumps(output, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
