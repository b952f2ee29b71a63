from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from ordersync.catalog import FOOTER_COMMENT, PAYMENT_TERM_DAYS
from ordersync.comments import format_header_comment
from ordersync.customers import CustomerDirectory, resolve_customer
from ordersync.models import Invoice, ReconciliationResult, SourceOrder
from ordersync.normalizer import normalize_order
from ordersync.reconciler import reconcile

logger = logging.getLogger(__name__)


def compute_due_date(document_date: datetime) -> datetime:
    return document_date + timedelta(days=PAYMENT_TERM_DAYS)


def assemble_invoice(
    order: SourceOrder,
    result: ReconciliationResult,
    invoice_no: str,
    tax_id: str,
    document_date: Optional[datetime] = None,
    directory: Optional[CustomerDirectory] = None,
) -> Invoice:
    document_date = document_date or datetime.now()
    customer = resolve_customer(order.billing, order.currency, directory)

    return Invoice(
        source_order_id=order.id,
        invoice_no=invoice_no,
        document_date=document_date,
        due_date=compute_due_date(document_date),
        currency=order.currency,
        customer=customer,
        lines=result.lines,
        subtotal=result.subtotal,
        tax_amounts={tax_id: result.tax_amount},
        rounding=result.rounding,
        header_comment=format_header_comment(order.id, order.billing.full_name),
        footer_comment=FOOTER_COMMENT,
    )


def build_invoice(
    order: SourceOrder,
    invoice_no: str,
    tax_id: str,
    document_date: Optional[datetime] = None,
    directory: Optional[CustomerDirectory] = None,
) -> Invoice:
    """Normalize, reconcile and assemble one order. Pure computation, no I/O."""
    logger.info(
        "Building invoice %s for order #%s (currency %s, total %s)",
        invoice_no,
        order.id,
        order.currency,
        order.total,
    )
    lines = normalize_order(order, tax_id)
    result = reconcile(lines, order.grand_total, order_id=str(order.id))
    return assemble_invoice(order, result, invoice_no, tax_id, document_date, directory)
