from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import math
import os
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

import requests
from google.cloud import secretmanager

from ordersync.catalog import ANONYMOUS_CUSTOMER_NAME
from ordersync.comments import extract_customer_name, extract_order_id
from ordersync.config import DEFAULT_MERIT_API_URL
from ordersync.errors import AccountingApiError
from ordersync.models import Invoice
from ordersync.money import parse_date, parse_money

logger = logging.getLogger(__name__)

FIRST_INVOICE_NUMBER = 1000
NUMBERING_LOOKBACK_DAYS = 30


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


def _sha256(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def merit_env_hashes() -> Dict[str, Optional[str]]:
    return {
        "MERIT_API_ID": _sha256(_get_env("MERIT_API_ID")),
        "MERIT_API_KEY": _sha256(_get_env("MERIT_API_KEY")),
        "MERIT_API_KEY_SECRET_NAME": _sha256(_get_env("MERIT_API_KEY_SECRET_NAME")),
    }


def _get_api_key() -> Optional[str]:
    secret_name = _get_env("MERIT_API_KEY_SECRET_NAME")
    if secret_name:
        client = secretmanager.SecretManagerServiceClient()
        version = client.access_secret_version(name=f"{secret_name}/versions/latest")
        return version.payload.data.decode("utf-8").strip()
    return _get_env("MERIT_API_KEY")


def _api_base() -> str:
    return (_get_env("MERIT_API_URL") or DEFAULT_MERIT_API_URL).rstrip("/")


def _timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")


def _period(value: date) -> str:
    return value.strftime("%Y%m%d")


def sign_request(api_id: str, api_key: str, timestamp: str, body: str) -> str:
    """Base64 HMAC-SHA256 over ApiId + timestamp + JSON body."""
    digest = hmac.new(
        api_key.encode("utf-8"),
        (api_id + timestamp + body).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def _request(endpoint: str, payload: Dict[str, Any], timeout: int = 30) -> Any:
    api_id = _get_env("MERIT_API_ID")
    api_key = _get_api_key()
    if not api_id or not api_key:
        raise AccountingApiError("Missing Merit API configuration")

    body = json.dumps(payload)
    timestamp = _timestamp()
    params = {
        "ApiId": api_id,
        "timestamp": timestamp,
        "signature": sign_request(api_id, api_key, timestamp, body),
    }

    try:
        resp = requests.post(
            f"{_api_base()}/api/v1/{endpoint}",
            params=params,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise AccountingApiError(f"Merit {endpoint} request failed: {exc}") from exc

    if resp.status_code >= 400:
        try:
            error_body = resp.json()
        except ValueError:
            error_body = {"raw": resp.text[:2000]}
        logger.error("Merit %s returned %s: %s", endpoint, resp.status_code, error_body)
        raise AccountingApiError(
            f"Merit {endpoint} failed with HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=error_body,
        )

    try:
        return resp.json()
    except ValueError:
        return resp.text


def check_merit_auth() -> Dict[str, Any]:
    today = date.today()
    try:
        get_invoices(today - timedelta(days=NUMBERING_LOOKBACK_DAYS), today)
    except Exception as exc:
        return {"status": "error", "message": str(exc)}
    return {"status": "ok"}


def send_invoice(invoice: Invoice) -> Dict[str, Any]:
    payload = invoice.to_payload()
    logger.info(
        "Sending invoice %s for order #%s: %s rows, rows total %s, rounding %s",
        invoice.invoice_no,
        invoice.source_order_id,
        len(invoice.lines),
        invoice.subtotal,
        invoice.rounding,
    )
    try:
        result = _request("sendinvoice", payload)
    except AccountingApiError:
        logger.error(
            "Invoice rejected: InvoiceNo=%s Total=%s Rows=%s",
            invoice.invoice_no,
            invoice.total,
            len(invoice.lines),
        )
        raise
    if not isinstance(result, dict):
        raise AccountingApiError(f"Unexpected sendinvoice response: {result!r}")
    return result


def get_invoices(start: date, end: date, unpaid_only: bool = False) -> list[Dict[str, Any]]:
    payload = {"PeriodStart": _period(start), "PeriodEnd": _period(end), "UnPaid": unpaid_only}
    invoices = _request("getinvoices", payload)
    if not isinstance(invoices, list):
        logger.error("Unexpected getinvoices response: %s", invoices)
        raise AccountingApiError("Unexpected response format from Merit API")
    return invoices


def get_invoice(invoice_id: str) -> Dict[str, Any]:
    return _request("getinvoice", {"Id": invoice_id})


def delete_invoice(invoice_id: str) -> Any:
    result = _request("deleteinvoice", {"Id": invoice_id})
    logger.info("Invoice deleted: %s", invoice_id)
    return result


def next_invoice_number(invoices: Iterable[Dict[str, Any]]) -> str:
    numbers = [
        int(number)
        for number in (str(invoice.get("InvoiceNo") or "") for invoice in invoices)
        if number.isdigit()
    ]
    if not numbers:
        logger.warning("No numeric invoice numbers found, starting with %s", FIRST_INVOICE_NUMBER)
        return str(FIRST_INVOICE_NUMBER)
    return str(max(numbers) + 1)


def get_next_invoice_number(today: Optional[date] = None) -> str:
    today = today or date.today()
    try:
        invoices = get_invoices(today - timedelta(days=NUMBERING_LOOKBACK_DAYS), today)
    except Exception as exc:
        logger.error("Error getting next invoice number: %s", exc)
        return f"ERR{str(int(time.time() * 1000))[-6:]}"
    number = next_invoice_number(invoices)
    logger.info("Next invoice number will be: %s", number)
    return number


def existing_order_ids(invoices: Iterable[Dict[str, Any]]) -> set[str]:
    order_ids: set[str] = set()
    for invoice in invoices:
        order_id = extract_order_id(invoice.get("HComment"))
        if order_id:
            order_ids.add(order_id)
    return order_ids


def _display_date(value: Optional[str]) -> Optional[str]:
    parsed = parse_date(value)
    if parsed is None:
        return value
    return parsed.strftime("%d.%m.%Y")


def _is_past_due(invoice: Dict[str, Any], now: datetime) -> bool:
    due = parse_date(invoice.get("DueDate"))
    if due is None:
        return False
    paid_amount = parse_money(invoice.get("PaidAmount")) or 0
    total = parse_money(invoice.get("TotalAmount")) or 0
    return due.replace(tzinfo=None) < now and (not invoice.get("Paid") or paid_amount < total)


def list_private_invoices(
    start: date,
    end: date,
    unpaid_only: bool = False,
    customer_name: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    """Anonymous-customer invoices with the buyer and order recovered from the comment."""
    invoices = get_invoices(start, end, unpaid_only)
    filtered = [inv for inv in invoices if inv.get("CustomerName") == ANONYMOUS_CUSTOMER_NAME]

    if customer_name and customer_name.strip():
        term = customer_name.strip().lower()
        filtered = [
            inv
            for inv in filtered
            if term in (extract_customer_name(inv.get("HComment")) or "").lower()
        ]

    total = len(filtered)
    page = max(page, 1)
    limit = max(limit, 1)
    window = filtered[(page - 1) * limit : page * limit]
    now = datetime.now()

    items = []
    for invoice in window:
        items.append(
            {
                **invoice,
                "DocumentDate": _display_date(invoice.get("DocumentDate")),
                "TransactionDate": _display_date(invoice.get("TransactionDate")),
                "DueDate": _display_date(invoice.get("DueDate")),
                "isPastDue": _is_past_due(invoice, now),
                "realCustomerName": extract_customer_name(invoice.get("HComment")) or "Unknown",
                "extractedOrderNumber": extract_order_id(invoice.get("HComment")) or "",
            }
        )

    return {
        "invoices": items,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        },
    }


class MeritGateway:
    """Accounting side of the sync, backed by the module functions above."""

    def submit_invoice(self, invoice: Invoice) -> Dict[str, Any]:
        return send_invoice(invoice)

    def list_invoices(self, start: date, end: date, unpaid_only: bool = False) -> list[Dict[str, Any]]:
        return get_invoices(start, end, unpaid_only)

    def get_next_invoice_number(self) -> str:
        return get_next_invoice_number()
