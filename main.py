from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import os
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status

from ordersync.assembler import assemble_invoice
from ordersync.config import load_settings
from ordersync.errors import (
    DuplicateCheckError,
    ExternalServiceError,
    MoneyError,
    OrderValidationError,
    ReconciliationInvariantError,
)
from ordersync.merit_client import (
    MeritGateway,
    check_merit_auth,
    delete_invoice,
    get_invoice,
    list_private_invoices,
    merit_env_hashes,
)
from ordersync.models import SourceOrder
from ordersync.normalizer import normalize_order
from ordersync.reconciler import reconcile
from ordersync.sync import FirestoreLedger, OrderOutcome, OrderSync, SyncState
from ordersync.sync_store import get_client_info, list_order_records
from ordersync.woo_client import OrderFilter, WooOrderSource, get_order, get_orders, get_products


logging.basicConfig(level=(os.getenv("LOG_LEVEL") or "INFO").upper())
logger = logging.getLogger("order-sync")

APP_VERSION = os.getenv("APP_VERSION", "dev")

app = FastAPI()

settings = load_settings()
state = SyncState()
_sync: Optional[OrderSync] = None


@app.get("/version")
async def version() -> Dict[str, Any]:
    return {
        "status": "ok",
        "revision": os.getenv("K_REVISION"),
        "service": os.getenv("K_SERVICE"),
        "commit": os.getenv("COMMIT_SHA") or os.getenv("REVISION_ID"),
        "app_version": APP_VERSION,
    }


BASIC_USER = os.getenv("BASIC_USER")
BASIC_PASS = os.getenv("BASIC_PASS")


def get_sync() -> OrderSync:
    global _sync
    if _sync is None:
        if not settings.woocommerce_configured:
            logger.warning("WooCommerce API not configured; only webhook payloads can be invoiced")
        ledger = FirestoreLedger() if settings.firestore_enabled else None
        _sync = OrderSync(WooOrderSource(), MeritGateway(), settings, state=state, ledger=ledger)
    return _sync


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Basic"},
    )


def _check_basic_auth(request: Request) -> None:
    if BASIC_USER is None or BASIC_PASS is None:
        logger.error("BASIC_USER/BASIC_PASS not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Auth not configured")

    auth_header = request.headers.get("authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        raise _unauthorized()

    token = auth_header.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(token).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        raise _unauthorized()

    if ":" not in decoded:
        raise _unauthorized()

    username, password = decoded.split(":", 1)
    if username != BASIC_USER or password != BASIC_PASS:
        raise _unauthorized()


def webhook_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def _check_webhook_signature(request: Request, body: bytes) -> None:
    secret = settings.webhook_secret
    if not secret:
        logger.warning("WOOCOMMERCE_WEBHOOK_SECRET not configured, skipping signature check")
        return
    signature = request.headers.get("x-wc-webhook-signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing webhook signature")
    if not hmac.compare_digest(signature, webhook_signature(secret, body)):
        logger.warning("Invalid webhook signature", extra={"source": request.headers.get("x-wc-webhook-source")})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


async def _json_object(request: Request, required: bool = True) -> Dict[str, Any]:
    body = await request.body()
    if not body and not required:
        return {}
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="JSON payload must be an object")
    return payload


async def _run_invoice(order_id: Any, work: Any) -> Dict[str, Any]:
    """Await an invoice creation and map failures onto HTTP errors."""
    try:
        outcome: OrderOutcome = await work
    except OrderValidationError as exc:
        logger.warning("Order #%s rejected: %s", order_id, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except DuplicateCheckError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except ReconciliationInvariantError as exc:
        logger.critical("Order #%s failed reconciliation: %s", order_id, exc, extra=exc.context())
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    except MoneyError as exc:
        logger.error("Order #%s amounts could not be computed: %s", order_id, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "money_error", "order_id": str(order_id), "message": str(exc)},
        )
    except ExternalServiceError as exc:
        logger.exception("Invoice creation failed for order #%s: %s", order_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": str(exc), "upstream_status": exc.status_code, "upstream_body": exc.body},
        )
    return outcome.to_dict()


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/merit/health")
async def merit_health(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    return await asyncio.to_thread(check_merit_auth)


@app.get("/merit/env-hash")
async def merit_env_hash(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    return {"hashes": merit_env_hashes()}


# ---------------------------------------------------------------------------
# WooCommerce
# ---------------------------------------------------------------------------


@app.post("/woocommerce/webhook/order")
async def woocommerce_webhook(request: Request) -> Dict[str, Any]:
    body = await request.body()
    _check_webhook_signature(request, body)
    payload = await _json_object(request)

    # WooCommerce pings a new webhook with only its id
    if "webhook_id" in payload and "id" not in payload:
        return {"status": "ok", "message": "Webhook registered"}

    order_id = payload.get("id")
    order_status = str(payload.get("status") or "").lower()
    logger.info("Received order webhook", extra={"order_id": order_id, "order_status": order_status})
    if order_status not in settings.order_statuses:
        return {"status": "ignored", "order_id": order_id, "message": f"Order status {order_status!r} not synced"}

    return await _run_invoice(order_id, get_sync().create_invoice_for_order(payload))


@app.post("/woocommerce/orders/{order_id}/create-invoice")
async def create_invoice(request: Request, order_id: int) -> Dict[str, Any]:
    _check_basic_auth(request)
    payload = await _json_object(request, required=False)
    sync = get_sync()
    if payload.get("id") and payload.get("billing") and payload.get("line_items"):
        if str(payload["id"]) != str(order_id):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Order id does not match path")
        return await _run_invoice(order_id, sync.create_invoice_for_order(payload))
    return await _run_invoice(order_id, sync.create_invoice_for_order_id(order_id))


def _storefront_failure(what: str, exc: ExternalServiceError) -> HTTPException:
    logger.exception("WooCommerce %s failed: %s", what, exc)
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"error": str(exc), "upstream_status": exc.status_code},
    )


@app.get("/woocommerce/orders")
async def woocommerce_orders(
    request: Request,
    page: int = 1,
    per_page: int = 20,
    order_status: Optional[str] = None,
    after: Optional[datetime] = None,
    before: Optional[datetime] = None,
) -> Dict[str, Any]:
    _check_basic_auth(request)
    order_filter = OrderFilter(
        page=page, per_page=per_page, status=order_status, after=after, before=before, order="desc"
    )
    try:
        data = await asyncio.to_thread(get_orders, order_filter)
    except ExternalServiceError as exc:
        raise _storefront_failure("order list", exc)
    return {"status": "ok", **data}


@app.get("/woocommerce/orders/{order_id}")
async def woocommerce_order(request: Request, order_id: int) -> Dict[str, Any]:
    _check_basic_auth(request)
    try:
        order = await asyncio.to_thread(get_order, order_id)
    except ExternalServiceError as exc:
        raise _storefront_failure(f"order #{order_id} lookup", exc)
    return {"status": "ok", "order": order}


@app.get("/woocommerce/products")
async def woocommerce_products(request: Request, page: int = 1, per_page: int = 20) -> Dict[str, Any]:
    _check_basic_auth(request)
    try:
        data = await asyncio.to_thread(get_products, page, per_page)
    except ExternalServiceError as exc:
        raise _storefront_failure("product list", exc)
    return {"status": "ok", **data}


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------


@app.post("/sync/run")
async def sync_run(
    request: Request, from_date: Optional[date] = None, to_date: Optional[date] = None
) -> Dict[str, Any]:
    _check_basic_auth(request)
    sync = get_sync()
    if from_date is None and to_date is None:
        results = await sync.sync_recent()
    else:
        end = datetime.combine(to_date or date.today(), time.max)
        start = datetime.combine(from_date, time.min) if from_date else end - timedelta(hours=settings.lookback_hours)
        if start > end:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="from_date is after to_date")
        results = await sync.sync_orders(start, end)
    return results.to_dict()


@app.post("/auto-sync/start")
async def auto_sync_start(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    payload = await _json_object(request)
    start_order_id = payload.get("startOrderId") or payload.get("start_order_id")
    try:
        start_order_id = int(start_order_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="startOrderId is required")

    if not get_sync().start_auto_sync(start_order_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Auto-sync is already running")
    logger.info("Auto-sync started from order #%s", start_order_id)
    return {"status": "ok", "message": f"Auto-sync started from order #{start_order_id}", **state.snapshot()}


@app.post("/auto-sync/stop")
async def auto_sync_stop(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    if not get_sync().stop_auto_sync():
        return {"status": "ok", "message": "Auto-sync is not running", **state.snapshot()}
    logger.info("Auto-sync stopped")
    return {"status": "ok", "message": "Auto-sync stopped", **state.snapshot()}


@app.get("/auto-sync/status")
async def auto_sync_status(request: Request) -> Dict[str, Any]:
    _check_basic_auth(request)
    return {"status": "ok", **state.snapshot()}


@app.get("/sync/records")
async def sync_records(request: Request, limit: int = 20) -> Dict[str, Any]:
    _check_basic_auth(request)
    if not settings.firestore_enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Firestore not enabled")
    records = await asyncio.to_thread(list_order_records, limit)
    return {"status": "ok", "info": get_client_info(), "records": records}


# ---------------------------------------------------------------------------
# Merit
# ---------------------------------------------------------------------------


@app.get("/merit/invoices")
async def merit_invoices(
    request: Request,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    unpaid_only: bool = False,
    customer_name: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    _check_basic_auth(request)
    end = end_date or date.today()
    start = start_date or end - timedelta(days=30)
    try:
        data = await asyncio.to_thread(
            list_private_invoices, start, end, unpaid_only, customer_name, page, limit
        )
    except ExternalServiceError as exc:
        logger.exception("Merit invoice list failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return {"status": "ok", **data}


@app.get("/merit/invoices/{invoice_id}")
async def merit_invoice(request: Request, invoice_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    try:
        invoice = await asyncio.to_thread(get_invoice, invoice_id)
    except ExternalServiceError as exc:
        logger.exception("Merit invoice lookup failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return {"status": "ok", "invoice": invoice}


@app.delete("/merit/invoices/{invoice_id}")
async def merit_delete_invoice(request: Request, invoice_id: str) -> Dict[str, Any]:
    _check_basic_auth(request)
    if not invoice_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing invoice id")
    try:
        result = await asyncio.to_thread(delete_invoice, invoice_id.strip())
    except ExternalServiceError as exc:
        logger.exception("Merit invoice delete failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return {"status": "ok", "result": result}


@app.post("/merit/preview")
async def merit_preview(request: Request) -> Dict[str, Any]:
    """Reconcile an order payload and return the invoice that would be sent."""
    _check_basic_auth(request)
    payload = await _json_object(request)
    try:
        order = SourceOrder.from_payload(payload)
        result = reconcile(normalize_order(order, settings.vat_tax_id), order.grand_total, order_id=str(order.id))
    except OrderValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except ReconciliationInvariantError as exc:
        logger.critical("Preview failed reconciliation: %s", exc, extra=exc.context())
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    except MoneyError as exc:
        logger.error("Preview amounts could not be computed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "money_error", "order_id": str(payload.get("id")), "message": str(exc)},
        )
    invoice = assemble_invoice(order, result, "PREVIEW", settings.vat_tax_id)

    return {
        "status": "ok",
        "reconciliation": {
            "subtotal": str(result.subtotal),
            "tax_amount": str(result.tax_amount),
            "naive_tax": str(result.naive_tax),
            "rounding": str(result.rounding),
            "total": str(result.total),
            "adjusted_line": result.adjusted_index,
        },
        "invoice": invoice.to_payload(),
    }
