from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any, Dict, Literal, Optional

import requests
from pydantic import BaseModel

from ordersync.errors import StorefrontApiError

logger = logging.getLogger(__name__)

WC_API_PATH = "/wp-json/wc/v3"


def _get_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value else None


class OrderFilter(BaseModel):
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    status: Optional[str] = None
    page: int = 1
    per_page: int = 100
    order: Literal["asc", "desc"] = "asc"

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": self.page, "per_page": self.per_page, "order": self.order}
        if self.status:
            params["status"] = self.status
        if self.after:
            params["after"] = self.after.isoformat()
        if self.before:
            params["before"] = self.before.isoformat()
        return params


def _credentials() -> tuple[str, str, str]:
    url = _get_env("WOOCOMMERCE_URL") or _get_env("WOOCOMMERCE_API_URL")
    key = _get_env("WOOCOMMERCE_CONSUMER_KEY") or _get_env("WOOCOMMERCE_API_KEY")
    secret = _get_env("WOOCOMMERCE_CONSUMER_SECRET") or _get_env("WOOCOMMERCE_API_SECRET")
    if not url or not key or not secret:
        raise StorefrontApiError("WooCommerce API not configured")
    return url.rstrip("/"), key, secret


def _get(path: str, params: Optional[Dict[str, Any]] = None, timeout: int = 30) -> requests.Response:
    url, key, secret = _credentials()
    query = dict(params or {})
    # query-string auth works for shops without HTTPS basic auth passthrough
    query["consumer_key"] = key
    query["consumer_secret"] = secret
    try:
        resp = requests.get(
            f"{url}{WC_API_PATH}/{path}",
            params=query,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise StorefrontApiError(f"WooCommerce {path} request failed: {exc}") from exc

    if resp.status_code >= 400:
        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text[:2000]}
        raise StorefrontApiError(
            f"WooCommerce {path} failed with HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=body,
        )
    return resp


def get_orders(order_filter: OrderFilter) -> Dict[str, Any]:
    params = order_filter.to_params()
    logger.info("Fetching WooCommerce orders with params: %s", params)
    resp = _get("orders", params)
    orders = resp.json()
    if not isinstance(orders, list):
        raise StorefrontApiError(f"Unexpected orders response: {str(orders)[:200]}")
    return {
        "orders": orders,
        "total": resp.headers.get("x-wp-total"),
        "total_pages": resp.headers.get("x-wp-totalpages"),
    }


def get_order(order_id: int | str) -> Dict[str, Any]:
    if not order_id:
        raise StorefrontApiError("Order ID is required")
    logger.info("Fetching WooCommerce order: %s", order_id)
    order = _get(f"orders/{order_id}").json()
    if not isinstance(order, dict) or not order.get("id"):
        raise StorefrontApiError(f"Order #{order_id} not found", status_code=404)
    return order


def get_products(page: int = 1, per_page: int = 20) -> Dict[str, Any]:
    params = {"page": page, "per_page": per_page}
    logger.info("Fetching WooCommerce products with params: %s", params)
    resp = _get("products", params)
    products = resp.json()
    if not isinstance(products, list):
        raise StorefrontApiError(f"Unexpected products response: {str(products)[:200]}")
    return {
        "products": products,
        "total": resp.headers.get("x-wp-total"),
        "total_pages": resp.headers.get("x-wp-totalpages"),
    }


class WooOrderSource:
    def fetch_orders(self, order_filter: OrderFilter) -> list[Dict[str, Any]]:
        return get_orders(order_filter)["orders"]

    def fetch_order(self, order_id: int | str) -> Dict[str, Any]:
        return get_order(order_id)
