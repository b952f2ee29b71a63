"""Tests for the Merit Aktiva client helpers."""

import base64
import hashlib
import hmac
import json
from datetime import date

import pytest

from ordersync import merit_client
from ordersync.errors import AccountingApiError
from ordersync.merit_client import (
    existing_order_ids,
    list_private_invoices,
    next_invoice_number,
    sign_request,
)


class _Response:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


# ---------------------------------------------------------------------------
# Signing and transport
# ---------------------------------------------------------------------------

def test_sign_request_is_base64_hmac_sha256():
    expected = base64.b64encode(
        hmac.new(b"secret", b"api-id20240501103000{}", hashlib.sha256).digest()
    ).decode()
    assert sign_request("api-id", "secret", "20240501103000", "{}") == expected


def test_signature_depends_on_body():
    assert sign_request("id", "key", "20240501103000", '{"a":1}') != sign_request(
        "id", "key", "20240501103000", '{"a":2}'
    )


class TestRequest:
    @pytest.fixture(autouse=True)
    def _env(self, monkeypatch):
        monkeypatch.setenv("MERIT_API_ID", "api-id")
        monkeypatch.setenv("MERIT_API_KEY", "api-key")
        monkeypatch.delenv("MERIT_API_KEY_SECRET_NAME", raising=False)
        monkeypatch.setenv("MERIT_API_URL", "https://merit.test/")
        self.calls = []

    def _post(self, response):
        def post(url, params=None, data=None, headers=None, timeout=None):
            self.calls.append({"url": url, "params": params, "data": data})
            return response

        return post

    def test_signed_post(self, monkeypatch):
        monkeypatch.setattr(merit_client.requests, "post", self._post(_Response(payload=[])))
        assert merit_client.get_invoices(date(2024, 5, 1), date(2024, 5, 31)) == []

        call = self.calls[0]
        assert call["url"] == "https://merit.test/api/v1/getinvoices"
        body = call["data"].decode("utf-8")
        assert json.loads(body) == {"PeriodStart": "20240501", "PeriodEnd": "20240531", "UnPaid": False}
        params = call["params"]
        assert params["ApiId"] == "api-id"
        assert params["signature"] == sign_request("api-id", "api-key", params["timestamp"], body)

    def test_http_error_raises(self, monkeypatch):
        monkeypatch.setattr(
            merit_client.requests, "post", self._post(_Response(status_code=400, text="bad"))
        )
        with pytest.raises(AccountingApiError) as excinfo:
            merit_client.get_invoice("abc")
        assert excinfo.value.status_code == 400
        assert excinfo.value.body == {"raw": "bad"}

    def test_unexpected_list_response_raises(self, monkeypatch):
        monkeypatch.setattr(merit_client.requests, "post", self._post(_Response(payload={"x": 1})))
        with pytest.raises(AccountingApiError):
            merit_client.get_invoices(date(2024, 5, 1), date(2024, 5, 31))

    def test_missing_configuration(self, monkeypatch):
        monkeypatch.delenv("MERIT_API_ID")
        with pytest.raises(AccountingApiError):
            merit_client.get_invoice("abc")


# ---------------------------------------------------------------------------
# Invoice numbering and duplicate detection
# ---------------------------------------------------------------------------

def test_next_invoice_number_takes_max_numeric():
    invoices = [{"InvoiceNo": "1001"}, {"InvoiceNo": "999"}, {"InvoiceNo": "ERR123456"}, {}]
    assert next_invoice_number(invoices) == "1002"


def test_next_invoice_number_starts_at_1000():
    assert next_invoice_number([]) == "1000"
    assert next_invoice_number([{"InvoiceNo": "A-1"}]) == "1000"


def test_next_invoice_number_falls_back_on_lookup_error(monkeypatch):
    def boom(*args, **kwargs):
        raise AccountingApiError("down")

    monkeypatch.setattr(merit_client, "get_invoices", boom)
    number = merit_client.get_next_invoice_number(date(2024, 5, 1))
    assert number.startswith("ERR")
    assert len(number) == 9
    assert number[3:].isdigit()


def test_existing_order_ids_from_comments():
    invoices = [
        {"HComment": "Ussimo \n#1736\nMalle Tammekivi"},
        {"HComment": "Käsitsi"},
        {"HComment": None},
        {},
        {"HComment": "Ussimo #1740 Jaan Kask"},
    ]
    assert existing_order_ids(invoices) == {"1736", "1740"}


# ---------------------------------------------------------------------------
# Private invoice listing
# ---------------------------------------------------------------------------

INVOICES = [
    {
        "InvoiceNo": "1001",
        "CustomerName": "Eraisik",
        "HComment": "Ussimo \n#1736\nMalle Tammekivi",
        "DocumentDate": "2024-05-01T00:00:00",
        "TransactionDate": "2024-05-01T00:00:00",
        "DueDate": "2000-01-08T00:00:00",
        "TotalAmount": 18.71,
        "PaidAmount": 0,
        "Paid": False,
    },
    {
        "InvoiceNo": "1002",
        "CustomerName": "Aiandus OÜ",
        "HComment": "Ussimo \n#1737\nAiandus",
        "DocumentDate": "2024-05-02T00:00:00",
        "DueDate": "2099-01-01T00:00:00",
    },
    {
        "InvoiceNo": "1003",
        "CustomerName": "Eraisik",
        "HComment": "Ussimo \n#1738\nJaan Kask",
        "DocumentDate": "2024-05-03T00:00:00",
        "DueDate": "2099-01-01T00:00:00",
        "TotalAmount": 5,
        "PaidAmount": 5,
        "Paid": True,
    },
]


class TestListPrivateInvoices:
    @pytest.fixture(autouse=True)
    def _invoices(self, monkeypatch):
        monkeypatch.setattr(merit_client, "get_invoices", lambda start, end, unpaid_only=False: INVOICES)

    def test_filters_to_anonymous_customer(self):
        data = list_private_invoices(date(2024, 5, 1), date(2024, 5, 31))
        assert [inv["InvoiceNo"] for inv in data["invoices"]] == ["1001", "1003"]
        assert data["pagination"] == {"total": 2, "page": 1, "limit": 10, "pages": 1}

    def test_enriches_rows(self):
        first = list_private_invoices(date(2024, 5, 1), date(2024, 5, 31))["invoices"][0]
        assert first["realCustomerName"] == "Malle Tammekivi"
        assert first["extractedOrderNumber"] == "1736"
        assert first["DocumentDate"] == "01.05.2024"
        assert first["isPastDue"] is True

    def test_paid_invoice_is_not_past_due(self):
        rows = list_private_invoices(date(2024, 5, 1), date(2024, 5, 31))["invoices"]
        assert rows[1]["isPastDue"] is False

    def test_customer_name_filter(self):
        data = list_private_invoices(date(2024, 5, 1), date(2024, 5, 31), customer_name="kask")
        assert [inv["InvoiceNo"] for inv in data["invoices"]] == ["1003"]

    def test_pagination(self):
        data = list_private_invoices(date(2024, 5, 1), date(2024, 5, 31), page=2, limit=1)
        assert [inv["InvoiceNo"] for inv in data["invoices"]] == ["1003"]
        assert data["pagination"]["pages"] == 2
