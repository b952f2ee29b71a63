from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class OrderSyncError(Exception):
    """Base class for failures while turning an order into an invoice."""


class MoneyError(OrderSyncError, ArithmeticError):
    pass


class OrderValidationError(OrderSyncError, ValueError):
    """The storefront order cannot be invoiced as given."""


class ReconciliationInvariantError(OrderSyncError):
    """subtotal + tax + rounding did not land on the order total.

    This is a modelling defect, never a data problem, so it carries the full
    calculation for the log.
    """

    def __init__(
        self,
        order_id: Optional[str],
        subtotal: Decimal,
        tax_amount: Decimal,
        rounding: Decimal,
        source_total: Decimal,
    ) -> None:
        self.order_id = order_id
        self.subtotal = subtotal
        self.tax_amount = tax_amount
        self.rounding = rounding
        self.source_total = source_total
        super().__init__(
            f"Reconciliation mismatch for order {order_id}: "
            f"{subtotal} + {tax_amount} + {rounding} != {source_total}"
        )

    def context(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "rounding": str(self.rounding),
            "source_total": str(self.source_total),
        }


class ExternalServiceError(OrderSyncError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StorefrontApiError(ExternalServiceError):
    pass


class AccountingApiError(ExternalServiceError):
    pass


class DuplicateCheckError(OrderSyncError):
    """Existing invoices could not be listed, so duplicates cannot be ruled out."""
