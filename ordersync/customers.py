from __future__ import annotations

import logging
from typing import Literal, Optional, Protocol

from pydantic import BaseModel

from ordersync.catalog import ANONYMOUS_CUSTOMER_NAME, DEFAULT_COUNTRY_CODE
from ordersync.models import BillingContact, Customer

logger = logging.getLogger(__name__)


LookupStatus = Literal["found", "not_found", "not_implemented"]


class CustomerLookup(BaseModel):
    status: LookupStatus
    customer: Optional[Customer] = None


class CustomerDirectory(Protocol):
    def find_by_email(self, email: str) -> CustomerLookup: ...


class PlaceholderDirectory:
    """Every private buyer is invoiced as the shared anonymous customer.

    Merit customer search is not wired up, so lookups say so explicitly
    instead of pretending nothing matched.
    """

    def find_by_email(self, email: str) -> CustomerLookup:
        logger.debug("Customer lookup not implemented; email=%s", email)
        return CustomerLookup(status="not_implemented")


def anonymous_customer(billing: BillingContact, currency: str) -> Customer:
    return Customer(
        name=ANONYMOUS_CUSTOMER_NAME,
        address=billing.address_1,
        city=billing.city,
        country_code=billing.country or DEFAULT_COUNTRY_CODE,
        postal_code=billing.postcode,
        email=billing.email,
        phone=billing.phone,
        currency_code=currency,
    )


def resolve_customer(
    billing: BillingContact,
    currency: str,
    directory: Optional[CustomerDirectory] = None,
) -> Customer:
    if directory is not None and billing.email:
        lookup = directory.find_by_email(billing.email)
        if lookup.status == "found" and lookup.customer is not None:
            return lookup.customer
    return anonymous_customer(billing, currency)
