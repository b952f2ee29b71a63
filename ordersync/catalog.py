from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


# Estonian VAT, the only tax class the shop sells under
VAT_RATE = Decimal("0.22")

STORE_NAME = "Ussimo"
ANONYMOUS_CUSTOMER_NAME = "Eraisik"
DEFAULT_COUNTRY_CODE = "EE"
DEFAULT_CURRENCY = "EUR"

PAYMENT_TERM_DAYS = 7
LOCATION_CODE = 1
ITEM_TYPE_SERVICE = 3
ACCOUNTING_DOC_INVOICE = 1

DEFAULT_UNIT = "tk"
DEFAULT_CODE = "NOSKU"

SHIPPING_CODE = "Transport"
SHIPPING_DESCRIPTION = "Pakiautomaat"
DISCOUNT_CODE = "DISCOUNT"
DISCOUNT_LABEL = "Allahindlus"

FOOTER_COMMENT = (
    "II kategooria: orgaaniliste väetiste ja mullaparandusainete transport ja "
    "turule laskmine, tegevusloa nr. R/04/ABP/105"
)


@dataclass(frozen=True)
class CatalogProduct:
    code: str
    description: str
    unit: str = DEFAULT_UNIT


@dataclass(frozen=True)
class BundleComponent:
    product: CatalogProduct
    units_per_bundle: int
    reference_price: Decimal


@dataclass(frozen=True)
class BundleDefinition:
    name: str
    components: tuple[BundleComponent, ...]
    # index of the component that absorbs the rounding residual
    residual_component: int = 0

    def reference_value(self, quantity: int) -> Decimal:
        return sum(
            (c.reference_price * c.units_per_bundle * quantity for c in self.components),
            Decimal("0"),
        )


SOIL = CatalogProduct("4744278011219", "Toalillemuld 2, 5 l")
FLOWER_CONCENTRATE = CatalogProduct("4742022540022", "Biohuumuse kontsentraat Lilledele, 500ml")

# Storefront product name -> accounting item
PRODUCTS_BY_NAME: dict[str, CatalogProduct] = {
    "Toalillemuld biohuumusega": SOIL,
    "Biohuumuse kontsentraat mahekasvatuseks": CatalogProduct(
        "4742022540015", "Biohuumuse kontsentraat mahekasvatuseks, 500ml"
    ),
    "Biohuumuse kontsentraat lilledele": FLOWER_CONCENTRATE,
    "Ettekasvatussegu biohuumusega": CatalogProduct("4744278011011", "Ettekasvatussegu biohuumusega 5 l"),
    "Rammus püsikusegu biohuumusega": CatalogProduct("4744278011110", "Rammus püsikusegu biohuumusega 5, 0 l"),
    "Biohuumus 2, 5 l Ussimo": CatalogProduct("4744278011318", "Biohuumus 2, 5 l Ussimo"),
    "Biohuumus 5 l Ussimo": CatalogProduct("4744278010014", "Biohuumus 5 l Ussimo"),
    "Biohuumus Universaalne Maheväetis 5l": CatalogProduct("4744278010014", "Biohuumus 5 l Ussimo"),
    "Vertikaalne taimekast": CatalogProduct("4744278010038", "Vertikaalne taimekast"),
}

# Storefront SKU -> accounting item (service products sold without a name match)
PRODUCTS_BY_SKU: dict[str, CatalogProduct] = {
    "10038": CatalogProduct("10038", "Eesti postiteenus"),
    "10037": CatalogProduct("10037", "Eesti postiteenus"),
    "10036": CatalogProduct("10036", "Eesti postiteenus"),
    "10035": CatalogProduct("10035", "Eesti postiteenus"),
    "10029": CatalogProduct("10029", "Tarkvarateenuse kuutasu", "kuu"),
    "10028": CatalogProduct("10028", "Tarkvarateenuse kuutasu", "kuu"),
    "10027": CatalogProduct("10027", "Tarkvarateenuse kuutasu", "kuu"),
    "10026": CatalogProduct("10026", "Tarkvarateenuse kuutasu", "kuu"),
    "10025": CatalogProduct("10025", "Tarkvarateenuse kuutasu", "kuu"),
    "10024": CatalogProduct("10024", "Tarkvarateenuse kuutasu", "kuu"),
    "10023": CatalogProduct("10023", "Tarkvarateenuse kuutasu", "kuu"),
    "10021": CatalogProduct("10021", "Limiidi suurendamine"),
    "10020": CatalogProduct("10020", "Ostuarve sisestamine"),
    "10019": CatalogProduct("10019", "Ostuarve sisestamine"),
    "10012": CatalogProduct("10012", "Omniva pakiautomaat"),
    "10007": CatalogProduct("10007", "Eesti postiteenus"),
    "10006": CatalogProduct("10006", "Tarkvarateenuse aktiveerimistasu"),
    "10005": CatalogProduct("10005", "Tarkvarateenuse aktiveerimistasu"),
    "10003": CatalogProduct("10003", "Tarkvarateenuse kuutasu", "kuu"),
    "10002": CatalogProduct("10002", "Tarkvarateenuse kuutasu", "kuu"),
    "10001": CatalogProduct("10001", "Tarkvarateenuse kuutasu", "kuu"),
}

# Campaign products that exist only in the storefront
BUNDLES: dict[str, BundleDefinition] = {
    "Toataimede Uus Algus": BundleDefinition(
        name="Toataimede Uus Algus",
        components=(
            BundleComponent(SOIL, units_per_bundle=4, reference_price=Decimal("2.15")),
            BundleComponent(FLOWER_CONCENTRATE, units_per_bundle=2, reference_price=Decimal("2.99")),
        ),
        residual_component=0,
    ),
}


def lookup_product(name: Optional[str], sku: Optional[str]) -> Optional[CatalogProduct]:
    if name and name in PRODUCTS_BY_NAME:
        return PRODUCTS_BY_NAME[name]
    if sku and sku in PRODUCTS_BY_SKU:
        return PRODUCTS_BY_SKU[sku]
    return None


def lookup_bundle(name: Optional[str]) -> Optional[BundleDefinition]:
    if not name:
        return None
    return BUNDLES.get(name)
