"""
Chapterly Backend — Credit Package Catalog
============================================

What:  The purchasable credit bundles and their Stripe / Google Play identity.
Why:   Prices, credit amounts and one-time flags must agree between the
       packages list, checkout creation and purchase verification.
How:   A frozen list of CreditPackage values. `product_id` is the logical id
       used for one-time gating and doubles as the Google Play product id;
       `price_id` is the Stripe dashboard price (overridable per environment).
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from chapterly.config import settings


@dataclass(frozen=True)
class CreditPackage:
    id: str
    base_credits: int
    bonus_percent: int
    total_credits: int
    price: float
    product_id: str
    price_id: Optional[str] = None
    one_time: bool = False
    highlight: bool = False
    tagline: Optional[str] = None

    @property
    def price_minor_units(self) -> int:
        """Catalog price in cents."""
        return int(round(self.price * 100))


def _price_id(package_id: str, default: str) -> str:
    return settings.stripe_price_override(package_id) or default


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(
        id="200",
        base_credits=200,
        bonus_percent=200,
        total_credits=600,
        price=1.99,
        product_id="credits_200",
        price_id=_price_id("200", "price_1SdL8TGsleA9N3woLQDaF6tM"),
        one_time=True,
        highlight=True,
        tagline="Limited one-time starter boost",
    ),
    CreditPackage(
        id="500",
        base_credits=500,
        bonus_percent=0,
        total_credits=500,
        price=4.99,
        product_id="credits_500",
        price_id=_price_id("500", "price_1SaEAjGsleA9N3wocKAUmNVX"),
    ),
    CreditPackage(
        id="1000",
        base_credits=1000,
        bonus_percent=10,
        total_credits=1100,
        price=9.99,
        product_id="credits_1000",
        price_id=_price_id("1000", "price_1SaED1GsleA9N3wou7xY2ECO"),
    ),
    CreditPackage(
        id="2000",
        base_credits=2000,
        bonus_percent=15,
        total_credits=2300,
        price=19.99,
        product_id="credits_2000",
        price_id=_price_id("2000", "price_1SaEE4GsleA9N3woSMToAtbj"),
    ),
    CreditPackage(
        id="3000",
        base_credits=3000,
        bonus_percent=20,
        total_credits=3600,
        price=29.99,
        product_id="credits_3000",
        price_id=_price_id("3000", "price_1SaEFTGsleA9N3woQFAeFwJg"),
    ),
    CreditPackage(
        id="5000",
        base_credits=5000,
        bonus_percent=25,
        total_credits=6250,
        price=49.99,
        product_id="credits_5000",
        price_id=_price_id("5000", "price_1SaEGmGsleA9N3woJQwraA5c"),
    ),
    CreditPackage(
        id="10000",
        base_credits=10000,
        bonus_percent=30,
        total_credits=13000,
        price=99.99,
        product_id="credits_10000",
        price_id=_price_id("10000", "price_1SaEHsGsleA9N3woD5yxGBJR"),
    ),
]

_BY_ID: Dict[str, CreditPackage] = {p.id: p for p in CREDIT_PACKAGES}
_BY_PRODUCT: Dict[str, CreditPackage] = {p.product_id: p for p in CREDIT_PACKAGES}


def find_package(package_id: Optional[str]) -> Optional[CreditPackage]:
    if not package_id:
        return None
    return _BY_ID.get(str(package_id))


def find_package_by_product(product_id: Optional[str]) -> Optional[CreditPackage]:
    if not product_id:
        return None
    return _BY_PRODUCT.get(product_id)


def available_packages(owned_products: Optional[set] = None) -> List[CreditPackage]:
    """All packages, minus one-time packages whose product is already owned."""
    owned = owned_products or set()
    return [p for p in CREDIT_PACKAGES if not (p.one_time and p.product_id in owned)]
