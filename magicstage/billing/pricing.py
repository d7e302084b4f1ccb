"""
Credit packages and price helpers.

Prices are Decimal dollars; Stripe amounts are integer cents.
"""

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, Field

BASE_PRICE_PER_CREDIT = Decimal("4.99")

_CENT = Decimal("0.01")


class CreditPackage(BaseModel):
    """A purchasable bundle of staging credits."""

    id: str
    credits: int = Field(..., ge=1)
    price_per_credit: Decimal
    total_price: Decimal
    savings: Decimal = Field(..., description="Saving per credit against the base price")
    is_popular: bool = Field(default=False)

    @property
    def amount_cents(self) -> int:
        return price_to_stripe_amount(self.total_price)


CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(
        id="credits-10",
        credits=10,
        price_per_credit=Decimal("4.49"),
        total_price=Decimal("44.90"),
        savings=Decimal("0.50"),
    ),
    CreditPackage(
        id="credits-25",
        credits=25,
        price_per_credit=Decimal("4.29"),
        total_price=Decimal("107.25"),
        savings=Decimal("1.75"),
    ),
    CreditPackage(
        id="credits-50",
        credits=50,
        price_per_credit=Decimal("3.99"),
        total_price=Decimal("199.50"),
        savings=Decimal("5.00"),
        is_popular=True,
    ),
    CreditPackage(
        id="credits-100",
        credits=100,
        price_per_credit=Decimal("3.49"),
        total_price=Decimal("349.00"),
        savings=Decimal("15.00"),
    ),
)


def get_credit_package(package_id: str) -> CreditPackage | None:
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    return None


def calculate_savings(credits: int, price_per_credit: Decimal) -> Decimal:
    """Total saving against buying the same credits at the base price."""
    return ((BASE_PRICE_PER_CREDIT - price_per_credit) * credits).quantize(_CENT, ROUND_HALF_UP)


def calculate_total_price(credits: int, price_per_credit: Decimal) -> Decimal:
    return (price_per_credit * credits).quantize(_CENT, ROUND_HALF_UP)


def price_to_stripe_amount(price: Decimal) -> int:
    """Dollars to Stripe cents, rounding half up."""
    return int((price * 100).quantize(Decimal("1"), ROUND_HALF_UP))


def format_price(cents: int) -> str:
    return f"${Decimal(cents) / 100:.2f}"
