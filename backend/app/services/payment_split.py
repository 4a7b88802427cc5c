from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

SELLER_SHARE_BPS = 9000


def money_major_to_minor(amount: float | Decimal | int | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, int(minor))


def money_minor_to_major(minor: int | None) -> float:
    parsed = Decimal(int(minor or 0))
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _bps_half_up(amount_minor: int, bps: int) -> int:
    raw = (Decimal(max(0, int(amount_minor))) * Decimal(int(bps))) / Decimal("10000")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class PaymentSplit:
    seller_minor: int
    platform_minor: int
    delivery_minor: int

    @property
    def book_minor(self) -> int:
        return self.seller_minor + self.platform_minor

    @property
    def total_minor(self) -> int:
        return self.book_minor + self.delivery_minor

    @property
    def seller_amount(self) -> float:
        return money_minor_to_major(self.seller_minor)

    @property
    def platform_fee(self) -> float:
        return money_minor_to_major(self.platform_minor)

    @property
    def delivery_amount(self) -> float:
        return money_minor_to_major(self.delivery_minor)

    @property
    def total_amount(self) -> float:
        return money_minor_to_major(self.total_minor)

    def to_dict(self) -> dict:
        return {
            "seller_amount": self.seller_amount,
            "platform_fee": self.platform_fee,
            "delivery_amount": self.delivery_amount,
            "total_amount": self.total_amount,
            "seller_minor": self.seller_minor,
            "platform_minor": self.platform_minor,
            "delivery_minor": self.delivery_minor,
        }


def calculate_payment_split(book_price, delivery_fee=0, *, platform_commission_bps: int = 10000 - SELLER_SHARE_BPS) -> PaymentSplit:
    """Seller gets the book price less commission, rounded half-up to the cent.

    The platform fee is whatever is left of the book price, so the two always
    add back to the price exactly. Delivery passes through untouched.
    """
    book_minor = money_major_to_minor(book_price)
    seller_minor = _bps_half_up(book_minor, 10000 - int(platform_commission_bps))
    return PaymentSplit(
        seller_minor=seller_minor,
        platform_minor=book_minor - seller_minor,
        delivery_minor=money_major_to_minor(delivery_fee),
    )
