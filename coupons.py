"""
Coupon lookup and discount rules.

A coupon book maps a code to a discount rule. The default book is a static
table; anything with a ``lookup(code)`` method can replace it.
"""
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Protocol

CouponType = Literal["percentage", "fixed"]


@dataclass(frozen=True)
class Coupon:
    code: str
    discount: float
    type: CouponType

    def __post_init__(self):
        if self.discount < 0:
            raise ValueError("Coupon discount cannot be negative")
        if self.type == "percentage" and self.discount > 100:
            raise ValueError("Percentage coupons cannot exceed 100")

    def discount_for(self, total: float) -> float:
        """Amount taken off ``total``; never more than ``total``."""
        if self.type == "percentage":
            return total * self.discount / 100
        return min(self.discount, total)


class CouponBook(Protocol):
    def lookup(self, code: str) -> Optional[Coupon]:
        ...


class StaticCouponBook:
    def __init__(self, coupons: Iterable[Coupon]):
        self._coupons = {c.code: c for c in coupons}

    def lookup(self, code: str) -> Optional[Coupon]:
        return self._coupons.get(code)


DEFAULT_COUPONS = StaticCouponBook([
    Coupon("SAVE10", 10, "percentage"),
    Coupon("WELCOME20", 20, "percentage"),
    Coupon("FLAT50", 50, "fixed"),
])
