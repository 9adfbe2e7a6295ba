from datetime import datetime, timezone
from typing import Iterable, Optional

import structlog
from starlette.concurrency import run_in_threadpool

from firebase_util import StoreError
from models import Coupon, CouponResult, CouponValidation

logger = structlog.get_logger(__name__)


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return f"₹{amount:,.0f}"
    return f"₹{amount:,.2f}"


def _reject(reason: str, message: str) -> CouponValidation:
    return CouponValidation(valid=False, reason=reason, message=message)


def validate_coupon(
    coupon: Coupon,
    order_total: float,
    categories: Iterable[str],
    now: Optional[datetime] = None,
) -> CouponValidation:
    """Check a coupon against the current order.

    Checks run in a fixed order and stop at the first failure: active flag,
    validity window, usage limit, minimum order amount, then category match.
    Zero-valued limits are treated as unset.
    """
    now = now or datetime.now(timezone.utc)

    if not coupon.isActive:
        return _reject("inactive", "This coupon is not active")

    if now < coupon.validFrom:
        return _reject("not_yet_valid", "This coupon is not yet valid")
    if now > coupon.validUntil:
        return _reject("expired", "This coupon has expired")

    if coupon.usageLimit and coupon.usedCount >= coupon.usageLimit:
        return _reject("usage_limit", "This coupon has reached its usage limit")

    if coupon.minOrderAmount and order_total < coupon.minOrderAmount:
        return _reject(
            "min_order",
            f"Minimum order amount of {format_amount(coupon.minOrderAmount)} required for this coupon",
        )

    if coupon.applicableCategories:
        if not set(categories) & set(coupon.applicableCategories):
            return _reject("category", "This coupon is not applicable to items in your cart")

    return CouponValidation(valid=True, message=f"{coupon.code} is valid")


def calculate_discount_amount(coupon: Coupon, order_total: float) -> float:
    if coupon.discountType == "percentage":
        discount = order_total * coupon.discountValue / 100
        if coupon.maxDiscountAmount:
            discount = min(discount, coupon.maxDiscountAmount)
    else:
        discount = coupon.discountValue

    # Never more than the order itself
    return max(0, min(discount, order_total))


class CouponSession:
    """Holds the single coupon applied to a checkout session.

    Lookups are awaited, so each apply takes a request generation. Removing
    the coupon or cancelling pending work advances the generation and any
    lookup still in flight is discarded when it resolves.
    """

    def __init__(self):
        self.applied: Optional[Coupon] = None
        self._generation = 0

    @property
    def code(self) -> Optional[str]:
        return self.applied.code if self.applied else None

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def cancel_pending(self) -> None:
        self._next_generation()

    async def apply_by_code(self, code: str, order_total: float, categories, reader) -> CouponResult:
        generation = self._next_generation()
        code = code.strip().upper()
        logger.info("Applying coupon", code=code, order_total=order_total)

        try:
            coupon = await run_in_threadpool(reader.get_coupon, code)
        except StoreError as exc:
            logger.error("Coupon lookup failed", code=code, error=str(exc))
            return CouponResult(success=False, reason="error", message="Failed to apply coupon")

        if generation != self._generation:
            logger.info("Discarding stale coupon lookup", code=code)
            return CouponResult(
                success=False,
                reason="superseded",
                message="Coupon request was cancelled",
            )

        if coupon is None:
            return CouponResult(success=False, reason="not_found", message="Invalid coupon code")

        check = validate_coupon(coupon, order_total, categories)
        if not check.valid:
            logger.info("Coupon rejected", code=code, reason=check.reason)
            return CouponResult(success=False, reason=check.reason, message=check.message)

        self.applied = coupon
        discount = calculate_discount_amount(coupon, order_total)
        logger.info("Coupon applied", code=code, discount=discount)
        return CouponResult(
            success=True,
            discount=discount,
            message=f"Coupon applied! You saved {format_amount(discount)}",
        )

    def remove(self) -> None:
        self._next_generation()
        self.applied = None

    def calculate_discount(self, order_total: float) -> float:
        if self.applied is None:
            return 0
        return calculate_discount_amount(self.applied, order_total)
