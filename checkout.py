import asyncio
import os
from typing import Optional, Tuple

from dotenv import load_dotenv

from cart import CartLedger
from coupons import CouponSession
from models import CheckoutTotals, CouponResult, Product

load_dotenv()

SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "99"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "999"))


def shipping_fee(subtotal: float) -> float:
    if subtotal > FREE_SHIPPING_THRESHOLD:
        return 0
    return SHIPPING_FEE


def grand_total(subtotal: float, discount: float, shipping: float) -> float:
    return max(0, subtotal + shipping - discount)


def compute_totals(cart: CartLedger, coupons: CouponSession) -> CheckoutTotals:
    subtotal = cart.subtotal()
    discount = coupons.calculate_discount(subtotal)
    shipping = shipping_fee(subtotal)
    return CheckoutTotals(
        subtotal=subtotal,
        discount=discount,
        shipping=shipping,
        total=grand_total(subtotal, discount, shipping),
        itemCount=cart.item_count(),
        couponCode=coupons.code,
    )


class CheckoutSession:
    """Cart, applied coupon and pending payment for one shopper session.

    Totals are never stored here; call totals() whenever they are needed.
    """

    def __init__(self, session_id: str, cart: Optional[CartLedger] = None):
        self.session_id = session_id
        self.cart = cart if cart is not None else CartLedger()
        self.coupons = CouponSession()
        # (razorpay order id, amount in paise) opened for the current total
        self.pending_payment: Optional[Tuple[str, int]] = None
        # Serialises cart mutations with their save
        self.lock = asyncio.Lock()

    def totals(self) -> CheckoutTotals:
        return compute_totals(self.cart, self.coupons)

    def _cart_changed(self):
        self.coupons.cancel_pending()
        self.pending_payment = None

    def add_to_cart(self, product: Product, quantity: int = 1):
        line = self.cart.add(product, quantity)
        self._cart_changed()
        return line

    def update_quantity(self, product_id: str, quantity: int):
        line = self.cart.update_quantity(product_id, quantity)
        self._cart_changed()
        return line

    def remove_from_cart(self, product_id: str):
        self.cart.remove(product_id)
        self._cart_changed()

    def clear_cart(self):
        self.cart.clear()
        self._cart_changed()

    def restore_cart(self, lines):
        self.cart = CartLedger(lines)
        self._cart_changed()

    def reset(self):
        """Empty the cart and drop the coupon once an order has been placed."""
        self.clear_cart()
        self.remove_coupon()

    async def apply_coupon(self, code: str, reader) -> CouponResult:
        self.pending_payment = None
        return await self.coupons.apply_by_code(
            code, self.cart.subtotal(), self.cart.categories(), reader
        )

    def remove_coupon(self):
        self.coupons.remove()
        self.pending_payment = None
