from datetime import datetime, timezone
from typing import Optional, Tuple

import structlog
from starlette.concurrency import run_in_threadpool

from checkout import CheckoutSession
from firebase_util import StoreError
from models import OrderLine, OrderPayload, OrderResponse, ShippingAddress

logger = structlog.get_logger(__name__)

STOCK_FAILURE_MESSAGE = "Order placed but stock update failed. Admin will be notified."


class CheckoutError(Exception):
    """Order could not be placed; the cart is left as it was."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def build_order_payload(
    session: CheckoutSession,
    user_id: str,
    address: ShippingAddress,
    payment_method: str,
    payment_id: Optional[str] = None,
) -> OrderPayload:
    totals = session.totals()
    items = [
        OrderLine(
            productId=line.productId,
            name=line.product.name,
            category=line.product.category,
            quantity=line.quantity,
            price=line.product.price,
        )
        for line in session.cart.lines
    ]
    return OrderPayload(
        userId=user_id,
        items=items,
        subtotal=totals.subtotal,
        discount=totals.discount,
        shipping=totals.shipping,
        total=totals.total,
        shippingAddress=address,
        paymentMethod=payment_method,
        paymentId=payment_id,
        couponCode=totals.couponCode,
        createdAt=datetime.now(timezone.utc),
    )


def submit_order(store, payload: OrderPayload) -> Tuple[str, bool]:
    """Write the order, then adjust stock and coupon usage.

    Returns the new order id and whether stock was updated. A failed write
    raises a retryable CheckoutError. Failures after the write are logged;
    the order stands either way.
    """
    try:
        order_id = store.create_order(payload)
    except StoreError as exc:
        logger.error("Order write failed", user_id=payload.userId, error=str(exc))
        raise CheckoutError("Failed to place order. Please try again.", retryable=True) from exc

    stock_updated = True
    try:
        store.decrement_stock([(item.productId, item.quantity) for item in payload.items])
    except StoreError as exc:
        stock_updated = False
        logger.warning("Stock update failed after order", order_id=order_id, error=str(exc))

    if payload.couponCode:
        try:
            store.redeem_coupon(payload.couponCode)
        except StoreError as exc:
            logger.warning(
                "Coupon usage update failed after order",
                order_id=order_id,
                coupon=payload.couponCode,
                error=str(exc),
            )

    return order_id, stock_updated


async def place_order(
    session: CheckoutSession,
    store,
    user_id: str,
    address: ShippingAddress,
    payment_method: str,
    payment_id: Optional[str] = None,
) -> OrderResponse:
    async with session.lock:
        if not session.cart.lines:
            raise CheckoutError("Your cart is empty")

        totals = session.totals()
        payload = build_order_payload(session, user_id, address, payment_method, payment_id)
        logger.info(
            "Creating order",
            session_id=session.session_id,
            total=payload.total,
            discount=payload.discount,
            coupon=payload.couponCode,
        )

        order_id, stock_updated = await run_in_threadpool(submit_order, store, payload)
        session.reset()

    message = "Order placed successfully!"
    if payment_method == "cod":
        message = "Order placed successfully! Pay on delivery."
    if not stock_updated:
        message = STOCK_FAILURE_MESSAGE

    logger.info("Order placed", order_id=order_id, stock_updated=stock_updated)
    return OrderResponse(orderId=order_id, totals=totals, stockUpdated=stock_updated, message=message)
