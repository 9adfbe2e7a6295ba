from typing import List, Optional

from fastapi.middleware.cors import CORSMiddleware
from fastapi import Depends, FastAPI, Header, HTTPException
from models import (
    AddToCartRequest, ApplyCouponRequest, ApplyCouponResponse,
    CartResponse, CheckoutTotals, Coupon, CouponCreate, CouponResponse,
    CouponUpdate, CouponValidateRequest, CouponValidateResponse, OrderResponse,
    OrderStatus, OrderStatusUpdate, PaymentOrderResponse, PlaceOrderRequest,
    UpdateQuantityRequest, check_coupon_rules
)
from cart import StockExceeded
from checkout import CheckoutSession, grand_total, shipping_fee
from coupons import calculate_discount_amount, validate_coupon
from firebase_util import StoreError, get_store
from orders import CheckoutError, place_order
from payments import STORE_NAME, PaymentGatewayError, get_payments, to_paise
from sessions import SessionRegistry
from starlette.concurrency import run_in_threadpool
import os
import structlog
from dotenv import load_dotenv

load_dotenv()

logger = structlog.get_logger(__name__)

app = FastAPI()

# Allow frontend CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://127.0.0.1:5500").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ADMIN_KEY = os.getenv("ADMIN_API_KEY")

_sessions = SessionRegistry()


def get_sessions() -> SessionRegistry:
    return _sessions


# Admin API key check
def check_admin(api_key: str = Header(..., alias="x-api-key")):
    if not ADMIN_KEY or api_key != ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")


async def load_session(session_id: str, store, sessions: SessionRegistry) -> CheckoutSession:
    try:
        return await sessions.get(session_id, store)
    except StoreError as e:
        logger.error("Session load failed", session_id=session_id, error=str(e))
        raise HTTPException(status_code=502, detail="Could not load your cart")


async def change_cart(session: CheckoutSession, store, sessions: SessionRegistry, change):
    try:
        await sessions.mutate(session, store, change)
    except StockExceeded as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreError as e:
        logger.error("Cart save failed", session_id=session.session_id, error=str(e))
        raise HTTPException(status_code=502, detail="Could not save your cart")


def cart_response(session: CheckoutSession) -> CartResponse:
    return CartResponse(
        sessionId=session.session_id,
        items=session.cart.lines,
        itemCount=session.cart.item_count(),
        subtotal=session.cart.subtotal(),
    )


# 1. CART
@app.get("/api/cart/{session_id}", response_model=CartResponse)
async def get_cart(session_id: str, store=Depends(get_store), sessions=Depends(get_sessions)):
    return cart_response(await load_session(session_id, store, sessions))


@app.post("/api/cart/{session_id}/items", response_model=CartResponse)
async def add_to_cart(
    session_id: str,
    body: AddToCartRequest,
    store=Depends(get_store),
    sessions=Depends(get_sessions),
):
    session = await load_session(session_id, store, sessions)
    try:
        product = await run_in_threadpool(store.get_product, body.productId)
    except StoreError as e:
        logger.error("Product lookup failed", product_id=body.productId, error=str(e))
        raise HTTPException(status_code=502, detail="Could not load product")
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")

    await change_cart(session, store, sessions, lambda s: s.add_to_cart(product, body.quantity))
    return cart_response(session)


@app.patch("/api/cart/{session_id}/items/{product_id}", response_model=CartResponse)
async def update_cart_quantity(
    session_id: str,
    product_id: str,
    body: UpdateQuantityRequest,
    store=Depends(get_store),
    sessions=Depends(get_sessions),
):
    session = await load_session(session_id, store, sessions)
    await change_cart(session, store, sessions, lambda s: s.update_quantity(product_id, body.quantity))
    return cart_response(session)


@app.delete("/api/cart/{session_id}/items/{product_id}", response_model=CartResponse)
async def remove_from_cart(session_id: str, product_id: str, store=Depends(get_store), sessions=Depends(get_sessions)):
    session = await load_session(session_id, store, sessions)
    await change_cart(session, store, sessions, lambda s: s.remove_from_cart(product_id))
    return cart_response(session)


@app.delete("/api/cart/{session_id}", response_model=CartResponse)
async def clear_cart(session_id: str, store=Depends(get_store), sessions=Depends(get_sessions)):
    session = await load_session(session_id, store, sessions)
    await change_cart(session, store, sessions, lambda s: s.clear_cart())
    return cart_response(session)


# 2. COUPON ADMIN
@app.get("/api/coupons", response_model=List[Coupon], dependencies=[Depends(check_admin)])
def list_coupons(store=Depends(get_store)):
    try:
        return store.list_coupons()
    except StoreError as e:
        logger.error("Coupon listing failed", error=str(e))
        raise HTTPException(status_code=502, detail="Could not load coupons")


@app.post("/api/coupons", response_model=CouponResponse, dependencies=[Depends(check_admin)])
def create_coupon(body: CouponCreate, store=Depends(get_store)):
    coupon = Coupon.model_validate(body.model_dump())
    try:
        created = store.create_coupon(coupon)
    except StoreError as e:
        logger.error("Coupon create failed", code=coupon.code, error=str(e))
        raise HTTPException(status_code=502, detail="Failed to save coupon")
    if not created:
        raise HTTPException(status_code=409, detail="Coupon code already exists")

    logger.info("Coupon created", code=coupon.code)
    return {"message": f"Coupon {coupon.code} created successfully"}


@app.patch("/api/coupons/{code}", response_model=CouponResponse, dependencies=[Depends(check_admin)])
def update_coupon(code: str, body: CouponUpdate, store=Depends(get_store)):
    code = code.strip().upper()
    try:
        current = store.get_coupon(code)
    except StoreError as e:
        logger.error("Coupon lookup failed", code=code, error=str(e))
        raise HTTPException(status_code=502, detail="Could not load coupon")
    if current is None:
        raise HTTPException(status_code=404, detail="Coupon not found")

    merged = current.model_copy(update=body.model_dump(exclude_unset=True))
    try:
        check_coupon_rules(merged.discountType, merged.discountValue, merged.validFrom, merged.validUntil)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        store.update_coupon(code, body.model_dump(mode="json", exclude_unset=True))
    except StoreError as e:
        logger.error("Coupon update failed", code=code, error=str(e))
        raise HTTPException(status_code=502, detail="Failed to save coupon")

    logger.info("Coupon updated", code=code)
    return {"message": f"Coupon {code} updated successfully"}


@app.delete("/api/coupons/{code}", response_model=CouponResponse, dependencies=[Depends(check_admin)])
def delete_coupon(code: str, store=Depends(get_store)):
    code = code.strip().upper()
    try:
        deleted = store.delete_coupon(code)
    except StoreError as e:
        logger.error("Coupon delete failed", code=code, error=str(e))
        raise HTTPException(status_code=502, detail="Failed to delete coupon")
    if not deleted:
        raise HTTPException(status_code=404, detail="Coupon not found")

    logger.info("Coupon deleted", code=code)
    return {"message": f"Coupon {code} deleted"}


# 3. VALIDATE COUPON (dry run, nothing is applied)
@app.post("/api/coupons/validate", response_model=CouponValidateResponse)
async def validate_coupon_code(body: CouponValidateRequest, store=Depends(get_store), sessions=Depends(get_sessions)):
    session = await load_session(body.sessionId, store, sessions)
    code = body.code.strip().upper()

    try:
        coupon = await run_in_threadpool(store.get_coupon, code)
    except StoreError as e:
        logger.error("Coupon lookup failed", code=code, error=str(e))
        return {"valid": False, "message": "Failed to apply coupon"}
    if coupon is None:
        return {"valid": False, "message": "Invalid coupon code"}

    subtotal = session.cart.subtotal()
    check = validate_coupon(coupon, subtotal, session.cart.categories())
    if not check.valid:
        return {"valid": False, "message": check.message}

    discount = calculate_discount_amount(coupon, subtotal)
    return {
        "valid": True,
        "discount": discount,
        "newTotal": grand_total(subtotal, discount, shipping_fee(subtotal)),
        "message": f"{code} can be applied",
    }


# 4. CHECKOUT
@app.post("/api/checkout/{session_id}/coupon", response_model=ApplyCouponResponse)
async def apply_coupon(
    session_id: str,
    body: ApplyCouponRequest,
    store=Depends(get_store),
    sessions=Depends(get_sessions),
):
    session = await load_session(session_id, store, sessions)
    result = await session.apply_coupon(body.code, store)
    return {"success": result.success, "message": result.message, "totals": session.totals()}


@app.delete("/api/checkout/{session_id}/coupon", response_model=CheckoutTotals)
async def remove_coupon(session_id: str, store=Depends(get_store), sessions=Depends(get_sessions)):
    session = await load_session(session_id, store, sessions)
    session.remove_coupon()
    return session.totals()


@app.get("/api/checkout/{session_id}/totals", response_model=CheckoutTotals)
async def get_totals(session_id: str, store=Depends(get_store), sessions=Depends(get_sessions)):
    return (await load_session(session_id, store, sessions)).totals()


@app.post("/api/checkout/{session_id}/payment", response_model=PaymentOrderResponse)
async def open_payment(
    session_id: str,
    store=Depends(get_store),
    sessions=Depends(get_sessions),
    payments=Depends(get_payments),
):
    session = await load_session(session_id, store, sessions)
    if not session.cart.lines:
        raise HTTPException(status_code=400, detail="Your cart is empty")

    totals = session.totals()
    try:
        rp = await run_in_threadpool(
            payments.create_order,
            totals.total,
            receipt=f"cart-{session_id}",
            notes={"sessionId": session_id, "couponCode": totals.couponCode or ""},
        )
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=f"Payment gateway error: {e}")

    # The cart moved on while the gateway was answering
    if session.totals() != totals:
        raise HTTPException(status_code=409, detail="Cart changed while opening payment")

    session.pending_payment = (rp["razorpay_order_id"], rp["amount"])
    return {
        "razorpayOrderId": rp["razorpay_order_id"],
        "amount": rp["amount"],
        "currency": rp["currency"],
        "keyId": rp["key_id"],
        "storeName": STORE_NAME,
    }


@app.post("/api/checkout/{session_id}/orders", response_model=OrderResponse)
async def create_order(
    session_id: str,
    body: PlaceOrderRequest,
    store=Depends(get_store),
    sessions=Depends(get_sessions),
    payments=Depends(get_payments),
):
    session = await load_session(session_id, store, sessions)
    payment_id = None

    if body.paymentMethod == "razorpay":
        pending = session.pending_payment
        if pending is None or pending[0] != body.razorpayOrderId:
            raise HTTPException(status_code=409, detail="No matching payment for this cart")
        if pending[1] != to_paise(session.totals().total):
            raise HTTPException(status_code=409, detail="Cart changed after payment was started")
        try:
            verified = await run_in_threadpool(
                payments.verify_payment,
                body.razorpayOrderId, body.razorpayPaymentId or "", body.razorpaySignature or "",
            )
        except PaymentGatewayError as e:
            raise HTTPException(status_code=502, detail=f"Payment gateway error: {e}")
        if not verified:
            raise HTTPException(status_code=402, detail="Payment verification failed")
        if session.pending_payment != pending:
            raise HTTPException(status_code=409, detail="Cart changed after payment was started")
        payment_id = body.razorpayPaymentId

    try:
        result = await place_order(session, store, body.userId, body.shippingAddress, body.paymentMethod, payment_id)
    except CheckoutError as e:
        raise HTTPException(status_code=502 if e.retryable else 400, detail=str(e))

    # The order already stands; a stale persisted cart is only logged
    try:
        await sessions.save(session, store)
    except StoreError as e:
        logger.warning("Cart save after order failed", session_id=session_id, error=str(e))
    return result


# 5. ORDER TRACKING
@app.get("/api/orders/{order_id}")
def get_order(order_id: str, store=Depends(get_store)):
    try:
        order = store.get_order(order_id)
    except StoreError as e:
        logger.error("Order lookup failed", order_id=order_id, error=str(e))
        raise HTTPException(status_code=502, detail="Could not load order")
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.get("/api/users/{user_id}/orders")
def list_user_orders(user_id: str, status: Optional[OrderStatus] = None, store=Depends(get_store)):
    try:
        return store.list_orders(user_id, status)
    except StoreError as e:
        logger.error("Order listing failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=502, detail="Could not load orders")


@app.patch("/api/orders/{order_id}/status", dependencies=[Depends(check_admin)])
def update_order_status(order_id: str, body: OrderStatusUpdate, store=Depends(get_store)):
    try:
        updated = store.update_order_status(order_id, body.status)
    except StoreError as e:
        logger.error("Order status update failed", order_id=order_id, error=str(e))
        raise HTTPException(status_code=502, detail="Could not update order")
    if not updated:
        raise HTTPException(status_code=404, detail="Order not found")

    logger.info("Order status updated", order_id=order_id, status=body.status)
    return {"message": f"Order {order_id} marked {body.status}"}
