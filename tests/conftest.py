from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from firebase_util import StoreError
from models import Coupon, Product


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_product(product_id="prod-001", price=500, stock=10, category="frames", **kwargs):
    return Product(
        id=product_id,
        name=kwargs.pop("name", f"Product {product_id}"),
        price=price,
        stockQuantity=stock,
        category=category,
        **kwargs,
    )


def make_coupon(code="SAVE10", discount_type="percentage", value=10, **kwargs):
    now = datetime.now(timezone.utc)
    fields = {
        "code": code,
        "discountType": discount_type,
        "discountValue": value,
        "validFrom": now - timedelta(days=1),
        "validUntil": now + timedelta(days=1),
    }
    fields.update(kwargs)
    return Coupon(**fields)


class InMemoryStore:
    """Stands in for FirebaseStore with plain dicts."""

    def __init__(self):
        self.products = {}
        self.coupons = {}
        self.orders = {}
        self.carts = {}
        self.fail_on = set()

    def _check(self, op):
        if op in self.fail_on:
            raise StoreError(f"{op} unavailable")

    def add_product(self, product):
        self.products[product.id] = product
        return product

    def add_coupon(self, coupon):
        self.coupons[coupon.code] = coupon
        return coupon

    def get_product(self, product_id):
        self._check("get_product")
        return self.products.get(product_id)

    def get_coupon(self, code):
        self._check("get_coupon")
        return self.coupons.get(code.strip().upper())

    def create_coupon(self, coupon):
        self._check("create_coupon")
        if coupon.code in self.coupons:
            return False
        self.coupons[coupon.code] = coupon
        return True

    def list_coupons(self):
        self._check("list_coupons")
        return list(self.coupons.values())

    def update_coupon(self, code, changes):
        self._check("update_coupon")
        coupon = self.coupons[code]
        merged = {**coupon.model_dump(), **changes}
        self.coupons[code] = type(coupon).model_validate(merged)

    def delete_coupon(self, code):
        self._check("delete_coupon")
        return self.coupons.pop(code, None) is not None

    def create_order(self, payload):
        self._check("create_order")
        order_id = f"order-{len(self.orders) + 1}"
        self.orders[order_id] = payload.model_dump(mode="json")
        return order_id

    def get_order(self, order_id):
        self._check("get_order")
        order = self.orders.get(order_id)
        return {**order, "id": order_id} if order else None

    def list_orders(self, user_id, status=None):
        self._check("list_orders")
        orders = [
            {**order, "id": order_id}
            for order_id, order in self.orders.items()
            if order["userId"] == user_id and (status is None or order["status"] == status)
        ]
        return sorted(orders, key=lambda order: order["createdAt"], reverse=True)

    def update_order_status(self, order_id, status):
        self._check("update_order_status")
        if order_id not in self.orders:
            return False
        self.orders[order_id]["status"] = status
        return True

    def decrement_stock(self, decrements):
        self._check("decrement_stock")
        for product_id, quantity in decrements:
            product = self.products[product_id]
            stock = max(0, product.stockQuantity - quantity)
            self.products[product_id] = product.model_copy(
                update={"stockQuantity": stock, "inStock": stock > 0}
            )

    def redeem_coupon(self, code):
        self._check("redeem_coupon")
        coupon = self.coupons[code]
        self.coupons[code] = coupon.model_copy(update={"usedCount": coupon.usedCount + 1})

    def load_cart(self, session_id):
        self._check("load_cart")
        return self.carts.get(session_id, [])

    def save_cart(self, session_id, lines):
        self._check("save_cart")
        self.carts[session_id] = [line.model_dump(mode="json") for line in lines]


class FakePayments:
    key_id = "rzp_test_key"

    def __init__(self):
        self.orders = []
        self.valid_signature = "good-signature"

    def create_order(self, amount, receipt, notes=None):
        order = {
            "razorpay_order_id": f"order_rzp_{len(self.orders) + 1}",
            "amount": int(round(amount * 100)),
            "currency": "INR",
            "key_id": self.key_id,
        }
        self.orders.append(order)
        return order

    def verify_payment(self, razorpay_order_id, razorpay_payment_id, razorpay_signature):
        return razorpay_signature == self.valid_signature


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def client(store, payments, monkeypatch):
    import main
    from firebase_util import get_store
    from payments import get_payments
    from sessions import SessionRegistry

    monkeypatch.setattr(main, "ADMIN_KEY", "admin-secret")
    registry = SessionRegistry()
    main.app.dependency_overrides[get_store] = lambda: store
    main.app.dependency_overrides[get_payments] = lambda: payments
    main.app.dependency_overrides[main.get_sessions] = lambda: registry
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
