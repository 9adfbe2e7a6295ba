"""Tests for FirebaseStore against a fake Realtime Database reference."""

import copy
from datetime import datetime, timezone

import pytest
from firebase_admin.exceptions import UnavailableError

from conftest import make_coupon, make_product
from firebase_util import FirebaseStore, StoreError
from models import CartLine


class FakeRef:
    """Minimal db.Reference over a nested dict."""

    def __init__(self, data, path=(), fail_paths=None):
        self.data = data
        self.path = path
        self.key = path[-1] if path else None
        self.fail = False
        # paths whose reads and transactions raise, shared by every child
        self.fail_paths = fail_paths if fail_paths is not None else set()

    def child(self, name):
        ref = FakeRef(self.data, self.path + (name,), self.fail_paths)
        ref.fail = self.fail
        return ref

    def _check(self):
        if self.fail or self.path in self.fail_paths:
            raise UnavailableError("offline")

    def _parent(self, create=False):
        node = self.data
        for part in self.path[:-1]:
            if part not in node and create:
                node[part] = {}
            node = node.get(part, {})
        return node

    def get(self):
        self._check()
        node = self.data
        for part in self.path:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def set(self, value):
        self._parent(create=True)[self.path[-1]] = copy.deepcopy(value)

    def update(self, value):
        self._check()
        node = self._parent(create=True).setdefault(self.path[-1], {})
        for key, item in value.items():
            if item is None:
                node.pop(key, None)
            else:
                node[key] = copy.deepcopy(item)

    def delete(self):
        self._parent().pop(self.path[-1], None)

    def push(self, value):
        parent = self.get() or {}
        ref = self.child(f"-key{len(parent) + 1}")
        ref.set(value)
        return ref

    def transaction(self, update):
        self._check()
        result = update(self.get())
        if result is not None:
            self.set(result)
        return result

    def order_by_child(self, field):
        return FakeQuery(self, field)


class FakeQuery:
    def __init__(self, ref, field):
        self.ref = ref
        self.field = field
        self.value = None

    def equal_to(self, value):
        self.value = value
        return self

    def get(self):
        children = self.ref.get() or {}
        return {
            key: child for key, child in children.items()
            if child.get(self.field) == self.value
        }


@pytest.fixture
def data():
    product = make_product("p1", price=250, stock=4).model_dump(mode="json", exclude={"id"})
    coupon = make_coupon("SAVE10").model_dump(mode="json", exclude={"id", "code"})
    return {"products": {"p1": product}, "coupons": {"SAVE10": coupon}}


@pytest.fixture
def store(data):
    return FirebaseStore(root=FakeRef(data))


class TestReads:
    def test_get_product(self, store):
        product = store.get_product("p1")
        assert product.id == "p1"
        assert product.price == 250
        assert product.inStock is True

    def test_missing_product(self, store):
        assert store.get_product("nope") is None

    def test_get_coupon_is_case_insensitive(self, store):
        coupon = store.get_coupon(" save10")
        assert coupon.code == "SAVE10"
        assert coupon.validFrom.tzinfo is not None

    def test_read_failure_is_wrapped(self, data):
        root = FakeRef(data)
        root.fail = True
        with pytest.raises(StoreError):
            FirebaseStore(root=root).get_coupon("SAVE10")


class TestWrites:
    def test_create_coupon_rejects_duplicates(self, store, data):
        assert store.create_coupon(make_coupon("NEW20", value=20)) is True
        assert data["coupons"]["NEW20"]["discountValue"] == 20
        assert store.create_coupon(make_coupon("new20")) is False

    def test_decrement_stock_floors_at_zero(self, store, data):
        store.decrement_stock([("p1", 3)])
        assert data["products"]["p1"]["stockQuantity"] == 1
        store.decrement_stock([("p1", 5)])
        assert data["products"]["p1"]["stockQuantity"] == 0
        assert data["products"]["p1"]["inStock"] is False

    def test_redeem_coupon_increments_usage(self, store, data):
        store.redeem_coupon("SAVE10")
        store.redeem_coupon("SAVE10")
        assert data["coupons"]["SAVE10"]["usedCount"] == 2

    def test_cart_round_trip(self, store, data):
        line = CartLine(productId="p1", quantity=2, product=make_product("p1"))
        store.save_cart("sess-1", [line])
        assert store.load_cart("sess-1")[0]["quantity"] == 2

        store.save_cart("sess-1", [])
        assert store.load_cart("sess-1") == []

    def test_order_round_trip(self, store):
        from models import OrderPayload, ShippingAddress

        payload = OrderPayload(
            userId="u1",
            items=[],
            subtotal=0,
            discount=0,
            shipping=99,
            total=99,
            shippingAddress=ShippingAddress(
                name="A", email="a@b.co", phone="9876543210", addressLine1="1 St",
                city="Pune", state="MH", pincode="411001",
            ),
            paymentMethod="cod",
            createdAt=datetime.now(timezone.utc),
        )
        order_id = store.create_order(payload)
        order = store.get_order(order_id)
        assert order["id"] == order_id
        assert order["total"] == 99


def _order(user_id, created_at, status="pending"):
    return {"userId": user_id, "status": status, "total": 99, "createdAt": created_at}


class TestMalformedRecords:
    def test_malformed_coupon_is_a_store_error(self, data):
        data["coupons"]["BROKEN"] = {"type": "percent", "amount": 10, "usesLeft": -1}
        with pytest.raises(StoreError, match="BROKEN is malformed"):
            FirebaseStore(root=FakeRef(data)).get_coupon("broken")

    def test_malformed_product_is_a_store_error(self, data):
        data["products"]["p2"] = {"name": "No price", "stockQuantity": -3}
        with pytest.raises(StoreError):
            FirebaseStore(root=FakeRef(data)).get_product("p2")

    def test_list_coupons_skips_malformed(self, data):
        data["coupons"]["BROKEN"] = {"type": "percent"}
        codes = [c.code for c in FirebaseStore(root=FakeRef(data)).list_coupons()]
        assert codes == ["SAVE10"]


class TestStockFailures:
    def test_one_failed_product_does_not_stop_the_rest(self, data):
        data["products"]["p2"] = make_product("p2", stock=5).model_dump(mode="json", exclude={"id"})
        data["products"]["p3"] = make_product("p3", stock=5).model_dump(mode="json", exclude={"id"})
        store = FirebaseStore(root=FakeRef(data, fail_paths={("products", "p2")}))

        with pytest.raises(StoreError, match="p2"):
            store.decrement_stock([("p1", 1), ("p2", 1), ("p3", 2)])

        assert data["products"]["p1"]["stockQuantity"] == 3
        assert data["products"]["p2"]["stockQuantity"] == 5
        assert data["products"]["p3"]["stockQuantity"] == 3


class TestCouponAdmin:
    def test_update_coupon_writes_only_changed_fields(self, store, data):
        store.update_coupon("SAVE10", {"discountValue": 15, "isActive": False})
        coupon = data["coupons"]["SAVE10"]
        assert coupon["discountValue"] == 15
        assert coupon["isActive"] is False
        assert coupon["discountType"] == "percentage"

    def test_delete_coupon(self, store, data):
        assert store.delete_coupon("SAVE10") is True
        assert "SAVE10" not in data["coupons"]
        assert store.delete_coupon("SAVE10") is False

    def test_update_failure_is_wrapped(self, data):
        root = FakeRef(data, fail_paths={("coupons", "SAVE10")})
        with pytest.raises(StoreError):
            FirebaseStore(root=root).update_coupon("SAVE10", {"isActive": False})


class TestOrderHistory:
    @pytest.fixture
    def orders(self, data):
        data["orders"] = {
            "-a": _order("u1", "2026-01-01T10:00:00+00:00", "delivered"),
            "-b": _order("u1", "2026-03-01T10:00:00+00:00"),
            "-c": _order("u2", "2026-02-01T10:00:00+00:00"),
        }
        return data["orders"]

    def test_list_orders_newest_first(self, store, orders):
        assert [o["id"] for o in store.list_orders("u1")] == ["-b", "-a"]

    def test_list_orders_by_status(self, store, orders):
        assert [o["id"] for o in store.list_orders("u1", "delivered")] == ["-a"]
        assert store.list_orders("u3") == []

    def test_update_order_status(self, store, orders):
        assert store.update_order_status("-b", "shipped") is True
        assert orders["-b"]["status"] == "shipped"
        assert "updatedAt" in orders["-b"]
        assert store.update_order_status("-zzz", "shipped") is False
