import os
from datetime import datetime, timezone
from typing import List, Optional

import firebase_admin
import structlog
from dotenv import load_dotenv
from firebase_admin import credentials, db
from firebase_admin.exceptions import FirebaseError
from pydantic import ValidationError

from models import CartLine, Coupon, OrderPayload, Product

# Load environment variables
load_dotenv()

logger = structlog.get_logger(__name__)

# Path to Firebase service account JSON
FIREBASE_CRED_PATH = os.getenv("FIREBASE_CRED_JSON", "./firebase-adminsdk.json")
FIREBASE_DB_URL = os.getenv("FIREBASE_DB_URL", "")


class StoreError(Exception):
    """A datastore call failed; the caller may retry."""


def init_firebase():
    # Initialize Firebase app if not already initialized
    if not firebase_admin._apps:
        try:
            cred = credentials.Certificate(FIREBASE_CRED_PATH)
            firebase_admin.initialize_app(cred, {
                'databaseURL': FIREBASE_DB_URL
            })
        except (ValueError, OSError) as e:
            raise RuntimeError(f"Firebase initialization failed: {e}") from e
    return db.reference("/")


class FirebaseStore:
    """Catalog, coupon, order and cart access over the Realtime Database.

    Layout: products/{id}, coupons/{CODE}, orders/{pushId}, carts/{sessionId}.
    """

    def __init__(self, root=None):
        self.root = root if root is not None else init_firebase()

    def _get(self, *path):
        ref = self.root
        for part in path:
            ref = ref.child(part)
        try:
            return ref.get()
        except FirebaseError as e:
            raise StoreError(f"Read of {'/'.join(path)} failed: {e}") from e

    # Catalog reader
    def get_product(self, product_id: str) -> Optional[Product]:
        data = self._get("products", product_id)
        if not data:
            return None
        try:
            return Product.model_validate({**data, "id": product_id})
        except ValidationError as e:
            raise StoreError(f"Product {product_id} is malformed: {e}") from e

    # Coupon reader
    def get_coupon(self, code: str) -> Optional[Coupon]:
        code = code.strip().upper()
        data = self._get("coupons", code)
        if not data:
            return None
        try:
            return Coupon.model_validate({**data, "id": code, "code": code})
        except ValidationError as e:
            raise StoreError(f"Coupon {code} is malformed: {e}") from e

    def list_coupons(self) -> List[Coupon]:
        coupons = []
        for code, data in (self._get("coupons") or {}).items():
            try:
                coupons.append(Coupon.model_validate({**data, "id": code, "code": code}))
            except ValidationError as e:
                logger.warning("Skipping malformed coupon", code=code, error=str(e))
        return coupons

    def create_coupon(self, coupon: Coupon) -> bool:
        """Store a new coupon; returns False when the code is already taken."""
        if self._get("coupons", coupon.code):
            return False
        data = coupon.model_dump(mode="json", exclude={"id", "code"}, exclude_none=True)
        try:
            self.root.child("coupons").child(coupon.code).set(data)
        except FirebaseError as e:
            raise StoreError(f"Coupon write failed: {e}") from e
        return True

    def update_coupon(self, code: str, changes: dict) -> None:
        """Write only the given fields; a None value clears the field."""
        try:
            self.root.child("coupons").child(code).update(changes)
        except FirebaseError as e:
            raise StoreError(f"Coupon update for {code} failed: {e}") from e

    def delete_coupon(self, code: str) -> bool:
        if not self._get("coupons", code):
            return False
        try:
            self.root.child("coupons").child(code).delete()
        except FirebaseError as e:
            raise StoreError(f"Coupon delete for {code} failed: {e}") from e
        return True

    # Order writer
    def create_order(self, payload: OrderPayload) -> str:
        try:
            ref = self.root.child("orders").push(payload.model_dump(mode="json"))
        except FirebaseError as e:
            raise StoreError(f"Order write failed: {e}") from e
        return ref.key

    def get_order(self, order_id: str) -> Optional[dict]:
        data = self._get("orders", order_id)
        if not data:
            return None
        return {**data, "id": order_id}

    def list_orders(self, user_id: str, status: Optional[str] = None) -> List[dict]:
        """A user's orders, newest first, optionally narrowed to one status."""
        query = self.root.child("orders").order_by_child("userId").equal_to(user_id)
        try:
            found = query.get() or {}
        except FirebaseError as e:
            raise StoreError(f"Order listing for {user_id} failed: {e}") from e

        orders = [{**data, "id": order_id} for order_id, data in found.items()]
        if status:
            orders = [order for order in orders if order.get("status") == status]
        return sorted(orders, key=lambda order: order.get("createdAt", ""), reverse=True)

    def update_order_status(self, order_id: str, status: str) -> bool:
        if not self._get("orders", order_id):
            return False
        try:
            self.root.child("orders").child(order_id).update({
                "status": status,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            })
        except FirebaseError as e:
            raise StoreError(f"Status update for {order_id} failed: {e}") from e
        return True

    # Stock adjuster
    def decrement_stock(self, decrements: List[tuple]) -> None:
        """Decrement each product in its own transaction.

        A failed product does not stop the rest; failures are raised together
        at the end so only those products need reconciling.
        """
        updated_at = datetime.now(timezone.utc).isoformat()
        failed = []

        for product_id, quantity in decrements:
            def apply(node, quantity=quantity):
                if node is None:
                    return None
                stock = max(0, (node.get("stockQuantity") or 0) - quantity)
                node.update(stockQuantity=stock, inStock=stock > 0, updatedAt=updated_at)
                return node

            try:
                self.root.child("products").child(product_id).transaction(apply)
            except FirebaseError as e:
                logger.warning("Stock update failed", product_id=product_id, quantity=quantity, error=str(e))
                failed.append(product_id)

        if failed:
            raise StoreError(f"Stock update failed for {', '.join(failed)}")

    def redeem_coupon(self, code: str) -> None:
        try:
            self.root.child("coupons").child(code).child("usedCount").transaction(
                lambda current: (current or 0) + 1
            )
        except FirebaseError as e:
            raise StoreError(f"Coupon usage update for {code} failed: {e}") from e

    # Cart persistence
    def load_cart(self, session_id: str) -> List[dict]:
        return self._get("carts", session_id) or []

    def save_cart(self, session_id: str, lines: List[CartLine]) -> None:
        ref = self.root.child("carts").child(session_id)
        try:
            if lines:
                ref.set([line.model_dump(mode="json") for line in lines])
            else:
                ref.delete()
        except FirebaseError as e:
            raise StoreError(f"Cart save for {session_id} failed: {e}") from e


_store: Optional[FirebaseStore] = None


def get_store() -> FirebaseStore:
    global _store
    if _store is None:
        _store = FirebaseStore()
        logger.info("Connected to Firebase", database_url=FIREBASE_DB_URL)
    return _store
