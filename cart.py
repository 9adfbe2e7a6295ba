from typing import Dict, List, Optional

import structlog

from models import CartLine, Product

logger = structlog.get_logger(__name__)


class StockExceeded(Exception):
    """Raised when a cart mutation would take a line past available stock."""

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__("Not enough stock available")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class CartLedger:
    """Ordered product id -> CartLine mapping for a single session.

    Every line's quantity stays within the stock of its product snapshot.
    Rejected mutations leave the ledger untouched.
    """

    def __init__(self, lines: Optional[List[CartLine]] = None):
        self._lines: Dict[str, CartLine] = {}
        for line in lines or []:
            self._lines[line.productId] = line

    @classmethod
    def from_lines(cls, raw: Optional[List[dict]]) -> "CartLedger":
        return cls([CartLine.model_validate(item) for item in raw or []])

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def get(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def add(self, product: Product, quantity: int = 1) -> CartLine:
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        existing = self._lines.get(product.id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if new_quantity > product.stockQuantity:
            logger.info(
                "Rejected cart add",
                product_id=product.id,
                requested=new_quantity,
                available=product.stockQuantity,
            )
            raise StockExceeded(product.id, new_quantity, product.stockQuantity)

        # Refresh the snapshot so later checks use the latest known stock
        line = CartLine(productId=product.id, quantity=new_quantity, product=product)
        self._lines[product.id] = line
        return line

    def update_quantity(self, product_id: str, quantity: int) -> Optional[CartLine]:
        if quantity <= 0:
            self.remove(product_id)
            return None

        line = self._lines.get(product_id)
        if line is None:
            return None
        if quantity > line.product.stockQuantity:
            raise StockExceeded(product_id, quantity, line.product.stockQuantity)

        line = line.model_copy(update={"quantity": quantity})
        self._lines[product_id] = line
        return line

    def remove(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def subtotal(self) -> float:
        return sum(line.product.price * line.quantity for line in self._lines.values())

    def item_count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def categories(self) -> List[str]:
        seen: List[str] = []
        for line in self._lines.values():
            if line.product.category not in seen:
                seen.append(line.product.category)
        return seen
