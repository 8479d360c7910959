from typing import Any, Dict, List, Optional, Union

from pos_catalog import Product
from pos_store import KeyValueStore, load_draft, save_draft


class CartLine:
    __slots__ = ("product", "quantity")

    def __init__(self, product: Product, quantity: int = 1):
        self.product = product
        self.quantity = int(quantity)

    @property
    def line_total(self) -> float:
        return self.product.price * self.quantity

    def to_dict(self) -> Dict[str, Any]:
        return {"product": self.product.to_dict(), "quantity": self.quantity}

    def __repr__(self) -> str:
        return f"CartLine({self.product.id!r}, qty={self.quantity})"


class Cart:
    """Lines for the sale in progress.

    When bound to a store, every mutation saves the cart and its customer as
    the draft so an interrupted session can pick up where it left off.
    """

    def __init__(self, store: Optional[KeyValueStore] = None, customer: Optional[Dict[str, Any]] = None):
        self.store = store
        self.customer: Dict[str, Any] = dict(customer or {})
        self._lines: List[CartLine] = []

    # ---------- CONSTRUCTION ----------
    @classmethod
    def from_items(cls, items: List[Dict[str, Any]], customer: Optional[Dict[str, Any]] = None,
                   store: Optional[KeyValueStore] = None) -> "Cart":
        cart = cls(store=None, customer=customer)
        for row in items or []:
            product = row.get("product") if isinstance(row, dict) else None
            if not isinstance(product, dict) or "id" not in product:
                continue
            try:
                qty = int(row.get("quantity") or 0)
            except (TypeError, ValueError):
                continue
            if qty <= 0:
                continue
            existing = cart._find(str(product["id"]))
            if existing:
                existing.quantity += qty
            else:
                cart._lines.append(CartLine(Product.from_dict(product), qty))
        cart.store = store
        return cart

    @classmethod
    def from_draft(cls, store: KeyValueStore) -> "Cart":
        draft = load_draft(store)
        if not draft:
            return cls(store=store)
        return cls.from_items(draft.get("cart") or [], draft.get("customer") or {}, store=store)

    # ---------- QUERIES ----------
    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)

    def is_empty(self) -> bool:
        return not self._lines

    def quantity_of(self, product_id: str) -> int:
        line = self._find(str(product_id))
        return line.quantity if line else 0

    def item_count(self) -> int:
        return sum(l.quantity for l in self._lines)

    def subtotal(self) -> float:
        return round(sum(l.line_total for l in self._lines), 2)

    def total(self) -> float:
        # no tax applied at the till
        return self.subtotal()

    def snapshot(self) -> List[Dict[str, Any]]:
        return [l.to_dict() for l in self._lines]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.snapshot(),
            "customer": dict(self.customer),
            "item_count": self.item_count(),
            "subtotal": self.subtotal(),
            "total": self.total(),
        }

    # ---------- MUTATIONS ----------
    def add(self, product: Union[Product, Dict[str, Any]]):
        if isinstance(product, dict):
            product = Product.from_dict(product)
        line = self._find(product.id)
        if line:
            line.quantity += 1
        else:
            self._lines.append(CartLine(product, 1))
        self._persist()

    def adjust_quantity(self, product_id: str, delta: int):
        line = self._find(str(product_id))
        if not line:
            return
        line.quantity = max(0, line.quantity + int(delta))
        if line.quantity == 0:
            self._lines.remove(line)
        self._persist()

    def remove(self, product_id: str):
        line = self._find(str(product_id))
        if not line:
            return
        self._lines.remove(line)
        self._persist()

    def clear(self):
        self._lines = []
        self._persist()

    def set_customer(self, customer: Optional[Dict[str, Any]]):
        self.customer = dict(customer or {})
        self._persist()

    def _find(self, product_id: str) -> Optional[CartLine]:
        for line in self._lines:
            if line.product.id == product_id:
                return line
        return None

    def _persist(self):
        if self.store is not None:
            save_draft(self.store, self.snapshot(), self.customer)
