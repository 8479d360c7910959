from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: float
    category: str
    sku: str
    reorder_level: Optional[int] = None
    stock: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        reorder = data.get("reorder_level")
        stock = data.get("stock")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            price=float(data.get("price") or 0),
            category=str(data.get("category") or ""),
            sku=str(data.get("sku") or ""),
            reorder_level=int(reorder) if reorder not in (None, "") else None,
            stock=int(stock) if stock not in (None, "") else None,
        )


PRODUCTS: List[Product] = [
    Product("1", "Rice (1kg)", 55.00, "Grocery", "GR001"),
    Product("2", "Wheat Flour (1kg)", 42.00, "Grocery", "GR002"),
    Product("3", "Sugar (1kg)", 45.00, "Grocery", "GR003"),
    Product("4", "Salt (1kg)", 20.00, "Grocery", "GR004"),
    Product("5", "Cooking Oil (1L)", 135.00, "Grocery", "GR005"),
    Product("6", "Tea (250g)", 95.00, "Beverages", "BV001"),
    Product("7", "Coffee (200g)", 180.00, "Beverages", "BV002"),
    Product("8", "Milk (1L)", 60.00, "Dairy", "DA001"),
    Product("9", "Butter (500g)", 270.00, "Dairy", "DA002"),
    Product("10", "Cheese (200g)", 120.00, "Dairy", "DA003"),
    Product("11", "Bread (Loaf)", 40.00, "Bakery", "BK001"),
    Product("12", "Biscuits (Pack)", 30.00, "Snacks", "SN001"),
    Product("13", "Chips (Pack)", 20.00, "Snacks", "SN002"),
    Product("14", "Soap (Bar)", 35.00, "Personal Care", "PC001"),
    Product("15", "Shampoo (200ml)", 110.00, "Personal Care", "PC002"),
    Product("16", "Toothpaste", 65.00, "Personal Care", "PC003"),
    Product("17", "Detergent (1kg)", 85.00, "Household", "HH001"),
    Product("18", "Floor Cleaner (1L)", 95.00, "Household", "HH002"),
    Product("19", "Eggs (12 pcs)", 72.00, "Dairy", "DA004"),
    Product("20", "Noodles (Pack)", 14.00, "Snacks", "SN003"),
]


def categories(products: Optional[List[Product]] = None) -> List[str]:
    """Category names in first-seen order."""
    seen: List[str] = []
    for p in products if products is not None else PRODUCTS:
        if p.category not in seen:
            seen.append(p.category)
    return seen


def get_product(product_id: str, products: Optional[List[Product]] = None) -> Optional[Product]:
    for p in products if products is not None else PRODUCTS:
        if p.id == str(product_id):
            return p
    return None


def find_by_sku(sku: str, products: Optional[List[Product]] = None) -> Optional[Product]:
    wanted = (sku or "").strip().upper()
    for p in products if products is not None else PRODUCTS:
        if p.sku.upper() == wanted:
            return p
    return None


def search_products(query: str = "", category: Optional[str] = None,
                    products: Optional[List[Product]] = None) -> List[Product]:
    q = (query or "").strip().lower()
    out = []
    for p in products if products is not None else PRODUCTS:
        if category and p.category != category:
            continue
        if q and q not in p.name.lower() and q not in p.sku.lower():
            continue
        out.append(p)
    return out
