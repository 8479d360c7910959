#!/usr/bin/env python3
# POS service: inventory ledger, customer registry, invoice archive and invoice engine
import os, sys, json, copy, re, argparse, logging, datetime as dt
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from pos_catalog import PRODUCTS, Product, get_product
from pos_cart import Cart
from pos_store import (
    CUSTOMERS_KEY,
    DB_PATH,
    INVENTORY_KEY,
    INVOICE_SEQ_PREFIX,
    INVOICES_KEY,
    KeyValueStore,
    clear_all_data,
    clear_draft,
    export_all_data,
    import_data,
    save_draft,
)

BACKUP_DIR = os.environ.get("POS_BACKUP_DIR", "pos_backup")
try:
    DEFAULT_STOCK = int(os.environ.get("POS_DEFAULT_STOCK", "50"))
except ValueError:
    DEFAULT_STOCK = 50
try:
    LOW_STOCK_THRESHOLD = int(os.environ.get("POS_LOW_STOCK_THRESHOLD", "10"))
except ValueError:
    LOW_STOCK_THRESHOLD = 10

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Customer fields only the invoice commit path may change
_PROTECTED_CUSTOMER_FIELDS = ("id", "created_date", "total_purchases", "total_amount")

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """Input rejected with a message fit to show the cashier."""


class DuplicateInvoiceError(ValueError):
    """Raised when an invoice number is already present in the archive."""
    def __init__(self, invoice_number: str):
        super().__init__(f"Invoice {invoice_number} already exists")
        self.invoice_number = invoice_number


def local_now() -> dt.datetime:
    return dt.datetime.now().replace(microsecond=0)


def _money(value: Any) -> float:
    return round(float(value or 0), 2)


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


# ---------- INVENTORY LEDGER ----------
def inventory_snapshot(store: KeyValueStore) -> Dict[str, int]:
    inventory = store.get(INVENTORY_KEY)
    if not isinstance(inventory, dict):
        return {}
    return inventory


def get_stock(store: KeyValueStore, product_id: str) -> int:
    try:
        return int(inventory_snapshot(store).get(str(product_id)) or 0)
    except (TypeError, ValueError):
        return 0


def set_stock(store: KeyValueStore, product_id: str, value: int) -> int:
    stock = max(0, int(value))
    with store.transaction():
        inventory = inventory_snapshot(store)
        inventory[str(product_id)] = stock
        store.set(INVENTORY_KEY, inventory)
    return stock


def adjust_stock(store: KeyValueStore, product_id: str, delta: int) -> int:
    with store.transaction():
        new_stock = max(0, get_stock(store, product_id) + int(delta))
        set_stock(store, product_id, new_stock)
    return new_stock


def initialize_stock(store: KeyValueStore, products: Iterable[Product], default: int = DEFAULT_STOCK) -> int:
    """Seed stock for catalog products that have no entry yet. Returns the number seeded."""
    seeded = 0
    with store.transaction():
        inventory = inventory_snapshot(store)
        for p in products:
            if p.id in inventory:
                continue
            inventory[p.id] = max(0, int(p.stock if p.stock is not None else default))
            seeded += 1
        if seeded:
            store.set(INVENTORY_KEY, inventory)
    return seeded


def _reorder_level(product: Product, threshold_default: int) -> int:
    return product.reorder_level if product.reorder_level is not None else threshold_default


def low_stock_products(store: KeyValueStore, products: Iterable[Product],
                       threshold_default: int = LOW_STOCK_THRESHOLD) -> List[Product]:
    inventory = inventory_snapshot(store)
    return [p for p in products
            if int(inventory.get(p.id) or 0) < _reorder_level(p, threshold_default)]


def out_of_stock_products(store: KeyValueStore, products: Iterable[Product]) -> List[Product]:
    inventory = inventory_snapshot(store)
    return [p for p in products if int(inventory.get(p.id) or 0) == 0]


def stock_status(store: KeyValueStore, product: Product, threshold_default: int = LOW_STOCK_THRESHOLD) -> str:
    stock = get_stock(store, product.id)
    if stock == 0:
        return "out_of_stock"
    if stock < _reorder_level(product, threshold_default):
        return "low_stock"
    return "in_stock"


def parse_stock_value(raw: Any) -> int:
    """Validate a stock count typed by the user."""
    if isinstance(raw, bool):
        raise ValidationError("Please enter a valid stock quantity")
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid stock quantity")
    if value < 0:
        raise ValidationError("Please enter a valid stock quantity")
    return value


# ---------- CUSTOMERS ----------
def list_customers(store: KeyValueStore) -> List[Dict[str, Any]]:
    customers = store.get(CUSTOMERS_KEY)
    return customers if isinstance(customers, list) else []


def get_customer(store: KeyValueStore, customer_id: str) -> Optional[Dict[str, Any]]:
    for c in list_customers(store):
        if c.get("id") == customer_id:
            return c
    return None


def _clean_customer_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    name = str(data.get("name") or "").strip()
    mobile = str(data.get("mobile") or "").strip()
    if not name or not mobile:
        raise ValidationError("Name and mobile are required")
    email = str(data.get("email") or "").strip() or None
    if email and not is_valid_email(email):
        raise ValidationError("Invalid email format")
    address = str(data.get("address") or "").strip() or None
    return {"name": name, "mobile": mobile, "email": email, "address": address}


def add_customer(store: KeyValueStore, data: Dict[str, Any]) -> Dict[str, Any]:
    fields = _clean_customer_fields(data or {})
    customer = {
        "id": f"CUST-{uuid4().hex[:10].upper()}",
        **fields,
        "created_date": local_now().isoformat(),
        "total_purchases": 0,
        "total_amount": 0.0,
    }
    with store.transaction():
        customers = list_customers(store)
        customers.append(customer)
        store.set(CUSTOMERS_KEY, customers)
    logger.info("Added customer %s (%s)", customer["id"], customer["name"])
    return customer


def update_customer(store: KeyValueStore, customer_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    patch = {k: v for k, v in (patch or {}).items() if k not in _PROTECTED_CUSTOMER_FIELDS}
    with store.transaction():
        customers = list_customers(store)
        for idx, c in enumerate(customers):
            if c.get("id") != customer_id:
                continue
            updated = {**c, **patch}
            updated.update(_clean_customer_fields(updated))
            customers[idx] = updated
            store.set(CUSTOMERS_KEY, customers)
            return updated
    return None


def delete_customer(store: KeyValueStore, customer_id: str) -> bool:
    with store.transaction():
        customers = list_customers(store)
        kept = [c for c in customers if c.get("id") != customer_id]
        if len(kept) == len(customers):
            return False
        store.set(CUSTOMERS_KEY, kept)
    logger.info("Deleted customer %s", customer_id)
    return True


def record_purchase(store: KeyValueStore, customer_id: str, amount: float) -> Optional[Dict[str, Any]]:
    # statistics never go down
    if float(amount) < 0:
        raise ValidationError("Purchase amount cannot be negative")
    with store.transaction():
        customers = list_customers(store)
        for c in customers:
            if c.get("id") != customer_id:
                continue
            c["total_purchases"] = int(c.get("total_purchases") or 0) + 1
            c["total_amount"] = _money(float(c.get("total_amount") or 0) + float(amount))
            store.set(CUSTOMERS_KEY, customers)
            return c
    return None


def search_customers(store: KeyValueStore, query: str) -> List[Dict[str, Any]]:
    q = (query or "").strip().lower()
    if not q:
        return list_customers(store)
    out = []
    for c in list_customers(store):
        haystack = (
            str(c.get("name") or "").lower(),
            str(c.get("mobile") or "").lower(),
            str(c.get("email") or "").lower(),
        )
        if any(q in field for field in haystack):
            out.append(c)
    return out


# ---------- INVOICE ARCHIVE ----------
def list_invoices(store: KeyValueStore, newest_first: bool = False) -> List[Dict[str, Any]]:
    invoices = store.get(INVOICES_KEY)
    if not isinstance(invoices, list):
        return []
    if newest_first:
        return sorted(invoices, key=lambda inv: str(inv.get("date") or ""), reverse=True)
    return invoices


def add_invoice(store: KeyValueStore, invoice: Dict[str, Any]):
    number = invoice.get("invoice_number")
    if not number:
        raise ValidationError("Invoice number is required")
    with store.transaction():
        invoices = list_invoices(store)
        if any(inv.get("invoice_number") == number for inv in invoices):
            raise DuplicateInvoiceError(number)
        invoices.append(invoice)
        store.set(INVOICES_KEY, invoices)


def find_invoice(store: KeyValueStore, invoice_number: str) -> Optional[Dict[str, Any]]:
    for inv in list_invoices(store):
        if inv.get("invoice_number") == invoice_number:
            return inv
    return None


def update_invoice(store: KeyValueStore, invoice_number: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    patch = {k: v for k, v in (patch or {}).items() if k != "invoice_number"}
    with store.transaction():
        invoices = list_invoices(store)
        for idx, inv in enumerate(invoices):
            if inv.get("invoice_number") != invoice_number:
                continue
            updated = {**inv, **patch}
            invoices[idx] = updated
            store.set(INVOICES_KEY, invoices)
            return updated
    return None


def delete_invoice(store: KeyValueStore, invoice_number: str) -> bool:
    with store.transaction():
        invoices = list_invoices(store)
        kept = [inv for inv in invoices if inv.get("invoice_number") != invoice_number]
        if len(kept) == len(invoices):
            return False
        store.set(INVOICES_KEY, kept)
    logger.info("Deleted invoice %s", invoice_number)
    return True


def _invoice_matches_query(inv: Dict[str, Any], q: str) -> bool:
    customer = inv.get("customer") or {}
    return (
        q in str(inv.get("invoice_number") or "").lower()
        or q in str(customer.get("name") or "").lower()
        or q in str(customer.get("mobile") or "")
    )


def filter_invoices(invoices: Iterable[Dict[str, Any]],
                    query: Optional[str] = None,
                    date_iso: Optional[str] = None,
                    min_amount: Optional[float] = None,
                    max_amount: Optional[float] = None,
                    edited_only: bool = False,
                    original_only: bool = False) -> List[Dict[str, Any]]:
    """Pure filter over invoice documents; every given criterion must hold."""
    q = (query or "").strip().lower()
    out = []
    for inv in invoices:
        if q and not _invoice_matches_query(inv, q):
            continue
        if edited_only and not inv.get("is_edited"):
            continue
        if original_only and inv.get("is_edited"):
            continue
        if date_iso and str(inv.get("date") or "")[:10] != date_iso:
            continue
        total = float(inv.get("total") or 0)
        if min_amount is not None and total < float(min_amount):
            continue
        if max_amount is not None and total > float(max_amount):
            continue
        out.append(inv)
    return out


def _as_local_naive(value: dt.datetime) -> dt.datetime:
    # invoice dates are naive local time; bring offset-aware bounds onto the same clock
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def _parse_when(value: Union[str, dt.date, dt.datetime], end_of_day: bool = False) -> dt.datetime:
    if isinstance(value, dt.datetime):
        return _as_local_naive(value)
    if isinstance(value, dt.date):
        day = dt.datetime.combine(value, dt.time.min)
        return day.replace(hour=23, minute=59, second=59, microsecond=999999) if end_of_day else day
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(text)
    if len(text) == 10 and end_of_day:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return _as_local_naive(parsed)


def invoices_by_date_range(store: KeyValueStore, start: Union[str, dt.date], end: Union[str, dt.date]) -> List[Dict[str, Any]]:
    """Invoices dated within [start, end]; a bare date as ``end`` covers the whole day."""
    lo = _parse_when(start)
    hi = _parse_when(end, end_of_day=True)
    out = []
    for inv in list_invoices(store):
        try:
            when = _parse_when(inv.get("date") or "")
        except ValueError:
            continue
        if lo <= when <= hi:
            out.append(inv)
    return out


def invoices_by_customer_id(store: KeyValueStore, customer_id: str) -> List[Dict[str, Any]]:
    return [inv for inv in list_invoices(store) if inv.get("customer_id") == customer_id]


def invoices_by_customer_name(store: KeyValueStore, name: str) -> List[Dict[str, Any]]:
    q = (name or "").strip().lower()
    return [inv for inv in list_invoices(store)
            if q in str((inv.get("customer") or {}).get("name") or "").lower()]


def cart_from_invoice(invoice: Dict[str, Any], store: Optional[KeyValueStore] = None) -> Cart:
    return Cart.from_items(copy.deepcopy(invoice.get("items") or []),
                           copy.deepcopy(invoice.get("customer") or {}), store=store)


# ---------- INVOICE ENGINE ----------
def next_invoice_number(store: KeyValueStore, when: Optional[dt.datetime] = None) -> str:
    """INV-YYYYMMDD-NNNN from a per-day counter, skipping numbers already archived."""
    day = (when or local_now()).strftime("%Y%m%d")
    key = INVOICE_SEQ_PREFIX + day
    with store.transaction():
        existing = {inv.get("invoice_number") for inv in list_invoices(store)}
        seq = int(store.get(key) or 0)
        while True:
            seq += 1
            number = f"INV-{day}-{seq:04d}"
            if number not in existing:
                break
        store.set(key, seq)
    return number


def _cart_items(cart: Union[Cart, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    if isinstance(cart, Cart):
        return cart.snapshot()
    return Cart.from_items(cart or []).snapshot()


def generate_invoice(store: KeyValueStore,
                     cart: Union[Cart, List[Dict[str, Any]]],
                     customer: Optional[Dict[str, Any]] = None,
                     when: Optional[dt.datetime] = None,
                     clear_draft_on_commit: bool = True) -> Dict[str, Any]:
    """
    Commit a sale:
      - archive the invoice (snapshots of customer and lines)
      - bump purchase statistics of a registered customer (walk-ins skipped)
      - decrement stock per line, clamped at 0
      - clear the draft, unless the sale was built from something else
    All writes share one transaction; any failure leaves the store untouched.
    Lines priced at or below zero raise ValidationError.
    """
    if customer is None and isinstance(cart, Cart):
        customer = cart.customer
    customer = copy.deepcopy(customer or {})
    items = copy.deepcopy(_cart_items(cart))
    for line in items:
        if float(line["product"].get("price") or 0) <= 0:
            raise ValidationError(f"Invalid price for {line['product'].get('name') or line['product']['id']}")
    subtotal = _money(sum(float(l["product"]["price"]) * int(l["quantity"]) for l in items))
    tax = 0.0
    total = _money(subtotal + tax)
    customer_id = customer.get("id") or None
    created = when or local_now()

    with store.transaction():
        number = next_invoice_number(store, created)
        invoice = {
            "invoice_number": number,
            "date": created.isoformat(),
            "customer": customer,
            "items": items,
            "subtotal": subtotal,
            "tax": tax,
            "total": total,
            "customer_id": customer_id,
        }
        add_invoice(store, invoice)

        if customer_id and record_purchase(store, customer_id, total) is None:
            logger.warning("Invoice %s references unknown customer %s; statistics not updated", number, customer_id)

        for line in items:
            adjust_stock(store, line["product"]["id"], -int(line["quantity"]))

        if clear_draft_on_commit:
            clear_draft(store)

    logger.info("Generated invoice %s (%d line(s), total %.2f, customer=%s)",
                number, len(items), total, customer_id or "walk-in")
    return invoice


def edit_invoice(store: KeyValueStore, invoice: Dict[str, Any]) -> Cart:
    """
    Reverse an invoice's stock effect and hand back an editable cart.

    The original invoice stays in the archive untouched; resubmitting the cart
    through generate_invoice produces a new invoice number.
    """
    items = invoice.get("items") or []
    with store.transaction():
        for line in items:
            product = line.get("product") or {}
            if "id" not in product:
                continue
            adjust_stock(store, product["id"], int(line.get("quantity") or 0))
        cart = cart_from_invoice(invoice)
        save_draft(store, cart.snapshot(), cart.customer)
    cart.store = store
    logger.info("Invoice %s reopened for editing; %d line(s) restocked",
                invoice.get("invoice_number"), len(items))
    return cart


# ---------- BACKUPS ----------
def ensure_dir(p: str):
    Path(p).mkdir(parents=True, exist_ok=True)


def backup_ndjson(store: KeyValueStore, day: Optional[str] = None, backup_dir: str = BACKUP_DIR) -> Path:
    """
    day: 'YYYY-MM-DD' (local). Defaults to today.
    Writes that day's invoices as NDJSON and returns the file path.
    """
    if day is None:
        day = local_now().date().isoformat()
    ensure_dir(backup_dir)
    path = Path(backup_dir) / f"invoices_{day}.ndjson"
    with open(path, "w", encoding="utf-8") as f:
        for inv in filter_invoices(list_invoices(store), date_iso=day):
            f.write(json.dumps(inv, separators=(",", ":"), ensure_ascii=False) + "\n")
    return path


# ---------- DEMO & CLI ----------
_DEMO_CUSTOMERS = [
    {"name": "Alpha Traders", "mobile": "9800000001", "email": "accounts@alpha.example"},
    {"name": "Beta Stores", "mobile": "9800000002"},
    {"name": "John Doe", "mobile": "9800000003", "address": "12 Market Road"},
]


def demo_seed(store: KeyValueStore):
    seeded = initialize_stock(store, PRODUCTS)
    if not list_customers(store):
        for row in _DEMO_CUSTOMERS:
            add_customer(store, row)
    print(f"Demo seed done: {seeded} stock entr{'y' if seeded == 1 else 'ies'} created, {len(list_customers(store))} customer(s).")


def demo_sale(store: KeyValueStore):
    cart = Cart()
    rice = get_product("1")
    milk = get_product("8")
    cart.add(rice)
    cart.add(rice)
    cart.add(milk)
    invoice = generate_invoice(store, cart, {"name": "Walk-in Customer", "mobile": ""})
    print("Recorded invoice:", invoice["invoice_number"], f"total={invoice['total']:.2f}")


def main():
    ap = argparse.ArgumentParser(description="POS maintenance tool")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--init", action="store_true", help="Seed stock for catalog products without an entry")
    ap.add_argument("--seed", action="store_true", help="Insert demo customers and stock")
    ap.add_argument("--demo-sale", action="store_true", help="Create a demo invoice")
    ap.add_argument("--low-stock", action="store_true", help="List products below their reorder level")
    ap.add_argument("--backup", action="store_true", help="Write NDJSON invoice backup")
    ap.add_argument("--day", default=None, help="Day for --backup (YYYY-MM-DD, default today)")
    ap.add_argument("--export", metavar="PATH", help="Export customers, invoices and inventory as JSON")
    ap.add_argument("--import", dest="import_path", metavar="PATH", help="Import a JSON export")
    ap.add_argument("--clear", action="store_true", help="Remove all customers, invoices, inventory and drafts")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    store = KeyValueStore(args.db)
    try:
        if args.clear:
            clear_all_data(store)
            print("Cleared all POS data in", args.db)

        if args.init:
            seeded = initialize_stock(store, PRODUCTS)
            print(f"Initialized stock for {seeded} product(s)")

        if args.seed:
            demo_seed(store)

        if args.import_path:
            with open(args.import_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not import_data(store, data):
                print(f"Import failed: {args.import_path} is not a valid export", file=sys.stderr)
                sys.exit(1)
            print("Imported", args.import_path)

        if args.demo_sale:
            demo_sale(store)

        if args.low_stock:
            for p in low_stock_products(store, PRODUCTS):
                print(f"{p.sku}\t{p.name}\t{get_stock(store, p.id)}")

        if args.backup:
            print("Backed up to", backup_ndjson(store, args.day))

        if args.export:
            with open(args.export, "w", encoding="utf-8") as f:
                json.dump(export_all_data(store), f, ensure_ascii=False, indent=2)
            print("Exported to", args.export)
    finally:
        store.close()


if __name__ == "__main__":
    main()
