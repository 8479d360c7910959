# POS persistence: SQLite-backed key/value store (one JSON document per key)
import os
import json
import logging
import sqlite3
import threading
import datetime as dt
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")

logger = logging.getLogger(__name__)

# Logical record names
CUSTOMERS_KEY = "customers"
INVOICES_KEY = "invoices"
INVENTORY_KEY = "inventory"
DRAFT_CART_KEY = "draft_cart"
DRAFT_CUSTOMER_KEY = "draft_customer"
PREFS_KEY = "prefs"
USERS_KEY = "users"
SESSIONS_KEY = "sessions"
INVOICE_SEQ_PREFIX = "invoice_seq:"

_APP_DATA_KEYS = (
    CUSTOMERS_KEY,
    INVOICES_KEY,
    INVENTORY_KEY,
    DRAFT_CART_KEY,
    DRAFT_CUSTOMER_KEY,
    PREFS_KEY,
)


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # explicit BEGIN/COMMIT only
    conn.isolation_level = None
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    _ensure_kv_table(conn)
    return conn


def _ensure_kv_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS kv_store (
      key         TEXT PRIMARY KEY,
      value_json  TEXT NOT NULL,
      updated_utc TEXT NOT NULL
    )
    """)


class KeyValueStore:
    """JSON documents stored under string keys.

    Reads fail open: a missing key, a SQLite error or an undecodable value all
    come back as ``default``. Writes raise.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self.conn = connect(db_path)
        self._lock = threading.RLock()
        self._txn_depth = 0

    # ---------- BASIC ACCESS ----------
    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            try:
                row = self.conn.execute("SELECT value_json FROM kv_store WHERE key=?", (key,)).fetchone()
            except sqlite3.Error as exc:
                logger.warning("Storage read failed for %s: %s", key, exc)
                return default
        if row is None:
            return default
        try:
            return json.loads(row["value_json"])
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable value under %s: %s", key, exc)
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        with self._lock:
            self.conn.execute("""
                INSERT INTO kv_store (key, value_json, updated_utc) VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET value_json=excluded.value_json, updated_utc=excluded.updated_utc
            """, (key, payload, iso_now()))

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = self.conn.execute("DELETE FROM kv_store WHERE key=?", (key,))
            return cur.rowcount > 0

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [r["key"] for r in rows]

    def clear(self) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv_store")

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error:
                pass

    # ---------- TRANSACTIONS ----------
    @contextmanager
    def transaction(self) -> Iterator["KeyValueStore"]:
        """Group several writes into one unit; nested calls join the outer one."""
        with self._lock:
            if self._txn_depth:
                self._txn_depth += 1
                try:
                    yield self
                finally:
                    self._txn_depth -= 1
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._txn_depth = 1
            try:
                yield self
            except BaseException:
                self._txn_depth = 0
                self.conn.execute("ROLLBACK")
                raise
            self._txn_depth = 0
            self.conn.execute("COMMIT")


# ---------- DRAFTS ----------
def save_draft(store: KeyValueStore, cart: List[Dict[str, Any]], customer: Optional[Dict[str, Any]]):
    with store.transaction():
        store.set(DRAFT_CART_KEY, cart)
        store.set(DRAFT_CUSTOMER_KEY, customer or {})


def load_draft(store: KeyValueStore) -> Optional[Dict[str, Any]]:
    cart = store.get(DRAFT_CART_KEY)
    customer = store.get(DRAFT_CUSTOMER_KEY)
    if cart is None or customer is None:
        return None
    return {"cart": cart, "customer": customer}


def clear_draft(store: KeyValueStore):
    with store.transaction():
        store.delete(DRAFT_CART_KEY)
        store.delete(DRAFT_CUSTOMER_KEY)


# ---------- PREFERENCES ----------
def set_preference(store: KeyValueStore, key: str, value: Any):
    with store.transaction():
        prefs = store.get(PREFS_KEY) or {}
        prefs[key] = value
        store.set(PREFS_KEY, prefs)


def get_preference(store: KeyValueStore, key: str, default: Any = None) -> Any:
    prefs = store.get(PREFS_KEY) or {}
    return prefs.get(key, default)


# ---------- EXPORT / IMPORT ----------
def export_all_data(store: KeyValueStore) -> Dict[str, Any]:
    return {
        "customers": store.get(CUSTOMERS_KEY) or [],
        "invoices": store.get(INVOICES_KEY) or [],
        "inventory": store.get(INVENTORY_KEY) or {},
        "export_date": iso_now(),
    }


def import_data(store: KeyValueStore, data: Any) -> bool:
    """Replace customers/invoices/inventory with the sections present in ``data``."""
    if not isinstance(data, dict):
        return False
    customers = data.get("customers")
    invoices = data.get("invoices")
    inventory = data.get("inventory")
    if customers is not None and not isinstance(customers, list):
        return False
    if invoices is not None and not isinstance(invoices, list):
        return False
    if isinstance(inventory, list):
        # [[product_id, stock], ...] pairs from older exports
        try:
            inventory = {str(pid): int(qty) for pid, qty in inventory}
        except (TypeError, ValueError):
            return False
    if inventory is not None and not isinstance(inventory, dict):
        return False
    try:
        with store.transaction():
            if customers is not None:
                store.set(CUSTOMERS_KEY, customers)
            if invoices is not None:
                store.set(INVOICES_KEY, invoices)
            if inventory is not None:
                store.set(INVENTORY_KEY, inventory)
    except (sqlite3.Error, TypeError, ValueError) as exc:
        logger.warning("Data import failed: %s", exc)
        return False
    return True


def clear_all_data(store: KeyValueStore):
    with store.transaction():
        for key in _APP_DATA_KEYS:
            store.delete(key)
