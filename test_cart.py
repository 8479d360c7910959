import unittest

from pos_cart import Cart
from pos_catalog import PRODUCTS, Product, categories, find_by_sku, get_product, search_products
from pos_store import KeyValueStore, load_draft


class CatalogTest(unittest.TestCase):
    def test_catalog_has_twenty_products(self):
        self.assertEqual(len(PRODUCTS), 20)
        self.assertEqual(len({p.id for p in PRODUCTS}), 20)

    def test_lookup_helpers(self):
        rice = get_product("1")
        self.assertEqual(rice.name, "Rice (1kg)")
        self.assertEqual(rice.price, 55.00)
        self.assertIs(find_by_sku("gr001"), rice)
        self.assertIsNone(get_product("999"))

    def test_search_by_name_sku_and_category(self):
        self.assertEqual([p.id for p in search_products("rice")], ["1"])
        self.assertEqual([p.id for p in search_products("BV00")], ["6", "7"])
        dairy = search_products(category="Dairy")
        self.assertTrue(dairy)
        self.assertTrue(all(p.category == "Dairy" for p in dairy))
        self.assertEqual(categories()[0], "Grocery")

    def test_product_from_dict(self):
        p = Product.from_dict({"id": 5, "name": "X", "price": "2.5", "reorder_level": "3"})
        self.assertEqual(p.id, "5")
        self.assertEqual(p.price, 2.5)
        self.assertEqual(p.reorder_level, 3)
        self.assertIsNone(p.stock)


class CartTest(unittest.TestCase):
    def setUp(self):
        self.rice = get_product("1")
        self.milk = get_product("8")

    def test_add_same_product_increments(self):
        cart = Cart()
        cart.add(self.rice)
        cart.add(self.rice)
        self.assertEqual(len(cart), 1)
        self.assertEqual(cart.quantity_of("1"), 2)
        self.assertEqual(cart.subtotal(), 110.0)
        self.assertEqual(cart.total(), cart.subtotal())

    def test_adjust_quantity_removes_at_zero(self):
        cart = Cart()
        cart.add(self.rice)
        cart.add(self.milk)
        cart.adjust_quantity("1", 3)
        self.assertEqual(cart.quantity_of("1"), 4)
        cart.adjust_quantity("1", -10)
        self.assertEqual(cart.quantity_of("1"), 0)
        self.assertEqual([l.product.id for l in cart.lines], ["8"])

    def test_adjust_unknown_product_is_noop(self):
        cart = Cart()
        cart.add(self.rice)
        cart.adjust_quantity("404", 1)
        cart.remove("404")
        self.assertEqual(cart.item_count(), 1)

    def test_clear_and_empty(self):
        cart = Cart()
        self.assertTrue(cart.is_empty())
        cart.add(self.milk)
        cart.clear()
        self.assertTrue(cart.is_empty())
        self.assertEqual(cart.subtotal(), 0)

    def test_totals_round_to_cents(self):
        cart = Cart()
        odd = Product("x", "Odd", 0.1, "Misc", "MS001")
        for _ in range(3):
            cart.add(odd)
        self.assertEqual(cart.subtotal(), 0.3)

    def test_from_items_merges_and_skips_bad_rows(self):
        cart = Cart.from_items([
            {"product": self.rice.to_dict(), "quantity": 1},
            {"product": self.rice.to_dict(), "quantity": 2},
            {"product": self.milk.to_dict(), "quantity": 0},
            {"quantity": 4},
        ], {"name": "Asha"})
        self.assertEqual(cart.quantity_of("1"), 3)
        self.assertEqual(len(cart), 1)
        self.assertEqual(cart.customer, {"name": "Asha"})


class CartDraftTest(unittest.TestCase):
    def setUp(self):
        self.store = KeyValueStore(":memory:")

    def tearDown(self):
        self.store.close()

    def test_mutations_write_draft(self):
        cart = Cart(store=self.store)
        cart.add(get_product("1"))
        cart.set_customer({"name": "Ravi", "mobile": "9800000009"})
        draft = load_draft(self.store)
        self.assertEqual(draft["cart"][0]["quantity"], 1)
        self.assertEqual(draft["customer"]["name"], "Ravi")

    def test_restore_from_draft(self):
        cart = Cart(store=self.store)
        cart.add(get_product("1"))
        cart.add(get_product("1"))
        restored = Cart.from_draft(self.store)
        self.assertEqual(restored.quantity_of("1"), 2)
        self.assertEqual(restored.subtotal(), 110.0)

    def test_empty_store_gives_empty_cart(self):
        cart = Cart.from_draft(self.store)
        self.assertTrue(cart.is_empty())
        self.assertIs(cart.store, self.store)


if __name__ == "__main__":
    unittest.main()
