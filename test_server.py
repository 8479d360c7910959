import json
import unittest

import pos_server
import pos_service as ps
from pos_auth import DEMO_EMAIL, DEMO_PASSWORD


class ServerTestCase(unittest.TestCase):
    def setUp(self):
        pos_server.app.config['TESTING'] = True
        self.state = pos_server.configure_state(':memory:', seed_demo_user=True)
        self.store = self.state.store
        self.client = pos_server.app.test_client()
        resp = self.client.post('/api/auth/login', json={'email': DEMO_EMAIL, 'password': DEMO_PASSWORD})
        self.assertEqual(resp.status_code, 200)
        self.token = resp.get_json()['token']

    def tearDown(self):
        self.state.close()
        pos_server.app.extensions.pop('pos_state', None)


class AuthRoutesTest(ServerTestCase):
    def test_login_sets_http_only_cookie(self):
        resp = self.client.post('/api/auth/login', json={'email': DEMO_EMAIL, 'password': DEMO_PASSWORD})
        cookie = resp.headers.get('Set-Cookie')
        self.assertIn('auth_token=', cookie)
        self.assertIn('HttpOnly', cookie)
        self.assertIn('SameSite=Lax', cookie)

    def test_bad_login(self):
        resp = self.client.post('/api/auth/login', json={'email': DEMO_EMAIL, 'password': 'nope'})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json(), {'success': False, 'error': 'Invalid email or password'})

    def test_register_conflict(self):
        resp = self.client.post('/api/auth/register', json={'email': 'new@shop.example', 'password': 'secret1', 'name': 'New'})
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.get_json()['success'])
        resp = self.client.post('/api/auth/register', json={'email': 'new@shop.example', 'password': 'secret1', 'name': 'New'})
        self.assertEqual(resp.status_code, 409)

    def test_me_and_logout(self):
        resp = self.client.get('/api/auth/me')
        self.assertEqual(resp.get_json()['user']['email'], DEMO_EMAIL)
        self.client.post('/api/auth/logout')
        fresh = pos_server.app.test_client()
        self.assertEqual(fresh.get('/api/auth/me').status_code, 401)

    def test_bearer_token_accepted(self):
        anon = pos_server.app.test_client()
        self.assertEqual(anon.get('/api/products').status_code, 401)
        resp = anon.get('/api/products', headers={'Authorization': f'Bearer {self.token}'})
        self.assertEqual(resp.status_code, 200)

    def test_auth_can_be_disabled(self):
        anon = pos_server.app.test_client()
        pos_server.app.config['POS_REQUIRE_AUTH'] = False
        try:
            self.assertEqual(anon.get('/api/categories').status_code, 200)
        finally:
            pos_server.app.config['POS_REQUIRE_AUTH'] = True


class CatalogAndCartRoutesTest(ServerTestCase):
    def test_products_include_stock(self):
        data = self.client.get('/api/products?q=rice').get_json()
        self.assertEqual(len(data['products']), 1)
        self.assertEqual(data['products'][0]['stock'], 50)
        self.assertEqual(data['products'][0]['stock_status'], 'in_stock')
        cats = self.client.get('/api/categories').get_json()['categories']
        self.assertIn('Dairy', cats)

    def test_cart_round_trip(self):
        self.client.post('/api/cart/add', json={'product_id': '1'})
        resp = self.client.post('/api/cart/add', json={'product_id': '1'})
        cart = resp.get_json()['cart']
        self.assertEqual(cart['subtotal'], 110.0)
        resp = self.client.post('/api/cart/adjust', json={'product_id': '1', 'delta': -1})
        self.assertEqual(resp.get_json()['cart']['item_count'], 1)
        self.client.put('/api/cart/customer', json={'customer': {'name': 'Asha', 'mobile': '1'}})
        cart = self.client.get('/api/cart').get_json()['cart']
        self.assertEqual(cart['customer']['name'], 'Asha')
        draft = self.client.get('/api/draft').get_json()['draft']
        self.assertEqual(draft['cart'][0]['quantity'], 1)
        cart = self.client.post('/api/cart/clear').get_json()['cart']
        self.assertEqual(cart['items'], [])

    def test_add_unknown_product(self):
        resp = self.client.post('/api/cart/add', json={'product_id': '999'})
        self.assertEqual(resp.status_code, 404)


class InvoiceRoutesTest(ServerTestCase):
    def _sell(self, **extra):
        body = {'items': [{'product': {'id': '1', 'name': 'Rice (1kg)', 'price': 55.0}, 'quantity': 2}],
                'customer': {'name': 'Walk-in Customer'}}
        body.update(extra)
        resp = self.client.post('/api/invoices', json=body)
        self.assertEqual(resp.status_code, 201)
        return resp.get_json()['invoice']

    def test_empty_cart_rejected(self):
        resp = self.client.post('/api/invoices', json={})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['message'], 'Cart is empty')

    def test_create_from_draft_cart(self):
        self.client.post('/api/cart/add', json={'product_id': '8'})
        resp = self.client.post('/api/invoices', json={})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.get_json()['invoice']['total'], 60.0)
        self.assertEqual(self.client.get('/api/cart').get_json()['cart']['items'], [])

    def test_create_list_get_delete(self):
        inv = self._sell()
        number = inv['invoice_number']
        self.assertEqual(inv['total'], 110.0)
        self.assertEqual(ps.get_stock(self.store, '1'), 48)

        rows = self.client.get('/api/invoices?q=walk').get_json()['invoices']
        self.assertEqual([r['invoice_number'] for r in rows], [number])
        self.assertEqual(self.client.get('/api/invoices?min=200').get_json()['count'], 0)
        self.assertEqual(self.client.get('/api/invoices?type=edited').get_json()['count'], 0)
        self.assertEqual(self.client.get('/api/invoices?min=abc').status_code, 400)

        self.assertEqual(self.client.get(f'/api/invoices/{number}').get_json()['invoice'], inv)
        self.assertEqual(self.client.delete(f'/api/invoices/{number}').status_code, 200)
        self.assertEqual(self.client.delete(f'/api/invoices/{number}').status_code, 404)

    def test_customer_sale_updates_stats(self):
        customer = self.client.post('/api/customers', json={'name': 'Asha', 'mobile': '1'}).get_json()['customer']
        inv = self._sell(customer_id=customer['id'])
        self.assertEqual(inv['customer_id'], customer['id'])
        stored = self.client.get(f"/api/customers/{customer['id']}").get_json()['customer']
        self.assertEqual(stored['total_purchases'], 1)
        self.assertEqual(stored['total_amount'], 110.0)
        rows = self.client.get(f"/api/customers/{customer['id']}/invoices").get_json()['invoices']
        self.assertEqual(len(rows), 1)

    def test_posted_prices_come_from_catalog(self):
        customer = self.client.post('/api/customers', json={'name': 'Asha', 'mobile': '1'}).get_json()['customer']
        ps.record_purchase(self.store, customer['id'], 100.0)
        items = [{'product': {'id': '1', 'name': 'Free Rice', 'price': -90.0}, 'quantity': 1}]
        resp = self.client.post('/api/invoices', json={'items': items, 'customer_id': customer['id']})
        self.assertEqual(resp.status_code, 201)
        inv = resp.get_json()['invoice']
        self.assertEqual(inv['total'], 55.0)
        self.assertEqual(inv['items'][0]['product']['name'], 'Rice (1kg)')
        self.assertEqual(inv['items'][0]['product']['price'], 55.0)
        self.assertEqual(ps.get_customer(self.store, customer['id'])['total_amount'], 155.0)

    def test_posted_unknown_product_rejected(self):
        customer = self.client.post('/api/customers', json={'name': 'Asha', 'mobile': '1'}).get_json()['customer']
        items = [{'product': {'id': '1', 'price': 55.0}, 'quantity': 1},
                 {'product': {'id': 'NOPE', 'price': 1.0}, 'quantity': 1}]
        resp = self.client.post('/api/invoices', json={'items': items, 'customer_id': customer['id']})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(ps.list_invoices(self.store), [])
        self.assertNotIn('NOPE', ps.inventory_snapshot(self.store))
        self.assertEqual(ps.get_stock(self.store, '1'), 50)
        self.assertEqual(ps.get_customer(self.store, customer['id'])['total_amount'], 0.0)

    def test_posted_quantity_must_be_positive(self):
        for qty in (0, -2, 'many'):
            resp = self.client.post('/api/invoices', json={'items': [{'product': {'id': '1'}, 'quantity': qty}]})
            self.assertEqual(resp.status_code, 400)
        self.assertEqual(ps.list_invoices(self.store), [])

    def test_draft_upload_priced_from_catalog(self):
        resp = self.client.put('/api/draft', json={'cart': [{'product': {'id': '8', 'price': 0.01}, 'quantity': 2}]})
        self.assertEqual(resp.get_json()['draft']['cart'][0]['product']['price'], 60.0)
        resp = self.client.put('/api/draft', json={'cart': [{'product': {'id': 'NOPE'}, 'quantity': 1}]})
        self.assertEqual(resp.status_code, 404)

    def test_posted_sale_keeps_draft(self):
        self.client.post('/api/cart/add', json={'product_id': '8'})
        self._sell()
        cart = self.client.get('/api/cart').get_json()['cart']
        self.assertEqual(cart['item_count'], 1)
        self.assertEqual(cart['items'][0]['product']['id'], '8')

    def test_date_range_with_offset_bounds(self):
        self._sell()
        resp = self.client.get('/api/invoices', query_string={
            'start': '2020-01-01T00:00:00+05:30', 'end': '2099-01-01',
        })
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['count'], 1)

    def test_edit_restocks(self):
        inv = self._sell()
        resp = self.client.post(f"/api/invoices/{inv['invoice_number']}/edit")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['cart']['item_count'], 2)
        self.assertEqual(ps.get_stock(self.store, '1'), 50)

    def test_patch_marks_edited(self):
        inv = self._sell()
        resp = self.client.patch(f"/api/invoices/{inv['invoice_number']}", json={'is_edited': True, 'edited_from': 'INV-OLD'})
        self.assertTrue(resp.get_json()['invoice']['is_edited'])
        self.assertEqual(self.client.get('/api/invoices?type=edited').get_json()['count'], 1)
        self.assertEqual(self.client.get('/api/invoices?type=original').get_json()['count'], 0)

    def test_export_and_receipt_attachments(self):
        inv = self._sell()
        number = inv['invoice_number']
        resp = self.client.get(f'/api/invoices/{number}/export')
        self.assertIn(f'invoice_{number}.json', resp.headers['Content-Disposition'])
        self.assertEqual(json.loads(resp.get_data(as_text=True))['invoice_number'], number)

        resp = self.client.get(f'/api/invoices/{number}/receipt')
        html = resp.get_data(as_text=True)
        self.assertEqual(resp.mimetype, 'text/html')
        self.assertIn('attachment', resp.headers['Content-Disposition'])
        self.assertIn(number, html)
        self.assertIn('Walk-in Customer', html)
        self.assertIn('110.00', html)

    def test_print_forwards_to_agent(self):
        inv = self._sell()
        captured = {}

        class FakeResponse:
            def raise_for_status(self):
                return None

        def fake_post(url, json=None, timeout=None):
            captured['url'] = url
            captured['payload'] = json
            return FakeResponse()

        original_post = pos_server.requests.post
        original_url = pos_server.RECEIPT_AGENT_URL
        try:
            pos_server.requests.post = fake_post
            pos_server.RECEIPT_AGENT_URL = 'http://127.0.0.1:5001/print-invoice'
            resp = self.client.post(f"/api/invoices/{inv['invoice_number']}/print")
        finally:
            pos_server.requests.post = original_post
            pos_server.RECEIPT_AGENT_URL = original_url
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(captured['url'], 'http://127.0.0.1:5001/print-invoice')
        self.assertEqual(captured['payload']['invoice']['invoice_number'], inv['invoice_number'])

    def test_print_without_agent(self):
        inv = self._sell()
        original_url = pos_server.RECEIPT_AGENT_URL
        try:
            pos_server.RECEIPT_AGENT_URL = None
            resp = self.client.post(f"/api/invoices/{inv['invoice_number']}/print")
        finally:
            pos_server.RECEIPT_AGENT_URL = original_url
        self.assertEqual(resp.status_code, 503)


class CustomerInventoryDataRoutesTest(ServerTestCase):
    def test_customer_validation_and_search(self):
        resp = self.client.post('/api/customers', json={'name': 'Asha'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['message'], 'Name and mobile are required')
        self.client.post('/api/customers', json={'name': 'Asha Rao', 'mobile': '9800000001'})
        rows = self.client.get('/api/customers?q=asha').get_json()['customers']
        self.assertEqual(len(rows), 1)
        resp = self.client.patch(f"/api/customers/{rows[0]['id']}", json={'address': 'Market Road'})
        self.assertEqual(resp.get_json()['customer']['address'], 'Market Road')
        self.assertEqual(self.client.delete(f"/api/customers/{rows[0]['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/customers/{rows[0]['id']}").status_code, 404)

    def test_inventory_updates(self):
        resp = self.client.put('/api/inventory/1', json={'stock': 'abc'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()['message'], 'Please enter a valid stock quantity')
        resp = self.client.put('/api/inventory/1', json={'stock': '5'})
        self.assertEqual(resp.get_json()['product']['stock_status'], 'low_stock')
        resp = self.client.post('/api/inventory/1/adjust', json={'delta': -100})
        self.assertEqual(resp.get_json()['product']['stock'], 0)
        low = self.client.get('/api/inventory/low-stock').get_json()['products']
        self.assertEqual([p['id'] for p in low], ['1'])
        summary = self.client.get('/api/inventory').get_json()['summary']
        self.assertEqual(summary['out_of_stock'], 1)
        self.assertEqual(self.client.put('/api/inventory/999', json={'stock': 1}).status_code, 404)

    def test_preferences(self):
        self.client.put('/api/preferences/theme', json={'value': 'dark'})
        self.assertEqual(self.client.get('/api/preferences/theme').get_json()['value'], 'dark')

    def test_export_import_clear(self):
        self.client.post('/api/customers', json={'name': 'Asha', 'mobile': '1'})
        exported = json.loads(self.client.get('/api/data/export').get_data(as_text=True))
        self.assertEqual(len(exported['customers']), 1)
        self.client.post('/api/data/clear')
        self.assertEqual(self.client.get('/api/customers').get_json()['customers'], [])
        # session survives a data clear
        self.assertEqual(self.client.get('/api/auth/me').status_code, 200)
        self.assertEqual(self.client.post('/api/data/import', json=exported).status_code, 200)
        self.assertEqual(len(self.client.get('/api/customers').get_json()['customers']), 1)
        self.assertEqual(self.client.post('/api/data/import', json=[1, 2]).status_code, 400)

    def test_health(self):
        resp = self.client.get('/health')
        self.assertEqual(resp.get_json()['status'], 'ok')


if __name__ == '__main__':
    unittest.main()
