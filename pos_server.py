from flask import Flask, Response, g, jsonify, render_template, request
from dotenv import load_dotenv
import requests
import os
import base64
import mimetypes
import json as _json
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from pos_auth import DEMO_EMAIL, AuthError, AuthService
from pos_cart import Cart
from pos_catalog import PRODUCTS, categories, get_product, search_products
import pos_service as ps
from pos_store import (
    KeyValueStore,
    clear_all_data,
    clear_draft,
    export_all_data,
    get_preference,
    import_data,
    load_draft,
    save_draft,
    set_preference,
)

# Load environment variables
load_dotenv()

def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


app = Flask(__name__)

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

# Behavior flags
POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
POS_ENV = (_env_string('POS_ENV', 'local') or 'local').lower()
SESSION_TTL_SECONDS = max(_env_int('POS_SESSION_TTL_SECONDS', 86400), 60)
SEED_DEMO_USER = _env_string('POS_SEED_DEMO_USER', '1') == '1'
DEFAULT_STOCK = _env_int('POS_DEFAULT_STOCK', 50)
LOW_STOCK_THRESHOLD = _env_int('POS_LOW_STOCK_THRESHOLD', 10)
app.config['POS_REQUIRE_AUTH'] = _env_string('POS_REQUIRE_AUTH', '1') == '1'

AUTH_COOKIE_NAME = 'auth_token'

# Receipt header
SHOP_NAME = _env_string('POS_SHOP_NAME', 'Shrim Store')
SHOP_PHONE = _env_string('POS_SHOP_PHONE', '')
LOGO_PATH = _env_string('POS_LOGO_PATH', os.path.join('static', 'invoice-logo.jpeg'))

# Local receipt helper configuration
RECEIPT_AGENT_HOST = os.getenv('RECEIPT_AGENT_HOST')
RECEIPT_AGENT_PORT = os.getenv('RECEIPT_AGENT_PORT')
RECEIPT_AGENT_PATH = os.getenv('RECEIPT_AGENT_PATH', '/print-invoice')
RECEIPT_AGENT_USE_HTTPS = os.getenv('RECEIPT_AGENT_USE_HTTPS', '0') == '1'
RECEIPT_AGENT_URL = os.getenv('RECEIPT_AGENT_URL')
if not RECEIPT_AGENT_URL and RECEIPT_AGENT_HOST and RECEIPT_AGENT_PORT:
    scheme = 'https' if RECEIPT_AGENT_USE_HTTPS else 'http'
    path = RECEIPT_AGENT_PATH if RECEIPT_AGENT_PATH.startswith('/') else f'/{RECEIPT_AGENT_PATH}'
    RECEIPT_AGENT_URL = f"{scheme}://{RECEIPT_AGENT_HOST}:{RECEIPT_AGENT_PORT}{path}"
RECEIPT_DEFAULT_PORT = os.getenv('RECEIPT_SERIAL_PORT', 'COM3')


# ---------- STATE ----------
class PosState:
    """Store and auth service shared by every request."""
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.store = KeyValueStore(db_path)
        self.auth = AuthService(self.store, session_ttl=SESSION_TTL_SECONDS)

    def close(self):
        self.store.close()


_STATE_LOCK = threading.Lock()


def configure_state(db_path: Optional[str] = None, seed_demo_user: Optional[bool] = None) -> PosState:
    """(Re)open the store, seed missing stock and optionally the demo account."""
    with _STATE_LOCK:
        previous = app.extensions.get('pos_state')
        if previous is not None:
            previous.close()
        state = PosState(db_path or POS_DB_PATH)
        seeded = ps.initialize_stock(state.store, PRODUCTS, DEFAULT_STOCK)
        if seeded:
            app.logger.info("Seeded stock for %d product(s) (default=%d)", seeded, DEFAULT_STOCK)
        if seed_demo_user is None:
            seed_demo_user = SEED_DEMO_USER
        if seed_demo_user and state.auth.ensure_demo_user():
            app.logger.info("Created demo user %s", DEMO_EMAIL)
        app.extensions['pos_state'] = state
        return state


def get_pos_state() -> PosState:
    state = app.extensions.get('pos_state')
    if state is None:
        state = configure_state()
    return state


def _store() -> KeyValueStore:
    return get_pos_state().store


# ---------- HELPERS ----------
def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(message: str, code: int = 400):
    return jsonify({'status': 'error', 'message': message}), code


def _request_token() -> Optional[str]:
    header = request.headers.get('Authorization') or ''
    if header.lower().startswith('bearer '):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(AUTH_COOKIE_NAME) or None


def _set_auth_cookie(response, token: str):
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        max_age=get_pos_state().auth.session_ttl,
        httponly=True,
        secure=POS_ENV == 'production',
        samesite='Lax',
    )
    return response


def _product_payload(product, store: KeyValueStore) -> Dict[str, Any]:
    payload = product.to_dict()
    payload['stock'] = ps.get_stock(store, product.id)
    payload['stock_status'] = ps.stock_status(store, product, LOW_STOCK_THRESHOLD)
    return payload


def _parse_amount(raw: Optional[str], label: str) -> Optional[float]:
    if raw is None or str(raw).strip() == '':
        return None
    try:
        return float(raw)
    except ValueError:
        raise ps.ValidationError(f'Invalid {label} amount')


def _logo_data_uri() -> Optional[str]:
    """Inline the receipt logo so the downloaded HTML stands alone."""
    if not LOGO_PATH:
        return None
    try:
        with open(LOGO_PATH, 'rb') as f:
            raw = f.read()
    except OSError:
        app.logger.debug('Receipt logo not found at %s; using text header', LOGO_PATH)
        return None
    mime = mimetypes.guess_type(LOGO_PATH)[0] or 'image/jpeg'
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def _cart_from_posted_items(items: Any, customer: Optional[Dict[str, Any]] = None):
    """
    Rebuild posted lines from the catalog; only product ids and quantities are
    taken from the client. Returns (cart, None) or (None, error response).
    """
    if not isinstance(items, list):
        return None, _error('items must be a list', 400)
    rows = []
    for row in items:
        if not isinstance(row, dict):
            return None, _error('Each item must be an object', 400)
        posted = row.get('product') if isinstance(row.get('product'), dict) else {}
        product_id = str(posted.get('id') or row.get('product_id') or '').strip()
        if not product_id:
            return None, _error('Each item needs a product id', 400)
        product = get_product(product_id)
        if product is None:
            return None, _error(f'Product not found: {product_id}', 404)
        try:
            quantity = int(row.get('quantity'))
        except (TypeError, ValueError):
            quantity = 0
        if quantity <= 0:
            return None, _error(f'Quantity for {product.name} must be a positive whole number', 400)
        rows.append({'product': product.to_dict(), 'quantity': quantity})
    return Cart.from_items(rows, customer), None


def _cart_payload(cart: Cart) -> Dict[str, Any]:
    return {'status': 'success', 'cart': cart.to_dict()}


# ---------- REQUEST HOOKS ----------
@app.before_request
def _require_session():
    g.user = None
    path = request.path or ''
    if not path.startswith('/api/') or path.startswith('/api/auth/'):
        return None
    if not app.config.get('POS_REQUIRE_AUTH', True):
        return None
    user = get_pos_state().auth.current_user(_request_token())
    if not user:
        return _error('Authentication required', 401)
    g.user = user
    return None


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.errorhandler(ps.ValidationError)
def _handle_validation_error(exc):
    return _error(str(exc), 400)


@app.errorhandler(ps.DuplicateInvoiceError)
def _handle_duplicate_invoice(exc):
    return _error(str(exc), 409)


@app.errorhandler(AuthError)
def _handle_auth_error(exc):
    return jsonify({'success': False, 'error': exc.message}), exc.status


# ---------- AUTH ----------
@app.route('/api/auth/register', methods=['POST'])
def api_auth_register():
    data = _json_body()
    user, session = get_pos_state().auth.register(data.get('email'), data.get('password'), data.get('name'))
    resp = jsonify({'success': True, 'user': user, 'token': session['token']})
    resp.status_code = 201
    return _set_auth_cookie(resp, session['token'])


@app.route('/api/auth/login', methods=['POST'])
def api_auth_login():
    data = _json_body()
    user, session = get_pos_state().auth.login(data.get('email'), data.get('password'))
    app.logger.info("User %s session started", user['email'])
    return _set_auth_cookie(jsonify({'success': True, 'user': user, 'token': session['token']}), session['token'])


@app.route('/api/auth/logout', methods=['POST'])
def api_auth_logout():
    get_pos_state().auth.logout(_request_token())
    resp = jsonify({'success': True})
    resp.delete_cookie(AUTH_COOKIE_NAME, httponly=True, samesite='Lax', secure=POS_ENV == 'production')
    return resp


@app.route('/api/auth/me')
def api_auth_me():
    user = get_pos_state().auth.current_user(_request_token())
    if not user:
        return jsonify({'success': False, 'error': 'Not authenticated'}), 401
    return jsonify({'success': True, 'user': user})


@app.route('/api/auth/reset-password', methods=['POST'])
def api_auth_reset_password():
    data = _json_body()
    get_pos_state().auth.reset_password(
        data.get('email'),
        data.get('new_password') or data.get('password'),
        data.get('security_answer'),
    )
    return jsonify({'success': True})


# ---------- CATALOG ----------
@app.route('/api/products')
def api_products():
    store = _store()
    q = (request.args.get('q') or '').strip()
    category = (request.args.get('category') or '').strip() or None
    products = [_product_payload(p, store) for p in search_products(q, category)]
    return jsonify({'status': 'success', 'products': products})


@app.route('/api/categories')
def api_categories():
    return jsonify({'status': 'success', 'categories': categories()})


# ---------- CART ----------
def _product_from_body(data: Dict[str, Any]):
    product_id = str(data.get('product_id') or '').strip()
    if not product_id:
        raise ps.ValidationError('product_id is required')
    return get_product(product_id)


@app.route('/api/cart')
def api_cart():
    return jsonify(_cart_payload(Cart.from_draft(_store())))


@app.route('/api/cart/add', methods=['POST'])
def api_cart_add():
    product = _product_from_body(_json_body())
    if product is None:
        return _error('Product not found', 404)
    cart = Cart.from_draft(_store())
    cart.add(product)
    return jsonify(_cart_payload(cart))


@app.route('/api/cart/adjust', methods=['POST'])
def api_cart_adjust():
    data = _json_body()
    product_id = str(data.get('product_id') or '').strip()
    if not product_id:
        return _error('product_id is required', 400)
    try:
        delta = int(data.get('delta'))
    except (TypeError, ValueError):
        return _error('delta must be an integer', 400)
    cart = Cart.from_draft(_store())
    cart.adjust_quantity(product_id, delta)
    return jsonify(_cart_payload(cart))


@app.route('/api/cart/remove', methods=['POST'])
def api_cart_remove():
    data = _json_body()
    cart = Cart.from_draft(_store())
    cart.remove(str(data.get('product_id') or ''))
    return jsonify(_cart_payload(cart))


@app.route('/api/cart/clear', methods=['POST'])
def api_cart_clear():
    cart = Cart.from_draft(_store())
    cart.clear()
    return jsonify(_cart_payload(cart))


@app.route('/api/cart/customer', methods=['PUT'])
def api_cart_customer():
    store = _store()
    data = _json_body()
    customer_id = data.get('customer_id')
    if customer_id:
        customer = ps.get_customer(store, customer_id)
        if customer is None:
            return _error('Customer not found', 404)
    else:
        customer = data.get('customer') or {}
        if not isinstance(customer, dict):
            return _error('customer must be an object', 400)
    cart = Cart.from_draft(store)
    cart.set_customer(customer)
    return jsonify(_cart_payload(cart))


# ---------- DRAFT ----------
@app.route('/api/draft', methods=['GET', 'PUT', 'DELETE'])
def api_draft():
    store = _store()
    if request.method == 'PUT':
        data = _json_body()
        cart = data.get('cart') or []
        customer = data.get('customer') or {}
        if not isinstance(cart, list) or not isinstance(customer, dict):
            return _error('cart must be a list and customer an object', 400)
        draft_cart, error = _cart_from_posted_items(cart, customer)
        if error:
            return error
        save_draft(store, draft_cart.snapshot(), customer)
    elif request.method == 'DELETE':
        clear_draft(store)
        return jsonify({'status': 'success', 'draft': None})
    return jsonify({'status': 'success', 'draft': load_draft(store)})


# ---------- INVOICES ----------
@app.route('/api/invoices', methods=['POST'])
def api_create_invoice():
    """
    Commit a sale from the posted items, or from the draft cart when none are posted.
    Posted items are priced from the catalog and leave the draft alone.
    """
    store = _store()
    data = _json_body()
    from_draft = not data.get('items')
    if from_draft:
        cart = Cart.from_draft(store)
    else:
        cart, error = _cart_from_posted_items(data.get('items'), data.get('customer') or {})
        if error:
            return error
    if cart.is_empty():
        return _error('Cart is empty', 400)

    customer = data.get('customer') if isinstance(data.get('customer'), dict) else cart.customer
    if data.get('customer_id'):
        customer = ps.get_customer(store, data['customer_id'])
        if customer is None:
            return _error('Customer not found', 404)
    try:
        invoice = ps.generate_invoice(store, cart, customer, clear_draft_on_commit=from_draft)
    except (ps.ValidationError, ps.DuplicateInvoiceError):
        raise
    except Exception:
        app.logger.exception('Failed to generate invoice')
        return _error('Unable to save invoice', 500)
    return jsonify({'status': 'success', 'invoice': invoice, 'message': f"Invoice {invoice['invoice_number']} saved"}), 201


@app.route('/api/invoices', methods=['GET'])
def api_list_invoices():
    store = _store()
    args = request.args
    customer_id = (args.get('customer_id') or '').strip()
    customer_name = (args.get('customer_name') or '').strip()
    start = (args.get('start') or '').strip()
    end = (args.get('end') or '').strip()

    if customer_id:
        invoices = ps.invoices_by_customer_id(store, customer_id)
    elif customer_name:
        invoices = ps.invoices_by_customer_name(store, customer_name)
    elif start and end:
        try:
            invoices = ps.invoices_by_date_range(store, start, end)
        except ValueError:
            return _error('start and end must be ISO dates', 400)
    else:
        invoices = ps.list_invoices(store)

    kind = (args.get('type') or 'all').strip().lower()
    invoices = ps.filter_invoices(
        invoices,
        query=args.get('q'),
        date_iso=(args.get('date') or '').strip() or None,
        min_amount=_parse_amount(args.get('min'), 'minimum'),
        max_amount=_parse_amount(args.get('max'), 'maximum'),
        edited_only=kind == 'edited',
        original_only=kind == 'original',
    )
    invoices = sorted(invoices, key=lambda inv: str(inv.get('date') or ''), reverse=True)
    return jsonify({'status': 'success', 'invoices': invoices, 'count': len(invoices)})


@app.route('/api/invoices/<invoice_number>', methods=['GET', 'PATCH', 'DELETE'])
def api_invoice(invoice_number):
    store = _store()
    if request.method == 'PATCH':
        invoice = ps.update_invoice(store, invoice_number, _json_body())
    elif request.method == 'DELETE':
        if not ps.delete_invoice(store, invoice_number):
            return _error('Invoice not found', 404)
        return jsonify({'status': 'success', 'message': f'Invoice {invoice_number} deleted'})
    else:
        invoice = ps.find_invoice(store, invoice_number)
    if invoice is None:
        return _error('Invoice not found', 404)
    return jsonify({'status': 'success', 'invoice': invoice})


@app.route('/api/invoices/<invoice_number>/edit', methods=['POST'])
def api_edit_invoice(invoice_number):
    """Restock an invoice's lines and load them into the draft cart."""
    store = _store()
    invoice = ps.find_invoice(store, invoice_number)
    if invoice is None:
        return _error('Invoice not found', 404)
    cart = ps.edit_invoice(store, invoice)
    return jsonify({'status': 'success', 'cart': cart.to_dict(), 'customer': cart.customer})


@app.route('/api/invoices/<invoice_number>/export')
def api_export_invoice(invoice_number):
    invoice = ps.find_invoice(_store(), invoice_number)
    if invoice is None:
        return _error('Invoice not found', 404)
    body = _json.dumps(invoice, ensure_ascii=False, indent=2)
    return Response(body, mimetype='application/json', headers={
        'Content-Disposition': f'attachment; filename=invoice_{invoice_number}.json'
    })


@app.route('/api/invoices/<invoice_number>/receipt')
def api_invoice_receipt(invoice_number):
    invoice = ps.find_invoice(_store(), invoice_number)
    if invoice is None:
        return _error('Invoice not found', 404)
    try:
        printed = datetime.fromisoformat(str(invoice.get('date'))).strftime('%d %b %Y %H:%M')
    except ValueError:
        printed = str(invoice.get('date') or '')
    html = render_template(
        'receipt.html',
        invoice=invoice,
        customer=invoice.get('customer') or {},
        item_count=sum(int(l.get('quantity') or 0) for l in invoice.get('items') or []),
        printed_at=printed,
        shop_name=SHOP_NAME,
        shop_phone=SHOP_PHONE,
        logo_data_uri=_logo_data_uri(),
    )
    return Response(html, mimetype='text/html', headers={
        'Content-Disposition': f'attachment; filename=invoice_{invoice_number}.html'
    })


@app.route('/api/invoices/<invoice_number>/print', methods=['POST'])
def api_print_invoice(invoice_number):
    """Forward the invoice to the receipt agent attached to the till printer."""
    invoice = ps.find_invoice(_store(), invoice_number)
    if invoice is None:
        return _error('Invoice not found', 404)
    if not RECEIPT_AGENT_URL:
        return _error('Receipt agent not configured', 503)
    data = _json_body()
    payload = {'invoice': invoice, 'port': data.get('port') or RECEIPT_DEFAULT_PORT}
    try:
        resp = requests.post(RECEIPT_AGENT_URL, json=payload, timeout=10)
        resp.raise_for_status()
    except requests.RequestException as exc:
        app.logger.warning('Receipt print failed for %s: %s', invoice_number, exc)
        return _error(f'Receipt agent error: {exc}', 502)
    return jsonify({'status': 'success', 'message': f'Invoice {invoice_number} sent to printer'})


# ---------- CUSTOMERS ----------
@app.route('/api/customers', methods=['GET', 'POST'])
def api_customers():
    store = _store()
    if request.method == 'POST':
        customer = ps.add_customer(store, _json_body())
        return jsonify({'status': 'success', 'customer': customer}), 201
    q = (request.args.get('q') or '').strip()
    customers = ps.search_customers(store, q) if q else ps.list_customers(store)
    return jsonify({'status': 'success', 'customers': customers})


@app.route('/api/customers/<customer_id>', methods=['GET', 'PATCH', 'DELETE'])
def api_customer(customer_id):
    store = _store()
    if request.method == 'PATCH':
        customer = ps.update_customer(store, customer_id, _json_body())
    elif request.method == 'DELETE':
        if not ps.delete_customer(store, customer_id):
            return _error('Customer not found', 404)
        return jsonify({'status': 'success', 'message': 'Customer deleted'})
    else:
        customer = ps.get_customer(store, customer_id)
    if customer is None:
        return _error('Customer not found', 404)
    return jsonify({'status': 'success', 'customer': customer})


@app.route('/api/customers/<customer_id>/invoices')
def api_customer_invoices(customer_id):
    store = _store()
    if ps.get_customer(store, customer_id) is None:
        return _error('Customer not found', 404)
    invoices = ps.invoices_by_customer_id(store, customer_id)
    return jsonify({'status': 'success', 'invoices': invoices})


# ---------- INVENTORY ----------
@app.route('/api/inventory')
def api_inventory():
    store = _store()
    rows = [_product_payload(p, store) for p in PRODUCTS]
    summary = {
        'total_products': len(rows),
        'low_stock': len(ps.low_stock_products(store, PRODUCTS, LOW_STOCK_THRESHOLD)),
        'out_of_stock': len(ps.out_of_stock_products(store, PRODUCTS)),
    }
    return jsonify({'status': 'success', 'inventory': rows, 'summary': summary})


@app.route('/api/inventory/low-stock')
def api_low_stock():
    store = _store()
    rows = [_product_payload(p, store) for p in ps.low_stock_products(store, PRODUCTS, LOW_STOCK_THRESHOLD)]
    return jsonify({'status': 'success', 'products': rows})


@app.route('/api/inventory/<product_id>', methods=['PUT'])
def api_set_stock(product_id):
    store = _store()
    product = get_product(product_id)
    if product is None:
        return _error('Product not found', 404)
    stock = ps.parse_stock_value(_json_body().get('stock'))
    ps.set_stock(store, product.id, stock)
    app.logger.info("Stock for %s set to %d", product.sku, stock)
    return jsonify({'status': 'success', 'product': _product_payload(product, store)})


@app.route('/api/inventory/<product_id>/adjust', methods=['POST'])
def api_adjust_stock(product_id):
    store = _store()
    product = get_product(product_id)
    if product is None:
        return _error('Product not found', 404)
    try:
        delta = int(_json_body().get('delta'))
    except (TypeError, ValueError):
        return _error('delta must be an integer', 400)
    ps.adjust_stock(store, product.id, delta)
    return jsonify({'status': 'success', 'product': _product_payload(product, store)})


# ---------- PREFERENCES ----------
@app.route('/api/preferences/<key>', methods=['GET', 'PUT'])
def api_preference(key):
    store = _store()
    if request.method == 'PUT':
        data = _json_body()
        if 'value' not in data:
            return _error('value is required', 400)
        set_preference(store, key, data['value'])
    return jsonify({'status': 'success', 'key': key, 'value': get_preference(store, key)})


# ---------- DATA MANAGEMENT ----------
@app.route('/api/data/export')
def api_data_export():
    data = export_all_data(_store())
    filename = f"pos_backup_{datetime.now().strftime('%Y-%m-%d')}.json"
    return Response(_json.dumps(data, ensure_ascii=False, indent=2), mimetype='application/json', headers={
        'Content-Disposition': f'attachment; filename={filename}'
    })


@app.route('/api/data/import', methods=['POST'])
def api_data_import():
    if not import_data(_store(), request.get_json(silent=True)):
        return _error('Invalid backup file', 400)
    return jsonify({'status': 'success', 'message': 'Data imported'})


@app.route('/api/data/clear', methods=['POST'])
def api_data_clear():
    clear_all_data(_store())
    app.logger.info("All POS data cleared")
    return jsonify({'status': 'success', 'message': 'All data cleared'})


@app.route('/health')
def health():
    state = get_pos_state()
    return jsonify({'status': 'ok', 'db': state.db_path, 'invoices': len(ps.list_invoices(state.store))})


if __name__ == '__main__':
    get_pos_state()

    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app.run(host=host, port=port, debug=debug)
