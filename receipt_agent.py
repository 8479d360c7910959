"""
Flask print agent that turns POS invoices into ESC/POS bytes on a serial/USB receipt printer.

Usage:
  RECEIPT_SERIAL_PORT=COM3 \
  RECEIPT_SERIAL_BAUD=9600 \
  python receipt_agent.py

POST /print-invoice with {"invoice": {...}} for a formatted receipt, or
POST /print with raw `text` and optional `hex` sequences.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from serial import Serial, SerialException

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

app = Flask(__name__)

SERIAL_PORT = os.environ.get("RECEIPT_SERIAL_PORT", "COM3")
BAUD_RATE = int(os.environ.get("RECEIPT_SERIAL_BAUD", "9600"))
LINE_FEEDS = int(os.environ.get("RECEIPT_LINE_FEEDS", "2"))
CUT_AFTER_PRINT = os.environ.get("RECEIPT_CUT_AFTER_PRINT", "True").lower() in ("1", "true", "yes")
HOST = os.environ.get("RECEIPT_AGENT_HOST", "127.0.0.1")
PORT = int(os.environ.get("RECEIPT_AGENT_PORT", "5001"))
SHOP_NAME = os.environ.get("RECEIPT_SHOP_NAME") or os.environ.get("POS_SHOP_NAME") or "Shrim Store"
SHOP_PHONE = os.environ.get("RECEIPT_SHOP_PHONE") or os.environ.get("POS_SHOP_PHONE") or ""
LINE_WIDTH = 32

ESC = "\x1B"
CENTER_ON = f"{ESC}\x61\x01"
CENTER_OFF = f"{ESC}\x61\x00"
BIG_ON = f"{ESC}!\x38"
NORMAL = f"{ESC}!\x00"
BOLD_ON = f"{ESC}\x45\x01"
BOLD_OFF = f"{ESC}\x45\x00"


def _code39_sanitize(value: str) -> str:
    """
    Code 39 allowed chars: 0-9 A-Z space $ % * + - . /
    Uppercase and strip anything else.
    """
    allowed = set("0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ $%*+-./")
    v = (value or "").upper()
    out = "".join(c for c in v if c in allowed)
    return out or "INV0001"


def _escpos_barcode_code39_hex(value: str, height: int = 80, width: int = 2, hri: int = 2) -> List[str]:
    """
    Hex command chunks for printing a Code 39 barcode.
    - height: 1..255
    - width: 2..6 typically
    - hri: 0=none, 1=above, 2=below, 3=both
    """
    data = _code39_sanitize(value).encode("ascii", errors="ignore")
    return [
        f"1d 68 {height:02x}",  # GS h n
        f"1d 77 {width:02x}",   # GS w n
        f"1d 48 {hri:02x}",     # GS H n
        # GS k m d1..dk NUL (m=4)
        ("1d 6b 04 " + data.hex(" ") + " 00").strip(),
    ]


def _center(text: str) -> str:
    return f"{CENTER_ON}{text}{CENTER_OFF}\n"


def _two_col(left: str, right: str, width: int = LINE_WIDTH) -> str:
    space = width - len(right) - 1
    if len(left) > space:
        left = left[:max(space, 0)]
    return f"{left.ljust(space)} {right}\n"


def _receipt_date(raw: Any) -> str:
    try:
        return datetime.fromisoformat(str(raw)).strftime("%d/%m/%Y %H:%M")
    except ValueError:
        return str(raw or "")


def format_invoice_text(invoice: Dict[str, Any], shop_name: str = SHOP_NAME,
                        shop_phone: str = SHOP_PHONE, width: int = LINE_WIDTH) -> str:
    """Render an invoice document as ESC/POS text (barcode sent separately)."""
    customer = invoice.get("customer") or {}
    items = invoice.get("items") or []
    rule = "-" * width

    lines = [f"{ESC}@"]
    lines.append(_center(f"{BIG_ON}{shop_name.upper()}{NORMAL}"))
    if shop_phone:
        lines.append(_center(f"Tel: {shop_phone}"))
    lines.append(_center(rule))
    lines.append(f"Invoice: {BOLD_ON}{invoice.get('invoice_number', '')}{BOLD_OFF}\n")
    lines.append(f"Date: {_receipt_date(invoice.get('date'))}\n")
    lines.append(f"Bill To: {customer.get('name') or 'Walk-in Customer'}\n")
    if customer.get("mobile"):
        lines.append(f"Mobile: {customer['mobile']}\n")
    lines.append(rule + "\n")

    count = 0
    for line in items:
        product = line.get("product") or {}
        qty = int(line.get("quantity") or 0)
        price = float(product.get("price") or 0)
        count += qty
        lines.append(f"{product.get('name', '')}\n")
        lines.append(_two_col(f"  {qty} x {price:.2f}", f"{price * qty:.2f}", width))

    lines.append(rule + "\n")
    lines.append(_two_col("Items", str(count), width))
    lines.append(_two_col("Subtotal", f"{float(invoice.get('subtotal') or 0):.2f}", width))
    lines.append(f"{BOLD_ON}" + _two_col("TOTAL", f"{float(invoice.get('total') or 0):.2f}", width) + f"{BOLD_OFF}")
    lines.append("\n")
    lines.append(_center(f"Thank you for shopping with {shop_name}!"))
    lines.append(_center("No Exchange / No Refund"))
    lines.append("\n")
    return "".join(lines)


@app.after_request
def allow_cors(response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    return response


def _sequence_to_bytes(sequence: Sequence[str]) -> Iterable[bytes]:
    """
    Convert a sequence of hexadecimal strings into bytes for ESC/POS commands.
    """
    for chunk in sequence:
        cleaned = chunk.strip().replace(" ", "")
        if not cleaned:
            continue
        try:
            yield bytes.fromhex(cleaned)
        except ValueError as exc:
            raise ValueError(f"Invalid hex chunk {chunk!r}: {exc}") from exc


def _write_text(ser: Serial, text: str) -> None:
    if not text:
        return
    data = text.encode("ascii", errors="ignore")
    logging.debug("[AGENT] TEXT HEX: %s", data.hex(" "))
    ser.write(data)


def _write_cut(ser: Serial) -> None:
    # ESC/POS full cut: GS V 0
    ser.write(b"\x1D\x56\x00")


def _send_to_printer(text: str, hex_commands: Sequence[str], line_feeds: int, cut: bool,
                     port: Optional[str] = None) -> None:
    # decode hex first so a bad chunk fails before anything reaches the printer
    chunks = list(_sequence_to_bytes(hex_commands or []))
    target = port or SERIAL_PORT
    try:
        with Serial(target, BAUD_RATE, timeout=1) as ser:
            _write_text(ser, text)
            for data in chunks:
                ser.write(data)
            if line_feeds > 0:
                ser.write(b"\n" * line_feeds)
            if cut:
                _write_cut(ser)
    except SerialException:
        logging.exception("Serial error on %s", target)
        raise


def _print_options(payload: Dict[str, Any]):
    raw = payload.get("line_feeds", LINE_FEEDS)
    try:
        line_feeds = int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"line_feeds must be a whole number, got {raw!r}")
    return line_feeds, payload.get("cut", CUT_AFTER_PRINT)


@app.route("/print", methods=["POST", "OPTIONS"])
def print_receipt():
    if request.method == "OPTIONS":
        return jsonify(ok=True)

    payload = request.get_json(force=True) or {}
    text = payload.get("text", "")
    hex_commands = payload.get("hex", [])
    if isinstance(hex_commands, str):
        hex_commands = [hex_commands]
    elif not isinstance(hex_commands, list):
        hex_commands = list(hex_commands)
    logging.info("Preparing receipt: text len=%d snippet=%s", len(text), text.strip().replace("\n", "\\n")[:120])

    try:
        line_feeds, cut = _print_options(payload)
        _send_to_printer(text, hex_commands, line_feeds, cut, payload.get("port"))
    except ValueError as exc:
        logging.warning("Bad print payload: %s", exc)
        return jsonify(ok=False, error=str(exc)), 400
    except SerialException as exc:
        return jsonify(ok=False, error=str(exc)), 500

    logging.info("Printed receipt; text length=%d hex commands=%d", len(text), len(hex_commands))
    return jsonify(ok=True)


@app.route("/print-invoice", methods=["POST", "OPTIONS"])
def print_invoice():
    if request.method == "OPTIONS":
        return jsonify(ok=True)

    payload = request.get_json(force=True) or {}
    invoice = payload.get("invoice")
    if not isinstance(invoice, dict) or not invoice.get("invoice_number"):
        return jsonify(ok=False, error="invoice with invoice_number is required"), 400

    barcode = _code39_sanitize(invoice["invoice_number"])
    hex_commands = ["1b 61 01"] + _escpos_barcode_code39_hex(barcode) + ["1b 61 00"]

    try:
        line_feeds, cut = _print_options(payload)
        text = format_invoice_text(invoice)
        _send_to_printer(text, hex_commands, line_feeds, cut, payload.get("port"))
    except ValueError as exc:
        logging.warning("Bad invoice print payload: %s", exc)
        return jsonify(ok=False, error=str(exc)), 400
    except SerialException as exc:
        return jsonify(ok=False, error=str(exc)), 500

    logging.info("Printed invoice %s (%d line(s))", invoice["invoice_number"], len(invoice.get("items") or []))
    return jsonify(ok=True, invoice_number=invoice["invoice_number"], barcode=barcode)


@app.get("/health")
def health():
    return "ok", 200


def main():
    logging.info(
        "Starting receipt agent on http://%s:%d printing to %s@%d",
        HOST,
        PORT,
        SERIAL_PORT,
        BAUD_RATE,
    )
    # Avoid Flask reloader to keep serial port exclusive
    app.run(host=HOST, port=PORT, debug=False, use_reloader=False)


if __name__ == "__main__":
    main()
